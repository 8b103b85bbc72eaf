"""
Monitor Client

Operator-side consumer of a traffic monitor stream.

The monitor answers pings with an empty pong, which the websockets
library's keepalive would reject as a mismatched payload, so automatic
keepalive is disabled and pings are sent manually without waiting on
the pong.
"""

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Dict, Optional

import websockets

logger = logging.getLogger(__name__)

PING_INTERVAL_S = 30


class MonitorClient:
    """
    Usage:
        async with MonitorClient("127.0.0.1", 11100) as client:
            async for message in client.messages():
                ...
    """

    def __init__(self, host: str, port: int, ping_interval_s: float = PING_INTERVAL_S):
        self.url = f"ws://{host}:{port}"
        self.ping_interval_s = ping_interval_s
        self.client_id: Optional[str] = None
        self._ws = None
        self._ping_task: Optional[asyncio.Task] = None

    async def __aenter__(self) -> "MonitorClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def connect(self) -> None:
        self._ws = await websockets.connect(self.url, ping_interval=None, max_size=None)
        self._ping_task = asyncio.create_task(self._ping_loop())
        logger.info(f"[Monitor] Connected to {self.url}")

    async def _ping_loop(self) -> None:
        while True:
            await self.ping()
            await asyncio.sleep(self.ping_interval_s)

    async def ping(self) -> None:
        # the returned pong waiter is deliberately not awaited
        await self._ws.ping()

    async def receive(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        raw = await asyncio.wait_for(self._ws.recv(), timeout=timeout)
        message = json.loads(raw)
        if message.get("type") == "connection":
            self.client_id = message.get("clientId")
        return message

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        while True:
            try:
                yield await self.receive()
            except websockets.ConnectionClosed:
                logger.info("[Monitor] Stream closed")
                return

    async def close(self) -> None:
        if self._ping_task is not None:
            self._ping_task.cancel()
            try:
                await self._ping_task
            except asyncio.CancelledError:
                pass
            self._ping_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
