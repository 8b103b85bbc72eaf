"""
Traffic Monitor Agent

Taps a target's in-process message bus and streams what it sees over a
WebSocket server whose handshake and framing are done by hand.

Wire messages, in order, per connected client:
    {type: "connection", clientId, status: "connected"}
    {type: "ipc-traffic", data: [last 100 events], total}
    {type: "ipc-message", data: event, timestamp}   (live, one per event)

Clients must ping at least once a minute; anything else inbound except a
close frame is ignored.
"""

import asyncio
import inspect
import json
import logging
import secrets
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from core.ws_framing import PONG_FRAME, compute_accept_key, frame_encode
from shared.constants import (
    MONITOR_CLIENT_TIMEOUT_MS,
    MONITOR_SWEEP_INTERVAL_S,
    SERIALIZE_MAX_DEPTH,
    SERIALIZE_MAX_ITEMS,
    SERIALIZE_MAX_KEYS,
    SERIALIZE_MAX_STRING,
    TRAFFIC_BACKLOG_REPLAY,
    TRAFFIC_RING_MAX,
    TRAFFIC_RING_TRIM_TO,
)

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


# ==================== Serialization ====================

def serialize_value(value: Any, depth: int = 0) -> Any:
    """Bounded, JSON-safe snapshot of one value"""
    if depth > SERIALIZE_MAX_DEPTH:
        return "[Max Depth Reached]"
    try:
        if value is None:
            return {"type": "null", "value": None}
        if isinstance(value, bool):
            return {"type": "boolean", "value": value}
        if isinstance(value, (int, float)):
            return {"type": "number", "value": value}
        if isinstance(value, str):
            truncated = len(value) > SERIALIZE_MAX_STRING
            return {
                "type": "string",
                "value": value[:SERIALIZE_MAX_STRING] + "..." if truncated else value,
                "truncated": truncated,
            }
        if isinstance(value, BaseException):
            stack = "".join(traceback.format_exception(type(value), value, value.__traceback__))
            return {
                "type": "error",
                "value": {
                    "name": type(value).__name__,
                    "message": str(value),
                    "stack": "\n".join(stack.splitlines()[:10]),
                },
            }
        if inspect.isfunction(value) or inspect.ismethod(value) or inspect.isbuiltin(value):
            return {"type": "function", "value": f"[Function: {getattr(value, '__name__', 'anonymous')}]"}
        if isinstance(value, (list, tuple)):
            items = [serialize_value(item, depth + 1) for item in value[:SERIALIZE_MAX_ITEMS]]
            if len(value) > SERIALIZE_MAX_ITEMS:
                items.append(f"[{len(value) - SERIALIZE_MAX_ITEMS} more items...]")
            return {"type": "array", "value": items, "length": len(value)}
        if isinstance(value, dict):
            keys = list(value.keys())
            out = {str(k): serialize_value(value[k], depth + 1) for k in keys[:SERIALIZE_MAX_KEYS]}
            result: Dict[str, Any] = {"type": "object", "value": out}
            if len(keys) > SERIALIZE_MAX_KEYS:
                result["truncated"] = True
                result["totalKeys"] = len(keys)
            return result
        name = type(value).__name__
        return {"type": "object", "constructor": name, "value": f"[{name} instance]"}
    except Exception as e:
        return {"type": "error", "value": f"[Serialization Error: {e}]"}


def serialize_args(args: Any) -> List[Any]:
    return [serialize_value(arg) for arg in args]


# ==================== Events ====================

@dataclass
class TrafficEvent:
    """One observed bus message or handler outcome"""
    id: int
    type: str
    channel: str
    timestamp: int
    args: Optional[List[Any]] = None
    sender: Any = None
    duration: Optional[int] = None
    ref: Optional[int] = None
    request_id: Optional[str] = None
    result: Any = None
    return_value: Any = None
    error: Any = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "channel": self.channel,
            "timestamp": self.timestamp,
        }
        optional = {
            "args": self.args,
            "sender": self.sender,
            "duration": self.duration,
            "ref": self.ref,
            "requestId": self.request_id,
            "result": self.result,
            "returnValue": self.return_value,
            "error": self.error,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


class TrafficRing:
    """Bounded event buffer: past max_size entries only the newest trim_to are kept"""

    def __init__(self, max_size: int = TRAFFIC_RING_MAX, trim_to: int = TRAFFIC_RING_TRIM_TO):
        self.max_size = max_size
        self.trim_to = trim_to
        self._events: List[TrafficEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def append(self, event: TrafficEvent) -> None:
        self._events.append(event)
        if len(self._events) > self.max_size:
            del self._events[: len(self._events) - self.trim_to]

    def recent(self, count: int = TRAFFIC_BACKLOG_REPLAY) -> List[TrafficEvent]:
        return self._events[-count:] if count else []

    def clear(self) -> None:
        self._events.clear()


# ==================== Message bus ====================

@dataclass
class BusEvent:
    channel: str
    sender: Any = None
    return_value: Any = None


class MessageBus:
    """
    Channel-based in-process bus.

    `on` listeners receive fire-and-forget messages from `emit`;
    a single `handle` handler per channel answers `invoke`.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Callable]] = {}
        self._handlers: Dict[str, Callable] = {}

    def on(self, channel: str, listener: Callable) -> None:
        self._listeners.setdefault(channel, []).append(listener)

    def handle(self, channel: str, handler: Callable) -> None:
        if channel in self._handlers:
            raise ValueError(f"Handler already registered for channel: {channel}")
        self._handlers[channel] = handler

    def remove_handler(self, channel: str) -> None:
        self._handlers.pop(channel, None)

    def emit(self, channel: str, *args: Any, sender: Any = None) -> BusEvent:
        event = BusEvent(channel=channel, sender=sender)
        for listener in list(self._listeners.get(channel, [])):
            listener(event, *args)
        return event

    async def invoke(self, channel: str, *args: Any, sender: Any = None) -> Any:
        handler = self._handlers.get(channel)
        if handler is None:
            raise LookupError(f"No handler registered for channel: {channel}")
        result = handler(BusEvent(channel=channel, sender=sender), *args)
        if inspect.isawaitable(result):
            result = await result
        return result


# ==================== Agent ====================

@dataclass
class MonitorConnection:
    id: str
    writer: asyncio.StreamWriter
    last_ping: int = field(default_factory=now_ms)


class TrafficMonitorAgent:
    """
    Usage:
        monitor = TrafficMonitorAgent(bus=bus, port=11100)
        await monitor.start()
        ...
        await monitor.stop()   # restores bus.on / bus.handle
    """

    def __init__(
        self,
        bus: Optional[MessageBus] = None,
        host: str = "127.0.0.1",
        port: int = 0,
        ring: Optional[TrafficRing] = None,
        client_timeout_ms: int = MONITOR_CLIENT_TIMEOUT_MS,
        sweep_interval_s: float = MONITOR_SWEEP_INTERVAL_S,
    ):
        self.bus = bus
        self.host = host
        self.port = port
        self.ring = ring or TrafficRing()
        self.client_timeout_ms = client_timeout_ms
        self.sweep_interval_s = sweep_interval_s
        self.clients: Dict[str, MonitorConnection] = {}
        self._sequence = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._reaper: Optional[asyncio.Task] = None
        self._client_tasks: Dict[str, asyncio.Task] = {}
        self._hook_installed = False
        self._originals: Optional[tuple] = None

    @property
    def running(self) -> bool:
        return self._server is not None

    # ==================== Recording ====================

    def record(self, type: str, channel: str, **fields: Any) -> TrafficEvent:
        self._sequence += 1
        event = TrafficEvent(id=self._sequence, type=type, channel=channel, timestamp=now_ms(), **fields)
        self.ring.append(event)
        self.broadcast({
            "type": "ipc-message",
            "data": event.to_dict(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        return event

    # ==================== Bus tap ====================

    def install(self) -> None:
        """Wrap the bus registration functions on this bus instance"""
        if self.bus is None or self._hook_installed:
            return
        original_on = self.bus.on
        original_handle = self.bus.handle
        monitor = self

        def tapped_on(channel: str, listener: Callable) -> None:
            def wrapped(event: BusEvent, *args: Any) -> Any:
                started = now_ms()
                seen = monitor.record(
                    "ipc_on", channel, args=serialize_args(args), sender=serialize_value(event.sender)
                )
                try:
                    result = listener(event, *args)
                except Exception as e:
                    monitor.record(
                        "ipc_on_error", channel, ref=seen.id,
                        error=serialize_value(e), duration=now_ms() - started,
                    )
                    raise
                monitor.record(
                    "ipc_on_complete", channel, ref=seen.id,
                    return_value=serialize_value(event.return_value), duration=now_ms() - started,
                )
                return result

            return original_on(channel, wrapped)

        def tapped_handle(channel: str, handler: Callable) -> None:
            async def wrapped(event: BusEvent, *args: Any) -> Any:
                request_id = secrets.token_hex(4)
                started = now_ms()
                monitor.record(
                    "ipc_handle", channel, request_id=request_id,
                    args=serialize_args(args), sender=serialize_value(event.sender),
                )
                try:
                    result = handler(event, *args)
                    if inspect.isawaitable(result):
                        result = await result
                except Exception as e:
                    monitor.record(
                        "ipc_handle_error", channel, request_id=request_id,
                        error=serialize_value(e), duration=now_ms() - started,
                    )
                    raise
                monitor.record(
                    "ipc_result", channel, request_id=request_id,
                    result=serialize_value(result), duration=now_ms() - started,
                )
                return result

            return original_handle(channel, wrapped)

        self._originals = (original_on, original_handle)
        self.bus.on = tapped_on
        self.bus.handle = tapped_handle
        self._hook_installed = True
        logger.info("[Monitor] Bus hooks installed")

    def uninstall(self) -> None:
        if self.bus is None or not self._hook_installed:
            return
        self.bus.on, self.bus.handle = self._originals
        self._hook_installed = False
        logger.info("[Monitor] Bus hooks removed")

    # ==================== WebSocket server ====================

    def _send(self, client: MonitorConnection, message: Dict[str, Any]) -> bool:
        if client.writer.is_closing():
            return False
        client.writer.write(frame_encode(json.dumps(message, default=repr)))
        return True

    def broadcast(self, message: Dict[str, Any]) -> None:
        for client_id, client in list(self.clients.items()):
            if not self._send(client, message):
                self._drop(client_id)

    def _drop(self, client_id: str) -> None:
        client = self.clients.pop(client_id, None)
        if client is not None and not client.writer.is_closing():
            client.writer.close()
        logger.debug(f"[Monitor] Client {client_id} removed")

    async def _handshake(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> bool:
        try:
            request = await reader.readuntil(b"\r\n\r\n")
        except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, ConnectionError):
            return False
        headers = {}
        for line in request.decode("latin-1").split("\r\n")[1:]:
            if ":" in line:
                name, value = line.split(":", 1)
                headers[name.strip().lower()] = value.strip()

        key = headers.get("sec-websocket-key")
        if not key:
            writer.write(b"HTTP/1.1 400 Bad Request\r\n\r\n")
            await writer.drain()
            return False

        writer.write(
            (
                "HTTP/1.1 101 Switching Protocols\r\n"
                "Upgrade: websocket\r\n"
                "Connection: Upgrade\r\n"
                f"Sec-WebSocket-Accept: {compute_accept_key(key)}\r\n\r\n"
            ).encode("ascii")
        )
        await writer.drain()
        return True

    async def _close_writer(self, writer: asyncio.StreamWriter) -> None:
        if not writer.is_closing():
            writer.close()
        try:
            await writer.wait_closed()
        except ConnectionError:
            pass

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            accepted = await self._handshake(reader, writer)
        except ConnectionError:
            accepted = False
        if not accepted:
            await self._close_writer(writer)
            return

        client = MonitorConnection(id=secrets.token_hex(4), writer=writer)
        self.clients[client.id] = client
        self._client_tasks[client.id] = asyncio.current_task()
        logger.info(f"[Monitor] Client {client.id} connected")

        self._send(client, {"type": "connection", "clientId": client.id, "status": "connected"})
        self._send(client, {
            "type": "ipc-traffic",
            "data": [e.to_dict() for e in self.ring.recent(TRAFFIC_BACKLOG_REPLAY)],
            "total": len(self.ring),
        })

        try:
            while True:
                data = await reader.read(4096)
                if not data:
                    break
                if data[0] == 0x89:
                    client.last_ping = now_ms()
                    writer.write(PONG_FRAME)
                    await writer.drain()
                elif data[0] == 0x88:
                    break
        except ConnectionError:
            pass
        finally:
            self._client_tasks.pop(client.id, None)
            self._drop(client.id)
            await self._close_writer(writer)

    def reap(self, now: Optional[int] = None) -> List[str]:
        """Drop clients that have not pinged within client_timeout_ms"""
        cutoff = (now if now is not None else now_ms()) - self.client_timeout_ms
        stale = [cid for cid, c in self.clients.items() if c.last_ping < cutoff]
        for client_id in stale:
            logger.info(f"[Monitor] Client {client_id} timed out")
            self._drop(client_id)
        return stale

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.reap()

    # ==================== Control ====================

    async def start(self) -> Dict[str, Any]:
        if self._server is not None:
            return self.status()
        self._server = await asyncio.start_server(self._handle_client, self.host, self.port)
        self.port = self._server.sockets[0].getsockname()[1]
        self.install()
        self._reaper = asyncio.create_task(self._reap_loop())
        logger.info(f"[Monitor] Streaming on ws://{self.host}:{self.port}")
        return self.status()

    async def stop(self) -> Dict[str, Any]:
        self.uninstall()
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None
        for client_id in list(self.clients):
            self._drop(client_id)
        tasks = list(self._client_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        logger.info("[Monitor] Stopped")
        return {"stopped": True}

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "host": self.host,
            "port": self.port,
            "clients": len(self.clients),
            "traffic": len(self.ring),
            "hooked": self._hook_installed,
        }

    def clear(self) -> Dict[str, Any]:
        count = len(self.ring)
        self.ring.clear()
        return {"cleared": True, "removed": count}
