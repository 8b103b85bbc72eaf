"""
Registry Service - Call-Home Registry Lifecycle

Owns one AppRegistry and the CallHomeServer in front of it.
"""

import logging
from typing import Any, Dict, Optional

from core.callhome_registry import AppRegistry, CallHomeServer
from core.exceptions import RegistryValidationError
from shared.constants import PortKind
from shared.settings import AsarHookSettings, get_settings

logger = logging.getLogger(__name__)


class RegistryService:
    """Start/stop/status for the call-home registry"""

    def __init__(self, settings: Optional[AsarHookSettings] = None, registry: Optional[AppRegistry] = None):
        self.settings = settings or get_settings()
        self.registry = registry or AppRegistry(
            online_threshold_ms=self.settings.ONLINE_THRESHOLD_MS,
            eviction_after_ms=self.settings.EVICTION_AFTER_MS,
        )
        self.server: Optional[CallHomeServer] = None

    async def start(self, host: Optional[str] = None, port: Optional[int] = None) -> Dict[str, Any]:
        if self.server is not None and self.server.running:
            return {"success": True, "alreadyRunning": True, **self.server.status()}

        self.server = CallHomeServer(
            self.registry,
            host=host if host is not None else self.settings.REGISTRY_HOST,
            port=port if port is not None else self.settings.REGISTRY_PORT,
        )
        if not await self.server.start():
            server, self.server = self.server, None
            return {"success": False, "error": f"Could not bind {server.host}:{server.port}"}
        return {"success": True, **self.server.status()}

    async def stop(self) -> Dict[str, Any]:
        if self.server is None or not self.server.running:
            return {"success": True, "running": False}
        await self.server.stop()
        self.server = None
        return {"success": True, "running": False}

    def status(self) -> Dict[str, Any]:
        if self.server is None:
            return {"success": True, "running": False, **self.registry.stats()}
        return {"success": True, **self.server.status()}

    def apps(self) -> Dict[str, Any]:
        return {"success": True, "apps": self.registry.list(), **self.registry.stats()}

    def remove(self, uuid: str) -> Dict[str, Any]:
        if not self.registry.remove(uuid):
            return {"success": False, "error": f"Unknown target: {uuid}"}
        return {"success": True, "removed": uuid}

    def clear(self) -> Dict[str, Any]:
        return {"success": True, "removed": self.registry.clear()}

    def assign_port(self, uuid: str, kind: str = PortKind.MONITOR.value) -> Dict[str, Any]:
        kind = PortKind(kind)
        base = self.settings.CONTROL_PORT_BASE if kind == PortKind.CONTROL else self.settings.MONITOR_PORT_BASE
        try:
            port = self.registry.assign_port(uuid, kind, base)
        except RegistryValidationError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "uuid": uuid, "kind": kind.value, "port": port}

    def next_port(self, kind: str = PortKind.CONTROL.value) -> int:
        kind = PortKind(kind)
        base = self.settings.CONTROL_PORT_BASE if kind == PortKind.CONTROL else self.settings.MONITOR_PORT_BASE
        return self.registry.allocate_port(kind, base)
