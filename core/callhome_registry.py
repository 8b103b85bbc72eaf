"""
Call-Home Registry

Host-side directory of hooked targets. Every agent heartbeats
`POST /call-home`; records are upserted, classified online/offline for
display, evicted after a longer idle period, and used to hand out
non-conflicting control/monitor ports.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from aiohttp import web

from core.exceptions import RegistryValidationError
from shared.constants import (
    DEFAULT_CONTROL_PORT_BASE,
    DEFAULT_MONITOR_PORT_BASE,
    DEFAULT_REGISTRY_PORT,
    EVICTION_AFTER_MS,
    ONLINE_THRESHOLD_MS,
    REGISTRY_SWEEP_INTERVAL_S,
    PortKind,
)

logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(time.time() * 1000)


def normalize_ip(ip: Optional[str]) -> Optional[str]:
    """Map IPv6 loopback and IPv4-mapped forms to plain IPv4"""
    if not ip:
        return ip
    if ip == "::1":
        return "127.0.0.1"
    if ip.lower().startswith("::ffff:"):
        return ip[7:]
    return ip


@dataclass
class AppRecord:
    uuid: str
    name: str
    ip: Optional[str]
    port: Optional[int]
    last_seen: int
    timestamp: Optional[int] = None
    active_jobs: int = 0
    monitor_port: Optional[int] = None
    console_port: Optional[int] = None

    def port_for(self, kind: PortKind) -> Optional[int]:
        return self.port if kind == PortKind.CONTROL else self.monitor_port

    def to_dict(self, online: Optional[bool] = None) -> Dict[str, Any]:
        data = {
            "uuid": self.uuid,
            "name": self.name,
            "ip": self.ip,
            "port": self.port,
            "ipc_monitor_port": self.monitor_port,
            "console_port": self.console_port,
            "lastSeen": self.last_seen,
            "timestamp": self.timestamp,
            "active_jobs": self.active_jobs,
        }
        if online is not None:
            data["online"] = online
        return data


HeartbeatListener = Callable[[AppRecord], Any]


def _as_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class AppRegistry:
    """In-memory records keyed by agent uuid"""

    def __init__(
        self,
        online_threshold_ms: int = ONLINE_THRESHOLD_MS,
        eviction_after_ms: int = EVICTION_AFTER_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.online_threshold_ms = online_threshold_ms
        self.eviction_after_ms = eviction_after_ms
        self.clock = clock
        self._records: Dict[str, AppRecord] = {}
        self._listeners: List[HeartbeatListener] = []

    def __len__(self) -> int:
        return len(self._records)

    def add_listener(self, listener: HeartbeatListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: HeartbeatListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def receive_heartbeat(self, payload: Dict[str, Any], remote_ip: Optional[str]) -> AppRecord:
        """Upsert the record for payload["uuid"].

        The address is taken from the connection, not from the payload.

        Raises:
            RegistryValidationError: payload has no uuid
        """
        uuid = payload.get("uuid") if isinstance(payload, dict) else None
        if not uuid:
            raise RegistryValidationError("Missing uuid in call-home")

        now = self.clock()
        record = self._records.get(uuid)
        if record is None:
            record = AppRecord(
                uuid=uuid,
                name=payload.get("app_name") or "Unknown",
                ip=normalize_ip(remote_ip),
                port=_as_int(payload.get("port")),
                last_seen=now,
            )
            self._records[uuid] = record
            logger.info(f"[CallHome] New target {record.name} ({uuid}) from {record.ip}")
        else:
            if payload.get("app_name"):
                record.name = payload["app_name"]
            record.ip = normalize_ip(remote_ip) or record.ip
            if _as_int(payload.get("port")) is not None:
                record.port = _as_int(payload.get("port"))
            record.last_seen = now

        record.timestamp = _as_int(payload.get("timestamp"))
        record.active_jobs = _as_int(payload.get("active_jobs")) or 0
        if _as_int(payload.get("ipc_monitor_port")) is not None:
            record.monitor_port = _as_int(payload.get("ipc_monitor_port"))
        if _as_int(payload.get("console_port")) is not None:
            record.console_port = _as_int(payload.get("console_port"))

        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception as e:
                logger.warning(f"[CallHome] Heartbeat listener failed: {e}")
        return record

    def get(self, uuid: str) -> Optional[AppRecord]:
        return self._records.get(uuid)

    def is_online(self, uuid: str) -> bool:
        record = self._records.get(uuid)
        if record is None:
            return False
        return self.clock() - record.last_seen < self.online_threshold_ms

    def list(self) -> List[Dict[str, Any]]:
        records = sorted(self._records.values(), key=lambda r: r.last_seen, reverse=True)
        return [r.to_dict(online=self.is_online(r.uuid)) for r in records]

    def allocate_port(self, kind: PortKind, base_port: int) -> int:
        """Smallest port >= base_port not held by any record for this kind"""
        kind = PortKind(kind)
        used = {r.port_for(kind) for r in self._records.values()}
        port = base_port
        while port in used:
            port += 1
        return port

    def assign_port(self, uuid: str, kind: PortKind, base_port: Optional[int] = None) -> int:
        """Allocate a port and store it on the record.

        Returns the record's existing port if one is already assigned.
        """
        kind = PortKind(kind)
        record = self._records.get(uuid)
        if record is None:
            raise RegistryValidationError(f"Unknown target: {uuid}")
        current = record.port_for(kind)
        if current is not None:
            return current
        if base_port is None:
            base_port = DEFAULT_CONTROL_PORT_BASE if kind == PortKind.CONTROL else DEFAULT_MONITOR_PORT_BASE
        port = self.allocate_port(kind, base_port)
        if kind == PortKind.CONTROL:
            record.port = port
        else:
            record.monitor_port = port
        logger.info(f"[CallHome] Assigned {kind.value} port {port} to {uuid}")
        return port

    def remove(self, uuid: str) -> bool:
        return self._records.pop(uuid, None) is not None

    def clear(self) -> int:
        count = len(self._records)
        self._records.clear()
        return count

    def sweep(self) -> List[str]:
        """Evict records idle longer than eviction_after_ms"""
        cutoff = self.clock() - self.eviction_after_ms
        evicted = [uuid for uuid, r in self._records.items() if r.last_seen < cutoff]
        for uuid in evicted:
            del self._records[uuid]
            logger.info(f"[CallHome] Evicted idle target {uuid}")
        return evicted

    def stats(self) -> Dict[str, int]:
        online = sum(1 for uuid in self._records if self.is_online(uuid))
        return {"total": len(self._records), "online": online, "offline": len(self._records) - online}


class CallHomeServer:
    """aiohttp front end for an AppRegistry"""

    def __init__(
        self,
        registry: AppRegistry,
        host: str = "127.0.0.1",
        port: int = DEFAULT_REGISTRY_PORT,
        sweep_interval_s: float = REGISTRY_SWEEP_INTERVAL_S,
    ):
        self.registry = registry
        self.host = host
        self.port = port
        self.sweep_interval_s = sweep_interval_s
        self.started_at: Optional[int] = None
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._running = False

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/call-home", self._handle_call_home)
        app.router.add_get("/health", self._handle_health)
        app.router.add_get("/apps", self._handle_apps)
        return app

    async def _handle_call_home(self, request: web.Request) -> web.Response:
        try:
            payload = await request.json()
        except ValueError:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        try:
            self.registry.receive_heartbeat(payload, request.remote)
        except RegistryValidationError as e:
            return web.json_response({"error": e.message}, status=400)
        return web.json_response({"success": True, "received": now_ms()})

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "timestamp": now_ms(),
            "startedAt": self.started_at,
            **self.registry.stats(),
        })

    async def _handle_apps(self, request: web.Request) -> web.Response:
        return web.json_response({"apps": self.registry.list(), **self.registry.stats()})

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            self.registry.sweep()

    async def start(self) -> bool:
        if self._running:
            logger.warning("Call-home registry already running")
            return True
        try:
            self._runner = web.AppRunner(self.build_app())
            await self._runner.setup()
            self._site = web.TCPSite(self._runner, self.host, self.port)
            await self._site.start()
        except OSError as e:
            logger.error(f"Failed to start call-home registry on {self.host}:{self.port}: {e}")
            if self._runner is not None:
                await self._runner.cleanup()
                self._runner = None
            return False

        self._sweep_task = asyncio.create_task(self._sweep_loop())
        self.started_at = now_ms()
        self._running = True
        logger.info(f"[CallHome] Registry listening on {self.host}:{self.port}")
        return True

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        self._running = False
        logger.info("[CallHome] Registry stopped")

    @property
    def running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "host": self.host,
            "port": self.port,
            "startedAt": self.started_at,
            **self.registry.stats(),
        }
