"""
Tests for the call-home registry and port allocation
"""

import pytest
from aiohttp.test_utils import TestClient, TestServer

from core.callhome_registry import AppRegistry, CallHomeServer, normalize_ip
from core.exceptions import RegistryValidationError
from shared.constants import PortKind


class FakeClock:
    def __init__(self, now: int = 1_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now


def heartbeat(registry: AppRegistry, uuid: str, port=None, ip="127.0.0.1", **extra):
    payload = {"uuid": uuid, "app_name": f"app-{uuid}", "port": port, **extra}
    return registry.receive_heartbeat(payload, ip)


class TestNormalizeIp:
    def test_loopback(self):
        assert normalize_ip("::1") == "127.0.0.1"

    def test_mapped(self):
        assert normalize_ip("::ffff:10.0.0.5") == "10.0.0.5"

    def test_plain(self):
        assert normalize_ip("192.168.1.2") == "192.168.1.2"


class TestHeartbeats:
    """Upsert and liveness"""

    def test_missing_uuid(self):
        with pytest.raises(RegistryValidationError, match="Missing uuid"):
            AppRegistry().receive_heartbeat({"app_name": "x"}, "127.0.0.1")

    def test_address_from_connection(self):
        registry = AppRegistry()
        record = registry.receive_heartbeat({"uuid": "a", "ip": "10.9.9.9", "port": "10100"}, "::ffff:192.168.0.7")
        assert record.ip == "192.168.0.7"
        assert record.port == 10100

    def test_upsert_keeps_one_record(self):
        registry = AppRegistry()
        heartbeat(registry, "a", port=10100, active_jobs=1)
        heartbeat(registry, "a", port=10100, active_jobs=3, ipc_monitor_port=11100)
        assert len(registry) == 1
        record = registry.get("a")
        assert record.active_jobs == 3
        assert record.monitor_port == 11100

    def test_online_threshold(self):
        clock = FakeClock()
        registry = AppRegistry(clock=clock)
        heartbeat(registry, "a")
        clock.now += 60_000
        assert registry.is_online("a") is True
        clock.now += 90_000
        assert registry.is_online("a") is False
        assert registry.list()[0]["online"] is False

    def test_eviction(self):
        clock = FakeClock()
        registry = AppRegistry(clock=clock)
        heartbeat(registry, "old")
        clock.now += 200_000
        heartbeat(registry, "fresh")
        clock.now += 100_001
        assert registry.sweep() == ["old"]
        assert registry.get("fresh") is not None

    def test_listeners_notified(self):
        registry = AppRegistry()
        seen = []
        registry.add_listener(lambda record: seen.append(record.uuid))
        heartbeat(registry, "a")
        assert seen == ["a"]


class TestPortAllocation:
    """Smallest free port at or above the base"""

    def test_empty_registry(self):
        assert AppRegistry().allocate_port(PortKind.CONTROL, 10100) == 10100

    def test_fills_gap(self):
        registry = AppRegistry()
        for uuid, port in (("a", 10100), ("b", 10101), ("c", 10103)):
            heartbeat(registry, uuid, port=port)
        assert registry.allocate_port(PortKind.CONTROL, 10100) == 10102

    def test_kinds_are_independent(self):
        registry = AppRegistry()
        heartbeat(registry, "a", port=10100)
        assert registry.allocate_port(PortKind.MONITOR, 11100) == 11100

    def test_assign_is_sticky(self):
        registry = AppRegistry()
        heartbeat(registry, "a", port=10100)
        heartbeat(registry, "b", port=10101)
        first = registry.assign_port("a", PortKind.MONITOR, 11100)
        second = registry.assign_port("b", PortKind.MONITOR, 11100)
        assert (first, second) == (11100, 11101)
        assert registry.assign_port("a", PortKind.MONITOR, 11100) == 11100

    def test_assign_unknown(self):
        with pytest.raises(RegistryValidationError):
            AppRegistry().assign_port("ghost", PortKind.CONTROL)


class TestCallHomeServer:
    """HTTP front end"""

    @pytest.mark.asyncio
    async def test_call_home_and_apps(self):
        registry = AppRegistry()
        async with TestClient(TestServer(CallHomeServer(registry).build_app())) as client:
            resp = await client.post("/call-home", json={"uuid": "u1", "app_name": "Demo", "port": 10100})
            assert resp.status == 200
            body = await resp.json()
            assert body["success"] is True
            assert isinstance(body["received"], int)

            apps = await (await client.get("/apps")).json()
            assert apps["total"] == 1
            assert apps["apps"][0]["uuid"] == "u1"
            assert apps["apps"][0]["online"] is True

            health = await (await client.get("/health")).json()
            assert health["status"] == "healthy"
            assert health["online"] == 1

    @pytest.mark.asyncio
    async def test_rejects_bad_payloads(self):
        async with TestClient(TestServer(CallHomeServer(AppRegistry()).build_app())) as client:
            resp = await client.post("/call-home", json={"app_name": "no uuid"})
            assert resp.status == 400
            assert (await resp.json())["error"] == "Missing uuid in call-home"

            resp = await client.post("/call-home", data="{oops", headers={"Content-Type": "application/json"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_start_stop(self):
        server = CallHomeServer(AppRegistry(), port=0)
        assert await server.start() is True
        assert server.status()["running"] is True
        await server.stop()
        assert server.running is False
