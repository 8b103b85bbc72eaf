"""
Tests for the message bus tap and its WebSocket stream
"""

import asyncio
import json
import os
import struct

import pytest
import pytest_asyncio

from core.traffic_monitor import (
    MessageBus,
    TrafficEvent,
    TrafficMonitorAgent,
    TrafficRing,
    serialize_value,
)
from core.ws_framing import compute_accept_key

KEY = "dGhlIHNhbXBsZSBub25jZQ=="


async def read_frame(reader: asyncio.StreamReader) -> bytes:
    first, second = await reader.readexactly(2)
    length = second & 0x7F
    if length == 126:
        (length,) = struct.unpack("!H", await reader.readexactly(2))
    elif length == 127:
        (length,) = struct.unpack("!Q", await reader.readexactly(8))
    return await reader.readexactly(length)


async def read_message(reader: asyncio.StreamReader) -> dict:
    return json.loads(await asyncio.wait_for(read_frame(reader), timeout=2))


async def open_client(port: int):
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(
        (
            "GET / HTTP/1.1\r\n"
            f"Host: 127.0.0.1:{port}\r\n"
            "Upgrade: websocket\r\n"
            "Connection: Upgrade\r\n"
            f"Sec-WebSocket-Key: {KEY}\r\n"
            "Sec-WebSocket-Version: 13\r\n\r\n"
        ).encode("ascii")
    )
    await writer.drain()
    response = await reader.readuntil(b"\r\n\r\n")
    return reader, writer, response.decode("latin-1")


@pytest_asyncio.fixture
async def monitor():
    bus = MessageBus()
    agent = TrafficMonitorAgent(bus=bus, port=0, client_timeout_ms=60000, sweep_interval_s=60)
    await agent.start()
    yield agent
    await agent.stop()


class TestSerializer:
    """Typed, bounded snapshots"""

    def test_scalars(self):
        assert serialize_value(None) == {"type": "null", "value": None}
        assert serialize_value(True) == {"type": "boolean", "value": True}
        assert serialize_value(3.5) == {"type": "number", "value": 3.5}

    def test_long_string_truncated(self):
        out = serialize_value("x" * 600)
        assert out["truncated"] is True
        assert out["value"] == "x" * 500 + "..."

    def test_array_limit(self):
        out = serialize_value(list(range(15)))
        assert out["length"] == 15
        assert len(out["value"]) == 11
        assert out["value"][-1] == "[5 more items...]"

    def test_object_key_limit(self):
        out = serialize_value({f"k{i}": i for i in range(25)})
        assert len(out["value"]) == 20
        assert out["truncated"] is True
        assert out["totalKeys"] == 25

    def test_depth_limit(self):
        out = serialize_value({"a": {"b": {"c": {"d": 1}}}})
        assert out["value"]["a"]["value"]["b"]["value"]["c"]["value"]["d"] == "[Max Depth Reached]"

    def test_error_and_function(self):
        assert serialize_value(ValueError("bad"))["value"]["message"] == "bad"
        assert serialize_value(len)["type"] == "function"

    def test_instance(self):
        out = serialize_value(object())
        assert out == {"type": "object", "constructor": "object", "value": "[object instance]"}


class TestTrafficRing:
    def test_trims_to_newest(self):
        ring = TrafficRing()
        for i in range(1, 2002):
            ring.append(TrafficEvent(id=i, type="ipc_on", channel="c", timestamp=0))
        assert len(ring) == 1500
        assert ring.recent(1)[0].id == 2001
        assert ring.recent(1500)[0].id == 502

    def test_event_dict_drops_empty_fields(self):
        event = TrafficEvent(id=1, type="ipc_result", channel="c", timestamp=5, request_id="ab", result=1)
        assert event.to_dict() == {
            "id": 1, "type": "ipc_result", "channel": "c", "timestamp": 5, "requestId": "ab", "result": 1,
        }


class TestBusTap:
    """Events recorded from wrapped listeners and handlers"""

    @pytest.mark.asyncio
    async def test_on_listener(self, monitor):
        received = []
        monitor.bus.on("ping", lambda event, *args: received.append(args))
        monitor.bus.emit("ping", 1, "two", sender="window-1")

        assert received == [(1, "two")]
        types = [e.type for e in monitor.ring.recent()]
        assert types == ["ipc_on", "ipc_on_complete"]
        first, second = monitor.ring.recent()
        assert first.args[1] == {"type": "string", "value": "two", "truncated": False}
        assert second.ref == first.id

    @pytest.mark.asyncio
    async def test_listener_error(self, monitor):
        def broken(event, *args):
            raise RuntimeError("listener failed")

        monitor.bus.on("bad", broken)
        with pytest.raises(RuntimeError):
            monitor.bus.emit("bad")
        assert monitor.ring.recent(1)[0].type == "ipc_on_error"

    @pytest.mark.asyncio
    async def test_handle_invoke(self, monitor):
        async def add(event, a, b):
            return a + b

        monitor.bus.handle("add", add)
        assert await monitor.bus.invoke("add", 2, 3) == 5
        call, result = monitor.ring.recent()
        assert (call.type, result.type) == ("ipc_handle", "ipc_result")
        assert call.request_id == result.request_id
        assert result.result == {"type": "number", "value": 5}

    @pytest.mark.asyncio
    async def test_handle_error(self, monitor):
        def fail(event):
            raise KeyError("missing")

        monitor.bus.handle("fail", fail)
        with pytest.raises(KeyError):
            await monitor.bus.invoke("fail")
        assert monitor.ring.recent(1)[0].type == "ipc_handle_error"

    @pytest.mark.asyncio
    async def test_stop_restores_bus(self):
        bus = MessageBus()
        agent = TrafficMonitorAgent(bus=bus, port=0)
        await agent.start()
        await agent.stop()
        bus.on("after", lambda event: None)
        bus.emit("after")
        assert len(agent.ring) == 0


class TestWebSocketStream:
    """Handshake, backlog, live messages, ping"""

    @pytest.mark.asyncio
    async def test_handshake_and_backlog(self, monitor):
        monitor.bus.on("early", lambda event: None)
        monitor.bus.emit("early")

        reader, writer, response = await open_client(monitor.port)
        assert response.startswith("HTTP/1.1 101")
        assert f"Sec-WebSocket-Accept: {compute_accept_key(KEY)}" in response

        hello = await read_message(reader)
        assert hello["type"] == "connection"
        assert hello["status"] == "connected"

        backlog = await read_message(reader)
        assert backlog["type"] == "ipc-traffic"
        assert backlog["total"] == 2
        assert [e["type"] for e in backlog["data"]] == ["ipc_on", "ipc_on_complete"]

        monitor.bus.emit("early")
        live = await read_message(reader)
        assert live["type"] == "ipc-message"
        assert live["data"]["channel"] == "early"
        assert "timestamp" in live

        writer.close()

    @pytest.mark.asyncio
    async def test_ping_gets_empty_pong(self, monitor):
        reader, writer, _ = await open_client(monitor.port)
        await read_message(reader)
        await read_message(reader)

        client = next(iter(monitor.clients.values()))
        client.last_ping = 0
        writer.write(bytes([0x89, 0x80]) + os.urandom(4))
        await writer.drain()
        assert await asyncio.wait_for(reader.readexactly(2), timeout=2) == b"\x8a\x00"
        assert client.last_ping > 0
        writer.close()

    @pytest.mark.asyncio
    async def test_missing_key_rejected(self, monitor):
        reader, writer = await asyncio.open_connection("127.0.0.1", monitor.port)
        writer.write(b"GET / HTTP/1.1\r\nHost: x\r\n\r\n")
        await writer.drain()
        response = await asyncio.wait_for(reader.read(), timeout=2)
        assert response.startswith(b"HTTP/1.1 400")
        writer.close()

    @pytest.mark.asyncio
    async def test_reap_idle_clients(self, monitor):
        reader, writer, _ = await open_client(monitor.port)
        await read_message(reader)
        client_id = next(iter(monitor.clients))
        assert monitor.reap(now=monitor.clients[client_id].last_ping + 60001) == [client_id]
        assert monitor.clients == {}
        writer.close()

    @pytest.mark.asyncio
    async def test_status_and_clear(self, monitor):
        monitor.bus.on("c", lambda event: None)
        monitor.bus.emit("c")
        status = monitor.status()
        assert status["running"] is True
        assert status["hooked"] is True
        assert status["traffic"] == 2
        assert monitor.clear() == {"cleared": True, "removed": 2}


class ResetReader:
    async def readuntil(self, separator=b"\n"):
        raise ConnectionResetError("connection reset by peer")


class RecordingWriter:
    def __init__(self):
        self.closed = False
        self.waited = False

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        self.waited = True


class TestBrokenConnections:
    """Peers that vanish mid-handshake"""

    @pytest.mark.asyncio
    async def test_reset_during_handshake(self):
        agent = TrafficMonitorAgent(bus=MessageBus(), port=0)
        writer = RecordingWriter()
        await agent._handle_client(ResetReader(), writer)
        assert writer.closed is True
        assert writer.waited is True
        assert agent.clients == {}
