#!/usr/bin/env python3
"""
test_control_channel.py - JSON-RPC control channel (M2b)

Tests:
- tools/call round trip and request ids
- ApplicationError vs TransportError classification
- skipping of notifications and foreign-id frames
- out-of-band probes on a fresh connection
"""

import asyncio

import pytest

from conftest import free_port
from orch.errors import ApplicationError, TransportError
from orch.harness.control_channel import ControlChannel


@pytest.fixture
async def channel(fake_client, fast_config):
    channel = ControlChannel("alice", "127.0.0.1", fake_client.port, fast_config)
    await channel.connect()
    yield channel
    await channel.close()


class TestCalls:
    """Test successful calls."""

    async def test_call_tool(self, channel, fake_client):
        result = await channel.call_tool("echo", {"x": 1})

        assert result == {"x": 1}
        assert fake_client.calls == [("echo", {"x": 1})]

    async def test_request_ids_increase(self, channel, fake_client):
        await channel.call_tool("echo", {})
        await channel.call_tool("echo", {})
        await channel.call_tool("echo", {})

        assert fake_client.request_ids == [1, 2, 3]

    async def test_null_result_defaults_to_success(self, channel):
        assert await channel.call_tool("nothing") == {"status": "success"}

    async def test_foreign_frames_are_skipped(self, channel):
        assert await channel.call_tool("noisy") == {"fresh": True}
        # Connection is still usable afterwards
        assert await channel.call_tool("echo", {"ok": True}) == {"ok": True}

    async def test_concurrent_calls_are_serialized(self, channel, fake_client):
        results = await asyncio.gather(*(channel.call_tool("echo", {"n": n}) for n in range(5)))

        assert results == [{"n": n} for n in range(5)]
        assert fake_client.connections == 1


class TestErrors:
    """Test error classification."""

    async def test_rpc_error_is_application_error(self, channel):
        with pytest.raises(ApplicationError, match="world not found") as excinfo:
            await channel.call_tool("rpc_error")
        assert excinfo.value.payload["code"] == -32000
        assert excinfo.value.service_id == "alice"
        assert channel.connected

    async def test_is_error_result_is_application_error(self, channel):
        with pytest.raises(ApplicationError, match="tool exploded"):
            await channel.call_tool("fail")
        assert channel.connected

    async def test_timeout_is_transport_error(self, channel):
        with pytest.raises(TransportError, match="within"):
            await channel.call_tool("slow", {"seconds": 2}, timeout=0.1)
        assert not channel.connected

    async def test_malformed_response(self, channel):
        with pytest.raises(TransportError, match="Malformed"):
            await channel.call_tool("garbage")
        assert not channel.connected

    async def test_peer_hangup(self, channel):
        with pytest.raises(TransportError, match="closed"):
            await channel.call_tool("hangup")

    async def test_call_without_connection(self, fake_client, fast_config):
        channel = ControlChannel("bob", "127.0.0.1", fake_client.port, fast_config)
        with pytest.raises(TransportError, match="Not connected"):
            await channel.call_tool("echo")

    async def test_connect_refused(self, fast_config):
        channel = ControlChannel("bob", "127.0.0.1", free_port(), fast_config)
        with pytest.raises(TransportError, match="Cannot connect"):
            await channel.connect(timeout=1.0)

    def test_transport_and_application_errors_are_distinct(self):
        assert not issubclass(TransportError, ApplicationError)
        assert not issubclass(ApplicationError, TransportError)


class TestProbe:
    """Test out-of-band probes."""

    async def test_probe_uses_fresh_connection(self, channel, fake_client):
        payload = await channel.probe("health_check")

        assert payload["status"] == "healthy"
        assert fake_client.connections == 2
        assert channel.connected

    async def test_probe_while_primary_is_busy(self, channel, fake_client):
        """Test a probe answers while a slow call holds the primary connection."""
        slow = asyncio.ensure_future(channel.call_tool("slow", {"seconds": 0.5}, timeout=5.0))
        await asyncio.sleep(0.05)

        payload = await channel.probe("health_check", timeout=1.0)

        assert payload["status"] == "healthy"
        assert not slow.done()
        assert await slow == {"seconds": 0.5}
