#!/usr/bin/env python3
"""
test_mqtt_payloads.py - Broker payloads and observer output (M3c)

Tests:
- payload encoding for publish steps
- payload matching for expect steps
- closing the broker client off the event loop
- observer line format (runs without a broker)
"""

import asyncio
import threading
import time
from types import SimpleNamespace

from orch.mqtt import BrokerClient, encode_payload, payload_matches
from orch.mqtt.observer import BrokerObserver


class TestPayloads:
    """Test payload encoding and matching."""

    def test_encode(self):
        assert encode_payload("on") == b"on"
        assert encode_payload(b"\x00\x01") == b"\x00\x01"
        assert encode_payload(None) == b""
        assert encode_payload({"on": True}) == b'{"on": true}'
        assert encode_payload(42) == b"42"

    def test_text_match_is_exact(self):
        assert payload_matches("on", b"on")
        assert not payload_matches("on", b"ON")
        assert not payload_matches("on", b"on ")

    def test_structured_match_ignores_layout(self):
        assert payload_matches({"a": 1, "b": [1, 2]}, b'{ "b": [1,2],  "a": 1 }')
        assert not payload_matches({"a": 1}, b'{"a": 2}')

    def test_structured_match_on_garbage(self):
        assert not payload_matches({"a": 1}, b"\xff\xfe")
        assert not payload_matches({"a": 1}, b"not json")

    def test_no_expectation_matches_anything(self):
        assert payload_matches(None, b"whatever")


class FakePahoClient:
    def __init__(self):
        self.subscriptions = []
        self.calls = []

    def subscribe(self, topic):
        self.subscriptions.append(topic)

    def disconnect(self):
        self.calls.append(("disconnect", threading.get_ident()))

    def loop_stop(self):
        # paho joins its network thread here
        time.sleep(0.3)
        self.calls.append(("loop_stop", threading.get_ident()))


class TestBrokerClient:
    """Test the engine-side broker client without a broker."""

    async def test_close_does_not_block_the_loop(self):
        client = BrokerClient("localhost", 1883)
        fake = FakePahoClient()
        client.mqtt_client = fake
        ticks = 0

        async def ticker():
            nonlocal ticks
            while True:
                ticks += 1
                await asyncio.sleep(0.01)

        ticking = asyncio.ensure_future(ticker())
        try:
            await client.close()
        finally:
            ticking.cancel()

        assert [name for name, _ in fake.calls] == ["disconnect", "loop_stop"]
        assert all(ident != threading.get_ident() for _, ident in fake.calls)
        assert ticks > 5


class TestObserver:
    """Test observer callbacks."""

    def test_subscribes_on_connect(self, capsys):
        observer = BrokerObserver("localhost", 1883, ["home/#", "game/+"])
        client = FakePahoClient()

        observer._on_connect(client, None, None, SimpleNamespace(is_failure=False), None)

        assert client.subscriptions == ["home/#", "game/+"]
        out = capsys.readouterr().out
        assert "Observer connected to localhost:1883" in out
        assert "Subscribed to: game/+" in out

    def test_failed_connect_does_not_subscribe(self, capsys):
        observer = BrokerObserver("localhost", 1883, [])
        client = FakePahoClient()

        observer._on_connect(client, None, None, SimpleNamespace(is_failure=True), None)

        assert client.subscriptions == []
        assert "connection failed" in capsys.readouterr().out

    def test_message_lines(self, capsys):
        observer = BrokerObserver("localhost", 1883, ["#"])

        observer._on_message(None, None, SimpleNamespace(
            topic="home/light", payload=b'{"on": true}', retain=False))
        observer._on_message(None, None, SimpleNamespace(
            topic="home/state", payload=b"\xffbad", retain=True))

        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == 'home/light {"on": true}'
        assert lines[1] == "home/state [retained] �bad"
        assert observer.message_count == 2

    def test_defaults_to_all_topics(self):
        assert BrokerObserver("localhost", 1883, []).topics == ["#"]
