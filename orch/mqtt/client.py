"""
client.py - Broker client for publish/expect steps

Thin asyncio wrapper around a paho-mqtt client. Paho runs its network loop
on its own thread; callbacks hand results back to the event loop with
call_soon_threadsafe.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

import paho.mqtt.client as mqtt

from orch.errors import ActionFailedError, TransportError

logger = logging.getLogger(__name__)


def encode_payload(payload: Any) -> bytes:
    """str as UTF-8, bytes as-is, anything else as JSON."""
    if payload is None:
        return b""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload).encode("utf-8")


def payload_matches(expected: Any, received: bytes) -> bool:
    """
    Compare an expected payload against received bytes.

    Strings compare as text. Structured values compare as decoded JSON, so
    key order and whitespace don't matter.
    """
    if expected is None:
        return True
    if isinstance(expected, (str, bytes)):
        return encode_payload(expected) == received
    try:
        return json.loads(received.decode("utf-8")) == expected
    except (UnicodeDecodeError, json.JSONDecodeError):
        return False


@dataclass
class _Waiter:
    topic_filter: str
    payload: Any
    future: asyncio.Future


class BrokerClient:
    """
    Publish to and wait on the scenario broker.

    Usage:
        client = BrokerClient("localhost", 1883)
        await client.connect()
        await client.publish("home/light", {"on": True})
        topic, payload = await client.expect("home/#", timeout=5.0)
        await client.close()
    """

    def __init__(self, host: str, port: int, client_id: str = "orch_engine"):
        self.host = host
        self.port = port
        self.client_id = client_id

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected: Optional[asyncio.Future] = None
        self._waiters: List[_Waiter] = []

        self.mqtt_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.mqtt_client.on_connect = self._on_connect
        self.mqtt_client.on_disconnect = self._on_disconnect
        self.mqtt_client.on_message = self._on_message

    @property
    def is_connected(self) -> bool:
        return self.mqtt_client.is_connected()

    async def connect(self, timeout: float = 10.0) -> None:
        """
        Connect and start the network loop.

        Raises:
            TransportError: If the broker is unreachable or refuses us
        """
        self._loop = asyncio.get_running_loop()
        self._connected = self._loop.create_future()

        logger.debug("Connecting to MQTT broker %s:%s", self.host, self.port)
        try:
            await self._loop.run_in_executor(
                None, self.mqtt_client.connect, self.host, self.port, 60
            )
        except OSError as e:
            raise TransportError(f"MQTT connect to {self.host}:{self.port} failed: {e}",
                                 service_id="broker")

        self.mqtt_client.loop_start()
        try:
            await asyncio.wait_for(self._connected, timeout=timeout)
        except asyncio.TimeoutError:
            self.mqtt_client.loop_stop()
            raise TransportError(f"No CONNACK from {self.host}:{self.port} within {timeout}s",
                                 service_id="broker")

    async def publish(self, topic: str, payload: Any, qos: int = 0, retain: bool = False,
                      timeout: float = 10.0) -> None:
        """
        Publish one message; for QoS > 0 wait until the broker acknowledged it.

        Raises:
            ActionFailedError: If paho rejects the publish or it isn't acknowledged
        """
        info = self.mqtt_client.publish(topic, encode_payload(payload), qos=qos, retain=retain)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise ActionFailedError(
                f"Publish to '{topic}' failed: {mqtt.error_string(info.rc)}"
            )
        if qos > 0:
            await self._loop.run_in_executor(None, info.wait_for_publish, timeout)
            if not info.is_published():
                raise ActionFailedError(f"Publish to '{topic}' not acknowledged within {timeout}s")
        logger.debug("Published to %s (qos=%d, retain=%s)", topic, qos, retain)

    async def expect(self, topic_filter: str, payload: Any = None,
                     timeout: float = 5.0) -> Tuple[str, bytes]:
        """
        Wait for a message matching topic_filter (MQTT wildcards) and payload.

        Returns:
            (topic, payload bytes) of the first matching message

        Raises:
            ActionFailedError: If nothing matching arrives within timeout
        """
        waiter = _Waiter(topic_filter, payload, self._loop.create_future())
        self._waiters.append(waiter)
        try:
            result, _mid = self.mqtt_client.subscribe(topic_filter)
            if result != mqtt.MQTT_ERR_SUCCESS:
                raise ActionFailedError(
                    f"Subscribe to '{topic_filter}' failed: {mqtt.error_string(result)}"
                )
            try:
                return await asyncio.wait_for(waiter.future, timeout=timeout)
            except asyncio.TimeoutError:
                raise ActionFailedError(
                    f"No message on '{topic_filter}' matching {payload!r} within {timeout}s"
                )
        finally:
            self._waiters.remove(waiter)
            if not any(w.topic_filter == topic_filter for w in self._waiters):
                self.mqtt_client.unsubscribe(topic_filter)

    async def close(self) -> None:
        # loop_stop() joins paho's network thread
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._shutdown)

    def _shutdown(self) -> None:
        self.mqtt_client.disconnect()
        self.mqtt_client.loop_stop()

    # -- paho callbacks (network thread) ----------------------------------

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if self._loop is None:
            return
        if reason_code.is_failure:
            self._loop.call_soon_threadsafe(
                self._resolve_connect,
                TransportError(f"MQTT connection refused: {reason_code}", service_id="broker"),
            )
        else:
            self._loop.call_soon_threadsafe(self._resolve_connect, None)

    def _resolve_connect(self, error: Optional[Exception]) -> None:
        if self._connected is None or self._connected.done():
            return
        if error is None:
            self._connected.set_result(True)
        else:
            self._connected.set_exception(error)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            logger.warning("MQTT connection lost: %s", reason_code)

    def _on_message(self, client, userdata, msg):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._dispatch, msg.topic, bytes(msg.payload))

    def _dispatch(self, topic: str, payload: bytes) -> None:
        for waiter in list(self._waiters):
            if waiter.future.done():
                continue
            if mqtt.topic_matches_sub(waiter.topic_filter, topic) and \
                    payload_matches(waiter.payload, payload):
                waiter.future.set_result((topic, payload))
