#!/usr/bin/env python3
"""
observer.py - Broker traffic observer

Subscribes to the given topic filters and prints every message on one
line, so the orchestrator's log collector records broker traffic as the
"observer" source.

Usage:
    python -m orch.mqtt.observer --host localhost --port 1883 "#"
"""

import argparse
import signal
import sys

import paho.mqtt.client as mqtt


class BrokerObserver:
    """Prints every message seen on the subscribed topics."""

    def __init__(self, host: str, port: int, topics, client_id: str = "orch_observer"):
        self.host = host
        self.port = port
        self.topics = list(topics) or ["#"]
        self.client_id = client_id
        self.message_count = 0

        self.mqtt_client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, client_id=client_id)
        self.mqtt_client.on_connect = self._on_connect
        self.mqtt_client.on_disconnect = self._on_disconnect
        self.mqtt_client.on_message = self._on_message

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code.is_failure:
            print(f"MQTT connection failed: {reason_code}", flush=True)
            return
        print(f"Observer connected to {self.host}:{self.port}", flush=True)
        for topic in self.topics:
            client.subscribe(topic)
            print(f"Subscribed to: {topic}", flush=True)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        print(f"Observer disconnected ({reason_code})", flush=True)

    def _on_message(self, client, userdata, msg):
        self.message_count += 1
        text = msg.payload.decode("utf-8", errors="replace")
        retained = " [retained]" if msg.retain else ""
        print(f"{msg.topic}{retained} {text}", flush=True)

    def run(self):
        """Connect and print traffic until SIGTERM/SIGINT."""
        # Paho reconnects by itself once connected; the first connect may race broker startup
        self.mqtt_client.connect_async(self.host, self.port, keepalive=60)
        self.mqtt_client.reconnect_delay_set(min_delay=1, max_delay=5)
        self.mqtt_client.loop_start()

        def stop(signum, frame):
            raise KeyboardInterrupt

        signal.signal(signal.SIGTERM, stop)
        try:
            signal.pause()
        except KeyboardInterrupt:
            pass
        finally:
            self.mqtt_client.disconnect()
            self.mqtt_client.loop_stop()
            print(f"Observer stopped after {self.message_count} message(s)", flush=True)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Print MQTT broker traffic")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=1883)
    parser.add_argument("--client-id", default="orch_observer")
    parser.add_argument("topics", nargs="*", default=["#"])
    args = parser.parse_args(argv)

    BrokerObserver(args.host, args.port, args.topics, client_id=args.client_id).run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
