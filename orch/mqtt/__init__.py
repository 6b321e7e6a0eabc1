"""
orch.mqtt - Broker access (paho-mqtt) for publish/expect steps and the observer
"""

from .client import BrokerClient, encode_payload, payload_matches

__all__ = ['BrokerClient', 'encode_payload', 'payload_matches']
