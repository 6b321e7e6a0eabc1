"""
orch - Scenario orchestration harness

Drives a broker, optional observers and instrumented clients through a
declarative scenario of dependent steps over a JSON-RPC control channel.
"""

__version__ = "0.3.0"
