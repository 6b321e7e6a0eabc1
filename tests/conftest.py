"""
Shared fixtures: fast RunConfig, free ports, in-process fake clients.
"""

import socket
import sys
from pathlib import Path

import pytest

_tests_dir = Path(__file__).parent
if str(_tests_dir) not in sys.path:
    sys.path.insert(0, str(_tests_dir))

from fakes.fake_client import FakeClient  # noqa: E402
from orch.config.settings import RunConfig  # noqa: E402

FAKE_CLIENT_SCRIPT = _tests_dir / "fakes" / "fake_client.py"


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def fast_config(tmp_path):
    """RunConfig with test-sized timeouts."""
    return RunConfig(
        host="127.0.0.1",
        logs_dir=tmp_path / "logs",
        startup_timeout_s=10.0,
        health_retry_attempts=3,
        health_retry_delay_s=0.05,
        short_call_timeout_s=2.0,
        long_call_timeout_s=5.0,
        shutdown_timeout_s=5.0,
        grace_period_s=1.0,
        probe_timeout_s=1.0,
        health_tick_s=0.05,
    )


@pytest.fixture
async def fake_client():
    client = await FakeClient().start()
    yield client
    await client.stop()
