#!/usr/bin/env python3
"""
test_supervisor_readiness.py - Process supervision and readiness (M2a)

Tests:
- stdout/stderr collection per source
- exit status polling and exit callbacks
- SIGTERM -> SIGKILL escalation
- TCP readiness (success, budget exhaustion, fail-fast on early exit)
- protocol readiness via health_check
"""

import asyncio
import sys
import time

import pytest

from conftest import free_port
from orch.errors import ReadinessTimeoutError
from orch.harness.control_channel import ControlChannel
from orch.harness.readiness import (
    is_healthy,
    is_port_occupied,
    wait_for_client_healthy,
    wait_for_port,
)
from orch.harness.supervisor import (
    STREAM_LIMIT,
    ManagedProcess,
    ProcessSupervisor,
    format_command,
)
from orch.logs.collector import LogCollector

PY = sys.executable


async def wait_for_line(collector, source, text, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if any(text in line for line in collector.lines(source)):
            return
        await asyncio.sleep(0.02)
    raise AssertionError(f"{text!r} never appeared in {source}")


class TestManagedProcess:
    """Test one supervised process."""

    async def test_output_is_collected(self, tmp_path):
        """Test stdout and stderr lines land in the collector, stderr tagged."""
        collector = LogCollector(tmp_path)
        proc = ManagedProcess("worker", [PY, "-c",
                              "import sys; print('out line'); print('err line', file=sys.stderr)"],
                              collector=collector)
        await proc.start()
        code = await proc.wait()
        collector.flush()

        assert code == 0
        assert proc.poll() == 0
        assert "out line" in collector.lines("worker")
        assert "err line" in collector.lines("worker")
        text = (tmp_path / "worker.log").read_text()
        assert "] out line" in text
        assert "] [STDERR] err line" in text
        assert proc.stderr_tail() == ["err line"]
        collector.close()

    async def test_oversized_line_is_kept_whole(self, tmp_path):
        """Test a line longer than the stream limit is collected intact, then the next one."""
        collector = LogCollector(tmp_path)
        size = STREAM_LIMIT + 10
        script = ("import sys\n"
                  f"sys.stdout.write('A' * {size} + '\\n')\n"
                  "sys.stdout.write('tail\\n')\n")
        proc = ManagedProcess("chatty", [PY, "-c", script], collector=collector)
        await proc.start()
        assert await proc.wait() == 0
        collector.close()

        lines = collector.lines("chatty")
        assert len(lines) == 2
        assert lines[0] == "A" * size
        assert lines[1] == "tail"
        written = (tmp_path / "chatty.log").read_bytes().splitlines()
        assert written[0].endswith(b"] " + b"A" * size)

    async def test_last_line_without_newline(self):
        collector = LogCollector()
        proc = ManagedProcess("terse", [PY, "-c", "import sys; sys.stdout.write('no newline')"],
                              collector=collector)
        await proc.start()
        await proc.wait()

        assert collector.lines("terse") == ["no newline"]

    async def test_poll_is_none_while_running(self):
        proc = ManagedProcess("sleeper", [PY, "-c", "import time; time.sleep(30)"])
        await proc.start()
        try:
            assert proc.poll() is None
            assert proc.running
        finally:
            await proc.terminate(grace=2.0)
        assert not proc.running

    async def test_exit_callback_called_once(self):
        seen = []
        proc = ManagedProcess("quitter", [PY, "-c", "raise SystemExit(4)"])
        proc.add_exit_callback(lambda p, code: seen.append((p.service_id, code)))
        await proc.start()
        await proc.wait()
        await asyncio.sleep(0)

        assert seen == [("quitter", 4)]

    async def test_terminate_escalates_to_kill(self):
        """Test a process ignoring SIGTERM is killed after the grace window."""
        collector = LogCollector()
        script = ("import signal, time\n"
                  "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
                  "print('armed', flush=True)\n"
                  "time.sleep(30)\n")
        proc = ManagedProcess("stubborn", [PY, "-c", script], collector=collector)
        await proc.start()
        await wait_for_line(collector, "stubborn", "armed")

        started = time.monotonic()
        code = await proc.terminate(grace=0.5)

        assert code == -9
        assert time.monotonic() - started < 5.0
        assert proc.stopping

    async def test_missing_executable(self):
        proc = ManagedProcess("ghost", ["/definitely/not/a/binary"])
        with pytest.raises(OSError):
            await proc.start()

    def test_empty_command(self):
        with pytest.raises(ValueError):
            ManagedProcess("nothing", [])

    def test_format_command(self):
        argv = format_command(["server", "--port", "{port}", "#"], port=1884)
        assert argv == ["server", "--port", "1884", "#"]


class TestProcessSupervisor:
    """Test the process registry."""

    async def test_stop_all(self):
        supervisor = ProcessSupervisor()
        for name in ("a", "b"):
            await supervisor.spawn(name, [PY, "-c", "import time; time.sleep(30)"])

        abandoned = await supervisor.stop_all(grace=2.0)

        assert abandoned == []
        assert all(not p.running for p in supervisor.processes.values())

    async def test_duplicate_running_id(self):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("a", [PY, "-c", "import time; time.sleep(30)"])
        try:
            with pytest.raises(RuntimeError, match="already running"):
                await supervisor.spawn("a", [PY, "-c", "pass"])
        finally:
            await supervisor.stop_all(grace=2.0)


class TestTcpReadiness:
    """Test wait_for_port."""

    async def test_ready_port(self, fake_client):
        elapsed = await wait_for_port("127.0.0.1", fake_client.port, timeout=5.0)
        assert elapsed < 5.0

    async def test_budget_exhausted(self):
        port = free_port()
        with pytest.raises(ReadinessTimeoutError) as excinfo:
            await wait_for_port("127.0.0.1", port, timeout=0.5, attempt_timeout=0.1)
        assert excinfo.value.exited is False

    async def test_fails_fast_when_process_exits(self):
        """Test an early exit is reported immediately, not after the budget."""
        proc = ManagedProcess("crasher", [PY, "-c", "import sys; sys.exit(7)"])
        await proc.start()

        started = time.monotonic()
        with pytest.raises(ReadinessTimeoutError) as excinfo:
            await wait_for_port("127.0.0.1", free_port(), timeout=60.0, process=proc,
                                service_id="crasher", attempt_timeout=0.2)

        assert time.monotonic() - started < 10.0
        assert excinfo.value.exited is True
        assert excinfo.value.exit_code == 7
        assert excinfo.value.service_id == "crasher"

    async def test_port_occupied(self, fake_client):
        assert is_port_occupied("127.0.0.1", fake_client.port)
        assert not is_port_occupied("127.0.0.1", free_port())


class TestProtocolReadiness:
    """Test wait_for_client_healthy."""

    def test_is_healthy(self):
        assert is_healthy({"status": "healthy"}, require_broker=False)
        assert is_healthy({"status": "OK", "mqtt_connected": True}, require_broker=True)
        assert not is_healthy({"status": "ready", "mqtt_connected": False}, require_broker=True)
        assert not is_healthy({"status": "degraded"}, require_broker=False)
        assert not is_healthy("healthy", require_broker=False)

    async def test_healthy_client(self, fake_client, fast_config):
        channel = ControlChannel("alice", "127.0.0.1", fake_client.port, fast_config)
        payload = await wait_for_client_healthy(channel, config=fast_config)

        assert payload["status"] == "healthy"
        assert fake_client.health_checks == 1
        assert not channel.connected

    async def test_unhealthy_client_times_out(self, fake_client, fast_config):
        fake_client.healthy = False
        channel = ControlChannel("alice", "127.0.0.1", fake_client.port, fast_config)

        with pytest.raises(ReadinessTimeoutError, match="never reported healthy"):
            await wait_for_client_healthy(channel, config=fast_config)
        assert fake_client.health_checks == fast_config.health_retry_attempts

    async def test_requires_broker_connection(self, fake_client, fast_config):
        channel = ControlChannel("alice", "127.0.0.1", fake_client.port, fast_config)
        with pytest.raises(ReadinessTimeoutError):
            await wait_for_client_healthy(channel, require_broker=True, config=fast_config)

        fake_client.mqtt_connected = True
        payload = await wait_for_client_healthy(channel, require_broker=True,
                                                config=fast_config)
        assert payload["mqtt_connected"] is True
