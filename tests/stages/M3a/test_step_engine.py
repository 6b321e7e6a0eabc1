#!/usr/bin/env python3
"""
test_step_engine.py - Step Execution Engine (M3a)

Tests:
- dependency enforcement before any client interaction
- variable flow from one step's response into the next step's arguments
- first failure stops the run
- every local action handler
- Parallel / Sequence semantics
- step timeouts
"""

import asyncio
import sys
import time

import pytest

from orch.config.scenario import (
    Delay,
    Parallel,
    Sequence,
    ShowMessage,
    parse_scenario,
)
from orch.errors import (
    ActionFailedError,
    ApplicationError,
    DependencyError,
    TransportError,
    UnresolvedVariableError,
)
from orch.harness.context import RunContext
from orch.harness.control_channel import ControlChannel
from orch.harness.engine import HANDLERS, StepEngine
from orch.harness.health import ServiceStatus

PY = sys.executable


def scenario_with(steps, clients=None):
    return parse_scenario({
        "name": "engine_test",
        "clients": clients if clients is not None else
        [{"id": "alice", "player_id": "alice", "mcp_port": 3001}],
        "steps": steps,
    })


async def connected_context(scenario, fake_client, config):
    ctx = RunContext(scenario, config)
    for client in scenario.clients:
        channel = ControlChannel(client.id, "127.0.0.1", fake_client.port, config)
        await channel.connect()
        ctx.connections[client.id] = channel
    return ctx


async def close_context(ctx):
    for channel in ctx.connections.values():
        await channel.close()
    await ctx.supervisor.stop_all(grace=1.0)


class TestDispatchTable:
    """Test the handler table."""

    def test_every_action_has_a_handler(self):
        from orch.config.scenario import ACTION_TYPES
        assert set(HANDLERS) == set(ACTION_TYPES)


class TestDependencies:
    """Test depends_on enforcement."""

    async def test_unmet_dependency_before_any_interaction(self, fake_client, fast_config):
        """Test a step declared before its prerequisite fails without touching the client."""
        scenario = scenario_with([
            {"name": "join", "client": "alice", "depends_on": ["create"],
             "action": {"type": "mcp_call", "tool": "join_world", "arguments": {}}},
            {"name": "create", "client": "alice",
             "action": {"type": "mcp_call", "tool": "create_world", "arguments": {}}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            with pytest.raises(DependencyError) as excinfo:
                await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)

        assert excinfo.value.missing == "create"
        assert str(excinfo.value).startswith(
            "Step 'join' depends on 'create' which hasn't completed")
        assert fake_client.calls == []
        assert ctx.step_results["join"].success is False
        assert "create" not in ctx.step_results
        assert ctx.completed_steps == []

    async def test_failed_prerequisite_does_not_count(self, fake_client, fast_config):
        scenario = scenario_with([
            {"name": "boom", "client": "alice", "action": {"type": "mcp_call", "tool": "fail"}},
            {"name": "after", "client": "alice", "depends_on": ["boom"],
             "action": {"type": "mcp_call", "tool": "echo"}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            with pytest.raises(ApplicationError):
                await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)

        assert [t for t, _ in fake_client.calls] == ["fail"]
        assert "after" not in ctx.step_results


class TestVariableFlow:
    """Test response_variables feeding later steps."""

    async def test_world_id_flows_into_next_step(self, fake_client, fast_config):
        scenario = scenario_with([
            {"name": "create", "client": "alice",
             "action": {"type": "mcp_call", "tool": "create_world",
                        "arguments": {"world_name": "demo"}},
             "response_variables": {"world_id": "world_id"}},
            {"name": "join", "client": "alice", "depends_on": ["create"],
             "action": {"type": "mcp_call", "tool": "join_world",
                        "arguments": {"world_id": "${world_id}", "note": "joining ${world_id}"}}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)

        assert ctx.variables.get("world_id") == "w-42"
        assert fake_client.calls[1] == ("join_world",
                                        {"world_id": "w-42", "note": "joining w-42"})
        assert ctx.completed_steps == ["create", "join"]
        assert all(r.success for r in ctx.step_results.values())

    async def test_strict_variables(self, fake_client, fast_config):
        fast_config.strict_variables = True
        scenario = scenario_with([
            {"name": "join", "client": "alice",
             "action": {"type": "mcp_call", "tool": "join_world",
                        "arguments": {"world_id": "${world_id}"}}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            with pytest.raises(UnresolvedVariableError):
                await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)
        assert fake_client.calls == []


class TestLocalActions:
    """Test orchestrator-side handlers."""

    async def test_foreground_command(self, fast_config):
        scenario = scenario_with([
            {"name": "hello", "action": {"type": "run_command",
                                         "command": [PY, "-c", "print('hello from child')"]}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        await StepEngine(ctx).execute_steps()

        result = ctx.step_results["hello"]
        assert result.response["exit_code"] == 0
        assert "hello from child" in result.response["stdout"]
        assert ctx.collector.lines("cmd-hello") == ["hello from child"]

    async def test_failing_command(self, fast_config):
        scenario = scenario_with([
            {"name": "bad", "action": {"type": "run_command",
                                       "command": [PY, "-c", "import sys; sys.exit(3)"]}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(ActionFailedError, match="status 3"):
            await StepEngine(ctx).execute_steps()

    async def test_background_command_is_supervised(self, fast_config):
        scenario = scenario_with([
            {"name": "bg", "action": {"type": "run_command", "background": True,
                                      "command": [PY, "-c", "import time; time.sleep(30)"]}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        try:
            await StepEngine(ctx).execute_steps()
            assert ctx.processes["cmd-bg"].running
        finally:
            await close_context(ctx)
        assert not ctx.processes["cmd-bg"].running

    async def test_command_interpolation(self, fast_config):
        scenario = scenario_with([
            {"name": "say", "action": {"type": "run_command",
                                       "command": [PY, "-c", "import sys; print(sys.argv[1])",
                                                   "${greeting}"]}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        ctx.variables.set("greeting", "bonjour")
        await StepEngine(ctx).execute_steps()
        assert ctx.step_results["say"].response["stdout"] == "bonjour"

    async def test_delay(self, fast_config):
        scenario = scenario_with([{"name": "nap", "action": {"type": "delay", "duration": 50}}],
                                 clients=[])
        ctx = RunContext(scenario, fast_config)
        started = time.monotonic()
        await StepEngine(ctx).execute_steps()
        assert time.monotonic() - started >= 0.05

    async def test_show_message(self, fast_config, capsys):
        scenario = scenario_with([
            {"name": "note", "action": {"type": "show_message", "message": "world ${w}",
                                        "message_type": "success"}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        ctx.variables.set("w", "w-1")
        await StepEngine(ctx).execute_steps()
        assert "✅ world w-1" in capsys.readouterr().out

    async def test_validate_checks(self, fake_client, fast_config):
        scenario = scenario_with([
            {"name": "create", "client": "alice",
             "action": {"type": "mcp_call", "tool": "create_world"},
             "response_variables": {"world_id": "world_id"}},
            {"name": "check", "action": {"type": "validate_scenario", "checks": [
                "clients_connected", "infrastructure_running", "no_failed_services",
                "variable:world_id", "step_completed:create"]}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)
        assert ctx.step_results["check"].response["checks"]["variable:world_id"] is True

    async def test_validate_reports_failures(self, fast_config):
        scenario = scenario_with([
            {"name": "check", "action": {"type": "validate_scenario",
                                         "checks": ["variable:nope", "sparkles"]}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(ActionFailedError, match="variable:nope, sparkles"):
            await StepEngine(ctx).execute_steps()

    async def test_wait_for_service_ready(self, fast_config):
        scenario = scenario_with([
            {"name": "ready", "action": {"type": "wait_condition",
                                         "condition": "service_ready:broker", "timeout": 2000}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        ctx.monitor.register("broker")
        asyncio.get_running_loop().call_later(
            0.1, ctx.monitor.set_status, "broker", ServiceStatus.READY)

        await StepEngine(ctx).execute_steps()
        assert ctx.step_results["ready"].success

    async def test_wait_condition_times_out(self, fast_config):
        scenario = scenario_with([
            {"name": "ready", "action": {"type": "wait_condition",
                                         "condition": "service_ready:broker", "timeout": 200}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(ActionFailedError, match="not ready: broker"):
            await StepEngine(ctx).execute_steps()

    async def test_unknown_orchestrator_condition(self, fast_config):
        scenario = scenario_with([
            {"name": "what", "action": {"type": "wait_condition", "condition": "moon_is_full"}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(ActionFailedError, match="moon_is_full"):
            await StepEngine(ctx).execute_steps()

    async def test_client_condition_is_delegated(self, fake_client, fast_config):
        scenario = scenario_with([
            {"name": "wait", "client": "alice",
             "action": {"type": "wait_condition", "condition": "world_loaded",
                        "expected_value": "true", "timeout": 1000}},
        ])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)
        tool, arguments = fake_client.calls[0]
        assert tool == "wait_for_condition"
        assert arguments["condition"] == "world_loaded"
        assert arguments["expected_value"] == "true"

    async def test_manual_exit_ends_on_interrupt(self, fast_config):
        scenario = scenario_with([
            {"name": "hold", "action": {"type": "wait_condition", "condition": "manual_exit"}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        asyncio.get_running_loop().call_later(0.1, ctx.interrupt_event.set)

        await asyncio.wait_for(StepEngine(ctx).execute_steps(), timeout=5.0)
        assert ctx.step_results["hold"].response["interrupted"] is True
        assert ctx.manual_exit_waits == 0

    async def test_manual_exit_timeout_is_success(self, fast_config):
        scenario = scenario_with([
            {"name": "hold", "action": {"type": "wait_condition", "condition": "manual_exit",
                                        "timeout": 100}},
        ], clients=[])
        ctx = RunContext(scenario, fast_config)
        await StepEngine(ctx).execute_steps()
        assert ctx.step_results["hold"].response["interrupted"] is False


class TestComposites:
    """Test Parallel and Sequence."""

    async def test_parallel_runs_concurrently(self, fast_config):
        scenario = scenario_with([{"name": "p", "action": {"type": "parallel", "actions": [
            {"type": "delay", "duration": 300},
            {"type": "delay", "duration": 300},
            {"type": "delay", "duration": 300},
        ]}}], clients=[])
        ctx = RunContext(scenario, fast_config)
        started = time.monotonic()
        await StepEngine(ctx).execute_steps()

        assert time.monotonic() - started < 0.8
        assert len(ctx.step_results["p"].response) == 3

    async def test_parallel_surfaces_first_error(self, fake_client, fast_config):
        scenario = scenario_with([{"name": "p", "client": "alice", "action": {
            "type": "parallel", "actions": [
                {"type": "delay", "duration": 5000},
                {"type": "mcp_call", "tool": "fail"},
            ]}}])
        ctx = await connected_context(scenario, fake_client, fast_config)
        started = time.monotonic()
        try:
            with pytest.raises(ApplicationError):
                await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)
        assert time.monotonic() - started < 3.0

    async def test_sequence_stops_at_first_failure(self, fake_client, fast_config):
        scenario = scenario_with([{"name": "s", "client": "alice", "action": {
            "type": "sequence", "actions": [
                {"type": "mcp_call", "tool": "echo", "arguments": {"n": 1}},
                {"type": "mcp_call", "tool": "fail"},
                {"type": "mcp_call", "tool": "echo", "arguments": {"n": 3}},
            ]}}])
        ctx = await connected_context(scenario, fake_client, fast_config)
        try:
            with pytest.raises(ApplicationError):
                await StepEngine(ctx).execute_steps()
        finally:
            await close_context(ctx)
        assert [t for t, _ in fake_client.calls] == ["echo", "fail"]

    async def test_sequence_preserves_order(self, fast_config):
        scenario = scenario_with([{"name": "s", "action": {"type": "sequence", "actions": [
            {"type": "show_message", "message": "one"},
            {"type": "show_message", "message": "two"},
        ]}}], clients=[])
        ctx = RunContext(scenario, fast_config)
        await StepEngine(ctx).execute_steps()
        messages = [r["message"] for r in ctx.step_results["s"].response]
        assert messages == ["one", "two"]

    async def test_run_action_directly(self, fast_config):
        scenario = scenario_with([{"name": "x", "action": {"type": "delay", "duration": 1}}],
                                 clients=[])
        ctx = RunContext(scenario, fast_config)
        engine = StepEngine(ctx)
        step = scenario.steps[0]
        nested = Sequence(actions=(Delay(duration_ms=1),
                                   Parallel(actions=(ShowMessage(message="a"),
                                                     ShowMessage(message="b")))))
        result = await engine.run_action(nested, step)
        assert result[0] == {"slept_ms": 1}
        assert [r["message"] for r in result[1]] == ["a", "b"]


class TestStepTiming:
    """Test step timeout and waits."""

    async def test_step_timeout(self, fast_config):
        scenario = scenario_with([{"name": "slow", "timeout": 100,
                                   "action": {"type": "delay", "duration": 5000}}], clients=[])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(ActionFailedError, match="timed out after 100ms"):
            await StepEngine(ctx).execute_steps()
        assert ctx.step_results["slow"].success is False

    async def test_wait_before_is_outside_timeout(self, fast_config):
        scenario = scenario_with([{"name": "patient", "timeout": 200, "wait_before": 300,
                                   "action": {"type": "delay", "duration": 50}}], clients=[])
        ctx = RunContext(scenario, fast_config)
        await StepEngine(ctx).execute_steps()
        assert ctx.step_results["patient"].success

    async def test_cancel_during_wait_before_records_result(self, fast_config):
        """Test a step cancelled while still in wait_before is recorded as interrupted."""
        scenario = scenario_with([{"name": "sleepy", "wait_before": 5000,
                                   "action": {"type": "delay", "duration": 1}}], clients=[])
        ctx = RunContext(scenario, fast_config)
        task = asyncio.ensure_future(StepEngine(ctx).execute_steps())
        await asyncio.sleep(0.1)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert ctx.step_results["sleepy"].success is False
        assert ctx.step_results["sleepy"].error == "interrupted"

    async def test_remote_call_without_connection(self, fast_config):
        scenario = scenario_with([{"name": "call", "client": "alice",
                                   "action": {"type": "mcp_call", "tool": "echo"}}])
        ctx = RunContext(scenario, fast_config)
        with pytest.raises(TransportError, match="No connection to client alice"):
            await StepEngine(ctx).execute_steps()
