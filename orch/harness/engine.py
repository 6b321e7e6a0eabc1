"""
engine.py - Step Execution Engine

Runs scenario steps strictly in declared order, one at a time:
1. dependency check (every depends_on name already completed)
2. wait_before
3. ${var} interpolation and dispatch of the action, bounded by step.timeout
4. response_variables extraction into the VariableContext
5. wait_after

The first failing step stops the run; later steps are never attempted.

Dispatch is a flat table, one handler per action class. The table is
checked against ACTION_TYPES when this module is imported.
"""

import asyncio
import json
import logging
import time
import webbrowser
from typing import Any, Callable, Dict, List, Optional

from orch.config.scenario import (
    ACTION_TYPES,
    Action,
    Delay,
    ExpectMessage,
    OpenUrl,
    Parallel,
    PublishMessage,
    RemoteCall,
    RunLocalCommand,
    Sequence,
    ShowMessage,
    Step,
    Validate,
    WaitForCondition,
)
from orch.errors import ActionFailedError, DependencyError, OrchestratorError
from orch.harness.context import BROKER_ID, OBSERVER_ID, RunContext, StepResult

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.5

MESSAGE_ICONS = {"info": "ℹ️ ", "success": "✅", "warning": "⚠️ ", "error": "❌"}
MESSAGE_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class StepEngine:
    """
    Executes the steps of one RunContext.

    Usage:
        engine = StepEngine(ctx)
        await engine.execute_steps()   # raises on the first failing step
    """

    def __init__(self, ctx: RunContext):
        self.ctx = ctx
        self.verbose = ctx.config.verbose

    # -- steps ------------------------------------------------------------

    async def execute_steps(self) -> None:
        total = len(self.ctx.scenario.steps)
        for index, step in enumerate(self.ctx.scenario.steps, start=1):
            async with self.ctx.lock:
                await self.execute_step(step, index, total)

    def check_dependencies(self, step: Step) -> None:
        """
        Raises:
            DependencyError: If a depends_on step hasn't completed
        """
        for dep in step.depends_on:
            if dep not in self.ctx.completed_steps:
                raise DependencyError(step.name, dep)

    async def execute_step(self, step: Step, index: int = 0, total: int = 0) -> StepResult:
        """
        Run one step and record its StepResult.

        Returns:
            The successful StepResult

        Raises:
            OrchestratorError (or the handler's exception) after recording a failed result
        """
        counter = f"[{index}/{total}] " if total else ""
        print(f"\n{counter}▶ {step.name} ({step.client}): {step.description or _describe(step.action)}",
              flush=True)
        self.ctx.collector.event(f"Step '{step.name}' started on {step.client}")

        try:
            self.check_dependencies(step)
        except DependencyError as e:
            self._fail(step, 0.0, e)
            raise

        started = time.monotonic()
        try:
            if step.wait_before:
                await asyncio.sleep(step.wait_before / 1000.0)
                started = time.monotonic()
            if step.timeout:
                response = await asyncio.wait_for(self.run_action(step.action, step),
                                                  timeout=step.timeout / 1000.0)
            else:
                response = await self.run_action(step.action, step)
        except asyncio.TimeoutError:
            error = ActionFailedError(f"Step timed out after {step.timeout}ms",
                                      service_id=_service_of(step), step_name=step.name,
                                      elapsed=time.monotonic() - started)
            self._fail(step, time.monotonic() - started, error)
            raise error
        except asyncio.CancelledError:
            self._fail(step, time.monotonic() - started, "interrupted")
            raise
        except Exception as e:
            if isinstance(e, OrchestratorError):
                e.step_name = e.step_name or step.name
                if e.elapsed is None:
                    e.elapsed = time.monotonic() - started
            self._fail(step, time.monotonic() - started, e)
            raise

        duration = time.monotonic() - started
        if step.response_variables:
            stored = self.ctx.variables.extract(response, dict(step.response_variables),
                                                step_name=step.name)
            for name in stored:
                print(f"    📝 {name} = {_short(self.ctx.variables.get(name))}", flush=True)

        self.ctx.record_result(StepResult(name=step.name, success=True, duration=duration,
                                          response=response, client=step.client))
        print(f"  ✅ {step.name} ({duration:.2f}s)", flush=True)
        if self.verbose:
            print(f"    Response: {_short(response, 500)}", flush=True)
        self.ctx.collector.event(f"Step '{step.name}' completed in {duration:.3f}s")

        if step.wait_after:
            await asyncio.sleep(step.wait_after / 1000.0)

        return self.ctx.step_results[step.name]

    def _fail(self, step: Step, duration: float, error) -> None:
        self.ctx.record_result(StepResult(name=step.name, success=False, duration=duration,
                                          error=str(error), client=step.client))
        print(f"  ❌ {step.name} ({duration:.2f}s): {error}", flush=True)
        self.ctx.collector.event(f"Step '{step.name}' failed: {error}")

    # -- dispatch ---------------------------------------------------------

    async def run_action(self, action: Action, step: Step) -> Any:
        handler = HANDLERS[type(action)]
        return await handler(self, action, step)

    def _interp(self, value: Any, step: Step) -> Any:
        return self.ctx.variables.interpolate(value, step_name=step.name)

    async def _remote_call(self, action: RemoteCall, step: Step) -> Any:
        arguments = self._interp(action.arguments, step)
        if self.verbose:
            print(f"    📡 {action.tool} {json.dumps(arguments)}", flush=True)
        channel = self.ctx.connection(step.client)
        return await channel.call_tool(action.tool, arguments)

    async def _wait_condition(self, action: WaitForCondition, step: Step) -> Any:
        timeout = action.timeout_ms / 1000.0 if action.timeout_ms else None

        if action.condition == "manual_exit":
            return await self._wait_manual_exit(timeout)

        if not step.is_local:
            channel = self.ctx.connection(step.client)
            arguments = {"condition": action.condition,
                         "expected_value": self._interp(action.expected_value, step),
                         "timeout": action.timeout_ms}
            call_timeout = self.ctx.config.call_timeout("wait_for_condition")
            if timeout:
                call_timeout = max(call_timeout, timeout + 5.0)
            return await channel.call_tool("wait_for_condition", arguments, timeout=call_timeout)

        if action.condition == "all_clients_ready":
            ids = [c.id for c in self.ctx.scenario.clients]
        elif action.condition.startswith("service_ready:"):
            ids = [action.condition.split(":", 1)[1]]
        else:
            raise ActionFailedError(f"Unknown orchestrator condition '{action.condition}'",
                                    step_name=step.name)

        monitor = self.ctx.monitor
        started = time.monotonic()
        while not all(monitor.is_ready(sid) for sid in ids):
            if timeout is not None and time.monotonic() - started >= timeout:
                waiting = [sid for sid in ids if not monitor.is_ready(sid)]
                raise ActionFailedError(
                    f"Condition '{action.condition}' not met within {action.timeout_ms}ms "
                    f"(not ready: {', '.join(waiting)})",
                    step_name=step.name, elapsed=time.monotonic() - started,
                )
            await asyncio.sleep(POLL_INTERVAL_S)
        return {"condition": action.condition, "met": True}

    async def _wait_manual_exit(self, timeout: Optional[float]) -> Any:
        if timeout:
            print(f"  ⏸️  Waiting for Ctrl+C (or {timeout:g}s)...", flush=True)
        else:
            print("  ⏸️  Waiting for Ctrl+C...", flush=True)

        self.ctx.manual_exit_waits += 1
        try:
            await asyncio.wait_for(self.ctx.interrupt_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("Manual exit wait ended after %gs", timeout)
        finally:
            self.ctx.manual_exit_waits -= 1
        return {"condition": "manual_exit", "interrupted": self.ctx.interrupt_event.is_set()}

    async def _run_command(self, action: RunLocalCommand, step: Step) -> Any:
        argv = [str(a) for a in self._interp(list(action.argv), step)]
        cwd = self._interp(action.cwd, step)
        env = dict(self.ctx.scenario.config.environment)
        source = self._command_id(step)

        try:
            proc = await self.ctx.supervisor.spawn(source, argv, cwd=cwd, env=env)
        except OSError as e:
            raise ActionFailedError(f"Cannot run {argv[0]}: {e}", step_name=step.name)

        if action.background:
            print(f"    🔄 Background: {' '.join(argv)} (pid {proc.pid})", flush=True)
            return {"pid": proc.pid, "background": True, "source": source}

        timeout = action.timeout_ms / 1000.0 if action.timeout_ms else None
        try:
            code = await asyncio.wait_for(proc.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            await proc.terminate(self.ctx.config.grace_period_s)
            raise ActionFailedError(f"'{' '.join(argv)}' timed out after {action.timeout_ms}ms",
                                    service_id=source, step_name=step.name)
        except asyncio.CancelledError:
            await proc.terminate(self.ctx.config.grace_period_s)
            raise

        stdout = "\n".join(e.message for e in self.ctx.collector.entries(source)
                           if e.stream == "stdout")
        if code != 0:
            tail = " | ".join(proc.stderr_tail(5))
            raise ActionFailedError(
                f"'{' '.join(argv)}' exited with status {code}" + (f": {tail}" if tail else ""),
                service_id=source, step_name=step.name,
            )
        return {"exit_code": code, "stdout": stdout}

    def _command_id(self, step: Step) -> str:
        base = f"cmd-{step.name}"
        source, n = base, 1
        while source in self.ctx.processes:
            n += 1
            source = f"{base}-{n}"
        return source

    async def _delay(self, action: Delay, step: Step) -> Any:
        await asyncio.sleep(action.duration_ms / 1000.0)
        return {"slept_ms": action.duration_ms}

    async def _validate(self, action: Validate, step: Step) -> Any:
        results = {check: self._check(check) for check in action.checks}
        failed = [check for check, ok in results.items() if not ok]
        if failed:
            raise ActionFailedError(f"Validation failed: {', '.join(failed)}",
                                    step_name=step.name)
        return {"checks": results}

    def _check(self, check: str) -> bool:
        ctx = self.ctx
        if check == "clients_connected":
            return all(c.id in ctx.connections and ctx.connections[c.id].connected
                       for c in ctx.scenario.clients)
        if check == "infrastructure_running":
            infra = ctx.scenario.infrastructure
            needed = []
            if infra.broker.required:
                needed.append(BROKER_ID)
            if infra.observer and infra.observer.required:
                needed.append(OBSERVER_ID)
            return all(sid in ctx.processes and ctx.processes[sid].running for sid in needed)
        if check == "no_failed_services":
            return not ctx.monitor.failed_services()
        if check.startswith("variable:"):
            return check.split(":", 1)[1] in ctx.variables
        if check.startswith("step_completed:"):
            return check.split(":", 1)[1] in ctx.completed_steps
        logger.warning("Unknown validation check '%s'", check)
        return False

    async def _publish(self, action: PublishMessage, step: Step) -> Any:
        topic = self._interp(action.topic, step)
        payload = self._interp(action.payload, step)
        broker = await self.ctx.broker_client()
        await broker.publish(topic, payload, qos=action.qos, retain=action.retain)
        return {"topic": topic, "published": True}

    async def _expect(self, action: ExpectMessage, step: Step) -> Any:
        topic = self._interp(action.topic, step)
        payload = self._interp(action.payload, step)
        broker = await self.ctx.broker_client()
        received_topic, raw = await broker.expect(topic, payload,
                                                  timeout=action.timeout_ms / 1000.0)
        text = raw.decode("utf-8", errors="replace")
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            decoded = text
        return {"topic": received_topic, "payload": decoded}

    async def _open_url(self, action: OpenUrl, step: Step) -> Any:
        url = self._interp(action.url, step)
        if action.browser:
            source = self._command_id(step)
            try:
                await self.ctx.supervisor.spawn(source, [action.browser, url])
            except OSError as e:
                raise ActionFailedError(f"Cannot start {action.browser}: {e}",
                                        step_name=step.name)
        else:
            loop = asyncio.get_running_loop()
            opened = await loop.run_in_executor(None, webbrowser.open, url)
            if not opened:
                raise ActionFailedError(f"No browser available to open {url}",
                                        step_name=step.name)
        print(f"    🌐 Opened {url}", flush=True)

        if action.wait_seconds:
            await asyncio.sleep(action.wait_seconds)
        return {"url": url}

    async def _show_message(self, action: ShowMessage, step: Step) -> Any:
        message = str(self._interp(action.message, step))
        logger.log(MESSAGE_LEVELS[action.message_type], "%s", message)
        print(f"    {MESSAGE_ICONS[action.message_type]} {message}", flush=True)
        return {"message": message, "message_type": action.message_type}

    async def _parallel(self, action: Parallel, step: Step) -> List[Any]:
        tasks = [asyncio.ensure_future(self.run_action(a, step)) for a in action.actions]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _sequence(self, action: Sequence, step: Step) -> List[Any]:
        results = []
        for nested in action.actions:
            results.append(await self.run_action(nested, step))
        return results


HANDLERS: Dict[type, Callable] = {
    RemoteCall: StepEngine._remote_call,
    WaitForCondition: StepEngine._wait_condition,
    RunLocalCommand: StepEngine._run_command,
    Delay: StepEngine._delay,
    Validate: StepEngine._validate,
    PublishMessage: StepEngine._publish,
    ExpectMessage: StepEngine._expect,
    OpenUrl: StepEngine._open_url,
    ShowMessage: StepEngine._show_message,
    Parallel: StepEngine._parallel,
    Sequence: StepEngine._sequence,
}

_unhandled = set(ACTION_TYPES) - set(HANDLERS)
if _unhandled:
    raise ImportError(f"No engine handler for: {', '.join(t.__name__ for t in _unhandled)}")


def _describe(action: Action) -> str:
    if isinstance(action, RemoteCall):
        return f"call {action.tool}"
    if isinstance(action, WaitForCondition):
        return f"wait for {action.condition}"
    if isinstance(action, RunLocalCommand):
        return f"run {' '.join(action.argv)}"
    if isinstance(action, (Parallel, Sequence)):
        return f"{type(action).__name__.lower()} of {len(action.actions)} action(s)"
    return type(action).__name__


def _service_of(step: Step) -> Optional[str]:
    return None if step.is_local else step.client


def _short(value: Any, limit: int = 120) -> str:
    text = value if isinstance(value, str) else json.dumps(value, default=str)
    return text if len(text) <= limit else text[:limit - 3] + "..."
