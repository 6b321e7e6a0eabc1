"""
lifecycle.py - Orchestrator (Lifecycle Controller)

Wires the harness together for one scenario run:
1. Start infrastructure (broker, observer) and wait for readiness
2. Start clients: spawn -> TCP readiness -> health_check -> primary connection
3. Start the health monitor
4. Execute steps, racing the health abort signal and the scenario deadline
5. Tear everything down exactly once, on every exit path
6. Report

Interrupts: the first SIGINT/SIGTERM ends an active manual_exit wait (or the
keep-alive phase), otherwise it cancels the run and tears down gracefully.
A second signal kills the children and exits immediately.
"""

import asyncio
import logging
import os
import signal
import sys
import time
from pathlib import Path
from typing import Awaitable, Iterable, Optional

from orch.config.scenario import ClientSpec, Scenario, validate_scenario
from orch.config.settings import RunConfig
from orch.errors import OrchestratorError, ReadinessTimeoutError, ScenarioTimeoutError
from orch.harness.context import BROKER_ID, OBSERVER_ID, RunContext, ScenarioResult
from orch.harness.control_channel import ControlChannel
from orch.harness.engine import StepEngine
from orch.harness.health import ServiceStatus
from orch.harness.readiness import (
    is_healthy,
    is_port_occupied,
    wait_for_client_healthy,
    wait_for_port,
)
from orch.harness.supervisor import format_command
from orch.logs.collector import CollectorHandler, LogCollector, create_run_dir

logger = logging.getLogger(__name__)

OBSERVER_READY_TIMEOUT_S = 10.0
OBSERVER_FAILURE_THRESHOLD = 3


async def gather_or_cancel(aws: Iterable[Awaitable]) -> list:
    """gather() that cancels the siblings once one awaitable fails."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class Orchestrator:
    """
    Runs one scenario end to end.

    Usage:
        orchestrator = Orchestrator(load_scenario("scenarios/two_players.json"))
        result = await orchestrator.run()
        sys.exit(0 if result.success else 1)
    """

    def __init__(self, scenario: Scenario, config: Optional[RunConfig] = None,
                 run_dir: Optional[Path] = None, handle_signals: bool = True):
        self.config = config or RunConfig()
        if self.config.broker_port_override is not None:
            scenario = scenario.with_broker_port(self.config.broker_port_override)
            validate_scenario(scenario)
        self.scenario = scenario
        self.run_dir = run_dir
        self.handle_signals = handle_signals

        self.ctx: Optional[RunContext] = None
        self._run_task: Optional[asyncio.Task] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._signal_count = 0
        self._interrupted = False
        self._keeping_alive = False

    # -- run --------------------------------------------------------------

    async def run(self) -> ScenarioResult:
        """
        Execute the scenario.

        Returns:
            ScenarioResult; failures are reported there, not raised
        """
        if self.run_dir is None:
            self.run_dir = create_run_dir(self.config.logs_dir, self.scenario.name)
        collector = LogCollector(self.run_dir)
        self.ctx = RunContext(self.scenario, self.config, collector=collector,
                              run_dir=self.run_dir)
        collector.add_listener(self.ctx.monitor.observe_line)

        log_handler = self._attach_log_handler(collector)
        self._install_signal_handlers()

        print("\n" + "=" * 60)
        print(f"Scenario: {self.scenario.name}")
        if self.scenario.description:
            print(f"  {self.scenario.description}")
        print(f"  Clients: {len(self.scenario.clients)}, Steps: {len(self.scenario.steps)}")
        print(f"  Logs: {self.run_dir}")
        print("=" * 60, flush=True)

        started = time.monotonic()
        error: Optional[str] = None
        try:
            self._run_task = asyncio.create_task(self._execute(), name="scenario")
            await self._run_task
        except asyncio.CancelledError:
            if not self._interrupted:
                raise
            error = "Interrupted by user"
        except OrchestratorError as e:
            error = str(e)
        except Exception as e:
            logger.exception("Unexpected error while running %s", self.scenario.name)
            error = f"{type(e).__name__}: {e}"
        finally:
            await self.teardown()
            self._remove_signal_handlers()
            logging.getLogger("orch").removeHandler(log_handler)
            collector.close()

        result = self._build_result(error, time.monotonic() - started)
        self.print_report(result)
        return result

    async def _execute(self) -> None:
        ctx = self.ctx
        async with ctx.lock:
            await self.start_infrastructure()
        async with ctx.lock:
            await self.start_clients()

        ctx.monitor.start()
        engine = StepEngine(ctx)

        steps_task = asyncio.create_task(engine.execute_steps(), name="steps")
        abort_task = asyncio.create_task(ctx.monitor.abort_event.wait(), name="health-abort")
        deadline = self.scenario.config.timeout_ms
        try:
            done, _pending = await asyncio.wait(
                {steps_task, abort_task},
                timeout=deadline / 1000.0 if deadline else None,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if steps_task not in done:
                steps_task.cancel()
                await asyncio.gather(steps_task, return_exceptions=True)
                if abort_task in done:
                    raise ctx.monitor.failure
                raise ScenarioTimeoutError(
                    f"Scenario did not finish within {deadline}ms", elapsed=ctx.elapsed()
                )
            steps_task.result()
        finally:
            for task in (steps_task, abort_task):
                task.cancel()
            await asyncio.gather(steps_task, abort_task, return_exceptions=True)

        if self.config.keep_alive:
            print("\n🔄 All steps passed. Keeping processes alive, press Ctrl+C to stop.",
                  flush=True)
            self._keeping_alive = True
            try:
                await ctx.interrupt_event.wait()
            finally:
                self._keeping_alive = False

    # -- infrastructure ---------------------------------------------------

    async def start_infrastructure(self) -> None:
        ctx = self.ctx
        infra = self.scenario.infrastructure
        host = self.config.host
        env = dict(self.scenario.config.environment)

        if infra.broker.required:
            port = infra.broker.port
            print(f"\n[Orchestrator] Starting MQTT broker on port {port}...", flush=True)
            if is_port_occupied(host, port):
                raise OrchestratorError(
                    f"Port {port} is already in use; stop the other broker or use --mqtt-port",
                    service_id=BROKER_ID,
                )
            argv = format_command(infra.broker.command or self.config.broker_command,
                                  port=port, host=host)
            cwd = infra.broker.cwd or (None if infra.broker.command else self.config.broker_cwd)

            ctx.monitor.register(BROKER_ID)
            ctx.monitor.set_status(BROKER_ID, ServiceStatus.STARTING)
            proc = await ctx.supervisor.spawn(BROKER_ID, argv, cwd=cwd, env=env)
            proc.add_exit_callback(ctx.monitor.on_exit)

            await wait_for_port(host, port, timeout=self.config.startup_timeout_s,
                                process=proc, service_id=BROKER_ID,
                                attempt_timeout=self.config.connect_attempt_timeout_s)
            ctx.monitor.set_status(BROKER_ID, ServiceStatus.READY)
            print(f"[Orchestrator] ✓ MQTT broker ready on port {port}", flush=True)

        observer = infra.observer
        if observer is not None and observer.required:
            print("\n[Orchestrator] Starting MQTT observer...", flush=True)
            if observer.command:
                argv = format_command(observer.command, port=infra.broker.port, host=host)
            else:
                argv = [sys.executable, "-m", "orch.mqtt.observer",
                        "--host", host, "--port", str(infra.broker.port),
                        "--client-id", observer.client_id, *observer.topics]

            ctx.monitor.register(OBSERVER_ID)
            ctx.monitor.set_status(OBSERVER_ID, ServiceStatus.STARTING)
            proc = await ctx.supervisor.spawn(OBSERVER_ID, argv, cwd=observer.cwd, env=env)
            proc.add_exit_callback(ctx.monitor.on_exit)
            await self._wait_observer_ready(proc)

            async def observer_alive() -> bool:
                return proc.running

            ctx.monitor.add_probe(OBSERVER_ID, observer_alive,
                                  interval=self.config.probe_interval_s,
                                  timeout=self.config.probe_timeout_s,
                                  failure_threshold=OBSERVER_FAILURE_THRESHOLD)
            print("[Orchestrator] ✓ MQTT observer running", flush=True)

    async def _wait_observer_ready(self, proc) -> None:
        monitor = self.ctx.monitor
        started = time.monotonic()
        while not monitor.is_ready(OBSERVER_ID):
            code = proc.poll()
            if code is not None:
                raise ReadinessTimeoutError(
                    f"Observer exited with status {code} during startup",
                    service_id=OBSERVER_ID, elapsed=time.monotonic() - started,
                    exited=True, exit_code=code,
                )
            if time.monotonic() - started >= OBSERVER_READY_TIMEOUT_S:
                # Alive but silent: the running process is the signal we have
                logger.warning("Observer printed no connect marker within %gs",
                               OBSERVER_READY_TIMEOUT_S)
                monitor.set_status(OBSERVER_ID, ServiceStatus.READY)
                return
            await asyncio.sleep(0.2)

    # -- clients ----------------------------------------------------------

    async def start_clients(self) -> None:
        clients = self.scenario.clients
        if not clients:
            return
        print(f"\n[Orchestrator] Starting {len(clients)} client(s)...", flush=True)
        await gather_or_cancel(self._start_client(c) for c in clients)
        print(f"[Orchestrator] ✓ All {len(clients)} client(s) ready", flush=True)

    async def _start_client(self, client: ClientSpec) -> None:
        ctx = self.ctx
        host = self.config.host
        broker = self.scenario.infrastructure.broker
        ctx.monitor.register(client.id)

        proc = None
        if client.is_external:
            print(f"  - {client.display_name}: external, expecting port {client.mcp_port}")
        else:
            argv = format_command(client.command or self.config.client_command,
                                  port=client.mcp_port, host=host, client_id=client.id,
                                  player_id=client.player_id)
            cwd = client.cwd
            if client.command is None:
                cwd = cwd or self.config.client_cwd
                if broker.required:
                    argv += ["--mqtt-server", f"{host}:{broker.port}"]
            env = dict(self.scenario.config.environment)
            env["MCP_PORT"] = str(client.mcp_port)

            print(f"  - {client.display_name}: port {client.mcp_port}", flush=True)
            ctx.monitor.set_status(client.id, ServiceStatus.STARTING)
            proc = await ctx.supervisor.spawn(client.id, argv, cwd=cwd, env=env)
            proc.add_exit_callback(ctx.monitor.on_exit)

        await wait_for_port(host, client.mcp_port, timeout=self.config.startup_timeout_s,
                            process=proc, service_id=client.id,
                            attempt_timeout=self.config.connect_attempt_timeout_s)

        channel = ControlChannel(client.id, host, client.mcp_port, self.config)
        await wait_for_client_healthy(channel, require_broker=broker.required,
                                      config=self.config, process=proc)
        await channel.connect(timeout=self.config.short_call_timeout_s)
        ctx.connections[client.id] = channel
        ctx.monitor.set_status(client.id, ServiceStatus.READY)

        probe = client.liveness_probe(self.config.probe_interval_s,
                                      self.config.probe_timeout_s,
                                      self.config.probe_failure_threshold)
        if probe is not None:
            async def client_healthy() -> bool:
                payload = await channel.probe("health_check", {}, timeout=probe.timeout_seconds)
                return is_healthy(payload, broker.required)

            ctx.monitor.add_probe(client.id, client_healthy,
                                  interval=probe.interval_seconds,
                                  timeout=probe.timeout_seconds,
                                  failure_threshold=probe.failure_threshold)
        print(f"  ✓ {client.display_name} ready", flush=True)

    # -- teardown ---------------------------------------------------------

    async def teardown(self) -> None:
        """Stop everything. Runs once; later callers wait for the first."""
        if self.ctx is None:
            return
        if self._teardown_task is None:
            self._teardown_task = asyncio.create_task(self._teardown(), name="teardown")
        await asyncio.shield(self._teardown_task)

    async def _teardown(self) -> None:
        ctx = self.ctx
        print("\n" + "=" * 60)
        print("Shutting down...")
        print("=" * 60, flush=True)

        await ctx.monitor.stop()

        for channel in list(ctx.connections.values()):
            await channel.close()
        ctx.connections.clear()

        if ctx.broker is not None:
            await ctx.broker.close()
            ctx.broker = None

        if ctx.processes:
            print(f"\n[Orchestrator] Terminating {len(ctx.processes)} process(es)...", flush=True)
            try:
                abandoned = await asyncio.wait_for(
                    ctx.supervisor.stop_all(self.config.grace_period_s),
                    timeout=self.config.shutdown_timeout_s,
                )
            except asyncio.TimeoutError:
                abandoned = [sid for sid, p in ctx.processes.items() if p.running]
                logger.warning("Shutdown exceeded %gs", self.config.shutdown_timeout_s)

            if abandoned:
                print(f"[Orchestrator] WARNING: {len(abandoned)} process(es) abandoned:")
                for sid in abandoned:
                    print(f"  - {sid} (pid {ctx.processes[sid].pid})")
            else:
                print("[Orchestrator] ✓ Clean shutdown - no orphaned processes", flush=True)

        ctx.collector.flush()

    # -- signals ----------------------------------------------------------

    def _install_signal_handlers(self) -> None:
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_interrupt, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug("Signal handlers unavailable on this loop")
                self.handle_signals = False
                return

    def _remove_signal_handlers(self) -> None:
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    def request_interrupt(self, sig: int = signal.SIGINT) -> None:
        """Handle an interrupt: graceful the first time, immediate the second."""
        self._signal_count += 1
        ctx = self.ctx

        if self._signal_count > 1:
            print("\n⚠️  Second interrupt, exiting immediately", flush=True)
            if ctx is not None:
                for proc in ctx.processes.values():
                    if proc.running:
                        proc.kill()
                ctx.collector.flush()
            os._exit(130)

        print(f"\n⚠️  Received {signal.Signals(sig).name}, stopping "
              "(press Ctrl+C again to force)", flush=True)
        if ctx is None:
            return
        ctx.interrupt_event.set()
        if ctx.manual_exit_waits or self._keeping_alive:
            return
        if self._run_task is not None and not self._run_task.done():
            self._interrupted = True
            self._run_task.cancel()

    # -- reporting --------------------------------------------------------

    def _attach_log_handler(self, collector: LogCollector) -> CollectorHandler:
        handler = CollectorHandler(collector)
        orch_logger = logging.getLogger("orch")
        if orch_logger.getEffectiveLevel() > logging.INFO:
            orch_logger.setLevel(logging.INFO)
        orch_logger.addHandler(handler)
        return handler

    def _build_result(self, error: Optional[str], duration: float) -> ScenarioResult:
        ctx = self.ctx
        results = [ctx.step_results[s.name] for s in self.scenario.steps
                   if s.name in ctx.step_results]
        not_executed = [s.name for s in self.scenario.steps if s.name not in ctx.step_results]
        failed = next((r for r in results if not r.success), None)
        if failed is not None and error is None:
            error = failed.error

        return ScenarioResult(
            scenario=self.scenario.name,
            success=error is None and not not_executed,
            duration=duration,
            step_results=results,
            not_executed=not_executed,
            failed_step=failed.name if failed else None,
            error=error,
            log_dir=self.run_dir,
        )

    def print_report(self, result: ScenarioResult) -> None:
        print("\n" + "=" * 60)
        print(f"Scenario Report: {result.scenario}")
        print("=" * 60)

        by_name = {r.name: r for r in result.step_results}
        for step in self.scenario.steps:
            r = by_name.get(step.name)
            if r is None:
                print(f"  ⏸️  {step.name} (not executed)")
            elif r.success:
                print(f"  ✅ {step.name} ({r.duration:.2f}s)")
            else:
                print(f"  ❌ {step.name} ({r.duration:.2f}s): {r.error}")

        passed = sum(1 for r in result.step_results if r.success)
        print(f"\nSteps passed: {passed}/{len(self.scenario.steps)}")
        print(f"Duration: {result.duration:.2f}s")
        if self.ctx is not None and self.ctx.monitor.statuses:
            print("Services:")
            for sid, status in self.ctx.monitor.statuses.items():
                print(f"  {status.icon} {sid}: {status.value}")
        print(f"Logs: {result.log_dir}")

        if result.success:
            print("\n✓ SUCCESS")
        else:
            where = f" at step '{result.failed_step}'" if result.failed_step else ""
            print(f"\n✗ FAILED{where}: {result.error}")
        print("=" * 60 + "\n", flush=True)

