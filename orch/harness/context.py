"""
context.py - Run context and results

RunContext holds everything one run owns: processes, connections, step
results, variables. It is created per run and passed explicitly, so two
runs in one process (tests) never share state.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from orch.config.scenario import Scenario
from orch.config.settings import RunConfig
from orch.errors import TransportError
from orch.harness.control_channel import ControlChannel
from orch.harness.health import HealthMonitor
from orch.harness.supervisor import ManagedProcess, ProcessSupervisor
from orch.harness.variables import VariableContext
from orch.logs.collector import LogCollector
from orch.mqtt.client import BrokerClient

BROKER_ID = "broker"
OBSERVER_ID = "observer"


@dataclass
class StepResult:
    """Outcome of one step; written exactly once."""
    name: str
    success: bool
    duration: float
    error: Optional[str] = None
    response: Any = None
    client: str = ""


@dataclass
class ScenarioResult:
    """
    Result of a scenario run.

    Attributes:
        scenario: Scenario name
        success: True if every step succeeded
        duration: Wall-clock seconds
        step_results: Results of the steps that ran, in order
        not_executed: Steps never reached
        failed_step: Name of the failing step, if a step failed
        error: Failure description
        log_dir: Run log directory
    """
    scenario: str
    success: bool
    duration: float
    step_results: List[StepResult] = field(default_factory=list)
    not_executed: List[str] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[str] = None
    log_dir: Optional[Path] = None


class RunContext:
    """Mutable state of one scenario run."""

    def __init__(self, scenario: Scenario, config: Optional[RunConfig] = None,
                 collector: Optional[LogCollector] = None, run_dir: Optional[Path] = None):
        self.scenario = scenario
        self.config = config or RunConfig()
        self.collector = collector if collector is not None else LogCollector(run_dir)
        self.run_dir = run_dir

        self.supervisor = ProcessSupervisor(self.collector)
        self.connections: Dict[str, ControlChannel] = {}
        self.completed_steps: List[str] = []
        self.step_results: Dict[str, StepResult] = {}
        self.variables = VariableContext(strict=self.config.strict_variables)
        self.monitor = HealthMonitor(indefinite=scenario.is_indefinite,
                                     tick=self.config.health_tick_s)
        self.broker: Optional[BrokerClient] = None

        # One logical operation at a time (start-infra, start-clients, one step)
        self.lock = asyncio.Lock()
        self.interrupt_event = asyncio.Event()
        self.manual_exit_waits = 0

        self.started_at = time.monotonic()
        self.started_wall = datetime.now()

    @property
    def processes(self) -> Dict[str, ManagedProcess]:
        return self.supervisor.processes

    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def record_result(self, result: StepResult) -> None:
        if result.name in self.step_results:
            raise RuntimeError(f"Step '{result.name}' already has a result")
        self.step_results[result.name] = result
        if result.success:
            self.completed_steps.append(result.name)

    def connection(self, client_id: str) -> ControlChannel:
        channel = self.connections.get(client_id)
        if channel is None or not channel.connected:
            raise TransportError(f"No connection to client {client_id}", service_id=client_id)
        return channel

    @property
    def broker_port(self) -> int:
        return self.scenario.infrastructure.broker.port

    async def broker_client(self) -> BrokerClient:
        """Engine-side broker connection, opened on first use."""
        if self.broker is None:
            client = BrokerClient(self.config.host, self.broker_port,
                                  client_id=f"orch_engine_{id(self) % 100000}")
            await client.connect()
            self.broker = client
        return self.broker
