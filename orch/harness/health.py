"""
health.py - Health Monitor

Tracks one ServiceStatus per service id and runs liveness probes for the
services that opted in.

State machine:
    WAITING -> STARTING -> READY
    READY -> UNHEALTHY     after failure_threshold consecutive probe failures
    UNHEALTHY -> READY     on any successful probe (counter reset)
    any -> FAILED          process exited non-zero (terminal)
    any -> STOPPED         process exited zero, or was stopped by us (terminal)

Crossing into UNHEALTHY, or an unexpected FAILED exit while the run is
active, sets the abort event with a HealthFailure. Indefinite scenarios
(interactive manual_exit sessions) only log these.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from orch.errors import HealthFailure
from orch.logs.collector import LogEntry

logger = logging.getLogger(__name__)


class ServiceStatus(Enum):
    WAITING = "waiting"
    STARTING = "starting"
    READY = "ready"
    UNHEALTHY = "unhealthy"
    FAILED = "failed"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in (ServiceStatus.FAILED, ServiceStatus.STOPPED)

    @property
    def icon(self) -> str:
        return STATUS_ICONS[self]


STATUS_ICONS = {
    ServiceStatus.WAITING: "⏳",
    ServiceStatus.STARTING: "🟡",
    ServiceStatus.READY: "🟢",
    ServiceStatus.UNHEALTHY: "🟠",
    ServiceStatus.FAILED: "🔴",
    ServiceStatus.STOPPED: "🔵",
}

# Best-effort hints from process output; checked in order, first hit wins
LOG_MARKERS: List[Tuple[Tuple[str, ...], ServiceStatus]] = [
    (("connected to mqtt broker", "mqtt connection established", "successfully connected",
      "mcp server listening", "observer connected", "subscribed to"), ServiceStatus.READY),
    (("compiling", "starting", "connecting to", "attempting connection"), ServiceStatus.STARTING),
]

ProbeFn = Callable[[], Awaitable[bool]]


@dataclass
class HealthProbe:
    """Liveness probe bookkeeping for one service id."""
    interval: float
    timeout: float = 3.0
    failure_threshold: int = 2
    last_check: Optional[float] = None
    failure_count: int = 0
    healthy: bool = True

    def due(self, now: float) -> bool:
        return self.last_check is None or now - self.last_check >= self.interval


class HealthMonitor:
    """
    Service status table plus periodic liveness probes.

    Usage:
        monitor = HealthMonitor(indefinite=scenario.is_indefinite)
        monitor.register("alice")
        monitor.add_probe("alice", probe_alice, interval=5.0, failure_threshold=3)
        monitor.start()
        ...
        await monitor.abort_event.wait()   # raced against the engine
        await monitor.stop()
    """

    def __init__(self, indefinite: bool = False, tick: float = 1.0,
                 clock: Callable[[], float] = time.monotonic):
        self.indefinite = indefinite
        self.tick = tick
        self.clock = clock

        self.statuses: Dict[str, ServiceStatus] = {}
        self.probes: Dict[str, HealthProbe] = {}
        self._probe_fns: Dict[str, ProbeFn] = {}

        # Exits before `active` are reported by the readiness stage instead
        self.active = False
        self.abort_event = asyncio.Event()
        self.failure: Optional[HealthFailure] = None
        self._task: Optional[asyncio.Task] = None

    # -- status table -----------------------------------------------------

    def register(self, service_id: str, status: ServiceStatus = ServiceStatus.WAITING) -> None:
        self.statuses.setdefault(service_id, status)

    def status(self, service_id: str) -> Optional[ServiceStatus]:
        return self.statuses.get(service_id)

    def set_status(self, service_id: str, status: ServiceStatus) -> ServiceStatus:
        """
        Apply a transition. Terminal states stick.

        Returns:
            The status after the call
        """
        current = self.statuses.get(service_id)
        if current is not None and current.terminal:
            return current
        if current != status:
            logger.info("%s %s: %s -> %s", status.icon, service_id,
                        current.value if current else "-", status.value)
            self.statuses[service_id] = status
        return status

    def is_ready(self, service_id: str) -> bool:
        return self.statuses.get(service_id) == ServiceStatus.READY

    def failed_services(self) -> List[str]:
        return [sid for sid, st in self.statuses.items()
                if st in (ServiceStatus.FAILED, ServiceStatus.UNHEALTHY)]

    # -- probes -----------------------------------------------------------

    def add_probe(self, service_id: str, probe: ProbeFn, interval: float,
                  timeout: float = 3.0, failure_threshold: int = 2) -> HealthProbe:
        if interval <= 0:
            raise ValueError(f"{service_id}: probe interval must be positive, got {interval}")
        if failure_threshold < 1:
            raise ValueError(f"{service_id}: failure_threshold must be >= 1")
        self.register(service_id)
        state = HealthProbe(interval=interval, timeout=timeout,
                            failure_threshold=failure_threshold, last_check=self.clock())
        self.probes[service_id] = state
        self._probe_fns[service_id] = probe
        return state

    def record_probe(self, service_id: str, ok: bool) -> ServiceStatus:
        """Feed one probe outcome into the state machine."""
        probe = self.probes[service_id]
        probe.last_check = self.clock()
        current = self.statuses.get(service_id, ServiceStatus.WAITING)
        if current.terminal:
            return current

        if ok:
            if probe.failure_count:
                logger.debug("%s probe recovered after %d failure(s)",
                             service_id, probe.failure_count)
            probe.failure_count = 0
            probe.healthy = True
            return self.set_status(service_id, ServiceStatus.READY)

        probe.failure_count += 1
        logger.debug("%s probe failed (%d/%d)", service_id,
                     probe.failure_count, probe.failure_threshold)
        if probe.failure_count >= probe.failure_threshold and current != ServiceStatus.UNHEALTHY:
            probe.healthy = False
            self.set_status(service_id, ServiceStatus.UNHEALTHY)
            self._raise_abort(HealthFailure(
                f"{service_id} failed {probe.failure_count} consecutive health checks",
                service_id=service_id,
            ))
        return self.statuses[service_id]

    async def run_probe(self, service_id: str) -> ServiceStatus:
        probe = self.probes[service_id]
        try:
            ok = bool(await asyncio.wait_for(self._probe_fns[service_id](), probe.timeout))
        except asyncio.TimeoutError:
            logger.debug("%s probe timed out after %.1fs", service_id, probe.timeout)
            ok = False
        except Exception as e:
            logger.debug("%s probe error: %s", service_id, e)
            ok = False
        return self.record_probe(service_id, ok)

    async def run(self) -> None:
        """Probe loop: wake every tick, run the probes that are due."""
        while True:
            now = self.clock()
            due = [sid for sid, probe in self.probes.items()
                   if probe.due(now) and not self.statuses[sid].terminal]
            if due:
                await asyncio.gather(*(self.run_probe(sid) for sid in due))
            await asyncio.sleep(self.tick)

    def start(self) -> None:
        self.active = True
        if self._task is None:
            self._task = asyncio.create_task(self.run(), name="health-monitor")

    async def stop(self) -> None:
        self.active = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    # -- structural signals ----------------------------------------------

    def on_exit(self, proc, code: int) -> None:
        """ManagedProcess exit callback."""
        service_id = proc.service_id
        if code == 0 or proc.stopping:
            self.set_status(service_id, ServiceStatus.STOPPED)
            return

        self.set_status(service_id, ServiceStatus.FAILED)
        if self.active:
            self._raise_abort(HealthFailure(
                f"{service_id} exited unexpectedly with status {code}",
                service_id=service_id,
            ))

    def observe_line(self, entry: LogEntry) -> None:
        """
        LogCollector listener: move WAITING/STARTING services forward
        based on output markers. Never demotes and never aborts.
        """
        current = self.statuses.get(entry.source)
        if current not in (ServiceStatus.WAITING, ServiceStatus.STARTING):
            return
        text = entry.message.lower()
        for markers, status in LOG_MARKERS:
            if any(m in text for m in markers):
                if status == ServiceStatus.STARTING and current == ServiceStatus.STARTING:
                    return
                self.set_status(entry.source, status)
                return

    # -- abort ------------------------------------------------------------

    def _raise_abort(self, failure: HealthFailure) -> None:
        if self.indefinite:
            logger.warning("%s (indefinite scenario, continuing)", failure)
            return
        if self.failure is None:
            self.failure = failure
            logger.error("Health failure: %s", failure)
        self.abort_event.set()
