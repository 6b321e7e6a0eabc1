"""
settings.py - Run-level harness configuration

Timeouts, retry schedules and default launch commands. Scenario files say
WHAT to run; RunConfig says how patient the harness is while running it.

Values can be overridden from the environment (ORCH_* variables), which is
how CI machines with slow cold builds get longer startup budgets.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional


# Tools that trigger expensive work on the client side
SLOW_TOOLS = frozenset({
    "create_world",
    "load_world",
    "save_world",
    "load_world_from_fs",
    "load_world_from_mqtt",
    "publish_world",
    "join_world",
    "set_game_state",
    "create_wall",
    "wait_for_condition",
})

ORCHESTRATOR_CLIENT = "orchestrator"


@dataclass
class RunConfig:
    """
    Harness settings for one run.

    Attributes:
        host: Host all services are reached on
        logs_dir: Root directory for run-scoped log directories
        startup_timeout_s: Overall TCP readiness budget (cold builds take minutes)
        connect_attempt_timeout_s: Timeout of one connect attempt
        health_retry_attempts: Protocol-readiness attempts per client
        health_retry_delay_s: Delay between protocol-readiness attempts
        short_call_timeout_s: Control-channel timeout for introspection calls
        long_call_timeout_s: Control-channel timeout for SLOW_TOOLS
        shutdown_timeout_s: Bound on the whole teardown
        grace_period_s: Per-process terminate-to-kill grace window
        probe_interval_s: Default liveness probe interval
        probe_timeout_s: Default liveness probe timeout
        probe_failure_threshold: Default consecutive failures before UNHEALTHY
        health_tick_s: Health loop wake-up period
        strict_variables: Fail on unresolved ${name} instead of passing through
        broker_port_override: Replaces the scenario broker port if set
        keep_alive: Keep processes up after success until interrupted
        verbose: Debug-level console logging
    """
    host: str = "localhost"
    logs_dir: Path = Path("logs")
    startup_timeout_s: float = 600.0
    connect_attempt_timeout_s: float = 1.0
    health_retry_attempts: int = 15
    health_retry_delay_s: float = 2.0
    short_call_timeout_s: float = 10.0
    long_call_timeout_s: float = 60.0
    shutdown_timeout_s: float = 5.0
    grace_period_s: float = 3.0
    probe_interval_s: float = 10.0
    probe_timeout_s: float = 3.0
    probe_failure_threshold: int = 2
    health_tick_s: float = 1.0
    strict_variables: bool = False
    broker_port_override: Optional[int] = None
    keep_alive: bool = False
    verbose: bool = False

    # Default launch commands; "{port}" and "{host}" are substituted
    broker_command: List[str] = field(default_factory=lambda: [
        "cargo", "run", "--release", "--", "--port", "{port}",
    ])
    broker_cwd: Optional[str] = "../mqtt-server"
    client_command: List[str] = field(default_factory=lambda: [
        "cargo", "run", "--bin", "iotcraft-dekstop-client", "--", "--mcp",
    ])
    client_cwd: Optional[str] = "../desktop-client"

    def __post_init__(self):
        self.logs_dir = Path(self.logs_dir)

        if self.startup_timeout_s <= 0:
            raise ValueError(f"startup_timeout_s must be positive, got {self.startup_timeout_s}")
        if self.health_retry_attempts < 1:
            raise ValueError(f"health_retry_attempts must be >= 1, got {self.health_retry_attempts}")
        if self.probe_failure_threshold < 1:
            raise ValueError(
                f"probe_failure_threshold must be >= 1, got {self.probe_failure_threshold}"
            )
        if self.shutdown_timeout_s <= 0:
            raise ValueError(f"shutdown_timeout_s must be positive, got {self.shutdown_timeout_s}")

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "RunConfig":
        """
        Build a RunConfig from ORCH_<FIELD> environment variables.

        Explicit keyword overrides win over the environment. Unknown or
        list-valued fields are not read from the environment.
        """
        environ = os.environ if environ is None else environ
        values = {}

        for f in fields(cls):
            if f.name in overrides:
                continue
            raw = environ.get(f"ORCH_{f.name.upper()}")
            if raw is None:
                continue

            default = getattr(cls, f.name, None)
            if isinstance(default, bool):
                values[f.name] = raw.strip().lower() in ("1", "true", "yes", "on")
            elif isinstance(default, int) and not isinstance(default, bool):
                values[f.name] = int(raw)
            elif isinstance(default, float):
                values[f.name] = float(raw)
            elif f.name == "broker_port_override":
                values[f.name] = int(raw)
            elif f.name in ("logs_dir", "host", "broker_cwd", "client_cwd"):
                values[f.name] = raw
            # list-valued commands stay at their defaults

        values.update(overrides)
        return cls(**values)

    def call_timeout(self, tool: Optional[str]) -> float:
        """Timeout class for a control-channel call on `tool`."""
        if tool in SLOW_TOOLS:
            return self.long_call_timeout_s
        return self.short_call_timeout_s
