"""
orch.harness - Scenario execution

Process supervision, readiness probing, control channel, step engine,
health monitoring and the orchestrator that wires them together.
"""

from .context import RunContext, ScenarioResult, StepResult
from .engine import StepEngine
from .health import HealthMonitor, ServiceStatus
from .lifecycle import Orchestrator
from .variables import VariableContext

__all__ = [
    'RunContext',
    'ScenarioResult',
    'StepResult',
    'StepEngine',
    'HealthMonitor',
    'ServiceStatus',
    'Orchestrator',
    'VariableContext',
]
