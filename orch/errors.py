"""
errors.py - Orchestrator error taxonomy

Every error carries the service id, step name and elapsed time when they
are known, so the final report can say who failed, where and after how long.
"""

from typing import Any, Iterable, Optional


class OrchestratorError(Exception):
    """Base class for all harness failures."""

    def __init__(
        self,
        message: str,
        service_id: Optional[str] = None,
        step_name: Optional[str] = None,
        elapsed: Optional[float] = None,
    ):
        super().__init__(message)
        self.message = message
        self.service_id = service_id
        self.step_name = step_name
        self.elapsed = elapsed

    def __str__(self) -> str:
        parts = [self.message]
        context = []
        if self.service_id:
            context.append(f"service={self.service_id}")
        if self.step_name:
            context.append(f"step={self.step_name}")
        if self.elapsed is not None:
            context.append(f"elapsed={self.elapsed:.2f}s")
        if context:
            parts.append(f"({', '.join(context)})")
        return " ".join(parts)


class ScenarioDefinitionError(OrchestratorError, ValueError):
    """Malformed scenario: detected pre-flight, never retried."""
    pass


class UnresolvedVariableError(ScenarioDefinitionError):
    """A ${name} placeholder had no value in strict mode."""

    def __init__(self, names: Iterable[str], step_name: Optional[str] = None):
        self.names = sorted(set(names))
        super().__init__(
            f"Unresolved variable(s): {', '.join(self.names)}",
            step_name=step_name,
        )


class ReadinessTimeoutError(OrchestratorError):
    """Process never became reachable or healthy within its budget."""

    def __init__(
        self,
        message: str,
        service_id: Optional[str] = None,
        elapsed: Optional[float] = None,
        exited: bool = False,
        exit_code: Optional[int] = None,
    ):
        super().__init__(message, service_id=service_id, elapsed=elapsed)
        self.exited = exited
        self.exit_code = exit_code


class TransportError(OrchestratorError):
    """Connect, reset, timeout or garbled frame on a control channel."""
    pass


class ApplicationError(OrchestratorError):
    """The peer answered, but with an RPC or tool level error."""

    def __init__(self, message: str, payload: Any = None, service_id: Optional[str] = None):
        super().__init__(message, service_id=service_id)
        self.payload = payload


class DependencyError(OrchestratorError):
    """A step was about to run with an unmet prerequisite."""

    def __init__(self, step_name: str, missing: str):
        super().__init__(
            f"Step '{step_name}' depends on '{missing}' which hasn't completed",
            step_name=step_name,
        )
        self.missing = missing


class HealthFailure(OrchestratorError):
    """A monitored service crossed its failure threshold or died."""
    pass


class ActionFailedError(OrchestratorError):
    """A locally executed action (command, check, broker wait) failed."""
    pass


class ScenarioTimeoutError(OrchestratorError):
    """The scenario-wide deadline elapsed."""
    pass
