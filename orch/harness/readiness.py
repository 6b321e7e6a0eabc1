"""
readiness.py - Readiness Prober

Two stages before a service counts as started:
1. TCP readiness: the port accepts connections (cold `cargo run` builds can
   take minutes, so the default budget is long)
2. Protocol readiness: the client answers `health_check` with a healthy
   status (and a live broker connection when the scenario has a broker)

Both stages fail fast when the owning process exits.
"""

import asyncio
import logging
import socket
import time
from typing import Any, Optional

from orch.config.settings import RunConfig
from orch.errors import ApplicationError, ReadinessTimeoutError, TransportError
from orch.harness.control_channel import ControlChannel
from orch.harness.supervisor import ManagedProcess
from orch.harness.variables import unwrap_tool_result

logger = logging.getLogger(__name__)

HEALTHY_STATUSES = ("healthy", "ok", "ready")
RETRY_DELAY_S = 0.5
PROGRESS_INTERVAL_S = 3.0


def is_port_occupied(host: str, port: int, timeout: float = 0.5) -> bool:
    """True if something already listens on host:port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        try:
            return sock.connect_ex((_resolve(host), port)) == 0
        except OSError:
            return False


def _resolve(host: str) -> str:
    return "127.0.0.1" if host == "localhost" else host


def _check_exited(process: Optional[ManagedProcess], service_id: str, started: float) -> None:
    if process is None:
        return
    code = process.poll()
    if code is not None:
        tail = process.stderr_tail(5)
        detail = f"; last stderr: {' | '.join(tail)}" if tail else ""
        raise ReadinessTimeoutError(
            f"{service_id} exited with status {code} before becoming ready{detail}",
            service_id=service_id,
            elapsed=time.monotonic() - started,
            exited=True,
            exit_code=code,
        )


async def wait_for_port(
    host: str,
    port: int,
    timeout: float = 600.0,
    process: Optional[ManagedProcess] = None,
    service_id: Optional[str] = None,
    attempt_timeout: float = 1.0,
    progress_interval: float = PROGRESS_INTERVAL_S,
) -> float:
    """
    Wait until host:port accepts a TCP connection.

    Args:
        host: Host to connect to
        port: Port to connect to
        timeout: Overall budget in seconds
        process: Owning process; its exit aborts the wait immediately
        service_id: Name used in logs and errors
        attempt_timeout: Timeout of one connect attempt

    Returns:
        Seconds waited

    Raises:
        ReadinessTimeoutError: On exit of the process or when the budget runs out
    """
    service_id = service_id or f"{host}:{port}"
    started = time.monotonic()
    deadline = started + timeout
    next_progress = started + progress_interval

    while True:
        _check_exited(process, service_id, started)

        try:
            _reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=attempt_timeout
            )
        except (OSError, asyncio.TimeoutError):
            pass
        else:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ConnectionError):
                pass
            elapsed = time.monotonic() - started
            logger.info("%s is accepting connections on port %s (%.1fs)", service_id, port, elapsed)
            return elapsed

        now = time.monotonic()
        if now >= deadline:
            raise ReadinessTimeoutError(
                f"{service_id} not listening on {host}:{port} after {timeout:g}s",
                service_id=service_id,
                elapsed=now - started,
            )
        if now >= next_progress:
            logger.info("Still waiting for %s on port %s (%.0fs elapsed)",
                        service_id, port, now - started)
            next_progress = now + progress_interval

        await asyncio.sleep(min(RETRY_DELAY_S, max(deadline - now, 0)))


def is_healthy(payload: Any, require_broker: bool) -> bool:
    """Interpret a health_check answer."""
    payload = unwrap_tool_result(payload)
    if not isinstance(payload, dict):
        return False
    status = str(payload.get("status", "")).lower()
    if status not in HEALTHY_STATUSES:
        return False
    if require_broker and not payload.get("mqtt_connected", False):
        return False
    return True


async def wait_for_client_healthy(
    channel: ControlChannel,
    require_broker: bool = False,
    config: Optional[RunConfig] = None,
    process: Optional[ManagedProcess] = None,
) -> Any:
    """
    Retry `health_check` on fresh connections until the client reports healthy.

    Returns:
        The last (healthy) health payload

    Raises:
        ReadinessTimeoutError: If every attempt fails or the process exits
    """
    config = config or channel.config
    service_id = channel.client_id
    started = time.monotonic()
    last_problem = "no answer"

    for attempt in range(1, config.health_retry_attempts + 1):
        _check_exited(process, service_id, started)
        try:
            payload = await channel.probe("health_check", {}, timeout=config.short_call_timeout_s)
        except (TransportError, ApplicationError) as e:
            last_problem = str(e)
        else:
            if is_healthy(payload, require_broker):
                logger.info("%s is healthy (attempt %d)", service_id, attempt)
                return unwrap_tool_result(payload)
            last_problem = f"unhealthy answer {unwrap_tool_result(payload)!r}"

        logger.debug("%s health attempt %d/%d: %s", service_id, attempt,
                     config.health_retry_attempts, last_problem)
        if attempt < config.health_retry_attempts:
            await asyncio.sleep(config.health_retry_delay_s)

    raise ReadinessTimeoutError(
        f"{service_id} never reported healthy after {config.health_retry_attempts} "
        f"attempts: {last_problem}",
        service_id=service_id,
        elapsed=time.monotonic() - started,
    )
