"""
control_channel.py - JSON-RPC control channel to instrumented clients

Line-delimited JSON-RPC 2.0 over TCP: one request object per line, one
response object per line.

    -> {"jsonrpc": "2.0", "id": 1, "method": "tools/call",
        "params": {"name": "create_world", "arguments": {...}}}
    <- {"jsonrpc": "2.0", "id": 1, "result": {...}}

Errors:
- TransportError: connect failure, reset, EOF, timeout, malformed frame
- ApplicationError: response has "error", or a result flagged is_error/isError
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from orch.config.settings import RunConfig
from orch.errors import ApplicationError, TransportError

logger = logging.getLogger(__name__)

MAX_FRAME = 16 * 1024 * 1024
DEFAULT_RESULT = {"status": "success"}


class ControlChannel:
    """
    One persistent connection to a client's control port.

    Requests on one connection are serialized by a lock, so concurrent
    callers (a Parallel step, the health loop) never interleave frames.

    Usage:
        channel = ControlChannel("alice", "localhost", 3001)
        await channel.connect()
        result = await channel.call_tool("create_world", {"world_name": "demo"})
        await channel.close()
    """

    def __init__(self, client_id: str, host: str, port: int,
                 config: Optional[RunConfig] = None):
        self.client_id = client_id
        self.host = host
        self.port = port
        self.config = config or RunConfig()

        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()
        self._next_id = 1

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    async def connect(self, timeout: float = 5.0) -> None:
        """
        Raises:
            TransportError: If the port can't be reached within timeout
        """
        try:
            self._reader, self._writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port, limit=MAX_FRAME),
                timeout=timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(
                f"Cannot connect to {self.host}:{self.port}: {e or 'timed out'}",
                service_id=self.client_id,
            )
        logger.debug("Control channel to %s connected (%s:%s)",
                     self.client_id, self.host, self.port)

    async def close(self) -> None:
        if self._writer is None:
            return
        writer, self._writer, self._reader = self._writer, None, None
        writer.close()
        try:
            await writer.wait_closed()
        except (OSError, ConnectionError) as e:
            logger.debug("Closing channel to %s: %s", self.client_id, e)

    async def call(self, method: str, params: Any = None,
                   timeout: Optional[float] = None) -> Any:
        """
        Send one request and return its `result`.

        Raises:
            TransportError: On any connection-level failure
            ApplicationError: If the peer reports an error
        """
        if timeout is None:
            timeout = self.config.short_call_timeout_s

        async with self._lock:
            if not self.connected:
                raise TransportError("Not connected", service_id=self.client_id)

            request_id = self._next_id
            self._next_id += 1
            request = {"jsonrpc": "2.0", "id": request_id, "method": method}
            if params is not None:
                request["params"] = params

            try:
                response = await asyncio.wait_for(
                    self._exchange(request_id, request), timeout=timeout
                )
            except asyncio.TimeoutError:
                # Stream position is unknown now; the connection can't be reused
                await self.close()
                raise TransportError(
                    f"No response to '{method}' within {timeout:g}s",
                    service_id=self.client_id,
                )
            except (OSError, ConnectionError) as e:
                await self.close()
                raise TransportError(f"'{method}' failed: {e}", service_id=self.client_id)

        return self._result_of(method, response)

    async def call_tool(self, tool: str, arguments: Any = None,
                        timeout: Optional[float] = None) -> Any:
        """tools/call with the timeout class of `tool`."""
        if timeout is None:
            timeout = self.config.call_timeout(tool)
        params = {"name": tool, "arguments": arguments if arguments is not None else {}}
        return await self.call("tools/call", params, timeout=timeout)

    async def probe(self, tool: str = "health_check", arguments: Any = None,
                    timeout: Optional[float] = None) -> Any:
        """
        Out-of-band call on a fresh short-lived connection.

        Used by readiness and liveness checks so they never queue behind a
        long-running step on the primary connection.
        """
        if timeout is None:
            timeout = self.config.probe_timeout_s
        side = ControlChannel(self.client_id, self.host, self.port, self.config)
        await side.connect(timeout=timeout)
        try:
            return await side.call_tool(tool, arguments, timeout=timeout)
        finally:
            await side.close()

    # -- framing ----------------------------------------------------------

    async def _exchange(self, request_id: int, request: Dict[str, Any]) -> Dict[str, Any]:
        self._writer.write((json.dumps(request) + "\n").encode("utf-8"))
        await self._writer.drain()

        while True:
            try:
                line = await self._reader.readline()
            except ValueError:
                await self.close()
                raise TransportError("Response frame too large", service_id=self.client_id)
            if not line:
                await self.close()
                raise TransportError("Connection closed by peer", service_id=self.client_id)
            if not line.strip():
                continue

            try:
                response = json.loads(line)
            except json.JSONDecodeError as e:
                await self.close()
                raise TransportError(f"Malformed response: {e}", service_id=self.client_id)
            if not isinstance(response, dict):
                await self.close()
                raise TransportError(f"Malformed response: {line[:200]!r}",
                                     service_id=self.client_id)

            if response.get("id") != request_id:
                # Notification or a late answer to a timed-out request
                logger.debug("%s: skipping frame with id %r", self.client_id, response.get("id"))
                continue
            return response

    def _result_of(self, method: str, response: Dict[str, Any]) -> Any:
        error = response.get("error")
        if error is not None:
            message = error.get("message", error) if isinstance(error, dict) else error
            raise ApplicationError(f"'{method}' error: {message}", payload=error,
                                   service_id=self.client_id)

        result = response.get("result")
        if result is None:
            return dict(DEFAULT_RESULT)
        if isinstance(result, dict) and (result.get("is_error") or result.get("isError")):
            raise ApplicationError(f"'{method}' returned an error result: {_brief(result)}",
                                   payload=result, service_id=self.client_id)
        return result


def _brief(result: Dict[str, Any]) -> str:
    content = result.get("content")
    if isinstance(content, list) and content and isinstance(content[0], dict):
        text = content[0].get("text")
        if text:
            return str(text)[:200]
    return json.dumps(result)[:200]
