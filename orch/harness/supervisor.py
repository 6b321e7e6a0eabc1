"""
supervisor.py - Process Supervisor

Spawns and stops the OS processes of a run (broker, observer, clients,
background commands) on the asyncio event loop.

For each process:
- stdout and stderr are read line by line on their own tasks and fed to
  the LogCollector under the process's service id
- an exit watcher notifies observers once, after both streams hit EOF
- shutdown is SIGTERM, a grace window, then SIGKILL; a process that
  survives even that is abandoned with a warning, never waited on forever
"""

import asyncio
import logging
import os
import signal
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from orch.logs.collector import LogCollector

logger = logging.getLogger(__name__)

STREAM_LIMIT = 1024 * 1024  # longest line read in one piece

ExitCallback = Callable[["ManagedProcess", int], None]


def format_command(template: Sequence[str], **values) -> List[str]:
    """Substitute {port}/{host}/... placeholders in a command template."""
    return [part.format(**values) if "{" in part else part for part in template]


class ManagedProcess:
    """
    One supervised OS process.

    Usage:
        proc = ManagedProcess("broker", ["mosquitto", "-p", "1883"], collector=collector)
        await proc.start()
        proc.poll()            # None while running
        await proc.terminate(grace=3.0)

    Thread safety: event-loop only.
    """

    def __init__(
        self,
        service_id: str,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        collector: Optional[LogCollector] = None,
    ):
        if not argv:
            raise ValueError(f"{service_id}: empty command")
        self.service_id = service_id
        self.argv = list(argv)
        self.cwd = cwd
        self.env = dict(env) if env else {}
        self.collector = collector

        self.process: Optional[asyncio.subprocess.Process] = None
        self.started_at: Optional[float] = None
        self.stopping = False  # set once we asked it to stop

        self._readers: List[asyncio.Task] = []
        self._watcher: Optional[asyncio.Task] = None
        self._exit_callbacks: List[ExitCallback] = []
        self._exited = asyncio.Event()
        self._stderr_tail: List[str] = []

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """
        Spawn the process and its reader/watcher tasks.

        Raises:
            OSError: If the executable can't be started (missing binary, bad cwd)
        """
        if self.process is not None:
            raise RuntimeError(f"{self.service_id}: already started")

        env = dict(os.environ)
        env.update(self.env)

        logger.info("Starting %s: %s", self.service_id, " ".join(self.argv))
        self.process = await asyncio.create_subprocess_exec(
            *self.argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self.cwd,
            env=env,
            limit=STREAM_LIMIT,
            # Own process group: terminal Ctrl+C reaches us, not the children
            start_new_session=True,
        )
        self.started_at = time.monotonic()

        self._readers = [
            asyncio.create_task(self._read_stream(self.process.stdout, "stdout"),
                                name=f"{self.service_id}-stdout"),
            asyncio.create_task(self._read_stream(self.process.stderr, "stderr"),
                                name=f"{self.service_id}-stderr"),
        ]
        self._watcher = asyncio.create_task(self._watch_exit(), name=f"{self.service_id}-exit")

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    def poll(self) -> Optional[int]:
        """Exit status if the process has exited, else None. Never blocks."""
        if self.process is None:
            return None
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def wait(self) -> int:
        """Wait for exit (and for its output to be fully collected)."""
        if self.process is None:
            raise RuntimeError(f"{self.service_id}: not started")
        await self._exited.wait()
        return self.process.returncode

    async def terminate(self, grace: float = 3.0) -> Optional[int]:
        """
        Graceful stop: SIGTERM, wait `grace`, then SIGKILL.

        Returns:
            Exit status, or None if the process could not be reaped
        """
        if self.process is None:
            return None
        self.stopping = True

        if self.process.returncode is None:
            logger.debug("Terminating %s (pid %s)", self.service_id, self.pid)
            self._signal(signal.SIGTERM)
            try:
                await asyncio.wait_for(self.process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("%s didn't terminate within %.1fs, killing...",
                               self.service_id, grace)
                self._signal(signal.SIGKILL)
                try:
                    await asyncio.wait_for(self.process.wait(), timeout=grace)
                except asyncio.TimeoutError:
                    logger.warning("%s (pid %s) refused to die, abandoning it",
                                   self.service_id, self.pid)
                    return None

        # Readers finish on EOF; bound the wait in case a grandchild holds the pipe
        try:
            await asyncio.wait_for(asyncio.shield(self._exited.wait()), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("%s output still open after exit, dropping readers", self.service_id)
            for task in self._readers:
                task.cancel()
        return self.process.returncode

    def kill(self) -> None:
        """SIGKILL without waiting (forced exit path)."""
        if self.running:
            self._signal(signal.SIGKILL)

    def _signal(self, sig: int) -> None:
        # Signal the whole process group so `cargo run` children go too
        try:
            os.killpg(self.process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(sig)

    # -- observers --------------------------------------------------------

    def add_exit_callback(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    def stderr_tail(self, n: int = 20) -> List[str]:
        return self._stderr_tail[-n:]

    # -- tasks ------------------------------------------------------------

    @staticmethod
    async def _read_line(stream: asyncio.StreamReader) -> bytes:
        """Next line including its newline; lines over STREAM_LIMIT are read in pieces."""
        parts = []
        while True:
            try:
                parts.append(await stream.readuntil(b"\n"))
                break
            except asyncio.IncompleteReadError as e:
                # EOF: whatever came after the last newline
                parts.append(e.partial)
                break
            except asyncio.LimitOverrunError as e:
                # The data stays buffered; take the part before the limit and go on
                parts.append(await stream.read(max(e.consumed, 1)))
        return b"".join(parts)

    async def _read_stream(self, stream: asyncio.StreamReader, name: str) -> None:
        while True:
            line = await self._read_line(stream)
            if not line:
                break

            if name == "stderr":
                self._stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())
                del self._stderr_tail[:-50]
            if self.collector is not None:
                self.collector.append(self.service_id, line, stream=name)

        logger.debug("%s reader for %s finished", name, self.service_id)

    async def _watch_exit(self) -> None:
        code = await self.process.wait()
        await asyncio.gather(*self._readers, return_exceptions=True)
        self._exited.set()

        elapsed = time.monotonic() - (self.started_at or time.monotonic())
        level = logging.INFO if (code == 0 or self.stopping) else logging.WARNING
        logger.log(level, "%s exited with status %s after %.1fs", self.service_id, code, elapsed)

        for callback in list(self._exit_callbacks):
            try:
                callback(self, code)
            except Exception:
                logger.exception("Exit callback for %s failed", self.service_id)


class ProcessSupervisor:
    """Registry of the processes of one run, stopped together at teardown."""

    def __init__(self, collector: Optional[LogCollector] = None):
        self.collector = collector
        self.processes: Dict[str, ManagedProcess] = {}

    async def spawn(
        self,
        service_id: str,
        argv: Sequence[str],
        cwd: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> ManagedProcess:
        if service_id in self.processes and self.processes[service_id].running:
            raise RuntimeError(f"{service_id} is already running")

        proc = ManagedProcess(service_id, argv, cwd=cwd, env=env, collector=self.collector)
        await proc.start()
        self.processes[service_id] = proc
        return proc

    def get(self, service_id: str) -> Optional[ManagedProcess]:
        return self.processes.get(service_id)

    async def stop_all(self, grace: float = 3.0) -> List[str]:
        """
        Terminate every process concurrently.

        Returns:
            Service ids that could not be reaped
        """
        procs = list(self.processes.values())
        results = await asyncio.gather(
            *(p.terminate(grace) for p in procs), return_exceptions=True
        )

        abandoned = []
        for proc, result in zip(procs, results):
            if isinstance(result, BaseException):
                logger.warning("Stopping %s failed: %s", proc.service_id, result)
                abandoned.append(proc.service_id)
            elif result is None and proc.poll() is None:
                abandoned.append(proc.service_id)
        return abandoned
