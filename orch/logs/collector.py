"""
collector.py - Live log collection

Every supervised process's stdout/stderr lines and the orchestrator's own
events end up here:
- a bounded in-memory ring per source (for UIs and failure reports)
- one append-only file per source under the run directory

Line format on disk:
    [HH:MM:SS.mmm] <message>
    [HH:MM:SS.mmm] [STDERR] <message>

ANSI escape sequences are stripped on the raw bytes before persisting, so
anything that is not an escape sequence is written exactly as received.
"""

import logging
import re
import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

ANSI_ESCAPE = re.compile(rb"\x1b\[[0-9;?]*[A-Za-z]")
ORCHESTRATOR_SOURCE = "orchestrator"
DEFAULT_MAX_LINES = 1000


def strip_ansi(data: bytes) -> bytes:
    """Remove ANSI CSI sequences (colors, cursor movement) from raw bytes."""
    return ANSI_ESCAPE.sub(b"", data)


def format_timestamp(ts: datetime) -> str:
    return ts.strftime("%H:%M:%S.") + f"{ts.microsecond // 1000:03d}"


def safe_source_name(source: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]", "_", source) or "unnamed"


def create_run_dir(logs_dir: Union[str, Path], scenario_name: str) -> Path:
    """Create logs/<scenario>_<YYYYmmdd_HHMMSS>[_n]/ and return it."""
    logs_dir = Path(logs_dir)
    stamp = time.strftime("%Y%m%d_%H%M%S")
    base = f"{safe_source_name(scenario_name)}_{stamp}"

    run_dir = logs_dir / base
    suffix = 1
    while run_dir.exists():
        run_dir = logs_dir / f"{base}_{suffix}"
        suffix += 1

    run_dir.mkdir(parents=True)
    return run_dir


@dataclass
class LogEntry:
    """One collected line."""
    source: str
    timestamp: datetime
    message: str
    stream: str = "stdout"  # "stdout", "stderr" or "event"

    def format(self) -> str:
        prefix = "[STDERR] " if self.stream == "stderr" else ""
        return f"[{format_timestamp(self.timestamp)}] {prefix}{self.message}"


LogListener = Callable[[LogEntry], None]


class LogCollector:
    """
    Multiplexes process output and engine events into per-source logs.

    Usage:
        collector = LogCollector(run_dir)
        collector.append("alice", b"\\x1b[32mready\\x1b[0m\\n")
        collector.lines("alice")  # ['ready']
        collector.close()

    Appends may come from reader tasks on the event loop and from library
    threads (broker callbacks), so file and ring updates are lock-guarded.
    """

    def __init__(self, run_dir: Optional[Union[str, Path]] = None,
                 max_lines: int = DEFAULT_MAX_LINES):
        self.run_dir = Path(run_dir) if run_dir is not None else None
        self.max_lines = max_lines
        self._rings: Dict[str, Deque[LogEntry]] = {}
        self._files: Dict[str, object] = {}
        self._listeners: List[LogListener] = []
        self._lock = threading.RLock()
        self._closed = False

        if self.run_dir is not None:
            self.run_dir.mkdir(parents=True, exist_ok=True)

    # -- sources ----------------------------------------------------------

    def register_source(self, source: str) -> None:
        with self._lock:
            if source not in self._rings:
                self._rings[source] = deque(maxlen=self.max_lines)

    def sources(self) -> List[str]:
        with self._lock:
            return list(self._rings)

    def path_for(self, source: str) -> Optional[Path]:
        if self.run_dir is None:
            return None
        return self.run_dir / f"{safe_source_name(source)}.log"

    def add_listener(self, listener: LogListener) -> None:
        self._listeners.append(listener)

    # -- writing ----------------------------------------------------------

    def append(self, source: str, data: Union[bytes, str], stream: str = "stdout") -> List[LogEntry]:
        """
        Record one chunk of output for `source`.

        A chunk containing several newline-separated lines is split; each
        line becomes one entry with the same timestamp.

        Returns:
            The entries created (empty if the collector is closed)
        """
        if isinstance(data, str):
            data = data.encode("utf-8", errors="surrogateescape")

        clean = strip_ansi(data)
        raw_lines = clean.splitlines() or [b""]
        now = datetime.now()
        entries = []

        with self._lock:
            if self._closed:
                return []
            self.register_source(source)
            ring = self._rings[source]
            handle = self._file_for(source)

            for raw in raw_lines:
                entry = LogEntry(
                    source=source,
                    timestamp=now,
                    message=raw.decode("utf-8", errors="replace"),
                    stream=stream,
                )
                ring.append(entry)
                entries.append(entry)

                if handle is not None:
                    prefix = f"[{format_timestamp(now)}] "
                    if stream == "stderr":
                        prefix += "[STDERR] "
                    handle.write(prefix.encode("ascii") + raw + b"\n")

            if handle is not None:
                handle.flush()

        for entry in entries:
            self._notify(entry)
        return entries

    def event(self, message: str, source: str = ORCHESTRATOR_SOURCE) -> None:
        """Record an engine event."""
        self.append(source, message, stream="event")

    def _file_for(self, source: str):
        if self.run_dir is None:
            return None
        handle = self._files.get(source)
        if handle is None:
            handle = open(self.path_for(source), "ab")
            self._files[source] = handle
        return handle

    def _notify(self, entry: LogEntry) -> None:
        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception:
                logger.exception("Log listener failed on %s line", entry.source)

    # -- reading ----------------------------------------------------------

    def entries(self, source: str) -> List[LogEntry]:
        with self._lock:
            return list(self._rings.get(source, ()))

    def lines(self, source: str) -> List[str]:
        return [e.message for e in self.entries(source)]

    def tail(self, source: str, n: int = 20) -> List[str]:
        return self.lines(source)[-n:]

    # -- lifecycle --------------------------------------------------------

    def flush(self) -> None:
        with self._lock:
            for handle in self._files.values():
                handle.flush()

    def close(self) -> None:
        """Flush and close every file. Later appends are dropped."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for handle in self._files.values():
                handle.flush()
                handle.close()
            self._files.clear()


class CollectorHandler(logging.Handler):
    """Routes orchestrator `logging` records into the collector."""

    def __init__(self, collector: LogCollector, source: str = ORCHESTRATOR_SOURCE,
                 level: int = logging.INFO):
        super().__init__(level=level)
        self.collector = collector
        self.source = source
        self._local = threading.local()
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        # Listener failures log through here again; don't recurse
        if getattr(self._local, "busy", False):
            return
        self._local.busy = True
        try:
            self.collector.event(self.format(record), source=self.source)
        except Exception:
            self.handleError(record)
        finally:
            self._local.busy = False
