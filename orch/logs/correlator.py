"""
correlator.py - Offline log search and time correlation

Re-scans the per-source log files written by LogCollector (or any other
text logs) for substring queries, puts every match on one timeline and
groups matches into fixed-width windows so that lines from different
sources that happened together can be inspected together.

Timestamps understood:
- [HH:MM:SS.mmm] collector prefix (dated by the file's modification day)
- ISO-8601 anywhere in the line (2025-01-31T12:00:00.123Z, with or without zone)

Lines without a timestamp get a synthetic one: just after the previous
line of the same file, so file order is preserved.
"""

import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

COLLECTOR_TS = re.compile(r"^\[(\d{2}):(\d{2}):(\d{2})\.(\d{3})\]")
ISO_TS = re.compile(
    r"(\d{4}-\d{2}-\d{2})[T ](\d{2}:\d{2}:\d{2}(?:\.\d{1,6})?)(Z|[+-]\d{2}:?\d{2})?"
)
FALLBACK_STEP = timedelta(microseconds=1)
FALLBACK_EPOCH = datetime(1970, 1, 1)


@dataclass
class LogMatch:
    source: str
    line_number: int
    line: str
    timestamp: datetime
    queries: Tuple[str, ...]
    synthetic_time: bool = False


@dataclass
class CorrelationWindow:
    start: datetime
    end: datetime
    matches: List[LogMatch] = field(default_factory=list)

    @property
    def sources(self) -> List[str]:
        return sorted({m.source for m in self.matches})


@dataclass
class CorrelationReport:
    queries: Tuple[str, ...]
    window_seconds: float
    files_scanned: int
    matches: List[LogMatch]
    windows: List[CorrelationWindow]
    per_source: Dict[str, int]
    per_query: Dict[str, int]

    @property
    def timespan(self) -> Optional[Tuple[datetime, datetime]]:
        if not self.matches:
            return None
        return self.matches[0].timestamp, self.matches[-1].timestamp


def source_name(path: Path, root: Path) -> str:
    """Source id for a log file: its path below root without the .log suffix."""
    try:
        rel = path.relative_to(root)
    except ValueError:
        rel = Path(path.name)
    name = rel.as_posix()
    return name[:-4] if name.endswith(".log") else name


def parse_timestamp(line: str, day: date) -> Optional[datetime]:
    """Timestamp of a log line, or None if it carries none."""
    m = COLLECTOR_TS.match(line)
    if m:
        hh, mm, ss, ms = (int(g) for g in m.groups())
        if hh < 24 and mm < 60 and ss < 60:
            return datetime(day.year, day.month, day.day, hh, mm, ss, ms * 1000)

    m = ISO_TS.search(line)
    if m:
        day_part, time_part, zone = m.groups()
        text = f"{day_part}T{time_part}"
        if zone:
            text += "+00:00" if zone == "Z" else zone
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            return None
        if ts.tzinfo is not None:
            # Compare everything as naive local time
            ts = ts.astimezone().replace(tzinfo=None)
        return ts

    return None


def _iter_log_files(logs_dir: Path) -> List[Path]:
    if logs_dir.is_file():
        return [logs_dir]
    return sorted(p for p in logs_dir.rglob("*.log") if p.is_file())


def scan_file(path: Path, queries: Sequence[str], root: Path,
              fallback_start: datetime = FALLBACK_EPOCH) -> List[LogMatch]:
    """Matches of any query in one file (case-insensitive substring)."""
    day = datetime.fromtimestamp(path.stat().st_mtime).date()
    folded = [(q, q.lower()) for q in queries]
    source = source_name(path, root)

    matches = []
    last_ts = fallback_start
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for number, raw in enumerate(f, start=1):
            line = raw.rstrip("\r\n")
            ts = parse_timestamp(line, day)
            synthetic = ts is None
            if synthetic:
                ts = last_ts + FALLBACK_STEP
            last_ts = ts

            lowered = line.lower()
            hits = tuple(q for q, low in folded if low in lowered)
            if hits:
                matches.append(LogMatch(
                    source=source,
                    line_number=number,
                    line=line,
                    timestamp=ts,
                    queries=hits,
                    synthetic_time=synthetic,
                ))
    return matches


def group_windows(matches: Iterable[LogMatch], window_seconds: float) -> List[CorrelationWindow]:
    """
    Group time-sorted matches into fixed-width windows.

    A window starts at its first match and covers [start, start + width);
    the first match outside it opens the next window.
    """
    width = timedelta(seconds=window_seconds)
    windows: List[CorrelationWindow] = []
    for match in matches:
        if not windows or match.timestamp >= windows[-1].start + width:
            windows.append(CorrelationWindow(start=match.timestamp, end=match.timestamp))
        current = windows[-1]
        current.matches.append(match)
        current.end = match.timestamp
    return windows


def search_logs(logs_dir: Union[str, Path], queries: Sequence[str],
                window_seconds: float = 5.0) -> CorrelationReport:
    """
    Search every log under logs_dir and correlate matches in time.

    Args:
        logs_dir: Directory (searched recursively) or single log file
        queries: Substrings to look for (case-insensitive)
        window_seconds: Correlation window width

    Raises:
        FileNotFoundError: If logs_dir doesn't exist
        ValueError: If no queries are given or the window is not positive
    """
    logs_dir = Path(logs_dir)
    if not logs_dir.exists():
        raise FileNotFoundError(f"Logs directory not found: {logs_dir}")
    queries = tuple(q for q in queries if q)
    if not queries:
        raise ValueError("At least one non-empty query is required")
    if window_seconds <= 0:
        raise ValueError(f"window_seconds must be positive, got {window_seconds}")

    root = logs_dir if logs_dir.is_dir() else logs_dir.parent
    files = _iter_log_files(logs_dir)

    matches: List[LogMatch] = []
    for path in files:
        matches.extend(scan_file(path, queries, root))

    # Stable sort keeps per-file order for equal timestamps
    matches.sort(key=lambda m: m.timestamp)

    per_source = Counter(m.source for m in matches)
    per_query = Counter({q: 0 for q in queries})
    for m in matches:
        per_query.update(m.queries)

    return CorrelationReport(
        queries=queries,
        window_seconds=window_seconds,
        files_scanned=len(files),
        matches=matches,
        windows=group_windows(matches, window_seconds),
        per_source=dict(per_source),
        per_query=dict(per_query),
    )


def format_report(report: CorrelationReport, max_line_length: int = 160) -> str:
    """Human-readable rendering of a correlation report."""
    out = []
    out.append(f"Searched {report.files_scanned} log file(s) for: "
               + ", ".join(repr(q) for q in report.queries))
    out.append(f"Matches: {len(report.matches)} in {len(report.windows)} "
               f"window(s) of {report.window_seconds:g}s")

    span = report.timespan
    if span is None:
        out.append("No matches found.")
        return "\n".join(out)

    start, end = span
    out.append(f"Timespan: {start.isoformat(sep=' ', timespec='milliseconds')} -> "
               f"{end.isoformat(sep=' ', timespec='milliseconds')} "
               f"({(end - start).total_seconds():.3f}s)")
    out.append("")

    out.append("Per source:")
    for source, count in sorted(report.per_source.items()):
        out.append(f"  {source}: {count}")
    out.append("Per query:")
    for query in report.queries:
        out.append(f"  {query!r}: {report.per_query.get(query, 0)}")

    for i, window in enumerate(report.windows, start=1):
        out.append("")
        out.append(f"--- Window {i}: {window.start.strftime('%H:%M:%S.%f')[:-3]} "
                   f"({len(window.matches)} match(es), sources: {', '.join(window.sources)})")
        for m in window.matches:
            line = m.line if len(m.line) <= max_line_length else m.line[:max_line_length - 3] + "..."
            marker = "~" if m.synthetic_time else " "
            out.append(f" {marker}[{m.source}:{m.line_number}] {line}")

    return "\n".join(out)
