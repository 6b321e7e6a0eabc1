"""
orch.logs - Live log collection and offline correlation
"""

from .collector import CollectorHandler, LogCollector, LogEntry, create_run_dir, strip_ansi
from .correlator import CorrelationReport, format_report, search_logs

__all__ = [
    'CollectorHandler',
    'LogCollector',
    'LogEntry',
    'create_run_dir',
    'strip_ansi',
    'CorrelationReport',
    'format_report',
    'search_logs',
]
