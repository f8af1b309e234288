"""
Polling Service

Per-point timed reads, on-demand reads and validated writes.
"""

from .points import PollPoint, Sample, build_poll_point, build_poll_points
from .sinks import ErrorEvent, ErrorSink, HistorySink, LoggingErrorSink, error_kind
from .history_db import SqliteHistorySink
from .scheduler import PollingScheduler, ReconfigureResult
from .writer import WriteDispatcher, coerce_analog, coerce_digital

__all__ = [
    "PollPoint",
    "Sample",
    "build_poll_point",
    "build_poll_points",
    "ErrorEvent",
    "ErrorSink",
    "HistorySink",
    "LoggingErrorSink",
    "error_kind",
    "SqliteHistorySink",
    "PollingScheduler",
    "ReconfigureResult",
    "WriteDispatcher",
    "coerce_analog",
    "coerce_digital",
]
