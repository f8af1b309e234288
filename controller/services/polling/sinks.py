"""
Sink Interfaces

Boundaries to the history store and to the error/observability sink.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from common.exceptions import (
    AddressDecodeError,
    ConfigError,
    ConfigurationRace,
    DeviceUnreachable,
    InvalidValue,
    NotWritable,
    PointNotFound,
    RequestRejected,
    WriteRejected,
)
from common.logging_setup import get_service_logger

logger = get_service_logger("polling.errors")

# Most specific class first
_ERROR_KINDS = [
    (DeviceUnreachable, "device_unreachable"),
    (WriteRejected, "write_rejected"),
    (RequestRejected, "request_rejected"),
    (NotWritable, "not_writable"),
    (InvalidValue, "invalid_value"),
    (AddressDecodeError, "address_decode"),
    (PointNotFound, "point_not_found"),
    (ConfigurationRace, "configuration_race"),
    (ConfigError, "config_error"),
]


def error_kind(error: BaseException) -> str:
    """Map an exception onto the error-event taxonomy"""
    for cls, kind in _ERROR_KINDS:
        if isinstance(error, cls):
            return kind
    return "internal_error"


class HistorySink(Protocol):
    """Time-series store that receives samples"""

    async def append(
        self,
        point_id: str,
        timestamp: datetime,
        raw_value: int | float,
        engineering_value: int | float,
    ) -> None:
        """Persist one sample; raise on failure"""
        ...


@dataclass(frozen=True)
class ErrorEvent:
    """Structured failure event"""
    error_kind: str
    message: str
    point_id: str | None = None
    device_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "error_kind": self.error_kind,
            "message": self.message,
            "point_id": self.point_id,
            "device_id": self.device_id,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorSink(Protocol):
    """Receives structured failure events"""

    async def report(self, event: ErrorEvent) -> None:
        ...


class LoggingErrorSink:
    """
    Error sink that logs every event and keeps the most recent ones.

    The recent-events buffer backs the /errors health endpoint.
    """

    def __init__(self, max_recent: int = 200):
        self._recent: deque[ErrorEvent] = deque(maxlen=max_recent)
        self._counts: dict[str, int] = {}

    async def report(self, event: ErrorEvent) -> None:
        self._recent.append(event)
        self._counts[event.error_kind] = self._counts.get(event.error_kind, 0) + 1
        logger.warning(
            f"{event.error_kind}: {event.message}",
            extra={
                "error_kind": event.error_kind,
                "point_id": event.point_id,
                "device_id": event.device_id,
            },
        )

    def recent(self, limit: int | None = None) -> list[ErrorEvent]:
        events = list(self._recent)
        if limit is not None:
            events = events[-limit:]
        return events

    def get_stats(self) -> dict:
        return {"recent": len(self._recent), "by_kind": dict(self._counts)}
