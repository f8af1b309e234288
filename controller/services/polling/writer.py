"""
Write Dispatcher

Validates and executes one-shot writes to output points, then records
the commanded value in history.
"""

import math
from datetime import datetime, timezone
from typing import Callable

from common.config import Direction, PointKind
from common.exceptions import (
    DeviceError,
    InvalidValue,
    NotWritable,
    PointNotFound,
    describe_error,
)
from common.logging_setup import get_service_logger, log_device_write
from services.device.registry import DeviceSessionRegistry
from .points import PollPoint, Sample
from .sinks import ErrorEvent, ErrorSink, HistorySink, error_kind

logger = get_service_logger("polling.writer")

_TRUE_STRINGS = {"1", "true", "on"}
_FALSE_STRINGS = {"0", "false", "off"}


def coerce_digital(point_id: str, value: object) -> bool:
    """Coerce a commanded value to a coil state"""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise InvalidValue(point_id, value, "expected a boolean")


def coerce_analog(point_id: str, value: object) -> int:
    """Coerce a commanded value to a uint16 register value"""
    if isinstance(value, bool):
        raise InvalidValue(point_id, value, "expected a number, got a boolean")

    if isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            raise InvalidValue(point_id, value, "expected a number")
    elif isinstance(value, (int, float)):
        number = float(value)
    else:
        raise InvalidValue(point_id, value, "expected a number")

    if not math.isfinite(number) or not number.is_integer():
        raise InvalidValue(point_id, value, "register values must be whole numbers")
    if not 0 <= number <= 0xFFFF:
        raise InvalidValue(point_id, value, "outside register range 0-65535")
    return int(number)


class WriteDispatcher:
    """
    Executes validated writes against device sessions.

    Exactly one write is issued per call. History only records a write
    that the device accepted.
    """

    def __init__(
        self,
        registry: DeviceSessionRegistry,
        history: HistorySink,
        errors: ErrorSink,
        point_lookup: Callable[[str], PollPoint | None],
    ):
        self._registry = registry
        self._history = history
        self._errors = errors
        self._point_lookup = point_lookup

        self._write_count = 0
        self._failure_count = 0

    async def write(self, point_id: str, value: object) -> Sample:
        """
        Write a value to an output point.

        Args:
            point_id: Target point id
            value: Commanded value (bool-like for digital, number for analog)

        Returns:
            The recorded Sample

        Raises:
            PointNotFound: Point is not configured
            NotWritable: Point is not an output
            InvalidValue: Value does not fit the point's kind
            DeviceUnreachable / WriteRejected: The write did not happen
        """
        point = self._point_lookup(point_id)
        if point is None:
            raise PointNotFound(point_id)

        if point.direction != Direction.OUTPUT or not point.writable:
            raise NotWritable(point_id, point.direction.value)

        if point.kind == PointKind.DIGITAL:
            state = coerce_digital(point_id, value)
            raw: int | float = 1 if state else 0
            engineering: int | float = raw
        else:
            raw = coerce_analog(point_id, value)
            engineering = value if isinstance(value, (int, float)) else raw

        session = await self._registry.get_session(point.device)
        try:
            if point.kind == PointKind.DIGITAL:
                await session.write_bit(point.address.index, bool(raw))
            else:
                await session.write_register(point.address.index, raw)
        except DeviceError as e:
            self._failure_count += 1
            log_device_write(logger.logger, point.device.name, point.id, value, success=False)
            await self._publish(ErrorEvent(
                error_kind=error_kind(e),
                message=describe_error(e),
                point_id=point.id,
                device_id=point.device.id,
            ))
            raise

        self._write_count += 1
        log_device_write(logger.logger, point.device.name, point.id, value, success=True)

        sample = Sample(
            point_id=point.id,
            timestamp=datetime.now(timezone.utc),
            raw_value=raw,
            engineering_value=engineering,
        )

        try:
            await self._history.append(
                sample.point_id,
                sample.timestamp,
                sample.raw_value,
                sample.engineering_value,
            )
        except Exception as e:
            # The device took the write; only the record is missing
            await self._publish(ErrorEvent(
                error_kind="history_append",
                message=f"History append failed for write to {point.id}: {describe_error(e)}",
                point_id=point.id,
                device_id=point.device.id,
            ))

        return sample

    async def _publish(self, event: ErrorEvent) -> None:
        try:
            await self._errors.report(event)
        except Exception as e:
            logger.error(f"Error sink failed: {e}")

    def get_stats(self) -> dict:
        return {"writes": self._write_count, "failures": self._failure_count}
