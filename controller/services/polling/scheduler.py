"""
Polling Scheduler

Keeps exactly one independently timed loop per configured point.

Each tick reads the point through its device session, scales the raw
value and appends the sample to history. Failures are contained to the
tick that hit them: they are reported to the error sink and the timer
keeps running.

reconfigure() applies a configuration snapshot as a diff:
- ids no longer present are stopped
- new ids are started
- a changed frequency restarts that point's timer
- any other change swaps the point definition in place
- identical points are left alone
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone

from common.config import PointKind
from common.exceptions import (
    ConfigurationRace,
    DeviceError,
    PointNotFound,
    SupervisionError,
    describe_error,
)
from common.logging_setup import get_service_logger, log_device_read
from common.scaling import scale_value
from common.scheduler import ScheduledLoop
from services.device.registry import DeviceSessionRegistry
from .points import PollPoint, Sample
from .sinks import ErrorEvent, ErrorSink, HistorySink, error_kind

logger = get_service_logger("polling.scheduler")

# How long stop() waits for in-flight ticks
STOP_TIMEOUT_S = 5.0


@dataclass
class _PointTimer:
    """Timer state for one point"""
    point: PollPoint
    tick_lock: asyncio.Lock
    loop: ScheduledLoop | None = None
    active: bool = True    # loop still scheduled
    removed: bool = False  # point no longer configured


@dataclass
class ReconfigureResult:
    """What a reconfigure() call changed"""
    started: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.started or self.stopped or self.restarted or self.updated)


class PollingScheduler:
    """
    Per-point polling scheduler.

    Ticks of one point never overlap: ScheduledLoop awaits each tick
    inline, and a per-point lock survives timer restarts so the first
    tick of a restarted timer queues behind the old in-flight one.

    Points sharing a device tick concurrently; the device session
    serializes their requests.
    """

    def __init__(
        self,
        registry: DeviceSessionRegistry,
        history: HistorySink,
        errors: ErrorSink,
    ):
        self._registry = registry
        self._history = history
        self._errors = errors

        self._timers: dict[str, _PointTimer] = {}
        self._latest: dict[str, Sample] = {}
        self._reconfigure_lock = asyncio.Lock()
        self._generation = 0

        # Observability counters
        self._sample_count = 0
        self._read_failures = 0
        self._history_failures = 0
        self._discarded_count = 0

    @property
    def active_point_ids(self) -> set[str]:
        return set(self._timers)

    @property
    def generation(self) -> int:
        """Number of reconfigurations applied"""
        return self._generation

    def get_point(self, point_id: str) -> PollPoint | None:
        timer = self._timers.get(point_id)
        return timer.point if timer else None

    def points(self) -> list[PollPoint]:
        return [timer.point for timer in self._timers.values()]

    def latest(self) -> dict[str, Sample]:
        """Most recent sample per active point"""
        return dict(self._latest)

    async def reconfigure(self, points: list[PollPoint]) -> ReconfigureResult:
        """
        Replace the active point set.

        Duplicate ids within one snapshot resolve last-writer-wins and
        are reported as a configuration race.
        """
        desired: dict[str, PollPoint] = {}
        duplicates: list[str] = []
        for point in points:
            if point.id in desired:
                duplicates.append(point.id)
            desired[point.id] = point

        result = ReconfigureResult()

        async with self._reconfigure_lock:
            for point_id in list(self._timers):
                if point_id not in desired:
                    self._retire(self._timers.pop(point_id), removed=True)
                    self._latest.pop(point_id, None)
                    result.stopped.append(point_id)

            for point_id, point in desired.items():
                timer = self._timers.get(point_id)
                if timer is None:
                    self._timers[point_id] = await self._start_timer(point, asyncio.Lock())
                    result.started.append(point_id)
                elif timer.point == point:
                    result.unchanged += 1
                elif timer.point.frequency_seconds != point.frequency_seconds:
                    self._retire(timer)
                    self._timers[point_id] = await self._start_timer(point, timer.tick_lock)
                    result.restarted.append(point_id)
                else:
                    timer.point = point
                    result.updated.append(point_id)

            self._generation += 1

        if duplicates:
            race = ConfigurationRace(
                f"Duplicate point ids in configuration snapshot: {sorted(set(duplicates))}",
                point_ids=sorted(set(duplicates)),
            )
            await self._report(race)

        if result.changed:
            logger.info(
                f"Reconfigured polling: {len(result.started)} started, "
                f"{len(result.stopped)} stopped, {len(result.restarted)} restarted, "
                f"{len(result.updated)} updated, {result.unchanged} unchanged",
                extra={"active_points": len(self._timers), "generation": self._generation},
            )

        return result

    async def stop(self) -> None:
        """Stop every timer and wait briefly for in-flight ticks"""
        async with self._reconfigure_lock:
            timers = list(self._timers.values())
            self._timers.clear()
            for timer in timers:
                self._retire(timer, removed=True)

        for timer in timers:
            if timer.loop:
                await timer.loop.join(STOP_TIMEOUT_S)

        logger.info(f"Polling stopped ({len(timers)} timers)")

    async def read_now(self, point_id: str) -> Sample:
        """
        Read one point immediately, outside its timer.

        The sample is returned to the caller and not written to history.
        """
        point = self.get_point(point_id)
        if point is None:
            raise PointNotFound(point_id)

        try:
            return await self._read(point)
        except DeviceError as e:
            await self._report(e, point)
            raise

    async def read_all(self) -> dict[str, Sample | ErrorEvent]:
        """Read every active point concurrently"""
        points = self.points()
        results = await asyncio.gather(
            *(self._read(point) for point in points),
            return_exceptions=True,
        )

        readings: dict[str, Sample | ErrorEvent] = {}
        for point, result in zip(points, results):
            if isinstance(result, Sample):
                readings[point.id] = result
            elif isinstance(result, Exception):
                if not isinstance(result, SupervisionError):
                    logger.error(f"Unexpected error reading {point.id}: {describe_error(result)}")
                readings[point.id] = await self._report(result, point)
            else:
                raise result
        return readings

    async def _start_timer(self, point: PollPoint, tick_lock: asyncio.Lock) -> _PointTimer:
        timer = _PointTimer(point=point, tick_lock=tick_lock)
        timer.loop = ScheduledLoop(
            point.frequency_seconds,
            lambda: self._tick(timer),
            name=f"point:{point.id}",
        )
        await timer.loop.start()
        return timer

    def _retire(self, timer: _PointTimer, removed: bool = False) -> None:
        """
        Stop a timer. An in-flight tick still finishes; its result is
        dropped only when the point itself was removed.
        """
        timer.active = False
        timer.removed = removed
        if timer.loop:
            timer.loop.stop()

    def _point_gone(self, timer: _PointTimer) -> bool:
        return timer.removed or timer.point.id not in self._timers

    async def _tick(self, timer: _PointTimer) -> None:
        async with timer.tick_lock:
            if not timer.active:
                return

            point = timer.point
            try:
                sample = await self._read(point)
            except DeviceError as e:
                self._read_failures += 1
                log_device_read(logger.logger, point.device.name, point.id, None, success=False)
                if not self._point_gone(timer):
                    await self._report(e, point)
                return
            except Exception as e:
                self._read_failures += 1
                logger.exception(f"Unexpected error polling {point.id}: {e}")
                if not self._point_gone(timer):
                    await self._report(e, point)
                return

            if self._point_gone(timer):
                # Point removed while the read was in flight
                self._discarded_count += 1
                logger.debug(f"Discarding late sample for removed point {point.id}")
                return

            self._latest[point.id] = sample
            log_device_read(logger.logger, point.device.name, point.id, sample.engineering_value)
            await self._emit(sample)

    async def _read(self, point: PollPoint) -> Sample:
        """Read, scale and timestamp one point"""
        session = await self._registry.get_session(point.device)

        if point.kind == PointKind.DIGITAL:
            bit = await session.read_bit(point.address.space, point.address.index)
            raw = 1 if bit else 0
        else:
            raw = await session.read_register(point.address.space, point.address.index)

        return Sample(
            point_id=point.id,
            timestamp=datetime.now(timezone.utc),
            raw_value=raw,
            engineering_value=scale_value(raw, point.calibration),
        )

    async def _emit(self, sample: Sample) -> None:
        try:
            await self._history.append(
                sample.point_id,
                sample.timestamp,
                sample.raw_value,
                sample.engineering_value,
            )
            self._sample_count += 1
        except Exception as e:
            self._history_failures += 1
            await self._publish(ErrorEvent(
                error_kind="history_append",
                message=f"History append failed for {sample.point_id}: {describe_error(e)}",
                point_id=sample.point_id,
            ))

    async def _report(self, error: BaseException, point: PollPoint | None = None) -> ErrorEvent:
        event = ErrorEvent(
            error_kind=error_kind(error),
            message=describe_error(error),
            point_id=point.id if point else None,
            device_id=point.device.id if point else getattr(error, "device_id", None),
        )
        await self._publish(event)
        return event

    async def _publish(self, event: ErrorEvent) -> None:
        try:
            await self._errors.report(event)
        except Exception as e:
            logger.error(f"Error sink failed: {e}")

    def get_stats(self) -> dict:
        """Get scheduler statistics for observability"""
        return {
            "active_points": len(self._timers),
            "generation": self._generation,
            "samples": self._sample_count,
            "read_failures": self._read_failures,
            "history_failures": self._history_failures,
            "discarded_late_samples": self._discarded_count,
            "timers": {
                point_id: timer.loop.get_stats()
                for point_id, timer in self._timers.items()
                if timer.loop
            },
        }
