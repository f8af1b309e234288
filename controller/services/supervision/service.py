"""
Supervision Service - Composition Root

Responsible for:
- Loading configuration and hot-reloading it when the file changes
- Owning the device session registry, polling scheduler and write dispatcher
- Local history retention
- Health endpoints for observability
"""

import asyncio
import hashlib
import signal
from dataclasses import fields
from datetime import datetime, timezone
from pathlib import Path

from aiohttp import web

from common.config import SessionSettings, SupervisionConfig, find_config_path, load_config_file
from common.exceptions import ConfigError, describe_error
from common.logging_setup import get_service_logger
from common.scheduler import ScheduledLoop
from services.device.registry import DeviceSessionRegistry
from services.device.session import ClientFactory
from services.polling.history_db import SqliteHistorySink
from services.polling.points import PollPoint, Sample, build_poll_points
from services.polling.scheduler import PollingScheduler, ReconfigureResult
from services.polling.sinks import ErrorEvent, ErrorSink, HistorySink, LoggingErrorSink, error_kind
from services.polling.writer import WriteDispatcher

logger = get_service_logger("supervision")

# Retention cleanup runs once a day
RETENTION_INTERVAL_S = 24 * 60 * 60


class SupervisionService:
    """
    Supervision Service

    Wires the polling core together and keeps it in step with the
    configuration file:
    - Initial load fails loudly on a broken file
    - Later reloads that fail keep the last good configuration
    """

    def __init__(
        self,
        config_path: str | None = None,
        history: HistorySink | None = None,
        error_sink: ErrorSink | None = None,
        client_factory: ClientFactory | None = None,
        enable_health_server: bool = True,
    ):
        self.config_path = find_config_path(config_path)
        self.config: SupervisionConfig | None = None

        self._history = history
        self.errors = error_sink or LoggingErrorSink()
        self._client_factory = client_factory
        self._enable_health_server = enable_health_server

        # Shared with every session; reloads update it in place
        self._session_settings = SessionSettings()

        self.registry: DeviceSessionRegistry | None = None
        self.scheduler: PollingScheduler | None = None
        self.dispatcher: WriteDispatcher | None = None

        self._config_hash = ""
        self._start_time = datetime.now(timezone.utc)

        # Health server
        self._health_app: web.Application | None = None
        self._health_runner: web.AppRunner | None = None

        # State
        self._running = False
        self._config_watch_task: asyncio.Task | None = None
        self._retention_loop: ScheduledLoop | None = None
        self._shutdown_event = asyncio.Event()

    @property
    def history(self) -> HistorySink | None:
        return self._history

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Start the service and return once polling is running.

        Raises:
            ConfigError: If the initial configuration cannot be loaded
        """
        logger.info(f"Starting Supervision Service (config: {self.config_path})")

        config, content_hash = self._read_config()
        self._config_hash = content_hash
        self._apply_session_settings(config.session)

        if self._history is None:
            self._history = SqliteHistorySink(config.history.db_path)

        self.registry = DeviceSessionRegistry(
            settings=self._session_settings,
            client_factory=self._client_factory,
        )
        self.scheduler = PollingScheduler(self.registry, self._history, self.errors)
        self.dispatcher = WriteDispatcher(
            self.registry, self._history, self.errors, self.scheduler.get_point,
        )

        self._running = True
        self._start_time = datetime.now(timezone.utc)

        await self.apply_config(config)

        if self._enable_health_server:
            await self._start_health_server(config.service.health_port)

        self._config_watch_task = asyncio.create_task(self._config_watch_loop())

        if isinstance(self._history, SqliteHistorySink):
            self._retention_loop = ScheduledLoop(
                RETENTION_INTERVAL_S, self._retention_cleanup, name="history-retention",
            )
            await self._retention_loop.start()

        logger.info(
            f"Supervision Service started ({len(config.devices)} devices, "
            f"{len(self.scheduler.active_point_ids)} points)",
            extra={
                "device_count": len(config.devices),
                "point_count": len(self.scheduler.active_point_ids),
            },
        )

    async def run(self) -> None:
        """Start, wait for SIGTERM/SIGINT, then stop"""
        try:
            await self.start()
            self._setup_signal_handlers()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop the service"""
        if not self._running:
            return
        logger.info("Stopping Supervision Service")

        self._running = False

        if self._config_watch_task:
            self._config_watch_task.cancel()
            try:
                await self._config_watch_task
            except asyncio.CancelledError:
                pass

        if self._retention_loop:
            self._retention_loop.stop()

        if self.scheduler:
            await self.scheduler.stop()

        if self.registry:
            await self.registry.close_all()

        await self._stop_health_server()

        logger.info("Supervision Service stopped")

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        """Setup graceful shutdown signal handlers"""
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._handle_shutdown)
            except NotImplementedError:
                signal.signal(sig, lambda s, f: self._handle_shutdown())

    def _handle_shutdown(self) -> None:
        """Handle shutdown signal"""
        logger.info("Received shutdown signal")
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def apply_config(self, config: SupervisionConfig) -> ReconfigureResult:
        """
        Apply a configuration snapshot to the running scheduler.

        Points that cannot be built are reported as error events and
        left out; every other point converges to the snapshot.
        """
        points, rejected = build_poll_points(config)

        for point_config, error in rejected:
            await self._publish(ErrorEvent(
                error_kind=error_kind(error),
                message=describe_error(error),
                point_id=point_config.id,
                device_id=point_config.device_id,
            ))

        previous = self.config
        self.config = config
        self._apply_session_settings(config.session)

        result = await self.scheduler.reconfigure(points)

        if previous is not None:
            current_ids = {d.id for d in config.devices}
            for device in previous.devices:
                if device.id not in current_ids:
                    await self.registry.discard(device.id)

        return result

    def _read_config(self) -> tuple[SupervisionConfig, str]:
        """Read and parse the config file, returning it with its content hash"""
        path = Path(self.config_path)
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            raise ConfigError(f"Configuration file not found: {path}")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}")

        config = load_config_file(path)
        return config, hashlib.md5(content).hexdigest()

    def _apply_session_settings(self, settings: SessionSettings) -> None:
        for f in fields(SessionSettings):
            setattr(self._session_settings, f.name, getattr(settings, f.name))

    async def _config_watch_loop(self) -> None:
        """
        Watch the config file and reload when its content changes.

        Compares a content hash instead of modification times, so
        touching the file without editing it is a no-op.
        """
        interval = self.config.service.config_watch_interval_s if self.config else 5.0

        while self._running:
            await asyncio.sleep(interval)
            try:
                await self.reload_if_changed()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in config watch loop: {e}")

    async def reload_if_changed(self) -> bool:
        """
        Reload configuration if the file content changed.

        Returns:
            True if a new configuration was applied
        """
        try:
            content = Path(self.config_path).read_bytes()
        except OSError as e:
            logger.warning(f"Config file unreadable, keeping current configuration: {e}")
            return False

        new_hash = hashlib.md5(content).hexdigest()
        if new_hash == self._config_hash:
            return False

        try:
            config, new_hash = self._read_config()
        except ConfigError as e:
            # Remember the broken content so it is reported once
            self._config_hash = new_hash
            logger.error(f"Config reload failed, keeping last good configuration: {e}")
            await self._publish(ErrorEvent(error_kind="config_error", message=describe_error(e)))
            return False

        logger.info(f"Config change detected (hash: {self._config_hash[:8]} -> {new_hash[:8]}), reloading")
        self._config_hash = new_hash
        await self.apply_config(config)
        return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def read_now(self, point_id: str) -> Sample:
        """Read one point immediately (not persisted)"""
        return await self.scheduler.read_now(point_id)

    async def read_all(self) -> dict[str, Sample | ErrorEvent]:
        """Read every active point immediately"""
        return await self.scheduler.read_all()

    async def write(self, point_id: str, value: object) -> Sample:
        """Write a value to an output point"""
        return await self.dispatcher.write(point_id, value)

    def points(self) -> list[PollPoint]:
        return self.scheduler.points() if self.scheduler else []

    async def _retention_cleanup(self) -> None:
        retention_days = self.config.history.retention_days if self.config else 30
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._history.cleanup_old_samples, retention_days)
        except Exception as e:
            logger.error(f"History retention cleanup failed: {e}")

    async def _publish(self, event: ErrorEvent) -> None:
        try:
            await self.errors.report(event)
        except Exception as e:
            logger.error(f"Error sink failed: {e}")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _start_health_server(self, port: int) -> None:
        """Start the health check HTTP server"""
        self._health_app = web.Application()
        self._health_app.router.add_get("/health", self._health_handler)
        self._health_app.router.add_get("/readings", self._readings_handler)
        self._health_app.router.add_get("/errors", self._errors_handler)

        self._health_runner = web.AppRunner(self._health_app)
        await self._health_runner.setup()

        site = web.TCPSite(self._health_runner, "127.0.0.1", port)
        await site.start()

        logger.info(f"Health server started on port {port}")

    async def _stop_health_server(self) -> None:
        """Stop the health check HTTP server"""
        if self._health_runner:
            await self._health_runner.cleanup()
            self._health_runner = None

    def get_health(self) -> dict:
        uptime = (datetime.now(timezone.utc) - self._start_time).total_seconds()
        return {
            "status": "healthy" if self._running else "unhealthy",
            "service": "supervision",
            "uptime": int(uptime),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "devices": len(self.config.devices) if self.config else 0,
            "points": len(self.scheduler.active_point_ids) if self.scheduler else 0,
            "scheduler": self.scheduler.get_stats() if self.scheduler else {},
            "sessions": self.registry.get_stats() if self.registry else {},
            "writes": self.dispatcher.get_stats() if self.dispatcher else {},
        }

    async def _health_handler(self, request: web.Request) -> web.Response:
        """Handle health check requests"""
        return web.json_response(self.get_health())

    async def _readings_handler(self, request: web.Request) -> web.Response:
        """Return the latest sample of every point"""
        latest = self.scheduler.latest() if self.scheduler else {}
        return web.json_response({pid: s.to_dict() for pid, s in latest.items()})

    async def _errors_handler(self, request: web.Request) -> web.Response:
        """Return recent error events"""
        limit = request.query.get("limit")
        if not isinstance(self.errors, LoggingErrorSink):
            return web.json_response([])
        try:
            events = self.errors.recent(int(limit) if limit else None)
        except ValueError:
            return web.json_response({"error": "limit must be an integer"}, status=400)
        return web.json_response([e.to_dict() for e in events])


async def main() -> None:
    """Main entry point"""
    service = SupervisionService()
    await service.run()


if __name__ == "__main__":
    asyncio.run(main())
