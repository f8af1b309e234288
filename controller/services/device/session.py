"""
Device Session

Owns the single logical connection to one controller and serializes
every request against it. Modbus offers one request/response channel
per device, so a second caller waits for the in-flight operation
instead of opening a second connection.

State machine:

    DISCONNECTED -> CONNECTING -> CONNECTED
    CONNECTING --(timeout/failure)--> DISCONNECTED
    CONNECTED  --(I/O error)--------> DISCONNECTED

Reconnection is caller-driven: the next operation after a failure goes
through ensure_connected() again. After too many consecutive failures
the session cools down and fails fast until the cool-down expires.
"""

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from common.config import DataSpace, DeviceConfig, SessionSettings
from common.exceptions import CommunicationError, DeviceUnreachable, RequestRejected, describe_error
from common.logging_setup import get_service_logger
from .modbus_client import ModbusClient

logger = get_service_logger("device.session")

# (host, port, timeout, slave_id) -> protocol client
ClientFactory = Callable[[str, int, float, int], Any]


def default_client_factory(host: str, port: int, timeout: float, slave_id: int) -> ModbusClient:
    return ModbusClient(host=host, port=port, timeout=timeout, slave_id=slave_id)


class ConnectionState(str, Enum):
    """Connection state of a device session"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class DeviceSession:
    """
    Serialized access to one controller.

    Features:
    - One asyncio.Lock guards connect and every request
    - Bounded connect and request timeouts
    - Consecutive-failure cool-down (close, wait, retry)
    - Endpoint retargeting when configuration changes
    """

    def __init__(
        self,
        device: DeviceConfig,
        settings: SessionSettings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self.device = device
        self.settings = settings or SessionSettings()
        self._client_factory = client_factory or default_client_factory

        self._client: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._lock = asyncio.Lock()

        self._consecutive_failures = 0
        self._cooldown_until: float = 0
        self._last_error: str | None = None
        self._last_success: datetime | None = None
        self._connect_count = 0
        self._request_count = 0
        self._failure_count = 0

    @property
    def device_id(self) -> str:
        return self.device.id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def in_cooldown(self) -> bool:
        return time.monotonic() < self._cooldown_until

    async def ensure_connected(self) -> None:
        """Connect if not already connected"""
        async with self._lock:
            await self._ensure_connected()

    async def read_bit(self, space: DataSpace, index: int) -> bool:
        """Read one coil or discrete input"""
        if space == DataSpace.COIL:
            return await self._execute("read_coil", index)
        if space == DataSpace.DISCRETE_INPUT:
            return await self._execute("read_discrete_input", index)
        raise ValueError(f"{space.value} is not a bit space")

    async def read_register(self, space: DataSpace, index: int) -> int:
        """Read one holding or input register"""
        if space == DataSpace.HOLDING_REGISTER:
            return await self._execute("read_holding_register", index)
        if space == DataSpace.INPUT_REGISTER:
            return await self._execute("read_input_register", index)
        raise ValueError(f"{space.value} is not a register space")

    async def write_bit(self, index: int, value: bool) -> None:
        """Write one coil"""
        await self._execute("write_coil", index, bool(value))

    async def write_register(self, index: int, value: int) -> None:
        """Write one holding register"""
        if not 0 <= value <= 0xFFFF:
            raise ValueError(f"register value {value} out of uint16 range")
        await self._execute("write_register", index, value)

    async def retarget(self, device: DeviceConfig) -> None:
        """Adopt a changed device definition, dropping the old connection"""
        async with self._lock:
            old = self.device
            self.device = device
            if (old.host, old.port, old.slave_id) != (device.host, device.port, device.slave_id):
                logger.info(
                    f"Device {device.name} endpoint changed "
                    f"{old.endpoint} -> {device.endpoint}, reconnecting on next use"
                )
                self._drop_client()
                self._consecutive_failures = 0
                self._cooldown_until = 0

    async def close(self) -> None:
        """Forcibly close from any state"""
        self._drop_client()
        logger.debug(f"Session closed: {self.device.name}")

    async def _execute(self, method: str, *args) -> Any:
        async with self._lock:
            await self._ensure_connected()
            self._request_count += 1
            try:
                result = await asyncio.wait_for(
                    getattr(self._client, method)(*args),
                    self.settings.request_timeout_s,
                )
            except RequestRejected as e:
                # Device answered; the channel is still healthy
                e.device_id = self.device.id
                self._record_success()
                raise
            except (CommunicationError, asyncio.TimeoutError, OSError) as e:
                raise self._record_failure(f"{method}({args[0]}) failed: {describe_error(e)}")
            except asyncio.CancelledError:
                # A half-finished transaction leaves the channel unusable
                self._drop_client()
                raise

            self._record_success()
            return result

    async def _ensure_connected(self) -> None:
        """Connect under the session lock (caller holds it)"""
        if self._state == ConnectionState.CONNECTED and self._client is not None:
            if getattr(self._client, "connected", True):
                return
            # Peer closed the socket since the last request
            self._drop_client()

        if self.in_cooldown:
            remaining = self._cooldown_until - time.monotonic()
            raise DeviceUnreachable(
                f"{self.device.name} cooling down ({remaining:.1f}s left): {self._last_error}",
                device_id=self.device.id,
                host=self.device.host,
                port=self.device.port,
            )

        self._state = ConnectionState.CONNECTING
        self._connect_count += 1
        client = self._client_factory(
            self.device.host,
            self.device.port,
            self.settings.connect_timeout_s,
            self.device.slave_id,
        )
        self._client = client

        try:
            await asyncio.wait_for(client.connect(), self.settings.connect_timeout_s)
        except (CommunicationError, asyncio.TimeoutError, OSError) as e:
            raise self._record_failure(f"connect to {self.device.endpoint} failed: {describe_error(e)}")
        except asyncio.CancelledError:
            self._drop_client()
            raise
        except Exception as e:
            logger.exception(f"Unexpected error connecting to {self.device.name}: {e}")
            raise self._record_failure(
                f"connect to {self.device.endpoint} failed: {describe_error(e)}"
            ) from e

        self._state = ConnectionState.CONNECTED
        logger.info(
            f"Connected to {self.device.name} at {self.device.endpoint}",
            extra={"device_id": self.device.id},
        )

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._last_success = datetime.now(timezone.utc)

    def _record_failure(self, message: str) -> DeviceUnreachable:
        """Drop the connection, update failure counters and build the error"""
        self._drop_client()
        self._consecutive_failures += 1
        self._failure_count += 1
        self._last_error = message

        if self._consecutive_failures >= self.settings.max_consecutive_failures:
            self._cooldown_until = time.monotonic() + self.settings.cooldown_s
            logger.warning(
                f"Device {self.device.name} failed {self._consecutive_failures} times, "
                f"cooling down {self.settings.cooldown_s}s",
                extra={"device_id": self.device.id},
            )
        else:
            logger.debug(f"Device {self.device.name}: {message}")

        return DeviceUnreachable(
            message,
            device_id=self.device.id,
            host=self.device.host,
            port=self.device.port,
        )

    def _drop_client(self) -> None:
        client, self._client = self._client, None
        self._state = ConnectionState.DISCONNECTED
        if client is not None:
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing client for {self.device.name}: {e}")

    def get_stats(self) -> dict:
        """Get session statistics"""
        return {
            "device_id": self.device.id,
            "endpoint": self.device.endpoint,
            "state": self._state.value,
            "consecutive_failures": self._consecutive_failures,
            "in_cooldown": self.in_cooldown,
            "connect_count": self._connect_count,
            "request_count": self._request_count,
            "failure_count": self._failure_count,
            "last_error": self._last_error,
            "last_success": self._last_success.isoformat() if self._last_success else None,
        }
