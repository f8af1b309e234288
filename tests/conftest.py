# tests/conftest.py
"""Shared pytest fixtures for supervision controller tests.

Device I/O is replaced by FakeModbusClient, which speaks the same
method surface as services.device.modbus_client.ModbusClient and
records how many requests were in flight at once so tests can prove
per-device serialization.
"""

import asyncio
from datetime import datetime

import pytest

from common.config import (
    AddressingScheme,
    Calibration,
    DeviceConfig,
    PointConfig,
    SessionSettings,
)
from common.exceptions import CommunicationError, RequestRejected, WriteRejected
from services.device.registry import DeviceSessionRegistry
from services.polling.points import PollPoint, build_poll_point


# ----------------------------------------------------------------
# Fake protocol client
# ----------------------------------------------------------------
class FakeModbusClient:
    """In-memory stand-in for ModbusClient.

    Attributes used by tests:
        coils / discrete_inputs / holding / input_regs: data tables
        delay: seconds every request takes
        connect_error: exception raised by connect()
        fail_requests: exception raised by every request
        reject: set of (method, address) pairs answered with an exception response
        max_in_flight: highest concurrent request count observed
    """

    def __init__(self, host: str, port: int, timeout: float, slave_id: int, bank: "FakeDeviceBank"):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.slave_id = slave_id
        self.bank = bank
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.bank.connect_attempts += 1
        if self.bank.connect_delay:
            await asyncio.sleep(self.bank.connect_delay)
        if self.bank.connect_error:
            raise self.bank.connect_error
        self.connected = True

    def close(self) -> None:
        self.connected = False
        self.closed = True

    async def _request(self, method: str, address: int):
        bank = self.bank
        bank.in_flight += 1
        bank.max_in_flight = max(bank.max_in_flight, bank.in_flight)
        bank.calls.append((method, address))
        try:
            if bank.delay:
                await asyncio.sleep(bank.delay)
            if bank.fail_requests:
                raise bank.fail_requests
            if (method, address) in bank.reject:
                if method.startswith("write"):
                    raise WriteRejected(f"{method} rejected", address=address)
                raise RequestRejected(f"{method} rejected", address=address)
        finally:
            bank.in_flight -= 1

    async def read_coil(self, address: int) -> bool:
        await self._request("read_coil", address)
        return self.bank.coils.get(address, False)

    async def read_discrete_input(self, address: int) -> bool:
        await self._request("read_discrete_input", address)
        return self.bank.discrete_inputs.get(address, False)

    async def read_holding_register(self, address: int) -> int:
        await self._request("read_holding_register", address)
        return self.bank.holding.get(address, 0)

    async def read_input_register(self, address: int) -> int:
        await self._request("read_input_register", address)
        return self.bank.input_regs.get(address, 0)

    async def write_coil(self, address: int, value: bool) -> None:
        await self._request("write_coil", address)
        self.bank.coils[address] = bool(value)

    async def write_register(self, address: int, value: int) -> None:
        await self._request("write_register", address)
        self.bank.holding[address] = value


class FakeDeviceBank:
    """State of one fake controller, shared by every client created for it"""

    def __init__(self):
        self.coils: dict[int, bool] = {}
        self.discrete_inputs: dict[int, bool] = {}
        self.holding: dict[int, int] = {}
        self.input_regs: dict[int, int] = {}

        self.delay: float = 0
        self.connect_delay: float = 0
        self.connect_error: Exception | None = None
        self.fail_requests: Exception | None = None
        self.reject: set[tuple[str, int]] = set()

        self.clients: list[FakeModbusClient] = []
        self.calls: list[tuple[str, int]] = []
        self.connect_attempts = 0
        self.in_flight = 0
        self.max_in_flight = 0

    def go_offline(self) -> None:
        self.connect_error = CommunicationError("connection refused")
        self.fail_requests = CommunicationError("connection reset")
        for client in self.clients:
            client.connected = False

    def come_online(self) -> None:
        self.connect_error = None
        self.fail_requests = None


class FakeNetwork:
    """Client factory routing (host, port) to a FakeDeviceBank"""

    def __init__(self):
        self.banks: dict[tuple[str, int], FakeDeviceBank] = {}

    def bank(self, host: str, port: int = 502) -> FakeDeviceBank:
        return self.banks.setdefault((host, port), FakeDeviceBank())

    def __call__(self, host: str, port: int, timeout: float, slave_id: int) -> FakeModbusClient:
        bank = self.bank(host, port)
        client = FakeModbusClient(host, port, timeout, slave_id, bank)
        bank.clients.append(client)
        return client


# ----------------------------------------------------------------
# Fake sinks
# ----------------------------------------------------------------
class RecordingHistory:
    """History sink that keeps samples in a list"""

    def __init__(self):
        self.samples: list[tuple[str, datetime, float, float]] = []
        self.fail: Exception | None = None

    async def append(self, point_id, timestamp, raw_value, engineering_value) -> None:
        if self.fail:
            raise self.fail
        self.samples.append((point_id, timestamp, raw_value, engineering_value))

    def for_point(self, point_id: str) -> list[tuple[str, datetime, float, float]]:
        return [s for s in self.samples if s[0] == point_id]


class RecordingErrors:
    """Error sink that keeps events in a list"""

    def __init__(self):
        self.events = []

    async def report(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.error_kind for e in self.events]


# ----------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------
@pytest.fixture
def network() -> FakeNetwork:
    return FakeNetwork()


@pytest.fixture
def fast_settings() -> SessionSettings:
    """Short timeouts so failure paths finish quickly"""
    return SessionSettings(
        connect_timeout_s=0.5,
        request_timeout_s=0.5,
        max_consecutive_failures=3,
        cooldown_s=0.3,
    )


@pytest.fixture
async def registry(network, fast_settings):
    registry = DeviceSessionRegistry(settings=fast_settings, client_factory=network)
    yield registry
    await registry.close_all()


@pytest.fixture
def history() -> RecordingHistory:
    return RecordingHistory()


@pytest.fixture
def errors() -> RecordingErrors:
    return RecordingErrors()


@pytest.fixture
def plc_a() -> DeviceConfig:
    return DeviceConfig(
        id="plc-a",
        name="PLC A",
        host="10.0.0.1",
        addressing_scheme=AddressingScheme.FLAT,
    )


@pytest.fixture
def plc_b() -> DeviceConfig:
    return DeviceConfig(
        id="plc-b",
        name="PLC B",
        host="10.0.0.2",
        addressing_scheme=AddressingScheme.EXPANDED,
    )


def make_point(
    device: DeviceConfig,
    point_id: str,
    address: str,
    frequency: float = 0.05,
    calibration: Calibration | None = None,
) -> PollPoint:
    """Build a PollPoint the same way configuration loading does"""
    return build_poll_point(
        PointConfig(
            id=point_id,
            device_id=device.id,
            address=address,
            frequency_seconds=frequency,
            calibration=calibration,
        ),
        device,
    )


async def wait_for_condition(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    """Poll predicate until true or timeout"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()
