# tests/unit/test_session.py
"""Tests for DeviceSession.

Test Coverage:
- Lazy connect and state transitions
- Request serialization per device
- Failure handling, reconnect and cool-down
- Rejected requests keep the connection
- Endpoint retargeting
"""

import asyncio

import pytest

from common.config import DataSpace, DeviceConfig, SessionSettings
from common.exceptions import (
    CommunicationError,
    DeviceUnreachable,
    RequestRejected,
    WriteRejected,
)
from services.device.session import ConnectionState, DeviceSession


@pytest.fixture
def device() -> DeviceConfig:
    return DeviceConfig(id="plc-1", name="PLC 1", host="10.0.0.1")


@pytest.fixture
def bank(network, device):
    return network.bank(device.host, device.port)


@pytest.fixture
async def session(device, fast_settings, network):
    session = DeviceSession(device, fast_settings, client_factory=network)
    yield session
    await session.close()


# ================================================================
# CONNECTION TESTS
# ================================================================
class TestSessionConnection:
    """Test connect behaviour and state."""

    @pytest.mark.asyncio
    async def test_starts_disconnected(self, session):
        assert session.state == ConnectionState.DISCONNECTED
        assert session.device_id == "plc-1"

    @pytest.mark.asyncio
    async def test_ensure_connected(self, session, bank):
        await session.ensure_connected()

        assert session.state == ConnectionState.CONNECTED
        assert bank.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_connect_is_reused(self, session, bank):
        await session.ensure_connected()
        await session.ensure_connected()
        await session.read_register(DataSpace.INPUT_REGISTER, 1)

        assert bank.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_connect_failure(self, session, bank):
        bank.connect_error = CommunicationError("refused")

        with pytest.raises(DeviceUnreachable):
            await session.ensure_connected()

        assert session.state == ConnectionState.DISCONNECTED
        assert session.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_connect_error(self, session, bank):
        bank.connect_error = RuntimeError("client construction bug")

        with pytest.raises(DeviceUnreachable):
            await session.ensure_connected()

        assert session.state == ConnectionState.DISCONNECTED
        assert session.consecutive_failures == 1
        assert bank.clients[-1].closed

        bank.connect_error = None
        await session.ensure_connected()
        assert session.state == ConnectionState.CONNECTED
        assert [c.closed for c in bank.clients] == [True, False]

    @pytest.mark.asyncio
    async def test_connect_timeout(self, session, bank):
        bank.connect_delay = 5

        with pytest.raises(DeviceUnreachable):
            await session.ensure_connected()

        assert session.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_peer_close_triggers_reconnect(self, session, bank):
        await session.ensure_connected()
        bank.clients[-1].connected = False

        await session.read_bit(DataSpace.COIL, 0)

        assert bank.connect_attempts == 2
        assert session.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_close_from_connected(self, session, bank):
        await session.ensure_connected()
        await session.close()

        assert session.state == ConnectionState.DISCONNECTED
        assert bank.clients[-1].closed


# ================================================================
# REQUEST TESTS
# ================================================================
class TestSessionRequests:
    """Test reads and writes through the session."""

    @pytest.mark.asyncio
    async def test_reads_each_space(self, session, bank):
        bank.coils[3] = True
        bank.discrete_inputs[4] = True
        bank.holding[5] = 500
        bank.input_regs[6] = 600

        assert await session.read_bit(DataSpace.COIL, 3) is True
        assert await session.read_bit(DataSpace.DISCRETE_INPUT, 4) is True
        assert await session.read_register(DataSpace.HOLDING_REGISTER, 5) == 500
        assert await session.read_register(DataSpace.INPUT_REGISTER, 6) == 600

    @pytest.mark.asyncio
    async def test_wrong_space(self, session):
        with pytest.raises(ValueError):
            await session.read_bit(DataSpace.INPUT_REGISTER, 0)
        with pytest.raises(ValueError):
            await session.read_register(DataSpace.COIL, 0)

    @pytest.mark.asyncio
    async def test_writes(self, session, bank):
        await session.write_bit(53, True)
        await session.write_register(7, 1234)

        assert bank.coils[53] is True
        assert bank.holding[7] == 1234

    @pytest.mark.asyncio
    async def test_register_value_range(self, session, bank):
        with pytest.raises(ValueError):
            await session.write_register(7, 70000)
        assert bank.calls == []

    @pytest.mark.asyncio
    async def test_requests_are_serialized(self, session, bank):
        bank.delay = 0.02

        await asyncio.gather(*(
            session.read_register(DataSpace.INPUT_REGISTER, i) for i in range(10)
        ))

        assert bank.max_in_flight == 1
        assert len(bank.calls) == 10
        assert bank.connect_attempts == 1

    @pytest.mark.asyncio
    async def test_request_timeout(self, session, bank):
        await session.ensure_connected()
        bank.delay = 5

        with pytest.raises(DeviceUnreachable):
            await session.read_bit(DataSpace.COIL, 0)

        assert session.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_rejected_request_keeps_connection(self, session, bank):
        bank.reject.add(("read_holding_register", 9))

        with pytest.raises(RequestRejected) as exc_info:
            await session.read_register(DataSpace.HOLDING_REGISTER, 9)

        assert exc_info.value.device_id == "plc-1"
        assert session.state == ConnectionState.CONNECTED
        assert session.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_rejected_write(self, session, bank):
        bank.reject.add(("write_coil", 1))

        with pytest.raises(WriteRejected):
            await session.write_bit(1, True)


# ================================================================
# FAILURE AND COOL-DOWN TESTS
# ================================================================
class TestSessionFailures:
    """Test failure counting, cool-down and recovery."""

    @pytest.mark.asyncio
    async def test_io_failure_drops_connection(self, session, bank):
        await session.ensure_connected()
        bank.fail_requests = CommunicationError("reset")

        with pytest.raises(DeviceUnreachable):
            await session.read_bit(DataSpace.COIL, 0)

        assert session.state == ConnectionState.DISCONNECTED
        assert bank.clients[-1].closed

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, session, bank):
        bank.go_offline()
        with pytest.raises(DeviceUnreachable):
            await session.read_bit(DataSpace.COIL, 0)

        bank.come_online()
        bank.coils[0] = True
        assert await session.read_bit(DataSpace.COIL, 0) is True
        assert session.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_cooldown_fails_fast(self, session, bank, fast_settings):
        bank.go_offline()
        for _ in range(fast_settings.max_consecutive_failures):
            with pytest.raises(DeviceUnreachable):
                await session.read_bit(DataSpace.COIL, 0)

        assert session.in_cooldown
        attempts = bank.connect_attempts

        bank.come_online()
        with pytest.raises(DeviceUnreachable, match="cooling down"):
            await session.read_bit(DataSpace.COIL, 0)
        assert bank.connect_attempts == attempts

    @pytest.mark.asyncio
    async def test_cooldown_expires(self, session, bank, fast_settings):
        bank.go_offline()
        for _ in range(fast_settings.max_consecutive_failures):
            with pytest.raises(DeviceUnreachable):
                await session.read_bit(DataSpace.COIL, 0)

        bank.come_online()
        await asyncio.sleep(fast_settings.cooldown_s + 0.05)

        assert not session.in_cooldown
        await session.read_bit(DataSpace.COIL, 0)
        assert session.state == ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_stats(self, session, bank):
        await session.read_bit(DataSpace.COIL, 0)
        stats = session.get_stats()

        assert stats["state"] == "connected"
        assert stats["request_count"] == 1
        assert stats["connect_count"] == 1
        assert stats["last_success"] is not None


# ================================================================
# RETARGET TESTS
# ================================================================
class TestSessionRetarget:
    """Test adopting a changed device definition."""

    @pytest.mark.asyncio
    async def test_endpoint_change_reconnects(self, session, network, bank):
        await session.ensure_connected()

        moved = DeviceConfig(id="plc-1", name="PLC 1", host="10.0.0.99")
        await session.retarget(moved)

        assert session.state == ConnectionState.DISCONNECTED
        assert bank.clients[-1].closed

        await session.read_bit(DataSpace.COIL, 0)
        assert network.bank("10.0.0.99").connect_attempts == 1

    @pytest.mark.asyncio
    async def test_name_change_keeps_connection(self, session, bank):
        await session.ensure_connected()

        await session.retarget(DeviceConfig(id="plc-1", name="Renamed", host="10.0.0.1"))

        assert session.state == ConnectionState.CONNECTED
        assert session.device.name == "Renamed"

    @pytest.mark.asyncio
    async def test_retarget_clears_cooldown(self, device, network):
        settings = SessionSettings(
            connect_timeout_s=0.2, request_timeout_s=0.2,
            max_consecutive_failures=1, cooldown_s=60,
        )
        session = DeviceSession(device, settings, client_factory=network)
        network.bank(device.host).go_offline()

        with pytest.raises(DeviceUnreachable):
            await session.ensure_connected()
        assert session.in_cooldown

        await session.retarget(DeviceConfig(id="plc-1", name="PLC 1", host="10.0.0.7"))
        assert not session.in_cooldown
        await session.ensure_connected()
        await session.close()
