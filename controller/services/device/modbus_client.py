"""
Async Modbus Client

Thin wrapper around pymodbus for single-point Modbus TCP requests.
Framing, transactions and timeouts on the wire are pymodbus' job; this
class turns its results into plain values or typed exceptions.
"""

import asyncio

from pymodbus.client import AsyncModbusTcpClient
from pymodbus.exceptions import ModbusException

from common.exceptions import CommunicationError, RequestRejected, WriteRejected, describe_error
from common.logging_setup import get_service_logger

logger = get_service_logger("device.modbus")


class ModbusClient:
    """
    Async Modbus TCP client for one controller.

    Handles:
    - Connection establishment with a bounded timeout
    - Single-bit reads (coils, discrete inputs) and writes (coils)
    - Single-register reads (holding, input) and writes (holding)

    Not safe for concurrent use; DeviceSession serializes access.
    Auto-reconnect is disabled so reconnection stays caller-driven.
    """

    def __init__(
        self,
        host: str,
        port: int = 502,
        timeout: float = 3.0,
        slave_id: int = 1,
    ):
        self.host = host
        self.port = port
        self.timeout = timeout
        self.slave_id = slave_id

        self._client: AsyncModbusTcpClient | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None and self._client.connected

    async def connect(self) -> None:
        """Establish connection to the Modbus device"""
        self._client = AsyncModbusTcpClient(
            host=self.host,
            port=self.port,
            timeout=self.timeout,
            retries=0,
            reconnect_delay=0,
        )

        try:
            connected = await self._client.connect()
        except (ModbusException, OSError) as e:
            self.close()
            raise CommunicationError(
                f"Connection error: {e}", host=self.host, port=self.port
            )

        if not connected:
            self.close()
            raise CommunicationError(
                f"Failed to connect to {self.host}:{self.port}",
                host=self.host,
                port=self.port,
            )

        logger.debug(f"Connected to Modbus device at {self.host}:{self.port}")

    def close(self) -> None:
        """Close connection"""
        if self._client:
            self._client.close()
            self._client = None
            logger.debug(f"Disconnected from {self.host}:{self.port}")

    async def read_coil(self, address: int) -> bool:
        response = await self._request(
            "read_coils", address, address=address, count=1, device_id=self.slave_id
        )
        return bool(response.bits[0])

    async def read_discrete_input(self, address: int) -> bool:
        response = await self._request(
            "read_discrete_inputs", address, address=address, count=1, device_id=self.slave_id
        )
        return bool(response.bits[0])

    async def read_holding_register(self, address: int) -> int:
        response = await self._request(
            "read_holding_registers", address, address=address, count=1, device_id=self.slave_id
        )
        return int(response.registers[0])

    async def read_input_register(self, address: int) -> int:
        response = await self._request(
            "read_input_registers", address, address=address, count=1, device_id=self.slave_id
        )
        return int(response.registers[0])

    async def write_coil(self, address: int, value: bool) -> None:
        try:
            await self._request(
                "write_coil", address, address=address, value=value, device_id=self.slave_id
            )
        except RequestRejected as e:
            raise WriteRejected(e.message, address=address, value=value)

    async def write_register(self, address: int, value: int) -> None:
        try:
            await self._request(
                "write_register", address, address=address, value=value, device_id=self.slave_id
            )
        except RequestRejected as e:
            raise WriteRejected(e.message, address=address, value=value)

    async def _request(self, method: str, address: int, **kwargs):
        """Issue one request; map pymodbus failures onto our exceptions"""
        if not self.connected:
            raise CommunicationError(
                f"Not connected to {self.host}:{self.port}",
                host=self.host,
                port=self.port,
            )

        try:
            response = await getattr(self._client, method)(**kwargs)
        except ModbusException as e:
            raise CommunicationError(
                f"Modbus exception: {e}", host=self.host, port=self.port
            )
        except (asyncio.TimeoutError, OSError) as e:
            raise CommunicationError(
                f"{method} failed: {describe_error(e)}", host=self.host, port=self.port
            )

        if response.isError():
            raise RequestRejected(f"{method} rejected: {response}", address=address)

        return response
