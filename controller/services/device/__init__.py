"""
Device Layer - Modbus Communication

Responsibilities:
- Wrap the pymodbus TCP client (modbus_client.py)
- Serialize requests per controller and manage reconnects (session.py)
- Hand out one session per device id (registry.py)
"""

from .modbus_client import ModbusClient
from .session import ConnectionState, DeviceSession
from .registry import DeviceSessionRegistry

__all__ = ["ModbusClient", "ConnectionState", "DeviceSession", "DeviceSessionRegistry"]
