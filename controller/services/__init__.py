"""
PLC Supervision Services

Layered service architecture:
1. Device Layer - Modbus client, per-device sessions, session registry
2. Polling Layer - Per-point scheduler, write dispatcher, history and error sinks
3. Supervision Service - Configuration reload, lifecycle and health endpoints
"""

__version__ = "1.0.0"
