"""
Device Session Registry

Maps device id -> DeviceSession. Sessions are created on first use and
reused for the life of the process, so one controller never gets two
connections.
"""

import asyncio

from common.config import DeviceConfig, SessionSettings
from common.logging_setup import get_service_logger
from .session import ClientFactory, DeviceSession

logger = get_service_logger("device.registry")


class DeviceSessionRegistry:
    """
    Device session registry.

    Lookups and lazy creation happen under one asyncio.Lock so that
    concurrent first ticks for the same device share a single session.
    """

    def __init__(
        self,
        settings: SessionSettings | None = None,
        client_factory: ClientFactory | None = None,
    ):
        self._settings = settings or SessionSettings()
        self._client_factory = client_factory
        self._sessions: dict[str, DeviceSession] = {}
        self._lock = asyncio.Lock()

    async def get_session(self, device: DeviceConfig) -> DeviceSession:
        """
        Get or create the session for a device.

        If the device definition changed since the session was created,
        the session is retargeted instead of replaced.
        """
        async with self._lock:
            session = self._sessions.get(device.id)
            if session is None:
                session = DeviceSession(
                    device=device,
                    settings=self._settings,
                    client_factory=self._client_factory,
                )
                self._sessions[device.id] = session
                logger.debug(f"Created session for {device.name} ({device.endpoint})")
                return session

        if session.device != device:
            await session.retarget(device)
        return session

    def get(self, device_id: str) -> DeviceSession | None:
        """Get an existing session without creating one"""
        return self._sessions.get(device_id)

    def __len__(self) -> int:
        return len(self._sessions)

    async def discard(self, device_id: str) -> bool:
        """Close and forget the session of a device no longer configured"""
        async with self._lock:
            session = self._sessions.pop(device_id, None)
        if session is None:
            return False
        await session.close()
        logger.info(f"Discarded session for removed device {device_id}")
        return True

    async def close_all(self) -> None:
        """Close every session (process shutdown)"""
        async with self._lock:
            for session in self._sessions.values():
                await session.close()
            count = len(self._sessions)
            self._sessions.clear()

        logger.info(f"Closed {count} device sessions")

    def get_stats(self) -> dict:
        """Get registry statistics"""
        return {
            "session_count": len(self._sessions),
            "sessions": {
                device_id: session.get_stats()
                for device_id, session in self._sessions.items()
            },
        }
