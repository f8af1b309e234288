"""
Custom Exception Classes for the Supervision Controller

Hierarchical exception structure for error handling across services.
"""


class SupervisionError(Exception):
    """Base exception for all supervision controller errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(SupervisionError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = True):
        super().__init__(f"Config Error: {message}", recoverable)


class AddressDecodeError(ConfigError):
    """Vendor address string does not match a recognized grammar"""

    def __init__(self, raw_address: object, reason: str):
        self.raw_address = raw_address
        self.reason = reason
        super().__init__(f"Cannot decode address {raw_address!r}: {reason}")


class PointNotFound(ConfigError):
    """Point id is not part of the active configuration"""

    def __init__(self, point_id: str):
        self.point_id = point_id
        super().__init__(f"Unknown point: {point_id}")


class ConfigurationRace(ConfigError):
    """Reconfiguration snapshot is inconsistent (resolved last-writer-wins)"""

    def __init__(self, message: str, point_ids: list[str] | None = None):
        self.point_ids = point_ids or []
        super().__init__(message)


class DeviceError(SupervisionError):
    """Device communication errors"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        recoverable: bool = True,
    ):
        self.device_id = device_id
        super().__init__(f"Device Error: {message}", recoverable)


class CommunicationError(DeviceError):
    """Modbus/network transport failure raised by the protocol client"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_id, recoverable=True)


class DeviceUnreachable(DeviceError):
    """Connect or I/O failure against a device session"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        host: str | None = None,
        port: int | None = None,
    ):
        self.host = host
        self.port = port
        super().__init__(message, device_id, recoverable=True)


class RequestRejected(DeviceError):
    """Device answered with a Modbus exception response"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        address: int | None = None,
    ):
        self.address = address
        super().__init__(message, device_id, recoverable=True)


class WriteRejected(RequestRejected):
    """Device refused a write request"""

    def __init__(
        self,
        message: str,
        device_id: str | None = None,
        address: int | None = None,
        value: int | bool | None = None,
    ):
        self.value = value
        super().__init__(message, device_id, address)


class WriteValidationError(SupervisionError):
    """Write request rejected before reaching the device"""

    def __init__(self, message: str, point_id: str):
        self.point_id = point_id
        super().__init__(message, recoverable=True)


class NotWritable(WriteValidationError):
    """Point is not an output and cannot be written"""

    def __init__(self, point_id: str, direction: str):
        self.direction = direction
        super().__init__(
            f"Point {point_id} is not writable (direction={direction})",
            point_id,
        )


class InvalidValue(WriteValidationError):
    """Value cannot be coerced to the point's kind"""

    def __init__(self, point_id: str, value: object, reason: str):
        self.value = value
        self.reason = reason
        super().__init__(
            f"Invalid value {value!r} for point {point_id}: {reason}",
            point_id,
        )


def describe_error(error: BaseException) -> str:
    """Readable text for exceptions whose str() is empty (timeouts)"""
    return str(error) or type(error).__name__
