"""
Common Utilities

Shared modules used across all services:
- config.py - Configuration dataclasses and YAML loading
- address.py - Vendor address codec
- scaling.py - Engineering-unit scaling
- scheduler.py - Precise interval loop
- exceptions.py - Custom exception classes
- logging_setup.py - Structured logging setup
"""

from .config import (
    SupervisionConfig,
    DeviceConfig,
    PointConfig,
    Calibration,
    SessionSettings,
    HistorySettings,
    ServiceSettings,
    Direction,
    PointKind,
    DataSpace,
    AddressingScheme,
    DEFAULT_FREQUENCY_SECONDS,
    coerce_frequency,
    load_supervision_config,
    load_config_file,
    find_config_path,
)
from .address import CanonicalAddress, DecodedAddress, decode_address, encode_address
from .scaling import scale_value, SCALE_PRECISION
from .exceptions import (
    SupervisionError,
    ConfigError,
    AddressDecodeError,
    PointNotFound,
    ConfigurationRace,
    DeviceError,
    CommunicationError,
    DeviceUnreachable,
    RequestRejected,
    WriteRejected,
    WriteValidationError,
    NotWritable,
    InvalidValue,
)
from .logging_setup import (
    setup_logging,
    get_service_logger,
    set_log_level,
    log_device_read,
    log_device_write,
)

__all__ = [
    # Config
    "SupervisionConfig",
    "DeviceConfig",
    "PointConfig",
    "Calibration",
    "SessionSettings",
    "HistorySettings",
    "ServiceSettings",
    "Direction",
    "PointKind",
    "DataSpace",
    "AddressingScheme",
    "DEFAULT_FREQUENCY_SECONDS",
    "coerce_frequency",
    "load_supervision_config",
    "load_config_file",
    "find_config_path",
    # Address codec / scaling
    "CanonicalAddress",
    "DecodedAddress",
    "decode_address",
    "encode_address",
    "scale_value",
    "SCALE_PRECISION",
    # Exceptions
    "SupervisionError",
    "ConfigError",
    "AddressDecodeError",
    "PointNotFound",
    "ConfigurationRace",
    "DeviceError",
    "CommunicationError",
    "DeviceUnreachable",
    "RequestRejected",
    "WriteRejected",
    "WriteValidationError",
    "NotWritable",
    "InvalidValue",
    # Logging
    "setup_logging",
    "get_service_logger",
    "set_log_level",
    "log_device_read",
    "log_device_write",
]
