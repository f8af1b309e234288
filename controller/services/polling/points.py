"""
Poll Points

In-memory descriptors of monitored points, derived from configuration.
Addresses are decoded once here so that ticks never parse strings.
"""

from dataclasses import dataclass
from datetime import datetime

from common.address import CanonicalAddress, decode_address
from common.config import (
    Calibration,
    DataSpace,
    DeviceConfig,
    Direction,
    PointConfig,
    PointKind,
    SupervisionConfig,
)
from common.exceptions import ConfigError
from common.logging_setup import get_service_logger

logger = get_service_logger("polling.points")


@dataclass(frozen=True)
class PollPoint:
    """One monitored point bound to its device"""
    id: str
    device: DeviceConfig
    raw_address: str
    address: CanonicalAddress
    direction: Direction
    kind: PointKind
    frequency_seconds: float
    calibration: Calibration | None = None
    name: str = ""
    unit: str = ""

    @property
    def device_id(self) -> str:
        return self.device.id

    @property
    def writable(self) -> bool:
        """Only coils and holding registers accept writes"""
        return self.direction == Direction.OUTPUT and self.address.space in (
            DataSpace.COIL,
            DataSpace.HOLDING_REGISTER,
        )

    def describe(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "device_id": self.device.id,
            "address": self.raw_address,
            "space": self.address.space.value,
            "index": self.address.index,
            "direction": self.direction.value,
            "kind": self.kind.value,
            "frequency_s": self.frequency_seconds,
            "unit": self.unit,
            "calibrated": self.calibration is not None,
        }


@dataclass(frozen=True)
class Sample:
    """One reading or written value; never mutated"""
    point_id: str
    timestamp: datetime
    raw_value: int | float
    engineering_value: int | float

    def to_dict(self) -> dict:
        return {
            "point_id": self.point_id,
            "timestamp": self.timestamp.isoformat(),
            "raw_value": self.raw_value,
            "engineering_value": self.engineering_value,
        }


def build_poll_point(config: PointConfig, device: DeviceConfig) -> PollPoint:
    """
    Build a PollPoint from its configuration.

    The point-level addressing scheme overrides the device's.

    Raises:
        AddressDecodeError: If the address cannot be decoded
    """
    scheme = config.addressing_scheme or device.addressing_scheme
    decoded = decode_address(config.address, scheme)

    calibration = config.calibration
    if calibration is not None and decoded.kind == PointKind.DIGITAL:
        logger.warning(f"Point {config.id}: calibration ignored on digital point")
        calibration = None

    unit = config.unit or (calibration.unit if calibration else "")

    return PollPoint(
        id=config.id,
        device=device,
        raw_address=config.address.strip(),
        address=decoded.canonical,
        direction=decoded.direction,
        kind=decoded.kind,
        frequency_seconds=config.frequency_seconds,
        calibration=calibration,
        name=config.name or config.id,
        unit=unit,
    )


def build_poll_points(
    config: SupervisionConfig,
) -> tuple[list[PollPoint], list[tuple[PointConfig, ConfigError]]]:
    """
    Build every schedulable point of a configuration.

    Returns:
        Tuple of (points, rejected) where rejected pairs each unusable
        point configuration with the error that disqualified it
    """
    devices = {d.id: d for d in config.devices}
    points: list[PollPoint] = []
    rejected: list[tuple[PointConfig, ConfigError]] = []

    for point_config in config.points:
        device = devices.get(point_config.device_id)
        if device is None:
            rejected.append((
                point_config,
                ConfigError(f"Point {point_config.id}: unknown device '{point_config.device_id}'"),
            ))
            continue

        try:
            points.append(build_poll_point(point_config, device))
        except ConfigError as e:
            rejected.append((point_config, e))

    if rejected:
        logger.warning(f"Rejected {len(rejected)} of {len(config.points)} configured points")

    return points, rejected
