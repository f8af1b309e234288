"""
Configuration Dataclasses

Type-safe configuration structures for the supervision controller.
Configuration is read from a YAML file owned by the CRUD layer and
re-read whenever its content changes.
"""

import math
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError

# Polling frequency used when a point's configured value is unusable
DEFAULT_FREQUENCY_SECONDS = 5.0

_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0", ""}


class Direction(str, Enum):
    """Point direction as seen from the controller"""
    INPUT = "input"
    OUTPUT = "output"


class PointKind(str, Enum):
    """Point value kind"""
    DIGITAL = "digital"
    ANALOG = "analog"


class DataSpace(str, Enum):
    """Modbus data spaces a canonical address can live in"""
    COIL = "coil"
    DISCRETE_INPUT = "discrete_input"
    HOLDING_REGISTER = "holding_register"
    INPUT_REGISTER = "input_register"


class AddressingScheme(str, Enum):
    """Bit-address encoding used by a controller family"""
    FLAT = "flat"          # byte*8 + bit
    EXPANDED = "expanded"  # module*64 + byte*8 + bit


@dataclass(frozen=True)
class Calibration:
    """Linear raw -> engineering calibration"""
    raw_min: float
    raw_max: float
    scale_min: float
    scale_max: float
    unit: str = ""
    clamp: bool = False  # clamp to scale range instead of extrapolating


@dataclass(frozen=True)
class DeviceConfig:
    """Device (controller) configuration"""
    id: str
    name: str
    host: str
    port: int = 502
    slave_id: int = 1
    addressing_scheme: AddressingScheme | None = None

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True)
class PointConfig:
    """Point definition as supplied by the configuration source"""
    id: str
    device_id: str
    address: str
    name: str = ""
    comment: str = ""
    frequency_seconds: float = DEFAULT_FREQUENCY_SECONDS
    unit: str = ""
    calibration: Calibration | None = None
    addressing_scheme: AddressingScheme | None = None


@dataclass
class SessionSettings:
    """Device session tuning"""
    connect_timeout_s: float = 2.0
    request_timeout_s: float = 3.0
    max_consecutive_failures: int = 3
    cooldown_s: float = 5.0


@dataclass
class HistorySettings:
    """Local history store settings"""
    db_path: str = "/var/lib/plc-supervision/history.db"
    retention_days: int = 30


@dataclass
class ServiceSettings:
    """Service runtime settings"""
    health_port: int = 8090
    config_watch_interval_s: float = 5.0
    default_frequency_s: float = DEFAULT_FREQUENCY_SECONDS


@dataclass
class SupervisionConfig:
    """Complete supervision configuration"""
    devices: list[DeviceConfig] = field(default_factory=list)
    points: list[PointConfig] = field(default_factory=list)
    session: SessionSettings = field(default_factory=SessionSettings)
    history: HistorySettings = field(default_factory=HistorySettings)
    service: ServiceSettings = field(default_factory=ServiceSettings)

    def get_device(self, device_id: str) -> DeviceConfig | None:
        """Get a device by id"""
        return next((d for d in self.devices if d.id == device_id), None)


def coerce_frequency(value: Any, fallback: float = DEFAULT_FREQUENCY_SECONDS) -> float:
    """
    Coerce a configured polling frequency to a positive number of seconds.

    Non-numeric, non-finite and non-positive values yield the fallback.
    """
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(seconds) or seconds <= 0:
        return fallback
    return seconds


def _parse_scheme(value: Any, where: str) -> AddressingScheme | None:
    if value in (None, ""):
        return None
    try:
        return AddressingScheme(str(value).strip().lower())
    except ValueError:
        raise ConfigError(f"{where}: unknown addressing_scheme '{value}'")


def _parse_bool(value: Any, where: str) -> bool:
    """Accept YAML booleans and the usual string/integer spellings"""
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise ConfigError(f"{where}: expected a boolean, got {value!r}")


def _parse_calibration(data: dict) -> Calibration | None:
    """Build calibration only when all four bounds are present"""
    bounds = [data.get(k) for k in ("raw_min", "raw_max", "scale_min", "scale_max")]
    if any(b is None for b in bounds):
        return None
    try:
        raw_min, raw_max, scale_min, scale_max = (float(b) for b in bounds)
    except (TypeError, ValueError):
        raise ConfigError(f"Point {data.get('id')}: calibration bounds must be numeric")
    return Calibration(
        raw_min=raw_min,
        raw_max=raw_max,
        scale_min=scale_min,
        scale_max=scale_max,
        unit=data.get("unit") or "",
        clamp=_parse_bool(data.get("clamp"), f"Point {data.get('id')} clamp"),
    )


def _parse_device(d: dict) -> DeviceConfig:
    if not isinstance(d, dict):
        raise ConfigError(f"Device entry must be a mapping: {d!r}")
    if "id" not in d or not d.get("host"):
        raise ConfigError(f"Device entry requires 'id' and 'host': {d}")
    device_id = str(d["id"])
    try:
        return DeviceConfig(
            id=device_id,
            name=d.get("name") or device_id,
            host=str(d["host"]),
            port=int(d.get("port", 502)),
            slave_id=int(d.get("slave_id", 1)),
            addressing_scheme=_parse_scheme(d.get("addressing_scheme"), f"Device {device_id}"),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Device {device_id}: {e}")


def _parse_point(p: dict, default_frequency: float) -> PointConfig:
    if not isinstance(p, dict):
        raise ConfigError(f"Point entry must be a mapping: {p!r}")
    if "id" not in p or "device_id" not in p or not p.get("address"):
        raise ConfigError(f"Point entry requires 'id', 'device_id' and 'address': {p}")
    point_id = str(p["id"])
    try:
        return PointConfig(
            id=point_id,
            device_id=str(p["device_id"]),
            address=str(p["address"]),
            name=p.get("name") or point_id,
            comment=p.get("comment") or "",
            frequency_seconds=coerce_frequency(
                p.get("frequency", p.get("frequency_seconds")),
                default_frequency,
            ),
            unit=p.get("unit") or "",
            calibration=_parse_calibration(p),
            addressing_scheme=_parse_scheme(p.get("addressing_scheme"), f"Point {point_id}"),
        )
    except (TypeError, ValueError, AttributeError) as e:
        raise ConfigError(f"Point {point_id}: {e}")


def _section(data: dict, name: str) -> dict:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' section must be a mapping")
    return section


def _entries(data: dict, name: str) -> list:
    entries = data.get(name) or []
    if not isinstance(entries, list):
        raise ConfigError(f"'{name}' must be a list")
    return entries


def load_supervision_config(data: dict) -> SupervisionConfig:
    """
    Load SupervisionConfig from dictionary (e.g., from a YAML file)

    Raises:
        ConfigError: If the structure or any value is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    session_data = _section(data, "session")
    history_data = _section(data, "history")
    service_data = _section(data, "service")
    try:
        session = SessionSettings(
            connect_timeout_s=float(session_data.get("connect_timeout_s", 2.0)),
            request_timeout_s=float(session_data.get("request_timeout_s", 3.0)),
            max_consecutive_failures=int(session_data.get("max_consecutive_failures", 3)),
            cooldown_s=float(session_data.get("cooldown_s", 5.0)),
        )
        history = HistorySettings(
            db_path=str(history_data.get("db_path", HistorySettings.db_path)),
            retention_days=int(history_data.get("retention_days", 30)),
        )
        service = ServiceSettings(
            health_port=int(service_data.get("health_port", 8090)),
            config_watch_interval_s=float(service_data.get("config_watch_interval_s", 5.0)),
            default_frequency_s=coerce_frequency(
                service_data.get("default_frequency_s"), DEFAULT_FREQUENCY_SECONDS
            ),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid settings value: {e}")

    devices = []
    seen_devices: set[str] = set()
    for d in _entries(data, "devices"):
        device = _parse_device(d)
        if device.id in seen_devices:
            raise ConfigError(f"Duplicate device id: {device.id}")
        seen_devices.add(device.id)
        devices.append(device)

    points = [_parse_point(p, service.default_frequency_s) for p in _entries(data, "points")]

    return SupervisionConfig(
        devices=devices,
        points=points,
        session=session,
        history=history,
        service=service,
    )


def load_config_file(path: str | Path) -> SupervisionConfig:
    """Load and parse a YAML configuration file"""
    path = Path(path)
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        raise ConfigError(f"Configuration file not found: {path}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    return load_supervision_config(data)


def find_config_path(explicit: str | None = None) -> str:
    """Find configuration file"""
    if explicit:
        return explicit

    env_path = os.environ.get("SUPERVISION_CONFIG")
    if env_path:
        return env_path

    possible_paths = [
        Path("/etc/plc-supervision/config.yaml"),
        Path(__file__).parent.parent / "config.yaml",
    ]
    for path in possible_paths:
        if path.exists():
            return str(path)

    return str(possible_paths[0])
