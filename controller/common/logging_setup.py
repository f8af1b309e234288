"""
Structured Logging Setup

Every component logs through a "supervision.<component>" logger.
Output is one JSON object per line by default; set
SUPERVISION_LOG_FORMAT=text for human-readable development output and
SUPERVISION_LOG_LEVEL to change verbosity.

Structured fields go in `extra=`, e.g.:

    logger.info(f"Connected to {name}", extra={"device_id": device_id})
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any

LOGGER_PREFIX = "supervision"

TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
TEXT_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Attributes every LogRecord carries; anything else came from extra=
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message", "asctime", "service", "taskName",
}


class JsonFormatter(logging.Formatter):
    """One JSON object per record, extra= fields merged in"""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": getattr(record, "service", "unknown"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        entry.update(
            (key, value) for key, value in vars(record).items() if key not in _RECORD_ATTRS
        )
        return json.dumps(entry, default=str)


class ServiceLoggerAdapter(logging.LoggerAdapter):
    """Stamps the component name onto every record"""

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = kwargs.setdefault("extra", {})
        extra["service"] = self.extra.get("service", "unknown")
        return msg, kwargs


def _level(name: str) -> int:
    return getattr(logging, name.upper(), logging.INFO)


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_format: bool = True,
) -> logging.Logger:
    """
    Configure the logger of one component.

    Args:
        service_name: Component name, e.g. "device.session"
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_format: JSON lines (production) or plain text (development)

    Returns:
        The configured "supervision.<service_name>" logger
    """
    level = _level(log_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(
        JsonFormatter() if json_format else logging.Formatter(TEXT_FORMAT, datefmt=TEXT_DATEFMT)
    )

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{service_name}")
    logger.setLevel(level)
    logger.handlers[:] = [handler]
    logger.propagate = False
    return logger


def get_service_logger(service_name: str) -> ServiceLoggerAdapter:
    """Logger adapter for a component, configured from the environment"""
    logger = setup_logging(
        service_name,
        log_level=os.environ.get("SUPERVISION_LOG_LEVEL", "INFO"),
        json_format=os.environ.get("SUPERVISION_LOG_FORMAT", "json").lower() == "json",
    )
    return ServiceLoggerAdapter(logger, {"service": service_name})


def set_log_level(log_level: str) -> None:
    """Change the level of every component logger created so far (and later ones)"""
    os.environ["SUPERVISION_LOG_LEVEL"] = log_level.upper()
    level = _level(log_level)

    for name, logger in logging.root.manager.loggerDict.items():
        if not name.startswith(f"{LOGGER_PREFIX}.") or not isinstance(logger, logging.Logger):
            continue
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)


def log_device_read(
    logger: logging.Logger,
    device_name: str,
    point: str,
    value: Any,
    success: bool = True,
) -> None:
    """Debug line per successful poll, warning per failed one"""
    fields = {"device": device_name, "point": point}
    if not success:
        logger.warning(f"Failed to read {device_name}.{point}", extra=fields)
        return
    logger.debug(f"Read {device_name}.{point} = {value}", extra={**fields, "value": value})


def log_device_write(
    logger: logging.Logger,
    device_name: str,
    point: str,
    value: Any,
    success: bool = True,
) -> None:
    """Writes are operator actions, so both outcomes are logged above debug"""
    fields = {"device": device_name, "point": point, "value": value}
    if success:
        logger.info(f"Write {device_name}.{point} = {value}", extra=fields)
    else:
        logger.error(f"Failed to write {device_name}.{point} = {value}", extra=fields)
