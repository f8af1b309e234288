#!/usr/bin/env python3
"""
PLC Supervision Controller - Main Entry Point

Loads the point configuration, then polls every configured point at its
own frequency and records samples in the local history store.

Usage:
    python main.py                    # Use default config lookup
    python main.py --config my.yaml   # Use custom config file
    python main.py --dry-run          # Print decoded points and exit
    python main.py --log-level DEBUG  # Enable debug logging

Config lookup order: --config, $SUPERVISION_CONFIG,
/etc/plc-supervision/config.yaml, controller/config.yaml
"""

import argparse
import asyncio
import sys

from common.config import SupervisionConfig, find_config_path, load_config_file
from common.exceptions import ConfigError
from common.logging_setup import get_service_logger, set_log_level
from services.polling.points import build_poll_points

logger = get_service_logger("main")


def print_config_summary(config: SupervisionConfig) -> int:
    """
    Print the decoded configuration.

    Returns:
        Number of points that could not be decoded
    """
    points, rejected = build_poll_points(config)

    print("\n" + "=" * 60)
    print("  PLC SUPERVISION CONTROLLER")
    print("=" * 60)

    print(f"\n  Devices: {len(config.devices)}")
    for device in config.devices:
        scheme = device.addressing_scheme.value if device.addressing_scheme else "unset"
        print(f"    - {device.id} ({device.name}) {device.endpoint} slave={device.slave_id} scheme={scheme}")

    print(f"\n  Points: {len(points)} schedulable")
    for point in points:
        unit = f" [{point.unit}]" if point.unit else ""
        print(
            f"    - {point.id}: {point.raw_address} -> {point.address.space.value}[{point.address.index}] "
            f"{point.direction.value}/{point.kind.value} every {point.frequency_seconds}s{unit}"
        )

    if rejected:
        print(f"\n  Rejected: {len(rejected)}")
        for point_config, error in rejected:
            print(f"    - {point_config.id}: {error}")

    print(f"\n  History: {config.history.db_path} ({config.history.retention_days} days)")
    print(f"  Health:  http://127.0.0.1:{config.service.health_port}/health")
    print("=" * 60 + "\n")

    return len(rejected)


async def main_async(config_path: str) -> None:
    """Run the supervision service until SIGTERM/SIGINT"""
    from services.supervision.service import SupervisionService

    service = SupervisionService(config_path=config_path)
    await service.run()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="PLC Supervision Controller"
    )
    parser.add_argument(
        "--config", "-c",
        type=str,
        default=None,
        help="Path to configuration file"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print decoded configuration and exit without polling"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override SUPERVISION_LOG_LEVEL"
    )

    args = parser.parse_args()

    if args.log_level:
        set_log_level(args.log_level)

    config_path = find_config_path(args.config)

    try:
        config = load_config_file(config_path)
    except ConfigError as e:
        logger.error(f"Cannot start: {e}")
        sys.exit(1)

    if args.dry_run:
        rejected = print_config_summary(config)
        sys.exit(1 if rejected else 0)

    logger.info(f"Starting controller with {config_path}")

    try:
        asyncio.run(main_async(config_path))
    except KeyboardInterrupt:
        print("\nStopped by user")


if __name__ == "__main__":
    main()
