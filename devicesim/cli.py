"""Command-line interface for devicesim."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import constants
from .app import DeviceSimulatorApp, build_connection_string
from .config import SimulatorConfig, load_config
from .logging import configure_logging
from .provisioning import ProvisioningError, ProvisioningSession

LOGGER = logging.getLogger(__name__)

_SECRET_OPTIONS = {"symmetric_key"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=constants.APP_NAME, description="Simulated IoT Central device"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=None,
        help=f"Path to a .env file (default: {constants.DEFAULT_ENV_FILE})",
    )

    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("start", help="Provision, connect and run the device")
    subparsers.add_parser(
        "provision", help="Register with the provisioning service and exit"
    )
    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def _provision_once(config: SimulatorConfig) -> int:
    configure_logging(config.logging.level, log_network=config.logging.log_network)
    session = ProvisioningSession(config.identity, config.provisioning)
    try:
        result = asyncio.run(session.register())
    except ProvisioningError as exc:
        LOGGER.error("Error registering device: %s", exc)
        return 1

    print(f"Assigned hub: {result.assigned_hub}")
    print(f"Device id: {result.device_id}")
    print(f"Connection string: {build_connection_string(result, config)}")
    return 0


def _show_config(config: SimulatorConfig) -> int:
    print(f"Configuration loaded from {config.path!s}\n")
    for section in config.raw.sections():
        print(f"[{section}]")
        for key, value in config.raw[section].items():
            if key in _SECRET_OPTIONS and value:
                value = "********"
            print(f"{key} = {value}")
        print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config, env_file=args.env_file)
    command = args.command or "start"

    if command == "start":
        DeviceSimulatorApp.start(config)
        return 0

    if command == "provision":
        return _provision_once(config)

    if command == "show-config":
        return _show_config(config)

    LOGGER.error("Unknown command: %s", command)
    return 1


if __name__ == "__main__":
    sys.exit(main())
