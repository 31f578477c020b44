"""Logging setup for the simulator process."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Transport loggers that flood the console at INFO/DEBUG during normal runs.
NETWORK_LOGGERS = (
    "aiohttp.access",
    "azure.iot.device",
    "paho",
)


def _file_handler(log_path: Path) -> logging.Handler:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Route simulator output to the console and optionally a file.

    Parameters
    ----------
    level:
        Root log level name, e.g. "INFO" or "DEBUG".
    log_path:
        Optional file that receives a copy of every record.
    log_network:
        When true, the device client and MQTT wire logs are kept at
        DEBUG so registration, reconnects and PUBACKs are visible.
    """

    logging.captureWarnings(True)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT
    )
    if log_path:
        root.addHandler(_file_handler(log_path))

    network_level = logging.DEBUG if log_network else logging.WARNING
    for name in NETWORK_LOGGERS:
        logging.getLogger(name).setLevel(network_level)
