"""Constants used across the devicesim package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "devicesim"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = Path.cwd() / DEFAULT_CONFIG_FILENAME
DEFAULT_ENV_FILE = Path.cwd() / ".env"

DEFAULT_LOG_PATH: Path | None = None

PROVISIONING_GLOBAL_ENDPOINT = "global.azure-devices-provisioning.net"

DEFAULT_KEEPALIVE_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3600

ENV_ID_SCOPE = "ID_SCOPE"
ENV_DEVICE_ID = "DEVICE_ID"
ENV_PRIMARY_KEY = "PRIMARY_KEY"
