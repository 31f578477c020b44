"""Configuration loader for devicesim."""

from __future__ import annotations

import os
from configparser import ConfigParser
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from dotenv import dotenv_values

from . import constants

KEY_TYPE_DEVICE = "device"
KEY_TYPE_GROUP = "group"


@dataclass(frozen=True, slots=True)
class DeviceIdentity:
    scope_id: str = ""
    registration_id: str = ""
    symmetric_key: str = ""
    key_type: str = KEY_TYPE_DEVICE


@dataclass(slots=True)
class ProvisioningConfig:
    host: str = constants.PROVISIONING_GLOBAL_ENDPOINT
    timeout_seconds: float = 120.0
    model_id: Optional[str] = None


@dataclass(slots=True)
class HubConfig:
    keepalive_seconds: int = constants.DEFAULT_KEEPALIVE_SECONDS
    websockets: bool = False
    token_ttl_seconds: int = constants.DEFAULT_TOKEN_TTL_SECONDS
    connection_retry: bool = True
    connect_timeout_seconds: float = 30.0
    request_timeout_seconds: float = 30.0


@dataclass(slots=True)
class TelemetryConfig:
    interval_seconds: float = 1.0
    base_hal: int = 0
    hal_spread: int = 15


@dataclass(slots=True)
class DeviceInfoConfig:
    model: str = "ESP32-fake"
    features: str = "XXX"
    cores: str = "1"


@dataclass(slots=True)
class SettingsConfig:
    name_settle_seconds: float = 1.0
    brightness_settle_seconds: float = 5.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = constants.DEFAULT_LOG_PATH
    log_network: bool = False


@dataclass(slots=True)
class HealthConfig:
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 0


@dataclass(slots=True)
class SimulatorConfig:
    identity: DeviceIdentity
    provisioning: ProvisioningConfig
    hub: HubConfig
    telemetry: TelemetryConfig
    device: DeviceInfoConfig
    settings: SettingsConfig
    logging: LoggingConfig
    health: HealthConfig
    raw: ConfigParser
    path: Path


def _environment_overlay(
    environ: Optional[Mapping[str, str]], env_file: Optional[Path]
) -> dict[str, str]:
    """Merge ``.env`` values with the process environment (environment wins)."""

    values: dict[str, str] = {}
    dotenv_path = env_file or constants.DEFAULT_ENV_FILE
    if dotenv_path.exists():
        values.update(
            {k: v for k, v in dotenv_values(dotenv_path).items() if v is not None}
        )
    values.update(os.environ if environ is None else environ)
    return values


def load_config(
    path: Optional[Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
    env_file: Optional[Path] = None,
) -> SimulatorConfig:
    """Load configuration from disk, applying defaults and environment overrides.

    Identity values are taken from the ``[identity]`` section and then
    overridden by ``ID_SCOPE``, ``DEVICE_ID`` and ``PRIMARY_KEY`` from a
    ``.env`` file or the process environment. Missing identity values are
    left empty; provisioning reports them.
    """

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "identity": {
                "scope_id": "",
                "registration_id": "",
                "symmetric_key": "",
                "key_type": KEY_TYPE_DEVICE,
            },
            "provisioning": {
                "host": constants.PROVISIONING_GLOBAL_ENDPOINT,
                "timeout_seconds": "120.0",
            },
            "hub": {
                "keepalive_seconds": str(constants.DEFAULT_KEEPALIVE_SECONDS),
                "websockets": "false",
                "token_ttl_seconds": str(constants.DEFAULT_TOKEN_TTL_SECONDS),
                "connection_retry": "true",
                "connect_timeout_seconds": "30.0",
                "request_timeout_seconds": "30.0",
            },
            "telemetry": {
                "interval_seconds": "1.0",
                "base_hal": "0",
                "hal_spread": "15",
            },
            "device": {
                "model": "ESP32-fake",
                "features": "XXX",
                "cores": "1",
            },
            "settings": {
                "name_settle_seconds": "1.0",
                "brightness_settle_seconds": "5.0",
            },
            "logging": {
                "level": "INFO",
                "log_network": "false",
            },
            "health": {
                "enabled": "false",
                "host": "127.0.0.1",
                "port": "0",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    overlay = _environment_overlay(environ, env_file)
    for option, variable in (
        ("scope_id", constants.ENV_ID_SCOPE),
        ("registration_id", constants.ENV_DEVICE_ID),
        ("symmetric_key", constants.ENV_PRIMARY_KEY),
    ):
        value = overlay.get(variable)
        if value:
            parser.set("identity", option, value)

    key_type = parser.get("identity", "key_type", fallback=KEY_TYPE_DEVICE).lower()
    if key_type not in (KEY_TYPE_DEVICE, KEY_TYPE_GROUP):
        raise ValueError(f"Unsupported identity key_type: {key_type}")

    identity = DeviceIdentity(
        scope_id=parser.get("identity", "scope_id").strip(),
        registration_id=parser.get("identity", "registration_id").strip(),
        symmetric_key=parser.get("identity", "symmetric_key").strip(),
        key_type=key_type,
    )

    provisioning = ProvisioningConfig(
        host=parser.get("provisioning", "host"),
        timeout_seconds=max(
            1.0, parser.getfloat("provisioning", "timeout_seconds", fallback=120.0)
        ),
        model_id=parser.get("provisioning", "model_id", fallback=None) or None,
    )

    hub = HubConfig(
        keepalive_seconds=max(
            1,
            parser.getint(
                "hub",
                "keepalive_seconds",
                fallback=constants.DEFAULT_KEEPALIVE_SECONDS,
            ),
        ),
        websockets=parser.getboolean("hub", "websockets", fallback=False),
        token_ttl_seconds=max(
            60,
            parser.getint(
                "hub",
                "token_ttl_seconds",
                fallback=constants.DEFAULT_TOKEN_TTL_SECONDS,
            ),
        ),
        connection_retry=parser.getboolean("hub", "connection_retry", fallback=True),
        connect_timeout_seconds=parser.getfloat(
            "hub", "connect_timeout_seconds", fallback=30.0
        ),
        request_timeout_seconds=parser.getfloat(
            "hub", "request_timeout_seconds", fallback=30.0
        ),
    )

    default_interval = TelemetryConfig().interval_seconds
    try:
        interval_value = parser.getfloat(
            "telemetry", "interval_seconds", fallback=default_interval
        )
    except ValueError:
        interval_value = default_interval

    telemetry = TelemetryConfig(
        interval_seconds=interval_value if interval_value > 0 else default_interval,
        base_hal=parser.getint("telemetry", "base_hal", fallback=0),
        hal_spread=max(0, parser.getint("telemetry", "hal_spread", fallback=15)),
    )

    device = DeviceInfoConfig(
        model=parser.get("device", "model"),
        features=parser.get("device", "features"),
        cores=parser.get("device", "cores"),
    )

    settings = SettingsConfig(
        name_settle_seconds=max(
            0.0, parser.getfloat("settings", "name_settle_seconds", fallback=1.0)
        ),
        brightness_settle_seconds=max(
            0.0, parser.getfloat("settings", "brightness_settle_seconds", fallback=5.0)
        ),
    )

    log_path_value = parser.get("logging", "path", fallback="")
    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=Path(log_path_value).expanduser() if log_path_value else None,
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    health = HealthConfig(
        enabled=parser.getboolean("health", "enabled", fallback=False),
        host=parser.get("health", "host", fallback="127.0.0.1"),
        port=parser.getint("health", "port", fallback=0),
    )

    return SimulatorConfig(
        identity=identity,
        provisioning=provisioning,
        hub=hub,
        telemetry=telemetry,
        device=device,
        settings=settings,
        logging=logging_config,
        health=health,
        raw=parser,
        path=config_path,
    )

