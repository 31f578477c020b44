from pathlib import Path

import pytest

from devicesim.config import KEY_TYPE_GROUP, load_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "devicesim.cfg"
    config = load_config(config_path, environ={}, env_file=tmp_path / ".env")

    assert config.identity.scope_id == ""
    assert config.identity.registration_id == ""
    assert config.identity.symmetric_key == ""
    assert config.provisioning.host == "global.azure-devices-provisioning.net"
    assert config.provisioning.model_id is None
    assert config.hub.websockets is False
    assert config.hub.token_ttl_seconds == 3600
    assert config.hub.connection_retry is True
    assert config.telemetry.interval_seconds == 1.0
    assert config.telemetry.base_hal == 0
    assert config.telemetry.hal_spread == 15
    assert config.device.model == "ESP32-fake"
    assert config.device.features == "XXX"
    assert config.device.cores == "1"
    assert config.settings.name_settle_seconds == 1.0
    assert config.settings.brightness_settle_seconds == 5.0
    assert config.logging.path is None
    assert config.health.enabled is False


def test_environment_overrides_identity(tmp_path: Path) -> None:
    config_path = tmp_path / "devicesim.cfg"
    config_path.write_text(
        "[identity]\nscope_id = from-file\nregistration_id = file-device\n",
        encoding="utf-8",
    )

    config = load_config(
        config_path,
        environ={
            "ID_SCOPE": "0ne0001",
            "DEVICE_ID": "device-1",
            "PRIMARY_KEY": "c2VjcmV0",
        },
        env_file=tmp_path / ".env",
    )

    assert config.identity.scope_id == "0ne0001"
    assert config.identity.registration_id == "device-1"
    assert config.identity.symmetric_key == "c2VjcmV0"


def test_dotenv_values_apply_below_process_environment(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "ID_SCOPE=0ne-dotenv\nDEVICE_ID=dotenv-device\nPRIMARY_KEY=a2V5\n",
        encoding="utf-8",
    )

    config = load_config(
        tmp_path / "devicesim.cfg",
        environ={"DEVICE_ID": "env-device"},
        env_file=env_file,
    )

    assert config.identity.scope_id == "0ne-dotenv"
    assert config.identity.registration_id == "env-device"
    assert config.identity.symmetric_key == "a2V5"


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "devicesim.cfg"
    config_file.write_text(
        """
[identity]
key_type = GROUP

[provisioning]
model_id = dtmi:example:Thermostat;1

[hub]
websockets = true
keepalive_seconds = 120

[telemetry]
interval_seconds = 0.5
base_hal = 20

[settings]
brightness_settle_seconds = 2.5

[logging]
path = ~/devicesim.log
""",
        encoding="utf-8",
    )

    config = load_config(config_file, environ={}, env_file=tmp_path / ".env")

    assert config.identity.key_type == KEY_TYPE_GROUP
    assert config.provisioning.model_id == "dtmi:example:Thermostat;1"
    assert config.hub.websockets is True
    assert config.hub.keepalive_seconds == 120
    assert config.telemetry.interval_seconds == 0.5
    assert config.telemetry.base_hal == 20
    assert config.settings.brightness_settle_seconds == 2.5
    assert config.logging.path == Path("~/devicesim.log").expanduser()


def test_non_positive_interval_falls_back_to_default(tmp_path: Path) -> None:
    config_file = tmp_path / "devicesim.cfg"
    config_file.write_text("[telemetry]\ninterval_seconds = 0\n", encoding="utf-8")

    config = load_config(config_file, environ={}, env_file=tmp_path / ".env")

    assert config.telemetry.interval_seconds == 1.0


def test_unknown_key_type_rejected(tmp_path: Path) -> None:
    config_file = tmp_path / "devicesim.cfg"
    config_file.write_text("[identity]\nkey_type = x509\n", encoding="utf-8")

    with pytest.raises(ValueError, match="key_type"):
        load_config(config_file, environ={}, env_file=tmp_path / ".env")
