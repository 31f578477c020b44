from pathlib import Path

import pytest

from devicesim import cli
from devicesim.provisioning import (
    ProvisioningError,
    ProvisioningResult,
    ProvisioningSession,
)


@pytest.fixture
def identity_env(monkeypatch, device_key):
    monkeypatch.setenv("ID_SCOPE", "0ne0001")
    monkeypatch.setenv("DEVICE_ID", "device-1")
    monkeypatch.setenv("PRIMARY_KEY", device_key)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def _args(tmp_path: Path, *command: str) -> list[str]:
    return [
        "-c",
        str(tmp_path / "devicesim.cfg"),
        "--env-file",
        str(tmp_path / ".env"),
        *command,
    ]


def test_show_config_masks_key(tmp_path, capsys, identity_env, device_key):
    exit_code = cli.main(_args(tmp_path, "show-config"))

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "scope_id = 0ne0001" in output
    assert "symmetric_key = ********" in output
    assert device_key not in output


def test_provision_prints_connection_string(
    tmp_path, capsys, monkeypatch, identity_env, device_key
):
    async def fake_register(self):
        return ProvisioningResult("hub-01.azure-devices.net", "device-1")

    monkeypatch.setattr(ProvisioningSession, "register", fake_register)

    exit_code = cli.main(_args(tmp_path, "provision"))

    output = capsys.readouterr().out
    assert exit_code == 0
    assert "Assigned hub: hub-01.azure-devices.net" in output
    assert (
        "Connection string: HostName=hub-01.azure-devices.net;"
        f"DeviceId=device-1;SharedAccessKey={device_key}"
    ) in output


def test_provision_failure_returns_error(tmp_path, monkeypatch, identity_env):
    async def fake_register(self):
        raise ProvisioningError("Unexpected response 401 from provisioning service")

    monkeypatch.setattr(ProvisioningSession, "register", fake_register)

    assert cli.main(_args(tmp_path, "provision")) == 1


def test_start_is_default_command(tmp_path, monkeypatch, identity_env):
    started = []
    monkeypatch.setattr(
        cli.DeviceSimulatorApp, "start", classmethod(lambda cls, config: started.append(config))
    )

    assert cli.main(_args(tmp_path)) == 0
    assert len(started) == 1
    assert started[0].identity.registration_id == "device-1"
