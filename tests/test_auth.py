import base64
import hashlib
import hmac

import pytest

from devicesim.auth import HubConnectionString, KeyDerivationError, derive_device_key


def _expected_key(group_key: str, registration_id: str) -> str:
    digest = hmac.new(
        base64.b64decode(group_key), registration_id.encode("utf-8"), hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("ascii")


def test_derive_device_key_matches_hmac(device_key):
    derived = derive_device_key(device_key, "device-7")

    assert derived == _expected_key(device_key, "device-7")
    assert derived != derive_device_key(device_key, "device-8")


def test_derive_device_key_rejects_invalid_group_key():
    with pytest.raises(KeyDerivationError, match="base64"):
        derive_device_key("not base64!", "device-7")


def test_connection_string_build():
    connection = HubConnectionString(
        host_name="hub.azure-devices.net",
        device_id="device-1",
        shared_access_key="a2V5Cg==",
    )

    assert connection.build() == (
        "HostName=hub.azure-devices.net;DeviceId=device-1;SharedAccessKey=a2V5Cg=="
    )
    assert str(connection) == connection.build()
