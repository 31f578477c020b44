"""Symmetric-key credentials for the device."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass

from cryptography.hazmat.primitives import hashes, hmac


class KeyDerivationError(RuntimeError):
    """Raised when an enrollment-group key cannot be used to derive a device key."""


def derive_device_key(group_key: str, registration_id: str) -> str:
    """Derive an individual device key from an enrollment-group key.

    The device key is the base64 HMAC-SHA256 of the registration id, keyed
    with the decoded group key.
    """
    try:
        key_bytes = base64.b64decode(group_key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise KeyDerivationError("Group key is not valid base64") from exc

    signer = hmac.HMAC(key_bytes, hashes.SHA256())
    signer.update(registration_id.encode("utf-8"))
    return base64.b64encode(signer.finalize()).decode("ascii")


@dataclass(frozen=True, slots=True)
class HubConnectionString:
    host_name: str
    device_id: str
    shared_access_key: str

    def build(self) -> str:
        return (
            f"HostName={self.host_name};"
            f"DeviceId={self.device_id};"
            f"SharedAccessKey={self.shared_access_key}"
        )

    def __str__(self) -> str:
        return self.build()
