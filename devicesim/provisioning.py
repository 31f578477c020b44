"""Device Provisioning Service registration workflow."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from azure.iot.device import exceptions
from azure.iot.device.aio import ProvisioningDeviceClient

from . import constants
from .auth import KeyDerivationError, derive_device_key
from .config import KEY_TYPE_GROUP, DeviceIdentity, ProvisioningConfig

LOGGER = logging.getLogger(__name__)

STATUS_ASSIGNED = "assigned"

# Everything the device client raises for a failed register() call.
CLIENT_ERRORS = (
    exceptions.ClientError,
    exceptions.OperationCancelled,
    exceptions.OperationTimeout,
    exceptions.ServiceError,
)

ClientFactory = Callable[..., Any]


class ProvisioningError(RuntimeError):
    """Raised when the device cannot be registered with the provisioning service."""


@dataclass(frozen=True, slots=True)
class ProvisioningResult:
    assigned_hub: str
    device_id: str


def device_key_for(identity: DeviceIdentity) -> str:
    """Return the key the device signs with, deriving it for group enrollments."""

    if identity.key_type == KEY_TYPE_GROUP:
        return derive_device_key(identity.symmetric_key, identity.registration_id)
    return identity.symmetric_key


class ProvisioningSession:
    """Performs a one-time symmetric-key registration against DPS."""

    def __init__(
        self,
        identity: DeviceIdentity,
        config: Optional[ProvisioningConfig] = None,
        *,
        client_factory: ClientFactory = ProvisioningDeviceClient.create_from_symmetric_key,
    ) -> None:
        self.identity = identity
        self.config = config or ProvisioningConfig()
        self._client_factory = client_factory

    def _validate(self) -> None:
        missing = [
            name
            for name, value in (
                (constants.ENV_ID_SCOPE, self.identity.scope_id),
                (constants.ENV_DEVICE_ID, self.identity.registration_id),
                (constants.ENV_PRIMARY_KEY, self.identity.symmetric_key),
            )
            if not value
        ]
        if missing:
            raise ProvisioningError(
                f"Missing device identity values: {', '.join(missing)}"
            )

    def _create_client(self):
        try:
            client = self._client_factory(
                provisioning_host=self.config.host,
                registration_id=self.identity.registration_id,
                id_scope=self.identity.scope_id,
                symmetric_key=device_key_for(self.identity),
            )
        except (KeyDerivationError, ValueError) as exc:
            raise ProvisioningError(f"Invalid symmetric key: {exc}") from exc

        if self.config.model_id:
            client.provisioning_payload = {"modelId": self.config.model_id}
        return client

    async def register(self) -> ProvisioningResult:
        """Register the device and wait until the service assigns a hub."""

        self._validate()
        client = self._create_client()

        LOGGER.info(
            "Registering device %s with provisioning host %s (scope %s)",
            self.identity.registration_id,
            self.config.host,
            self.identity.scope_id,
        )

        try:
            result = await asyncio.wait_for(
                client.register(), timeout=self.config.timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise ProvisioningError(
                "Registration timed out waiting for hub assignment"
            ) from exc
        except CLIENT_ERRORS as exc:
            raise ProvisioningError(
                f"Registration request failed: {exc or type(exc).__name__}"
            ) from exc

        return self._parse_assignment(result)

    def _parse_assignment(self, result) -> ProvisioningResult:
        status = str(getattr(result, "status", "") or "").lower()
        if status != STATUS_ASSIGNED:
            raise ProvisioningError(
                f"Registration ended with status {status or 'unknown'}"
            )

        state = result.registration_state
        for name, value in (
            ("assignedHub", getattr(state, "assigned_hub", None)),
            ("deviceId", getattr(state, "device_id", None)),
        ):
            if not value:
                raise ProvisioningError(f"Response missing expected field: {name}")

        LOGGER.info("Registration succeeded")
        LOGGER.info("Assigned hub=%s", state.assigned_hub)
        LOGGER.info("DeviceId=%s", state.device_id)
        return ProvisioningResult(
            assigned_hub=str(state.assigned_hub), device_id=str(state.device_id)
        )
