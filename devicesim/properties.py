"""Reported-property helpers."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Protocol

from .config import DeviceInfoConfig
from .hub import PropertyReportError

LOGGER = logging.getLogger(__name__)


class AckStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportedPropertiesTarget(Protocol):
    async def update_reported(self, patch: Dict[str, Any]) -> None: ...


@dataclass(frozen=True, slots=True)
class PropertyPatch:
    """Acknowledgement of a writeable property, in the IoT Central ack shape."""

    key: str
    value: Any
    ack_status: AckStatus
    ack_code: int
    ack_version: Optional[int]

    def as_dict(self) -> Dict[str, Any]:
        return {
            self.key: {
                "value": self.value,
                "ad": self.ack_status.value,
                "ac": self.ack_code,
                "av": self.ack_version,
            }
        }


def static_device_properties(config: Optional[DeviceInfoConfig] = None) -> Dict[str, str]:
    info = config or DeviceInfoConfig()
    return {"Model": info.model, "Features": info.features, "Cores": info.cores}


class PropertyReporter:
    """Pushes reported-property updates; failed pushes are logged and dropped."""

    async def send_device_properties(
        self, twin: ReportedPropertiesTarget, properties: Dict[str, Any]
    ) -> bool:
        rendered = json.dumps(properties)
        try:
            await twin.update_reported(properties)
        except PropertyReportError as exc:
            LOGGER.error("Sent device properties: %s; error: %s", rendered, exc)
            return False

        LOGGER.info("Sent device properties: %s; status: success", rendered)
        return True

    async def send_patch(
        self, twin: ReportedPropertiesTarget, patch: PropertyPatch
    ) -> bool:
        return await self.send_device_properties(twin, patch.as_dict())
