"""Writeable-property dispatch.

Desired-property patches arrive as ``{<setting>: <value>, ..., "$version": n}``.
Every setting with a registered handler is applied on its own task; once the
handler settles, an acknowledgement patch echoing ``$version`` is reported
back. Settings without a handler are ignored.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Protocol

from .config import SettingsConfig
from .properties import (
    AckStatus,
    PropertyPatch,
    PropertyReporter,
    ReportedPropertiesTarget,
)

LOGGER = logging.getLogger(__name__)

VERSION_KEY = "$version"


@dataclass(frozen=True, slots=True)
class SettingResult:
    value: Any
    status: AckStatus = AckStatus.COMPLETED
    code: int = 200


class WriteablePropertyHandler(Protocol):
    name: str

    async def apply(self, value: Any) -> SettingResult: ...


class SettlingPropertyHandler:
    """Accepts any value after a simulated hardware settling delay."""

    def __init__(self, name: str, settle_seconds: float) -> None:
        self.name = name
        self.settle_seconds = settle_seconds

    async def apply(self, value: Any) -> SettingResult:
        await asyncio.sleep(self.settle_seconds)
        return SettingResult(value=value, status=AckStatus.COMPLETED, code=200)

    def __repr__(self) -> str:
        return f"SettlingPropertyHandler({self.name!r}, {self.settle_seconds})"


def build_writeable_handlers(
    config: Optional[SettingsConfig] = None,
) -> Dict[str, WriteablePropertyHandler]:
    settings = config or SettingsConfig()
    return {
        "name": SettlingPropertyHandler("name", settings.name_settle_seconds),
        "brightness": SettlingPropertyHandler(
            "brightness", settings.brightness_settle_seconds
        ),
    }


class WriteablePropertyDispatcher:
    def __init__(
        self,
        reporter: PropertyReporter,
        handlers: Mapping[str, WriteablePropertyHandler],
    ) -> None:
        self._reporter = reporter
        self._handlers = dict(handlers)
        self._inflight: set[asyncio.Task[Optional[PropertyPatch]]] = set()

    @property
    def pending_count(self) -> int:
        return len(self._inflight)

    def attach(self, twin: Any, *, replay: bool = True) -> None:
        """Subscribe to the twin's desired-property patches."""

        def _listener(desired: Dict[str, Any]) -> None:
            self.handle_desired(twin, desired)

        twin.on_desired(_listener, replay=replay)
        LOGGER.info(
            "Writeable properties registered: %s", ", ".join(sorted(self._handlers))
        )

    def handle_desired(
        self, twin: ReportedPropertiesTarget, desired: Mapping[str, Any]
    ) -> list[asyncio.Task[Optional[PropertyPatch]]]:
        version = desired.get(VERSION_KEY)
        tasks: list[asyncio.Task[Optional[PropertyPatch]]] = []

        for setting, value in desired.items():
            if setting.startswith("$"):
                continue
            handler = self._handlers.get(setting)
            if handler is None:
                continue

            LOGGER.info("Received setting: %s: %s", setting, value)
            task = asyncio.create_task(
                self._apply(twin, setting, handler, value, version)
            )
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
            tasks.append(task)

        return tasks

    async def _apply(
        self,
        twin: ReportedPropertiesTarget,
        setting: str,
        handler: WriteablePropertyHandler,
        value: Any,
        version: Optional[int],
    ) -> Optional[PropertyPatch]:
        try:
            result = await handler.apply(value)
        except Exception:
            LOGGER.exception("Handler for setting %s failed", setting)
            return None

        patch = PropertyPatch(
            key=setting,
            value=result.value,
            ack_status=result.status,
            ack_code=result.code,
            ack_version=version,
        )
        await self._reporter.send_patch(twin, patch)
        return patch

    async def drain(self) -> None:
        """Wait for every in-flight setting to settle and be acknowledged."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    async def stop(self) -> None:
        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
