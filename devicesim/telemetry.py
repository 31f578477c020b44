"""Synthetic telemetry emitter."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from typing import Any, Optional, Protocol

from .config import TelemetryConfig
from .hub import PublishError

LOGGER = logging.getLogger(__name__)

TELEMETRY_FIELD = "Hal"


class TelemetrySession(Protocol):
    async def publish(self, payload: bytes) -> None: ...


def sample_hal(
    base_hal: int, *, spread: int = 15, rng: Optional[random.Random] = None
) -> int:
    """Return ``round(base_hal + uniform(0, spread))``, always within ``[base, base + spread]``."""

    source = rng or random
    value = int(round(base_hal + source.uniform(0, spread)))
    return min(max(value, base_hal), base_hal + spread)


def build_payload(hal: int) -> bytes:
    return json.dumps({TELEMETRY_FIELD: hal}).encode("utf-8")


class TelemetryEmitter:
    """Publishes a fresh ``{"Hal": n}`` sample on a free-running timer.

    Ticks are not drift-corrected. Each publish runs as its own task, so a
    slow or failing acknowledgement never delays the next tick.
    """

    def __init__(
        self,
        session: TelemetrySession,
        config: Optional[TelemetryConfig] = None,
        *,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._session = session
        self._config = config or TelemetryConfig()
        self._rng = rng
        self._task: Optional[asyncio.Task[None]] = None
        self._inflight: set[asyncio.Task[Any]] = set()
        self.emitted = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            raise RuntimeError("TelemetryEmitter already started")

        self._task = asyncio.create_task(self._run())
        LOGGER.info(
            "Telemetry emitter started (interval=%.1fs, base_hal=%d)",
            self._config.interval_seconds,
            self._config.base_hal,
        )

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

        for task in list(self._inflight):
            task.cancel()
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._config.interval_seconds)
            self.emit()

    def emit(self) -> asyncio.Task[None]:
        """Sample, serialize and schedule one telemetry publish."""

        hal = sample_hal(
            self._config.base_hal, spread=self._config.hal_spread, rng=self._rng
        )
        payload = build_payload(hal)
        task = asyncio.create_task(self._publish(payload))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def _publish(self, payload: bytes) -> None:
        message = payload.decode("utf-8")
        try:
            await self._session.publish(payload)
        except PublishError as exc:
            self.failures += 1
            LOGGER.warning("Sent message: %s; error: %s", message, exc)
            return

        self.emitted += 1
        LOGGER.info("Sent message: %s; status: acknowledged", message)
