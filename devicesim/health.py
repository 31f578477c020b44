"""Health reporting for the simulated device."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

COMPONENT_PROVISIONING = "provisioning"
COMPONENT_HUB = "hub"
COMPONENT_TELEMETRY = "telemetry"
COMPONENT_TWIN = "twin"
COMPONENT_COMMANDS = "commands"

COMPONENTS = (
    COMPONENT_PROVISIONING,
    COMPONENT_HUB,
    COMPONENT_TELEMETRY,
    COMPONENT_TWIN,
    COMPONENT_COMMANDS,
)


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }


class HealthReporter:
    """Tracks the simulator's startup stages and agent state."""

    def __init__(self) -> None:
        self._status: Dict[str, ComponentStatus] = {}
        self._agent_state: Optional[ComponentStatus] = None
        self._device: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def update(
        self, name: str, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail
            )

    async def set_agent_state(
        self, state: str, *, healthy: bool, detail: Optional[str] = None
    ) -> None:
        async with self._lock:
            self._agent_state = ComponentStatus(
                name=state, healthy=healthy, detail=detail
            )

    async def set_device(self, *, device_id: str, assigned_hub: str) -> None:
        async with self._lock:
            self._device = {"deviceId": device_id, "assignedHub": assigned_hub}

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            components = [status.as_dict() for status in self._status.values()]
            agent_state = self._agent_state
            device = dict(self._device)

        healthy = all(item["healthy"] for item in components)
        if agent_state is not None and not agent_state.healthy:
            healthy = False

        payload: Dict[str, object] = {
            "status": "ok" if healthy else "degraded",
            "components": components,
        }
        if device:
            payload["device"] = device
        if agent_state is not None:
            payload["agentState"] = {
                "state": agent_state.name,
                "healthy": agent_state.healthy,
                "detail": agent_state.detail,
                "updatedAt": agent_state.updated_at.isoformat(timespec="seconds"),
            }

        return payload


class HealthServer:
    """Minimal HTTP server exposing `/healthz` for status checks."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    async def start(self) -> None:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)

        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info(
            "Health endpoint listening on http://%s:%s/healthz", self._host, self._port
        )

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)
