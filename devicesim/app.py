"""Main application entry-point for devicesim."""

from __future__ import annotations

import asyncio
import logging
import random
from enum import Enum
from typing import Callable, Optional

from .auth import HubConnectionString
from .commands import CommandDispatcher, build_command_dispatcher
from .config import SimulatorConfig, load_config
from .health import (
    COMPONENT_COMMANDS,
    COMPONENT_HUB,
    COMPONENT_PROVISIONING,
    COMPONENT_TELEMETRY,
    COMPONENT_TWIN,
    COMPONENTS,
    HealthReporter,
    HealthServer,
)
from .hub import DeviceSession, HubConnectionError, TwinError
from .logging import configure_logging
from .properties import PropertyReporter, static_device_properties
from .provisioning import (
    ProvisioningError,
    ProvisioningResult,
    ProvisioningSession,
    device_key_for,
)
from .settings import WriteablePropertyDispatcher, build_writeable_handlers
from .telemetry import TelemetryEmitter

LOGGER = logging.getLogger(__name__)

ProvisioningFactory = Callable[[SimulatorConfig], ProvisioningSession]
SessionFactory = Callable[[HubConnectionString, SimulatorConfig], DeviceSession]


class AgentState(str, Enum):
    COLD_START = "cold_start"
    PROVISIONING = "provisioning"
    CONNECTING = "connecting"
    ACTIVE = "active"
    DEGRADED = "degraded"
    STOPPING = "stopping"


def _default_provisioning_factory(config: SimulatorConfig) -> ProvisioningSession:
    return ProvisioningSession(config.identity, config.provisioning)


def _default_session_factory(
    connection_string: HubConnectionString, config: SimulatorConfig
) -> DeviceSession:
    return DeviceSession(
        connection_string, config.hub, model_id=config.provisioning.model_id
    )


def build_connection_string(
    result: ProvisioningResult, config: SimulatorConfig
) -> HubConnectionString:
    return HubConnectionString(
        host_name=result.assigned_hub,
        device_id=result.device_id,
        shared_access_key=device_key_for(config.identity),
    )


class DeviceSimulatorApp:
    """Runs the device lifecycle: provision, connect, then serve telemetry,
    properties and commands over a single hub session until shutdown.

    Provisioning and connection failures are fatal for the session but not
    for the process: the app logs them and stays idle in the degraded state.
    """

    def __init__(
        self,
        config: Optional[SimulatorConfig] = None,
        *,
        provisioning_factory: Optional[ProvisioningFactory] = None,
        session_factory: Optional[SessionFactory] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._config = config or load_config()
        self._provisioning_factory = (
            provisioning_factory or _default_provisioning_factory
        )
        self._session_factory = session_factory or _default_session_factory
        self._rng = rng

        self._session: Optional[DeviceSession] = None
        self._telemetry: Optional[TelemetryEmitter] = None
        self._reporter = PropertyReporter()
        self._settings: Optional[WriteablePropertyDispatcher] = None
        self._commands: Optional[CommandDispatcher] = None
        self._health = HealthReporter()
        self._health_server: Optional[HealthServer] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._state = AgentState.COLD_START
        self._state_detail: Optional[str] = None

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def session(self) -> Optional[DeviceSession]:
        return self._session

    @property
    def health(self) -> HealthReporter:
        return self._health

    async def run(self) -> None:
        """Start the device and wait for a shutdown request."""

        self._shutdown_event = asyncio.Event()

        LOGGER.info("devicesim starting with config: %s", self._config.path)
        started = await self._start_services()
        if not started:
            LOGGER.warning("Device startup incomplete; running in degraded mode")

        try:
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            LOGGER.info("devicesim received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    @classmethod
    def start(cls, config: Optional[SimulatorConfig] = None) -> None:
        instance = cls(config=config)
        configure_logging(
            instance._config.logging.level,
            log_path=instance._config.logging.path,
            log_network=instance._config.logging.log_network,
        )
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            LOGGER.info("devicesim received shutdown signal")

    async def _transition_state(
        self, state: AgentState, *, detail: Optional[str] = None
    ) -> None:
        if state == self._state and detail == self._state_detail:
            return

        previous = self._state
        self._state = state
        self._state_detail = detail

        LOGGER.info(
            "Agent state transition %s -> %s (%s)",
            previous.value,
            state.value,
            detail or state.value,
        )
        await self._health.set_agent_state(
            state.value, healthy=state == AgentState.ACTIVE, detail=detail
        )

    async def _start_services(self) -> bool:
        await self._transition_state(AgentState.COLD_START, detail="initialising")
        for component in COMPONENTS:
            await self._health.update(component, False, "pending")

        await self._start_health_server()

        await self._transition_state(
            AgentState.PROVISIONING, detail="registering with provisioning service"
        )
        result = await self._provision()
        if result is None:
            await self._transition_state(
                AgentState.DEGRADED, detail="provisioning failed"
            )
            return False

        await self._transition_state(
            AgentState.CONNECTING, detail=f"opening session to {result.assigned_hub}"
        )
        session = await self._open_session(result)
        if session is None:
            await self._transition_state(
                AgentState.DEGRADED, detail="hub connection failed"
            )
            return False

        await self._start_telemetry(session)

        twin_ready = await self._start_twin_components(session)
        if not twin_ready:
            await self._transition_state(
                AgentState.DEGRADED, detail="twin unavailable; telemetry only"
            )
            return False

        await self._transition_state(AgentState.ACTIVE, detail="device ready")
        return True

    async def _provision(self) -> Optional[ProvisioningResult]:
        provisioning = self._provisioning_factory(self._config)
        try:
            result = await provisioning.register()
        except ProvisioningError as exc:
            LOGGER.error("Error registering device: %s", exc)
            await self._health.update(COMPONENT_PROVISIONING, False, str(exc))
            return None

        await self._health.update(COMPONENT_PROVISIONING, True, None)
        await self._health.set_device(
            device_id=result.device_id, assigned_hub=result.assigned_hub
        )
        return result

    async def _open_session(
        self, result: ProvisioningResult
    ) -> Optional[DeviceSession]:
        connection_string = build_connection_string(result, self._config)
        session = self._session_factory(connection_string, self._config)
        try:
            await session.open()
        except HubConnectionError as exc:
            LOGGER.error("Device could not connect to the hub: %s", exc)
            await self._health.update(COMPONENT_HUB, False, str(exc))
            return None

        LOGGER.info("Device successfully connected to %s", result.assigned_hub)
        self._session = session
        await self._health.update(COMPONENT_HUB, True, None)
        return session

    async def _start_telemetry(self, session: DeviceSession) -> None:
        telemetry = TelemetryEmitter(session, self._config.telemetry, rng=self._rng)
        telemetry.start()
        self._telemetry = telemetry
        await self._health.update(COMPONENT_TELEMETRY, True, None)

    async def _start_twin_components(self, session: DeviceSession) -> bool:
        try:
            twin = await session.fetch_twin()
        except TwinError as exc:
            LOGGER.error("Error getting device twin: %s", exc)
            await self._health.update(COMPONENT_TWIN, False, str(exc))
            await self._health.update(COMPONENT_COMMANDS, False, "twin unavailable")
            return False

        await self._health.update(COMPONENT_TWIN, True, None)

        await self._reporter.send_device_properties(
            twin, static_device_properties(self._config.device)
        )

        settings = WriteablePropertyDispatcher(
            self._reporter, build_writeable_handlers(self._config.settings)
        )
        settings.attach(twin)
        self._settings = settings

        commands = build_command_dispatcher(session)
        commands.start()
        self._commands = commands
        await self._health.update(COMPONENT_COMMANDS, True, None)
        return True

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            LOGGER.error("Failed to start health endpoint: %s", exc)
        else:
            self._health_server = server

    async def _stop_services(self) -> None:
        await self._transition_state(AgentState.STOPPING, detail="shutdown requested")

        if self._telemetry is not None:
            await self._telemetry.stop()
            self._telemetry = None
            await self._health.update(COMPONENT_TELEMETRY, False, "shutdown")

        if self._settings is not None:
            await self._settings.stop()
            self._settings = None

        self._commands = None

        if self._session is not None:
            await self._session.close()
            self._session = None
            await self._health.update(COMPONENT_HUB, False, "shutdown")

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None
