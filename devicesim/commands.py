"""Command (direct method) handling for the simulated device."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from .hub import CommandRequest, CommandResponseError

LOGGER = logging.getLogger(__name__)

BLINK_LED_COMMAND = "BlinkLED"
BLINK_LED_STATUS = "Blinking LED every 5 seconds"


@dataclass(slots=True)
class CommandResponse:
    status: int
    payload: Any = field(default_factory=dict)


CommandHandler = Callable[[CommandRequest], Awaitable[CommandResponse]]


class CommandSession(Protocol):
    def register_command(
        self, name: str, handler: Callable[[CommandRequest], Awaitable[None]]
    ) -> None: ...

    async def send_command_response(
        self, request_id: str, status: int, payload: Any
    ) -> None: ...


async def blink_led(request: CommandRequest) -> CommandResponse:
    LOGGER.info("Received synchronous call to blink")
    return CommandResponse(status=200, payload={"status": BLINK_LED_STATUS})


class CommandDispatcher:
    """Routes command invocations to handlers and sends exactly one response each."""

    def __init__(self, session: CommandSession) -> None:
        self._session = session
        self._handlers: Dict[str, CommandHandler] = {}
        self._started = False

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    def register(self, name: str, handler: CommandHandler) -> None:
        self._handlers[name] = handler
        if self._started:
            self._bind(name)

    def start(self) -> None:
        for name in self._handlers:
            self._bind(name)
        self._started = True
        LOGGER.info("Command handlers registered: %s", ", ".join(self.commands))

    def _bind(self, name: str) -> None:
        async def _invoke(request: CommandRequest) -> None:
            await self.dispatch(request)

        self._session.register_command(name, _invoke)

    async def dispatch(self, request: CommandRequest) -> Optional[CommandResponse]:
        handler = self._handlers.get(request.name)
        if handler is None:
            response = CommandResponse(
                status=404, payload={"error": f"Unknown command {request.name}"}
            )
        else:
            try:
                response = await handler(request)
            except Exception as exc:
                LOGGER.exception("Command %s failed", request.name)
                response = CommandResponse(status=500, payload={"error": str(exc)})

        try:
            await self._session.send_command_response(
                request.request_id, response.status, response.payload
            )
        except CommandResponseError as exc:
            LOGGER.error("Unable to send method response: %s", exc)
            return None

        LOGGER.info(
            "Command %s answered with status %d: %s",
            request.name,
            response.status,
            response.payload,
        )
        return response


def build_command_dispatcher(session: CommandSession) -> CommandDispatcher:
    dispatcher = CommandDispatcher(session)
    dispatcher.register(BLINK_LED_COMMAND, blink_led)
    return dispatcher
