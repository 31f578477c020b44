"""Device session on top of the Azure IoT Hub device client.

The session owns the single ``IoTHubDeviceClient`` connected to the assigned
hub. Everything the simulator sends or receives flows through it:

* device-to-cloud telemetry messages
* twin retrieval and reported-property patches
* desired-property patches pushed by the service
* direct method (command) requests and their responses

The client keeps the connection alive on its own. It reconnects after a drop,
re-enables the twin and method features it had before, and renews its SAS
token before the token expires. Handlers set on the client stay in place
across those reconnects.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from azure.iot.device import Message, MethodResponse, exceptions
from azure.iot.device.aio import IoTHubDeviceClient

from .auth import HubConnectionString
from .config import HubConfig

LOGGER = logging.getLogger(__name__)

TELEMETRY_CONTENT_TYPE = "application/json"
TELEMETRY_CONTENT_ENCODING = "utf-8"

CLIENT_ERRORS = (
    exceptions.ClientError,
    exceptions.OperationCancelled,
    exceptions.OperationTimeout,
    exceptions.ServiceError,
)


class HubConnectionError(RuntimeError):
    """Raised when the device session cannot be opened."""


class PublishError(RuntimeError):
    """Raised when a telemetry message is not acknowledged by the hub."""


class TwinError(RuntimeError):
    """Raised when the device twin cannot be retrieved."""


class PropertyReportError(RuntimeError):
    """Raised when a reported-properties patch is rejected or lost."""


class CommandResponseError(RuntimeError):
    """Raised when a command response cannot be delivered."""


@dataclass(slots=True)
class CommandRequest:
    name: str
    request_id: str
    payload: Any = None


DesiredListener = Callable[[Dict[str, Any]], Optional[Awaitable[None]]]
MethodHandler = Callable[[CommandRequest], Awaitable[None]]
ClientFactory = Callable[..., Any]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def _shutdown(client: Any) -> None:
    try:
        await client.shutdown()
    except CLIENT_ERRORS as exc:
        LOGGER.warning("Device client did not shut down cleanly: %s", _describe(exc))


@dataclass
class Twin:
    """Handle on the device twin fetched once after the session opens."""

    session: "DeviceSession"
    desired: Dict[str, Any] = field(default_factory=dict)
    reported: Dict[str, Any] = field(default_factory=dict)

    @property
    def version(self) -> Optional[int]:
        return self.desired.get("$version")

    async def update_reported(self, patch: Dict[str, Any]) -> None:
        await self.session.update_reported(patch)
        self.reported.update(patch)

    def on_desired(self, listener: DesiredListener, *, replay: bool = True) -> None:
        """Subscribe to desired-property patches.

        With ``replay`` the listener first receives the desired section of the
        fetched twin, so settings changed while the device was offline are
        applied as well.
        """
        self.session.add_desired_listener(listener)
        if replay and self.desired:
            self.session.notify_desired(listener, dict(self.desired))

    def apply_desired_patch(self, patch: Dict[str, Any]) -> None:
        self.desired.update(patch)


class DeviceSession:
    """Owns the single live device client connected to the assigned hub."""

    def __init__(
        self,
        connection_string: HubConnectionString,
        config: Optional[HubConfig] = None,
        *,
        model_id: Optional[str] = None,
        client_factory: ClientFactory = IoTHubDeviceClient.create_from_connection_string,
    ) -> None:
        self.connection_string = connection_string
        self.config = config or HubConfig()
        self.model_id = model_id
        self._client_factory = client_factory

        self._client: Any = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._open = False
        self._desired_listeners: List[DesiredListener] = []
        self._method_handlers: Dict[str, MethodHandler] = {}
        self._method_requests: Dict[str, Any] = {}
        self._twin: Optional[Twin] = None
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def device_id(self) -> str:
        return self.connection_string.device_id

    @property
    def host_name(self) -> str:
        return self.connection_string.host_name

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def connected(self) -> bool:
        """Whether the client currently holds a live connection to the hub."""
        return self._client is not None and bool(self._client.connected)

    def _client_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "keep_alive": self.config.keepalive_seconds,
            "sastoken_ttl": self.config.token_ttl_seconds,
            "websockets": self.config.websockets,
            "connection_retry": self.config.connection_retry,
        }
        if self.model_id:
            options["product_info"] = self.model_id
        return options

    async def open(self) -> None:
        """Connect the device client and route twin and method traffic to the session."""

        if self._open:
            raise HubConnectionError("Device session already open")

        self._loop = asyncio.get_running_loop()
        try:
            client = self._client_factory(
                str(self.connection_string), **self._client_options()
            )
        except ValueError as exc:
            raise HubConnectionError(f"Invalid shared access key: {exc}") from exc

        LOGGER.info("Opening device session to %s as %s", self.host_name, self.device_id)

        try:
            await asyncio.wait_for(
                client.connect(), timeout=self.config.connect_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            await _shutdown(client)
            raise HubConnectionError("Timed out connecting to the hub") from exc
        except CLIENT_ERRORS as exc:
            await _shutdown(client)
            raise HubConnectionError(_describe(exc)) from exc

        self._client = client
        self._open = True

        client.on_connection_state_change = self._on_connection_state_change
        client.on_twin_desired_properties_patch_received = self._on_desired_patch
        client.on_method_request_received = self._on_method_request

    async def close(self) -> None:
        if self._client is None:
            return

        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        client = self._client
        self._client = None
        self._open = False
        self._method_requests.clear()
        await _shutdown(client)
        LOGGER.info("Device session closed")

    async def publish(self, payload: bytes) -> None:
        """Send a telemetry message and wait for the hub to acknowledge it."""

        if not self._open or self._client is None:
            raise PublishError("Device session is not open")

        message = Message(payload)
        message.content_type = TELEMETRY_CONTENT_TYPE
        message.content_encoding = TELEMETRY_CONTENT_ENCODING
        try:
            await asyncio.wait_for(
                self._client.send_message(message),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise PublishError("Timed out waiting for telemetry acknowledgement") from exc
        except CLIENT_ERRORS as exc:
            raise PublishError(_describe(exc)) from exc

    async def fetch_twin(self) -> Twin:
        if not self._open or self._client is None:
            raise TwinError("Device session is not open")

        try:
            document = await asyncio.wait_for(
                self._client.get_twin(), timeout=self.config.request_timeout_seconds
            )
        except asyncio.TimeoutError as exc:
            raise TwinError("Timed out waiting for the twin document") from exc
        except CLIENT_ERRORS as exc:
            raise TwinError(f"Twin request failed: {_describe(exc)}") from exc

        if not isinstance(document, dict):
            raise TwinError("Twin document is not an object")

        twin = Twin(
            session=self,
            desired=dict(document.get("desired") or {}),
            reported=dict(document.get("reported") or {}),
        )
        self._twin = twin
        return twin

    async def update_reported(self, patch: Dict[str, Any]) -> None:
        if not self._open or self._client is None:
            raise PropertyReportError("Device session is not open")

        try:
            await asyncio.wait_for(
                self._client.patch_twin_reported_properties(patch),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise PropertyReportError(
                "Timed out waiting for reported properties acknowledgement"
            ) from exc
        except CLIENT_ERRORS as exc:
            raise PropertyReportError(
                f"Reported properties update failed: {_describe(exc)}"
            ) from exc

    def register_command(self, name: str, handler: MethodHandler) -> None:
        """Register a direct method handler; the last registration for a name wins."""
        if name in self._method_handlers:
            LOGGER.debug("Replacing handler for command %s", name)
        self._method_handlers[name] = handler

    def add_desired_listener(self, listener: DesiredListener) -> None:
        self._desired_listeners.append(listener)

    def notify_desired(self, listener: DesiredListener, patch: Dict[str, Any]) -> None:
        self._spawn(self._invoke_listener(listener, patch))

    async def send_command_response(
        self, request_id: str, status: int, payload: Any
    ) -> None:
        if not self._open or self._client is None:
            raise CommandResponseError("Device session is not open")

        method_request = self._method_requests.pop(request_id, None)
        if method_request is None:
            raise CommandResponseError(f"No pending command request {request_id}")

        response = MethodResponse.create_from_method_request(
            method_request, status, payload
        )
        try:
            await asyncio.wait_for(
                self._client.send_method_response(response),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise CommandResponseError("Timed out sending command response") from exc
        except CLIENT_ERRORS as exc:
            raise CommandResponseError(_describe(exc)) from exc

    # ------------------------------------------------------------------
    # Client handlers. The client invokes these on its own handler thread,
    # so each one hands its work over to the session's event loop.
    # ------------------------------------------------------------------
    def _on_connection_state_change(self) -> None:
        client = self._client
        if client is None:
            return
        if client.connected:
            LOGGER.info("Device session connected to %s", self.host_name)
        else:
            LOGGER.warning(
                "Device session lost its connection to %s; the client will reconnect",
                self.host_name,
            )

    def _on_desired_patch(self, patch: Any) -> None:
        self._call_soon(self._handle_desired_patch, patch)

    def _on_method_request(self, method_request: Any) -> None:
        self._call_soon(self._handle_method_request, method_request)

    def _call_soon(self, callback: Callable[[Any], None], argument: Any) -> None:
        if not self._open or self._loop is None or self._loop.is_closed():
            LOGGER.debug("Dropping hub event received while the session is closed")
            return
        self._loop.call_soon_threadsafe(callback, argument)

    # ------------------------------------------------------------------
    # Inbound events, on the session loop
    # ------------------------------------------------------------------
    def _handle_desired_patch(self, patch: Any) -> None:
        if not self._open:
            return
        if not isinstance(patch, dict):
            LOGGER.warning("Ignoring desired-property patch that is not an object")
            return

        if self._twin is not None:
            self._twin.apply_desired_patch(patch)
        for listener in list(self._desired_listeners):
            self._spawn(self._invoke_listener(listener, patch))

    async def _invoke_listener(
        self, listener: DesiredListener, patch: Dict[str, Any]
    ) -> None:
        try:
            result = listener(patch)
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # pragma: no cover
            LOGGER.exception("Desired-property listener raised an exception")

    def _handle_method_request(self, method_request: Any) -> None:
        if not self._open:
            return
        request = CommandRequest(
            name=method_request.name,
            request_id=method_request.request_id,
            payload=method_request.payload,
        )
        self._method_requests[request.request_id] = method_request

        handler = self._method_handlers.get(request.name)
        if handler is None:
            LOGGER.warning("No handler registered for command %s", request.name)
            self._spawn(self._reject_unknown_command(request))
            return

        self._spawn(handler(request))

    async def _reject_unknown_command(self, request: CommandRequest) -> None:
        try:
            await self.send_command_response(
                request.request_id,
                404,
                {"error": f"Command {request.name} is not supported"},
            )
        except CommandResponseError as exc:
            LOGGER.error("Unable to send method response: %s", exc)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        assert self._loop is not None
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
