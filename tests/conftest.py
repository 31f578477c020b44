import asyncio
import base64
import copy
import json
import sys
from typing import Any, Optional

import pytest
from azure.iot.device import MethodRequest

DEVICE_KEY = base64.b64encode(b"0123456789abcdef0123456789abcdef").decode("ascii")


@pytest.fixture
def loop_factory():
    """Provide event loops for aiohttp pytest integration."""
    loops: list[asyncio.AbstractEventLoop] = []

    def factory() -> asyncio.AbstractEventLoop:
        if sys.platform.startswith("win"):
            loop = asyncio.SelectorEventLoop()
        else:
            loop = asyncio.new_event_loop()

        asyncio.set_event_loop(loop)
        loops.append(loop)
        return loop

    yield factory

    for loop in loops:
        loop.close()

    asyncio.set_event_loop(None)


class FakeDeviceClient:
    """Stands in for ``IoTHubDeviceClient`` and records what the session sends."""

    def __init__(self, connection_string: str, **options: Any) -> None:
        self.connection_string = connection_string
        self.options = options

        self.connect_error: Optional[Exception] = None
        self.send_error: Optional[Exception] = None
        self.twin_error: Optional[Exception] = None
        self.reported_error: Optional[Exception] = None
        self.twin: dict[str, Any] = {"desired": {}, "reported": {}}

        self.connected = False
        self.shut_down = False
        self.messages: list = []
        self.reported_patches: list[dict] = []
        self.method_responses: list = []

        self.on_connection_state_change = None
        self.on_twin_desired_properties_patch_received = None
        self.on_method_request_received = None

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def shutdown(self) -> None:
        self.connected = False
        self.shut_down = True

    async def send_message(self, message) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.messages.append(message)

    async def get_twin(self) -> dict[str, Any]:
        if self.twin_error is not None:
            raise self.twin_error
        return copy.deepcopy(self.twin)

    async def patch_twin_reported_properties(self, patch: dict) -> None:
        if self.reported_error is not None:
            raise self.reported_error
        self.reported_patches.append(patch)

    async def send_method_response(self, response) -> None:
        self.method_responses.append(response)

    # Events the hub would push; the real client raises them on its own thread.
    def drop_connection(self) -> None:
        self.connected = False
        self.on_connection_state_change()

    def restore_connection(self) -> None:
        self.connected = True
        self.on_connection_state_change()

    def push_desired(self, patch: dict) -> None:
        self.on_twin_desired_properties_patch_received(patch)

    def invoke_method(self, name: str, request_id: str, payload: Any = None) -> None:
        self.on_method_request_received(
            MethodRequest(request_id=request_id, name=name, payload=payload)
        )

    def telemetry(self) -> list[dict]:
        return [json.loads(message.data) for message in self.messages]

    def responses(self) -> list[tuple[str, int, Any]]:
        return [
            (response.request_id, response.status, response.payload)
            for response in self.method_responses
        ]


class FakeClientFactory:
    """Callable passed as ``client_factory``; records every client it builds."""

    def __init__(self) -> None:
        self.instances: list[FakeDeviceClient] = []
        self.options: dict[str, Any] = {}

    def __call__(self, connection_string: str, **kwargs: Any) -> FakeDeviceClient:
        client = FakeDeviceClient(connection_string, **kwargs)
        for name, value in self.options.items():
            setattr(client, name, value)
        self.instances.append(client)
        return client

    @property
    def client(self) -> FakeDeviceClient:
        return self.instances[-1]


@pytest.fixture
def device_key() -> str:
    return DEVICE_KEY


@pytest.fixture
def client_factory() -> FakeClientFactory:
    return FakeClientFactory()
