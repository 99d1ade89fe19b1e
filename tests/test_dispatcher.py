"""Tests for LowLevelDispatcher."""

from typing import Any

import pytest
from pydantic import BaseModel

from recall_mcp.context import RequestContext
from recall_mcp.dispatcher import Dispatcher, LowLevelDispatcher
from recall_mcp.exceptions import JSONRPCError
from recall_mcp.transport.streamable_http import StreamableHTTPServerTransport
from recall_mcp.types import LATEST_PROTOCOL_VERSION
from recall_mcp.types.json_rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
)

pytestmark = pytest.mark.anyio


class RecordingSink:
    def __init__(self) -> None:
        self.intermediate: list[JSONRPCMessage] = []
        self.results: list[JSONRPCResponse] = []
        self.closed = False

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        self.intermediate.append(message)

    async def send_result(self, response: JSONRPCResponse) -> None:
        self.results.append(response)
        self.closed = True

    async def close(self) -> None:
        self.closed = True


class Greeting(BaseModel):
    greeting: str
    note: str | None = None


def _initialize(protocol_version: str) -> JSONRPCRequest:
    return JSONRPCRequest(
        id=1,
        method="initialize",
        params={
            "protocolVersion": protocol_version,
            "capabilities": {},
            "clientInfo": {"name": "test-client", "version": "1.0"},
        },
    )


async def _call(dispatcher: LowLevelDispatcher, message: JSONRPCMessage) -> JSONRPCResponse:
    sink = RecordingSink()
    await dispatcher.handle_message(sink, message)
    assert len(sink.results) == 1
    return sink.results[0]


def test_satisfies_dispatcher_protocol():
    assert isinstance(LowLevelDispatcher(name="s", version="1"), Dispatcher)


@pytest.mark.parametrize(
    ("requested", "negotiated"),
    [("2025-03-26", "2025-03-26"), ("2024-11-05", "2024-11-05"), ("1999-01-01", LATEST_PROTOCOL_VERSION)],
)
async def test_initialize_negotiates_protocol_version(requested: str, negotiated: str):
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0", instructions="Be nice")

    response = await _call(dispatcher, _initialize(requested))

    assert isinstance(response, JSONRPCResultResponse)
    assert response.result["protocolVersion"] == negotiated
    assert response.result["serverInfo"] == {"name": "test-server", "version": "0.1.0"}
    assert response.result["instructions"] == "Be nice"
    assert dispatcher.protocol_version == negotiated


async def test_initialize_with_bad_params():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    response = await _call(dispatcher, JSONRPCRequest(id=1, method="initialize", params={}))

    assert isinstance(response, JSONRPCErrorResponse)
    assert response.error.code == INVALID_PARAMS


async def test_capabilities_follow_registered_handlers():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")
    assert dispatcher.get_capabilities().tools is None

    @dispatcher.request_handler("tools/list")
    async def list_tools(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        return {"tools": []}

    response = await _call(dispatcher, _initialize(LATEST_PROTOCOL_VERSION))

    assert isinstance(response, JSONRPCResultResponse)
    assert response.result["capabilities"] == {"tools": {}}


async def test_ping():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    response = await _call(dispatcher, JSONRPCRequest(id="abc", method="ping"))

    assert response == JSONRPCResultResponse(id="abc", result={})


async def test_unknown_method():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    response = await _call(dispatcher, JSONRPCRequest(id=1, method="nope"))

    assert isinstance(response, JSONRPCErrorResponse)
    assert response.error.code == METHOD_NOT_FOUND
    assert response.id == 1


async def test_handler_results_are_serialized():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    @dispatcher.request_handler("greet")
    async def greet(ctx: RequestContext, request: JSONRPCRequest) -> Greeting:
        return Greeting(greeting="hello")

    response = await _call(dispatcher, JSONRPCRequest(id=1, method="greet"))

    assert response == JSONRPCResultResponse(id=1, result={"greeting": "hello"})


async def test_handler_errors_are_mapped():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    @dispatcher.request_handler("explicit")
    async def explicit(ctx: RequestContext, request: JSONRPCRequest) -> None:
        raise JSONRPCError(INVALID_PARAMS, "bad input")

    @dispatcher.request_handler("validation")
    async def validation(ctx: RequestContext, request: JSONRPCRequest) -> None:
        Greeting.model_validate({})

    @dispatcher.request_handler("crash")
    async def crash(ctx: RequestContext, request: JSONRPCRequest) -> None:
        raise RuntimeError("boom")

    explicit_response = await _call(dispatcher, JSONRPCRequest(id=1, method="explicit"))
    validation_response = await _call(dispatcher, JSONRPCRequest(id=2, method="validation"))
    crash_response = await _call(dispatcher, JSONRPCRequest(id=3, method="crash"))

    assert isinstance(explicit_response, JSONRPCErrorResponse)
    assert (explicit_response.error.code, explicit_response.error.message) == (INVALID_PARAMS, "bad input")
    assert isinstance(validation_response, JSONRPCErrorResponse)
    assert validation_response.error.code == INVALID_PARAMS
    assert isinstance(crash_response, JSONRPCErrorResponse)
    assert crash_response.error.code == INTERNAL_ERROR


async def test_notifications_are_dispatched():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")
    seen: list[dict[str, Any] | None] = []

    @dispatcher.notification_handler("notifications/roots/list_changed")
    async def roots_changed(ctx: RequestContext, notification: JSONRPCNotification) -> None:
        seen.append(notification.params)

    sink = RecordingSink()
    await dispatcher.handle_message(sink, JSONRPCNotification(method="notifications/initialized"))
    await dispatcher.handle_message(sink, JSONRPCNotification(method="notifications/roots/list_changed", params={}))

    assert seen == [{}]
    assert sink.results == []


async def test_handler_can_send_intermediate_notifications():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    @dispatcher.request_handler("work")
    async def work(ctx: RequestContext, request: JSONRPCRequest) -> dict[str, Any]:
        await ctx.send_notification("notifications/progress", {"progress": 0.5})
        return {}

    sink = RecordingSink()
    await dispatcher.handle_message(sink, JSONRPCRequest(id=1, method="work"))

    assert sink.intermediate == [JSONRPCNotification(method="notifications/progress", params={"progress": 0.5})]


async def test_connect_binds_once():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")
    transport = StreamableHTTPServerTransport("session-1")

    await dispatcher.connect(transport)
    assert dispatcher.transport is transport

    with pytest.raises(RuntimeError):
        await dispatcher.connect(StreamableHTTPServerTransport("session-2"))

    await dispatcher.close()
    assert dispatcher.transport is None


async def test_send_notification_requires_transport():
    dispatcher = LowLevelDispatcher(name="test-server", version="0.1.0")

    with pytest.raises(RuntimeError):
        await dispatcher.send_notification("notifications/message")
