"""Session dispatcher - handler registry, dispatch and the initialize handshake.

A dispatcher owns no I/O. It is connected to exactly one transport, receives
decoded JSON-RPC messages from it together with a ResponseSink, and answers
through that sink.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from pydantic import BaseModel, ValidationError

from recall_mcp.context import RequestContext, ResponseSink
from recall_mcp.exceptions import JSONRPCError
from recall_mcp.types.base import LATEST_PROTOCOL_VERSION, SUPPORTED_PROTOCOL_VERSIONS
from recall_mcp.types.common import ServerCapabilities
from recall_mcp.types.initialize import InitializeRequestParams, InitializeResult
from recall_mcp.types.json_rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    JSONRPCResultResponse,
)

if TYPE_CHECKING:
    from recall_mcp.transport.streamable_http import StreamableHTTPServerTransport

logger = logging.getLogger(__name__)

RequestHandler = Callable[[RequestContext, JSONRPCRequest], Awaitable[Any]]
NotificationHandler = Callable[[RequestContext, JSONRPCNotification], Awaitable[None]]


@runtime_checkable
class Dispatcher(Protocol):
    """What the session store needs from a per-session dispatcher."""

    async def connect(self, transport: StreamableHTTPServerTransport) -> None:
        """Bind to the session's transport. Called once, right after construction."""
        ...

    async def close(self) -> None:
        """Release the dispatcher when its session is destroyed."""
        ...


class LowLevelDispatcher:
    """Handler registry + dispatch for one session.

    Usage:
        dispatcher = LowLevelDispatcher(name="my-server", version="1.0")

        @dispatcher.request_handler("tools/list")
        async def list_tools(ctx: RequestContext, request: JSONRPCRequest):
            return ListToolsResult(tools=[...])

        await dispatcher.connect(transport)
    """

    def __init__(self, *, name: str, version: str, instructions: str | None = None) -> None:
        self.name = name
        self.version = version
        self.instructions = instructions
        self._request_handlers: dict[str, RequestHandler] = {}
        self._notification_handlers: dict[str, NotificationHandler] = {}
        self._transport: StreamableHTTPServerTransport | None = None
        self.protocol_version: str | None = None

    def request_handler(self, method: str) -> Callable[[RequestHandler], RequestHandler]:
        """Decorator to register a request handler for a given method."""

        def decorator(fn: RequestHandler) -> RequestHandler:
            self._request_handlers[method] = fn
            return fn

        return decorator

    def notification_handler(self, method: str) -> Callable[[NotificationHandler], NotificationHandler]:
        """Decorator to register a notification handler for a given method."""

        def decorator(fn: NotificationHandler) -> NotificationHandler:
            self._notification_handlers[method] = fn
            return fn

        return decorator

    @property
    def transport(self) -> StreamableHTTPServerTransport | None:
        return self._transport

    async def connect(self, transport: StreamableHTTPServerTransport) -> None:
        if self._transport is not None:
            raise RuntimeError("Dispatcher is already connected to a transport")
        transport.attach(self.handle_message)
        self._transport = transport

    async def close(self) -> None:
        if self._transport is not None:
            self._transport.detach()
            self._transport = None

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Push a server-initiated notification to the client over the session's standalone stream."""
        if self._transport is None:
            raise RuntimeError("Dispatcher is not connected to a transport")
        await self._transport.send(JSONRPCNotification(method=method, params=params))

    async def handle_message(self, sink: ResponseSink, message: JSONRPCMessage) -> None:
        """Dispatch a single message coming from the transport."""
        session_id = self._transport.session_id if self._transport else None

        if isinstance(message, JSONRPCRequest):
            if message.method == "initialize":
                await sink.send_result(self._handle_initialize(message))
                return
            ctx = RequestContext(session_id=session_id, request_id=message.id, _sink=sink)
            await sink.send_result(await self.dispatch_request(ctx, message))
            return

        if isinstance(message, JSONRPCNotification):
            if message.method == "notifications/initialized":
                return
            ctx = RequestContext(session_id=session_id, request_id="notification", _sink=sink)
            await self.dispatch_notification(ctx, message)
            return

        # Responses to server→client requests; nothing is waiting on them.
        logger.debug("Ignoring client response %s", getattr(message, "id", None))

    async def dispatch_request(self, ctx: RequestContext, request: JSONRPCRequest) -> JSONRPCResponse:
        """Dispatch a request to the appropriate handler."""
        if request.method == "ping":
            return JSONRPCResultResponse(id=request.id, result={})

        handler = self._request_handlers.get(request.method)
        if not handler:
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=METHOD_NOT_FOUND, message=f"Method not found: {request.method}"),
            )
        try:
            result = await handler(ctx, request)
        except ValidationError as e:
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=INVALID_PARAMS, message=f"Invalid params: {e}"),
            )
        except JSONRPCError as e:
            return JSONRPCErrorResponse(id=request.id, error=e.error)
        except Exception:
            logger.exception("Handler error for %s", request.method)
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=INTERNAL_ERROR, message="Internal error"),
            )

        # Handler can return a BaseModel (serialized) or a raw dict
        if isinstance(result, BaseModel):
            result_data = result.model_dump(by_alias=True, exclude_none=True)
        elif isinstance(result, dict):
            result_data = result
        else:
            result_data = {}
        return JSONRPCResultResponse(id=request.id, result=result_data)

    async def dispatch_notification(self, ctx: RequestContext, notification: JSONRPCNotification) -> None:
        """Dispatch a notification to the appropriate handler."""
        handler = self._notification_handlers.get(notification.method)
        if handler:
            try:
                await handler(ctx, notification)
            except Exception:
                logger.exception("Notification handler error for %s", notification.method)

    def get_capabilities(self) -> ServerCapabilities:
        """Derive capabilities from registered handlers."""
        caps = ServerCapabilities()
        if "tools/list" in self._request_handlers or "tools/call" in self._request_handlers:
            caps.tools = {}
        if "prompts/list" in self._request_handlers or "prompts/get" in self._request_handlers:
            caps.prompts = {}
        if "resources/list" in self._request_handlers or "resources/read" in self._request_handlers:
            caps.resources = {}
        if "logging/setLevel" in self._request_handlers:
            caps.logging = {}
        return caps

    def _handle_initialize(self, request: JSONRPCRequest) -> JSONRPCResponse:
        try:
            params = InitializeRequestParams.model_validate(request.params)
        except ValidationError as e:
            return JSONRPCErrorResponse(
                id=request.id,
                error=ErrorData(code=INVALID_PARAMS, message=f"Invalid initialize params: {e}"),
            )

        if params.protocol_version in SUPPORTED_PROTOCOL_VERSIONS:
            protocol_version = params.protocol_version
        else:
            protocol_version = LATEST_PROTOCOL_VERSION
        self.protocol_version = protocol_version

        logger.debug(
            "Initialized session %s for client %s %s (protocol %s)",
            self._transport.session_id if self._transport else None,
            params.client_info.name,
            params.client_info.version,
            protocol_version,
        )

        result = InitializeResult.model_validate(
            {
                "protocolVersion": protocol_version,
                "capabilities": self.get_capabilities().model_dump(by_alias=True, exclude_none=True),
                "serverInfo": {"name": self.name, "version": self.version},
                "instructions": self.instructions,
            }
        )
        return JSONRPCResultResponse(id=request.id, result=result.model_dump(by_alias=True, exclude_none=True))

