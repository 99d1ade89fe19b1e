"""
Streamable HTTP Transport Module

One StreamableHTTPServerTransport exists per session. It turns the JSON-RPC
messages the router hands it into calls on the session's dispatcher, and the
dispatcher's output into either a single JSON document or a Server-Sent Events
stream. It also owns the session's standalone SSE stream (opened with GET),
through which server-initiated messages are pushed.

The router validates headers and message shapes and picks the response mode;
the transport never looks at Content-Type or Accept itself.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from http import HTTPStatus
from typing import Any
from uuid import uuid4

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from sse_starlette import EventSourceResponse
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from recall_mcp.context import ResponseSink
from recall_mcp.responses import invalid_session, jsonrpc_error_response
from recall_mcp.transport.event_store import EventId, EventStore, StreamId
from recall_mcp.transport.sink import ChannelSink, SinkEvent
from recall_mcp.types.json_rpc import (
    CONNECTION_ERROR,
    INTERNAL_ERROR,
    ErrorData,
    JSONRPCErrorResponse,
    JSONRPCMessage,
    JSONRPCMessageAdapter,
    JSONRPCRequest,
    JSONRPCResponse,
)

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
LAST_EVENT_ID_HEADER = "last-event-id"

# Stream id under which server-initiated messages are recorded for replay
STANDALONE_STREAM_ID: StreamId = "_GET_stream"

STANDALONE_STREAM_BUFFER = 32
REQUEST_STREAM_BUFFER = 16

MessageHandler = Callable[[ResponseSink, JSONRPCMessage], Awaitable[None]]

_PushItem = tuple[JSONRPCMessage, EventId | None]


def parse_messages(payload: Any) -> list[JSONRPCMessage]:
    """
    Validate a parsed POST body as one JSON-RPC message or a non-empty batch.

    Raises:
        ValueError: The body is an empty batch, or an item is not a JSON-RPC message
    """
    items = payload if isinstance(payload, list) else [payload]
    if not items:
        raise ValueError("Empty batch")
    return [JSONRPCMessageAdapter.validate_python(item) for item in items]


class _NoOpSink:
    """A sink that does nothing. Used for notifications and responses, which produce no reply."""

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        pass

    async def send_result(self, response: JSONRPCResponse) -> None:
        pass

    async def close(self) -> None:
        pass


class StreamableHTTPServerTransport:
    """
    HTTP server transport with event streaming support for one MCP session.

    Handles POST requests containing JSON-RPC messages (answered as JSON or as
    an SSE stream), GET requests opening the standalone SSE stream, and
    server-initiated pushes onto that stream. Closing the transport cancels
    in-flight request handling, ends open streams and fires the close event.
    """

    def __init__(self, session_id: str, *, event_store: EventStore | None = None) -> None:
        """
        Initialize a new StreamableHTTP server transport.

        Args:
            session_id: Identifier of the session that owns this transport
            event_store: Optional event store enabling Last-Event-ID replay
        """
        self.session_id = session_id
        self._event_store = event_store
        self._handler: MessageHandler | None = None
        self._standalone_writer: MemoryObjectSendStream[_PushItem] | None = None
        self._request_scopes: set[anyio.CancelScope] = set()
        self._closed = anyio.Event()

    def attach(self, handler: MessageHandler) -> None:
        """Bind the dispatcher's message handler. A transport is bound exactly once."""
        if self._handler is not None:
            raise RuntimeError(f"Transport for session {self.session_id} already has a message handler")
        self._handler = handler

    def detach(self) -> None:
        self._handler = None

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    @property
    def has_standalone_stream(self) -> bool:
        return self._standalone_writer is not None

    async def wait_closed(self) -> None:
        """Wait until the transport has been closed, by its owner or by itself."""
        await self._closed.wait()

    async def close(self) -> None:
        """Close the transport. Safe to call more than once."""
        if self.is_closed:
            return
        self._closed.set()

        for cancel_scope in list(self._request_scopes):
            cancel_scope.cancel()

        if self._standalone_writer is not None:
            self._standalone_writer.close()
            self._standalone_writer = None

        logger.debug(f"Transport for session {self.session_id} closed")

    async def handle_post(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        messages: list[JSONRPCMessage],
        *,
        batch: bool = False,
        headers: Mapping[str, str] | None = None,
        stream: bool = False,
    ) -> None:
        """
        Handle a POST carrying one JSON-RPC message or a batch of them.

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
            messages: Messages already validated with parse_messages()
            batch: The body was a JSON array, so a JSON answer is a list too
            headers: Extra response headers chosen by the router
            stream: Answer with an SSE stream instead of a JSON document
        """
        handler = self._handler
        if self.is_closed or handler is None:
            logger.debug(f"POST for session {self.session_id} after its dispatcher went away")
            await invalid_session()(scope, receive, send)
            return

        response_headers = dict(headers or {})

        if not any(isinstance(message, JSONRPCRequest) for message in messages):
            # Only notifications and responses: acknowledge, then process.
            await Response(status_code=HTTPStatus.ACCEPTED, headers=response_headers)(scope, receive, send)
            for message in messages:
                await self._dispatch_message(handler, message)
            return

        async def respond(send: Send) -> None:
            event_writer, event_reader = anyio.create_memory_object_stream[SinkEvent](REQUEST_STREAM_BUFFER)
            async with anyio.create_task_group() as tg:
                async with event_writer:
                    for message in messages:
                        if isinstance(message, JSONRPCRequest):
                            tg.start_soon(self._run_request, handler, ChannelSink(event_writer.clone()), message)
                        else:
                            tg.start_soon(self._dispatch_message, handler, message)

                if stream:
                    await self._send_event_stream(scope, receive, send, event_reader, response_headers)
                else:
                    await self._send_json(scope, receive, send, event_reader, response_headers, batch=batch)

        await self._run_tracked(scope, receive, send, respond)

    async def handle_get(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        *,
        headers: Mapping[str, str] | None = None,
        last_event_id: EventId | None = None,
    ) -> None:
        """
        Open the standalone SSE stream for server-initiated messages.

        Only one standalone stream may be open per session. With an event store
        configured, events recorded after ``last_event_id`` are replayed first.
        """
        if self.is_closed:
            await invalid_session()(scope, receive, send)
            return

        if self._standalone_writer is not None:
            response = jsonrpc_error_response(
                HTTPStatus.CONFLICT,
                CONNECTION_ERROR,
                "Conflict: only one SSE stream is allowed per session",
            )
            await response(scope, receive, send)
            return

        writer, reader = anyio.create_memory_object_stream[_PushItem](STANDALONE_STREAM_BUFFER)
        self._standalone_writer = writer

        async def respond(send: Send) -> None:
            replay = []
            if last_event_id and self._event_store is not None:
                _, replay = await self._event_store.events_after(last_event_id)

            async def event_publisher() -> AsyncIterator[dict[str, Any]]:
                for event in replay:
                    yield self._format_event(event.message, event.event_id)
                async with reader:
                    async for message, event_id in reader:
                        yield self._format_event(message, event_id)

            logger.debug(f"Standalone SSE stream opened for session {self.session_id}")
            await EventSourceResponse(event_publisher(), headers=dict(headers or {}))(scope, receive, send)

        try:
            await self._run_tracked(scope, receive, send, respond)
        finally:
            if self._standalone_writer is writer:
                self._standalone_writer = None
            writer.close()
            reader.close()
            logger.debug(f"Standalone SSE stream closed for session {self.session_id}")

    async def send(self, message: JSONRPCMessage) -> None:
        """
        Push a server-initiated message to the client.

        The message goes out on the standalone SSE stream. Without an open
        stream it is only recorded in the event store (if any), so a client
        resuming with Last-Event-ID can still receive it.
        """
        if self.is_closed:
            logger.debug(f"Dropping message for closed session {self.session_id}")
            return

        event_id = None
        if self._event_store is not None:
            event_id = await self._event_store.store_event(STANDALONE_STREAM_ID, message)

        writer = self._standalone_writer
        if writer is None:
            logger.debug(f"No standalone stream open for session {self.session_id}, message not delivered")
            return
        try:
            await writer.send((message, event_id))
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f"Standalone stream for session {self.session_id} closed while sending")

    async def _run_tracked(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        respond: Callable[[Send], Awaitable[None]],
    ) -> None:
        """Run a response under a cancel scope that close() can cancel."""
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        with anyio.CancelScope() as cancel_scope:
            self._request_scopes.add(cancel_scope)
            try:
                await respond(tracking_send)
            finally:
                self._request_scopes.discard(cancel_scope)

        if cancel_scope.cancelled_caught and not response_started:
            # Closed before anything was sent: the session is gone for this client.
            await invalid_session()(scope, receive, send)

    async def _send_event_stream(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        events: MemoryObjectReceiveStream[SinkEvent],
        headers: dict[str, str],
    ) -> None:
        stream_id: StreamId = uuid4().hex

        async def event_publisher() -> AsyncIterator[dict[str, Any]]:
            async with events:
                async for event in events:
                    event_id = None
                    if self._event_store is not None:
                        event_id = await self._event_store.store_event(stream_id, event.message)
                    yield self._format_event(event.message, event_id)

        try:
            await EventSourceResponse(event_publisher(), headers=headers)(scope, receive, send)
        finally:
            # If the client went away early, pending handlers see a closed channel.
            events.close()

    async def _send_json(
        self,
        scope: Scope,
        receive: Receive,
        send: Send,
        events: MemoryObjectReceiveStream[SinkEvent],
        headers: dict[str, str],
        *,
        batch: bool,
    ) -> None:
        responses: list[dict[str, Any]] = []
        async with events:
            async for event in events:
                if event.is_final:
                    responses.append(event.message.model_dump(by_alias=True, exclude_none=True))
                else:
                    # No per-request stream in JSON mode; intermediate messages
                    # travel on the standalone stream instead.
                    await self.send(event.message)

        content: Any = responses if batch else responses[0]
        await JSONResponse(content, headers=headers)(scope, receive, send)

    async def _run_request(self, handler: MessageHandler, sink: ChannelSink, request: JSONRPCRequest) -> None:
        try:
            await handler(sink, request)
            if not sink.closed:
                logger.warning(f"Request {request.id} ({request.method}) finished without a response")
                await sink.send_result(self._internal_error(request))
        except Exception:
            logger.exception(f"Error handling request {request.id} in session {self.session_id}")
            await sink.send_result(self._internal_error(request))
        finally:
            await sink.close()

    async def _dispatch_message(self, handler: MessageHandler, message: JSONRPCMessage) -> None:
        try:
            await handler(_NoOpSink(), message)
        except Exception:
            logger.exception(f"Error handling message in session {self.session_id}")

    @staticmethod
    def _internal_error(request: JSONRPCRequest) -> JSONRPCErrorResponse:
        return JSONRPCErrorResponse(id=request.id, error=ErrorData(code=INTERNAL_ERROR, message="Internal error"))

    @staticmethod
    def _format_event(message: JSONRPCMessage, event_id: EventId | None) -> dict[str, Any]:
        event: dict[str, Any] = {
            "event": "message",
            "data": message.model_dump_json(by_alias=True, exclude_none=True),
        }
        if event_id is not None:
            event["id"] = event_id
        return event
