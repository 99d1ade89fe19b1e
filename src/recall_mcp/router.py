"""Session router for the /mcp endpoint.

Every HTTP request to /mcp passes through SessionRouter.handle_request, which
resolves (or creates) the session named by the ``mcp-session-id`` header,
validates the request's preconditions, picks the response mode from the
Accept header and hands the request to the session's transport.
"""

from __future__ import annotations

import json
import logging
from http import HTTPStatus

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Message, Receive, Scope, Send

from recall_mcp.exceptions import ProvisioningError
from recall_mcp.responses import (
    internal_error,
    invalid_request,
    invalid_session,
    jsonrpc_error_response,
    not_acceptable,
    parse_error,
    payload_too_large,
    unsupported_media_type,
)
from recall_mcp.session_store import Session, SessionState, SessionStore
from recall_mcp.transport.streamable_http import LAST_EVENT_ID_HEADER, MCP_SESSION_ID_HEADER, parse_messages
from recall_mcp.types.json_rpc import CONNECTION_ERROR

logger = logging.getLogger(__name__)

ALLOWED_METHODS = ("GET", "POST", "DELETE", "OPTIONS")

DEFAULT_MAX_BODY_BYTES = 4 * 1024 * 1024

JSON_MEDIA_TYPE = "application/json"
EVENT_STREAM_MEDIA_TYPE = "text/event-stream"

STREAMING_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class SessionRouter:
    """
    ASGI handler for /mcp.

    Faults raised anywhere below the router are contained here: they are
    logged, and if no response has started yet the client gets a JSON-RPC
    internal error. A fault never terminates the session it happened in.

    Args:
        store: The session store to resolve and create sessions in
        max_body_bytes: Cap on the size of a POST body
    """

    def __init__(self, store: SessionStore, *, max_body_bytes: int = DEFAULT_MAX_BODY_BYTES) -> None:
        self.store = store
        self.max_body_bytes = max_body_bytes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.handle_request(scope, receive, send)

    async def handle_request(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Process an ASGI request to the /mcp endpoint.

        Args:
            scope: ASGI scope
            receive: ASGI receive function
            send: ASGI send function
        """
        response_started = False

        async def tracking_send(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        request = Request(scope, receive)
        try:
            if request.method == "POST":
                await self._handle_post(request, tracking_send)
            elif request.method == "GET":
                await self._handle_get(request, tracking_send)
            elif request.method == "DELETE":
                await self._handle_delete(request, tracking_send)
            elif request.method == "OPTIONS":
                await Response(status_code=HTTPStatus.OK)(scope, receive, tracking_send)
            else:
                response = jsonrpc_error_response(
                    HTTPStatus.METHOD_NOT_ALLOWED,
                    CONNECTION_ERROR,
                    "Method not allowed",
                    headers={"Allow": ", ".join(ALLOWED_METHODS)},
                )
                await response(scope, receive, tracking_send)
        except Exception:
            logger.exception(f"Error handling {request.method} request to {request.url.path}")
            if not response_started:
                await internal_error()(scope, receive, send)

    async def _handle_post(self, request: Request, send: Send) -> None:
        scope, receive = request.scope, request.receive

        # Everything that can reject the request is checked before a session
        # is touched or created.
        if JSON_MEDIA_TYPE not in request.headers.get("content-type", "").lower():
            await unsupported_media_type()(scope, receive, send)
            return

        body = await self._read_body(request)
        if body is None:
            await payload_too_large()(scope, receive, send)
            return

        try:
            payload = json.loads(body)
        except ValueError:
            await parse_error()(scope, receive, send)
            return

        try:
            messages = parse_messages(payload)
        except ValueError:
            await invalid_request()(scope, receive, send)
            return

        headers: dict[str, str] = {}
        session = await self._acquire(request)
        if session is None:
            try:
                session = await self.store.create(acquire=True)
            except ProvisioningError as e:
                logger.error(f"Failed to provision a new session: {e}")
                await internal_error()(scope, receive, send)
                return
            headers[MCP_SESSION_ID_HEADER] = session.id

        stream = _accepts_event_stream(request)
        if stream:
            headers.update(STREAMING_HEADERS)

        try:
            await session.transport.handle_post(
                scope,
                receive,
                send,
                messages,
                batch=isinstance(payload, list),
                headers=headers,
                stream=stream,
            )
        finally:
            self.store.release(session)

    async def _handle_get(self, request: Request, send: Send) -> None:
        scope, receive = request.scope, request.receive

        if self._lookup(request) is None:
            await invalid_session()(scope, receive, send)
            return

        if not _accepts_event_stream(request):
            await not_acceptable()(scope, receive, send)
            return

        session = await self._acquire(request)
        if session is None:
            await invalid_session()(scope, receive, send)
            return

        try:
            await session.transport.handle_get(
                scope,
                receive,
                send,
                headers=STREAMING_HEADERS,
                last_event_id=request.headers.get(LAST_EVENT_ID_HEADER),
            )
        finally:
            self.store.release(session)

    async def _handle_delete(self, request: Request, send: Send) -> None:
        session = self._lookup(request)
        if session is None:
            await invalid_session()(request.scope, request.receive, send)
            return

        await self.store.terminate(session.id)
        await JSONResponse({"status": "ok"})(request.scope, request.receive, send)

    async def _read_body(self, request: Request) -> bytes | None:
        """Read the POST body, or return None once it is known to exceed max_body_bytes."""
        declared = request.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > self.max_body_bytes:
            return None

        # Also enforced on the bytes received, since Content-Length may be absent or wrong.
        chunks: list[bytes] = []
        received = 0
        async for chunk in request.stream():
            received += len(chunk)
            if received > self.max_body_bytes:
                logger.debug(f"POST body passed {self.max_body_bytes} bytes while streaming")
                return None
            chunks.append(chunk)
        return b"".join(chunks)

    def _lookup(self, request: Request) -> Session | None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            return None
        session = self.store.lookup(session_id)
        if session is None or session.state is not SessionState.ACTIVE:
            return None
        return session

    async def _acquire(self, request: Request) -> Session | None:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id:
            return None
        session = await self.store.acquire(session_id)
        if session is None:
            logger.debug(f"Unknown or closed session: {session_id}")
        return session


def _accepts_event_stream(request: Request) -> bool:
    return EVENT_STREAM_MEDIA_TYPE in request.headers.get("accept", "").lower()
