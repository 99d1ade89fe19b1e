"""Starlette application serving the Recall MCP endpoint."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Iterable
from functools import partial

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from recall_mcp.dispatcher import Dispatcher
from recall_mcp.router import ALLOWED_METHODS, SessionRouter
from recall_mcp.session_store import SessionStore
from recall_mcp.settings import Settings
from recall_mcp.toolkit import ToolkitTool, create_toolkit
from recall_mcp.transport.event_store import InMemoryEventStore
from recall_mcp.transport.streamable_http import StreamableHTTPServerTransport

logger = logging.getLogger(__name__)

MCP_PATH = "/mcp"

CORS_ALLOW_HEADERS = [
    "Content-Type",
    "Accept",
    "Cache-Control",
    "Connection",
    "X-Requested-With",
    "Authorization",
    "Mcp-Session-Id",
    "Last-Event-ID",
]
CORS_EXPOSE_HEADERS = ["Content-Type", "Cache-Control", "Connection", "Mcp-Session-Id"]


async def health(request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok"})


def create_app(
    settings: Settings | None = None,
    *,
    dispatcher_factory: Callable[[], Dispatcher] | None = None,
    tools: Iterable[ToolkitTool] = (),
) -> Starlette:
    """
    Build the ASGI application.

    Args:
        settings: Server settings; read from the environment when omitted
        dispatcher_factory: Builds the dispatcher for each new session.
                            Defaults to a Recall toolkit configured from settings.
        tools: Tools registered on every default toolkit
    """
    settings = settings or Settings()
    tools = tuple(tools)

    if dispatcher_factory is None:
        dispatcher_factory = partial(create_toolkit, settings, tools)
        if settings.recall_private_key is None:
            logger.warning("RECALL_PRIVATE_KEY is not set; session creation will fail until it is configured")

    def transport_factory(session_id: str) -> StreamableHTTPServerTransport:
        event_store = InMemoryEventStore() if settings.enable_resumability else None
        return StreamableHTTPServerTransport(session_id, event_store=event_store)

    store = SessionStore(
        dispatcher_factory,
        transport_factory=transport_factory,
        idle_timeout=settings.session_idle_timeout,
        sweep_interval=settings.session_sweep_interval,
    )
    router = SessionRouter(store, max_body_bytes=settings.max_body_bytes)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with store.run():
            yield

    app = Starlette(
        routes=[
            Route("/", endpoint=health, methods=["GET"]),
            Route(MCP_PATH, endpoint=router),
        ],
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=list(ALLOWED_METHODS),
                allow_headers=CORS_ALLOW_HEADERS,
                expose_headers=CORS_EXPOSE_HEADERS,
            )
        ],
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.store = store
    app.state.router = router
    return app
