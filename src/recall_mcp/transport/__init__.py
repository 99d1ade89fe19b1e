from recall_mcp.transport.event_store import EventStore, InMemoryEventStore
from recall_mcp.transport.streamable_http import (
    LAST_EVENT_ID_HEADER,
    MCP_SESSION_ID_HEADER,
    StreamableHTTPServerTransport,
)

__all__ = [
    "LAST_EVENT_ID_HEADER",
    "MCP_SESSION_ID_HEADER",
    "EventStore",
    "InMemoryEventStore",
    "StreamableHTTPServerTransport",
]
