"""RequestContext and the ResponseSink protocol handlers talk through."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

from recall_mcp.types.json_rpc import (
    JSONRPCMessage,
    JSONRPCNotification,
    JSONRPCResponse,
    RequestId,
)


@runtime_checkable
class ResponseSink(Protocol):
    """Transport-specific sink for outgoing messages during request processing.

    One per incoming request. The HTTP transport hands out a ChannelSink and
    decides from the events it receives how they reach the client.
    """

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        """Send a notification or server→client request during processing."""
        ...

    async def send_result(self, response: JSONRPCResponse) -> None:
        """Send the final result. After this, the sink is done."""
        ...

    async def close(self) -> None:
        """Ensure the sink is closed (e.g., on handler error)."""
        ...


@dataclass
class RequestContext:
    """What handlers receive. Provides server→client communication for one request."""

    session_id: str | None
    request_id: RequestId
    _sink: ResponseSink

    async def send_notification(self, method: str, params: dict[str, Any] | None = None) -> None:
        """Send a notification to the client while the request is being processed.

        When the client accepted an event stream this is delivered on the
        request's own stream; otherwise it goes to the session's standalone
        stream, if one is open.
        """
        notification = JSONRPCNotification(method=method, params=params)
        await self._sink.send_intermediate(notification)
