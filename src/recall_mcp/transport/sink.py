"""ResponseSink implementations used by the HTTP transport."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import anyio
from anyio.streams.memory import MemoryObjectSendStream

from recall_mcp.types.json_rpc import JSONRPCMessage, JSONRPCResponse

logger = logging.getLogger(__name__)


@dataclass
class SinkEvent:
    """An event produced by a ResponseSink for the transport layer to consume."""

    message: JSONRPCMessage
    is_final: bool = False


class ChannelSink:
    """ResponseSink that writes events to a memory channel.

    The transport reads from the other end of the channel and turns the
    events into SSE events or a single JSON document.
    """

    def __init__(self, send_stream: MemoryObjectSendStream[SinkEvent]) -> None:
        self._send = send_stream
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_intermediate(self, message: JSONRPCMessage) -> None:
        """Send an intermediate message (notification or server→client request)."""
        await self._deliver(SinkEvent(message=message))

    async def send_result(self, response: JSONRPCResponse) -> None:
        """Send the final result and close the channel."""
        await self._deliver(SinkEvent(message=response, is_final=True))
        await self.close()

    async def close(self) -> None:
        """Close the channel without sending a result (e.g., on handler error)."""
        if self._closed:
            return
        self._closed = True
        with anyio.CancelScope(shield=True):
            await self._send.aclose()

    async def _deliver(self, event: SinkEvent) -> None:
        if self._closed:
            return
        try:
            await self._send.send(event)
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            # The reader went away, usually because the client disconnected.
            logger.debug("Dropping message for a closed response channel")
            self._closed = True
            self._send.close()
