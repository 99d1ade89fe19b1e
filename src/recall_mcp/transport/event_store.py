"""
Event storage used to resume SSE streams after a disconnect.

A client that reconnects with a ``Last-Event-ID`` header gets every event
recorded after that one, on the same stream, before live delivery resumes.
Sessions are memory resident, so the only implementation kept here is the
in-memory one; it lives and dies with the session's transport.
"""

import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from itertools import count

from recall_mcp.types.json_rpc import JSONRPCMessage

logger = logging.getLogger(__name__)

EventId = str
StreamId = str

DEFAULT_MAX_EVENTS = 1000


@dataclass(frozen=True)
class EventMessage:
    """A JSON-RPC message together with the event id it was sent under."""

    message: JSONRPCMessage
    event_id: EventId


class EventStore(ABC):
    """Interface for recording sent events and replaying them on reconnect."""

    @abstractmethod
    async def store_event(self, stream_id: StreamId, message: JSONRPCMessage) -> EventId:
        """Record a message sent on a stream and return the event id assigned to it."""

    @abstractmethod
    async def events_after(self, last_event_id: EventId) -> tuple[StreamId | None, list[EventMessage]]:
        """Return the stream the given event belongs to and the events sent after it on that stream.

        The stream id is None when the event is unknown (never stored, or
        already evicted), in which case nothing can be replayed.
        """


class InMemoryEventStore(EventStore):
    """
    Bounded in-memory event log.

    Keeps the most recent ``max_events`` events across all streams of one
    session; older events are evicted and can no longer be resumed from.
    """

    def __init__(self, max_events: int = DEFAULT_MAX_EVENTS) -> None:
        if max_events <= 0:
            raise ValueError("max_events must be positive")
        self._events: deque[tuple[StreamId, EventMessage]] = deque(maxlen=max_events)
        self._counter = count(1)

    async def store_event(self, stream_id: StreamId, message: JSONRPCMessage) -> EventId:
        event_id = str(next(self._counter))
        self._events.append((stream_id, EventMessage(message, event_id)))
        return event_id

    async def events_after(self, last_event_id: EventId) -> tuple[StreamId | None, list[EventMessage]]:
        target_stream: StreamId | None = None
        replay: list[EventMessage] = []
        for stream_id, event in self._events:
            if target_stream is None:
                if event.event_id == last_event_id:
                    target_stream = stream_id
            elif stream_id == target_stream:
                replay.append(event)

        if target_stream is None:
            logger.warning(f"Event ID {last_event_id} not found in store")
        else:
            logger.debug(f"Replaying {len(replay)} events after {last_event_id} on stream {target_stream}")
        return target_stream, replay
