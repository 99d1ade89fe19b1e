"""Session store for the /mcp endpoint.

The store owns every live session: its transport, its dispatcher and its
activity bookkeeping. Sessions end in one of three ways: an explicit DELETE,
the idle sweep, or the transport closing itself. All three go through the same
ACTIVE -> CLOSING -> CLOSED transition under the session's lock.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from uuid import uuid4

import anyio
from anyio.abc import TaskGroup

from recall_mcp.dispatcher import Dispatcher
from recall_mcp.transport.streamable_http import StreamableHTTPServerTransport

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT = 30 * 60
DEFAULT_SWEEP_INTERVAL = 5 * 60

DispatcherFactory = Callable[[], Dispatcher]
TransportFactory = Callable[[str], StreamableHTTPServerTransport]


class SessionState(enum.Enum):
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(eq=False)
class Session:
    """A live session record. Only the store mutates it."""

    id: str
    transport: StreamableHTTPServerTransport
    dispatcher: Dispatcher
    last_activity: float
    state: SessionState = SessionState.ACTIVE
    active_requests: int = 0
    lock: anyio.Lock = field(default_factory=anyio.Lock, repr=False)

    def touch(self, now: float) -> None:
        # Never move backwards, even if callers pass stale timestamps.
        self.last_activity = max(self.last_activity, now)

    def is_idle(self, now: float, idle_timeout: float) -> bool:
        return self.active_requests == 0 and now - self.last_activity > idle_timeout


def _default_transport_factory(session_id: str) -> StreamableHTTPServerTransport:
    return StreamableHTTPServerTransport(session_id)


def _default_id_generator() -> str:
    return uuid4().hex


class SessionStore:
    """
    Registry of live MCP sessions with idle expiry.

    Important: the store must be running (see run()) before sessions can be
    created, and run() can be entered only once per instance.

    Args:
        dispatcher_factory: Builds the dispatcher for a new session. May raise
                            ProvisioningError, in which case nothing is created.
        transport_factory: Builds the transport for a new session ID.
        idle_timeout: Seconds without activity after which a session expires.
        sweep_interval: Seconds between background expiry sweeps.
        clock: Monotonic clock used for activity timestamps.
        id_generator: Produces candidate session IDs.
    """

    def __init__(
        self,
        dispatcher_factory: DispatcherFactory,
        *,
        transport_factory: TransportFactory | None = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        id_generator: Callable[[], str] = _default_id_generator,
    ) -> None:
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        if sweep_interval <= 0:
            raise ValueError("sweep_interval must be positive")

        self._dispatcher_factory = dispatcher_factory
        self._transport_factory = transport_factory or _default_transport_factory
        self.idle_timeout = idle_timeout
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._id_generator = id_generator

        self._sessions: dict[str, Session] = {}
        self._registry_lock = anyio.Lock()
        self._task_group: TaskGroup | None = None
        self._run_lock = anyio.Lock()
        self._has_started = False

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    @contextlib.asynccontextmanager
    async def run(self) -> AsyncIterator[None]:
        """
        Run the store: starts the background sweep and, on exit, terminates
        every remaining session.

        Use this in the lifespan context manager of your Starlette app:

        @contextlib.asynccontextmanager
        async def lifespan(app: Starlette) -> AsyncIterator[None]:
            async with store.run():
                yield
        """
        async with self._run_lock:
            if self._has_started:
                raise RuntimeError(
                    "SessionStore .run() can only be called once per instance. "
                    "Create a new instance if you need to run again."
                )
            self._has_started = True

        async with anyio.create_task_group() as tg:
            self._task_group = tg
            tg.start_soon(self._sweep_loop)
            logger.info(
                f"Session store started (idle timeout {self.idle_timeout}s, sweep every {self.sweep_interval}s)"
            )
            try:
                yield
            finally:
                logger.info("Session store shutting down")
                with anyio.CancelScope(shield=True):
                    await self.terminate_all()
                tg.cancel_scope.cancel()
                self._task_group = None
                self._sessions.clear()

    async def create(self, *, acquire: bool = False) -> Session:
        """
        Create, wire and register a new session.

        The dispatcher is built first; if that fails nothing is registered.
        With ``acquire=True`` the session is returned already admitted for the
        calling request, as if acquire() had been called.

        Raises:
            ProvisioningError: the dispatcher could not be built
            RuntimeError: the store is not running
        """
        if self._task_group is None:
            raise RuntimeError("Session store is not running. Make sure to use run().")

        dispatcher = self._dispatcher_factory()

        async with self._registry_lock:
            session_id = self._id_generator()
            while session_id in self._sessions:
                logger.warning("Session ID collision, generating a new one")
                session_id = self._id_generator()

            transport = self._transport_factory(session_id)
            await dispatcher.connect(transport)

            session = Session(
                id=session_id,
                transport=transport,
                dispatcher=dispatcher,
                last_activity=self._clock(),
                active_requests=1 if acquire else 0,
            )
            self._sessions[session_id] = session
            self._task_group.start_soon(self._watch_transport, session)

        logger.info(f"Created new session: {session_id}")
        return session

    def lookup(self, session_id: str) -> Session | None:
        """Return the session registered under ``session_id`` without touching it."""
        return self._sessions.get(session_id)

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch(self._clock())

    async def acquire(self, session_id: str) -> Session | None:
        """
        Admit a request for a session.

        Returns the session, touched and with its request count incremented,
        or None if no ACTIVE session has this ID. Every successful acquire must
        be paired with release().
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None
        async with session.lock:
            if session.state is not SessionState.ACTIVE:
                return None
            session.touch(self._clock())
            session.active_requests += 1
        return session

    def release(self, session: Session) -> None:
        """End an admitted request. Counts as activity."""
        session.active_requests = max(0, session.active_requests - 1)
        session.touch(self._clock())

    async def terminate(self, session_id: str) -> bool:
        """
        Terminate a session. Returns False if it was absent or already ending.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        async with session.lock:
            if session.state is not SessionState.ACTIVE:
                return False
            await self._close_session(session)
        logger.info(f"Terminated session: {session_id}")
        return True

    async def terminate_all(self) -> None:
        for session_id in list(self._sessions):
            await self.terminate(session_id)

    async def sweep(self, now: float | None = None, idle_timeout: float | None = None) -> list[str]:
        """
        Terminate every session idle for longer than ``idle_timeout``.

        Sessions with admitted requests in progress are never expired.

        Returns:
            The IDs of the sessions that were expired
        """
        if now is None:
            now = self._clock()
        if idle_timeout is None:
            idle_timeout = self.idle_timeout

        expired: list[str] = []
        for session in list(self._sessions.values()):
            if not session.is_idle(now, idle_timeout):
                continue
            async with session.lock:
                # Re-check: a request may have been admitted while we waited.
                if session.state is not SessionState.ACTIVE or not session.is_idle(now, idle_timeout):
                    continue
                await self._close_session(session)
            expired.append(session.id)

        if expired:
            logger.info(f"Expired {len(expired)} idle session(s): {', '.join(expired)}")
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            await anyio.sleep(self.sweep_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Session sweep failed")

    async def _watch_transport(self, session: Session) -> None:
        """Finish tearing a session down when its transport closes on its own."""
        await session.transport.wait_closed()
        async with session.lock:
            if session.state is not SessionState.ACTIVE:
                return
            logger.info(f"Transport for session {session.id} closed, removing session")
            await self._close_session(session)

    async def _close_session(self, session: Session) -> None:
        # Caller holds session.lock.
        session.state = SessionState.CLOSING
        try:
            await session.transport.close()
            await session.dispatcher.close()
        except Exception:
            logger.exception(f"Error closing session {session.id}")
        finally:
            session.state = SessionState.CLOSED
            async with self._registry_lock:
                if self._sessions.get(session.id) is session:
                    del self._sessions[session.id]
