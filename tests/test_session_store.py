"""Tests for SessionStore."""

from typing import Any

import anyio
import pytest

from recall_mcp.dispatcher import LowLevelDispatcher
from recall_mcp.exceptions import ProvisioningError
from recall_mcp.session_store import DEFAULT_IDLE_TIMEOUT, SessionState, SessionStore

pytestmark = pytest.mark.anyio


def _dispatcher() -> LowLevelDispatcher:
    return LowLevelDispatcher(name="test-server", version="0.1.0")


def _store(clock: Any = None, **kwargs: Any) -> SessionStore:
    if clock is not None:
        kwargs["clock"] = clock
    return SessionStore(_dispatcher, **kwargs)


async def _wait_until_removed(store: SessionStore, session_id: str) -> None:
    with anyio.fail_after(2):
        while session_id in store:
            await anyio.sleep(0.01)


async def test_run_can_only_be_called_once():
    store = _store()

    async with store.run():
        pass

    with pytest.raises(RuntimeError) as excinfo:
        async with store.run():
            pass

    assert "SessionStore .run() can only be called once per instance" in str(excinfo.value)


async def test_create_without_run_raises_error():
    store = _store()

    with pytest.raises(RuntimeError) as excinfo:
        await store.create()

    assert "Make sure to use run()" in str(excinfo.value)
    assert len(store) == 0


async def test_create_wires_transport_and_dispatcher(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()

        assert len(session.id) == 32
        assert store.lookup(session.id) is session
        assert session.state is SessionState.ACTIVE
        assert session.last_activity == clock.now
        assert session.transport.session_id == session.id
        assert session.dispatcher.transport is session.transport
        assert session.active_requests == 0


async def test_created_ids_are_unique():
    store = _store()

    async with store.run():
        sessions = [await store.create() for _ in range(20)]

    assert len({session.id for session in sessions}) == 20


async def test_colliding_id_is_regenerated():
    ids = iter(["a", "a", "b"])
    store = _store(id_generator=lambda: next(ids))

    async with store.run():
        first = await store.create()
        second = await store.create()

        assert (first.id, second.id) == ("a", "b")
        assert store.session_ids == ["a", "b"]


async def test_provisioning_error_leaves_nothing_registered():
    def failing_factory() -> LowLevelDispatcher:
        raise ProvisioningError("Missing RECALL_PRIVATE_KEY environment variable")

    store = SessionStore(failing_factory)

    async with store.run():
        with pytest.raises(ProvisioningError):
            await store.create()
        assert len(store) == 0


async def test_create_acquired_counts_as_admitted():
    store = _store()

    async with store.run():
        session = await store.create(acquire=True)
        assert session.active_requests == 1
        store.release(session)
        assert session.active_requests == 0


async def test_lookup_unknown_returns_none():
    store = _store()
    assert store.lookup("missing") is None


async def test_touch_never_moves_backwards(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()
        clock.advance(10)
        store.touch(session.id)
        assert session.last_activity == clock.now

        touched_at = session.last_activity
        clock.advance(-5)
        store.touch(session.id)
        assert session.last_activity == touched_at

        # Touching an absent session is a no-op
        store.touch("missing")


async def test_acquire_touches_and_counts(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()
        clock.advance(30)

        acquired = await store.acquire(session.id)

        assert acquired is session
        assert session.active_requests == 1
        assert session.last_activity == clock.now

        store.release(session)
        assert session.active_requests == 0


async def test_acquire_unknown_or_closed_returns_none():
    store = _store()

    async with store.run():
        session = await store.create()
        await store.terminate(session.id)

        assert await store.acquire(session.id) is None
        assert await store.acquire("missing") is None


async def test_terminate_is_idempotent():
    store = _store()

    async with store.run():
        session = await store.create()

        assert await store.terminate(session.id) is True
        assert await store.terminate(session.id) is False
        assert await store.terminate("missing") is False

        assert store.lookup(session.id) is None
        assert session.state is SessionState.CLOSED
        assert session.transport.is_closed
        assert session.dispatcher.transport is None


async def test_sweep_expires_idle_sessions(clock: Any):
    store = _store(clock)

    async with store.run():
        stale = await store.create()
        clock.advance(DEFAULT_IDLE_TIMEOUT - 10)
        fresh = await store.create()
        clock.advance(11)

        expired = await store.sweep()

        assert expired == [stale.id]
        assert store.lookup(stale.id) is None
        assert stale.state is SessionState.CLOSED
        assert stale.transport.is_closed
        assert store.lookup(fresh.id) is fresh


async def test_session_used_within_timeout_survives(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()
        for _ in range(5):
            clock.advance(DEFAULT_IDLE_TIMEOUT - 1)
            session = await store.acquire(session.id)
            assert session is not None
            store.release(session)
            assert await store.sweep() == []

        assert session.id in store


async def test_sweep_skips_sessions_with_requests_in_progress(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()
        await store.acquire(session.id)
        clock.advance(DEFAULT_IDLE_TIMEOUT * 2)

        assert await store.sweep() == []
        assert session.state is SessionState.ACTIVE


async def test_sweep_accepts_explicit_now_and_timeout(clock: Any):
    store = _store(clock)

    async with store.run():
        session = await store.create()

        assert await store.sweep(now=clock.now + 5, idle_timeout=10) == []
        assert await store.sweep(now=clock.now + 11, idle_timeout=10) == [session.id]


async def test_background_sweep_runs_on_interval(clock: Any):
    store = _store(clock, idle_timeout=60, sweep_interval=0.01)

    async with store.run():
        session = await store.create()
        clock.advance(61)

        await _wait_until_removed(store, session.id)

        assert session.state is SessionState.CLOSED


async def test_background_sweep_survives_failures(clock: Any):
    store = _store(clock, idle_timeout=60, sweep_interval=0.01)
    calls = 0
    original_sweep = store.sweep

    async def flaky_sweep(*args: Any, **kwargs: Any) -> list[str]:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("boom")
        return await original_sweep(*args, **kwargs)

    store.sweep = flaky_sweep  # type: ignore[method-assign]

    async with store.run():
        session = await store.create()
        clock.advance(61)

        await _wait_until_removed(store, session.id)

    assert calls >= 2


async def test_transport_self_close_removes_session():
    store = _store()

    async with store.run():
        session = await store.create()

        await session.transport.close()
        await _wait_until_removed(store, session.id)

        assert session.state is SessionState.CLOSED
        assert session.dispatcher.transport is None
        # DELETE racing the self-close is harmless
        assert await store.terminate(session.id) is False


async def test_run_exit_terminates_remaining_sessions():
    store = _store()

    async with store.run():
        sessions = [await store.create() for _ in range(3)]

    assert len(store) == 0
    for session in sessions:
        assert session.state is SessionState.CLOSED
        assert session.transport.is_closed


async def test_invalid_policy_values_rejected():
    with pytest.raises(ValueError):
        _store(idle_timeout=0)
    with pytest.raises(ValueError):
        _store(sweep_interval=-1)
