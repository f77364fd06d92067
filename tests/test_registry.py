import asyncio

import pytest

from app.services.errors import ProtocolViolation
from app.services.live_session import InitRequest, SessionState
from app.services.registry import ConnectionRegistry
from tests.fakes import FakeBackend, make_session

INIT = InitRequest(token="tok", class_title="History", date_iso="2024-02-02")


def test_second_live_session_on_a_connection_is_refused(tmp_path):
    registry = ConnectionRegistry()
    first, _, _ = make_session(tmp_path)
    second, _, _ = make_session(tmp_path)

    registry.register("conn-1", first)
    with pytest.raises(ProtocolViolation):
        registry.register("conn-1", second)

    assert registry.get("conn-1") is first
    assert registry.active_count() == 1


def test_terminal_session_can_be_replaced(tmp_path):
    registry = ConnectionRegistry()
    first, _, _ = make_session(tmp_path, backend=FakeBackend(fail_open=True))
    asyncio.run(first.start(INIT))
    assert first.state is SessionState.FAILED

    registry.register("conn-1", first)
    second, _, _ = make_session(tmp_path)
    registry.register("conn-1", second)
    assert registry.get("conn-1") is second


def test_release_only_removes_the_owner(tmp_path):
    registry = ConnectionRegistry()
    first, _, _ = make_session(tmp_path)
    other, _, _ = make_session(tmp_path)
    registry.register("conn-1", first)

    registry.release("conn-1", other)
    assert registry.get("conn-1") is first
    registry.release("conn-1", first)
    assert registry.get("conn-1") is None
    assert registry.snapshot() == []


def test_shutdown_aborts_live_sessions(tmp_path):
    registry = ConnectionRegistry()
    backend = FakeBackend()
    session, _, _ = make_session(tmp_path, backend=backend)

    async def scenario():
        await session.start(INIT)
        registry.register("conn-1", session)
        assert registry.snapshot()[0]["state"] == "streaming"
        await registry.shutdown()

    asyncio.run(scenario())
    assert session.state is SessionState.FAILED
    assert backend.streams[0].released
    assert registry.active_count() == 0
