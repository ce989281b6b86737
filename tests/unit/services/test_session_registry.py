"""
Unit tests for the Session Registry.
"""

import asyncio
from unittest.mock import MagicMock

import pytest

from ear.errors import SessionRegistryError
from ear.services.voice_recorder.registry import SessionRegistry
from ear.services.voice_recorder.session import RecordingSession, SessionState


def make_session(participant_id: int = 1, path: str = "/tmp/a.mp3") -> RecordingSession:
    return RecordingSession(
        participant_id=participant_id,
        display_label=f"user{participant_id}",
        output_path=path,
        started_at=0.0,
        encoder=MagicMock(),
    )


@pytest.mark.unit
class TestSessionRegistry:
    """Test registry uniqueness and per-key locking."""

    def test_insert_and_get(self):
        registry = SessionRegistry()
        session = make_session()

        registry.insert(session)

        assert registry.get(1) is session
        assert 1 in registry
        assert len(registry) == 1

    def test_duplicate_insert_raises(self):
        registry = SessionRegistry()
        registry.insert(make_session())

        with pytest.raises(SessionRegistryError):
            registry.insert(make_session(path="/tmp/b.mp3"))

        assert len(registry) == 1

    def test_remove_only_the_registered_session(self):
        registry = SessionRegistry()
        session = make_session()
        stale = make_session()
        registry.insert(session)

        assert registry.remove(stale) is False
        assert registry.get(1) is session

        assert registry.remove(session) is True
        assert registry.get(1) is None

    def test_sessions_returns_snapshot(self):
        registry = SessionRegistry()
        registry.insert(make_session(1))
        registry.insert(make_session(2, "/tmp/b.mp3"))

        snapshot = registry.sessions()
        registry.clear()

        assert len(snapshot) == 2
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_lock_serializes_same_participant(self):
        registry = SessionRegistry()
        order: list[str] = []

        async def worker(name: str):
            async with registry.lock(1):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order == ["a-in", "a-out", "b-in", "b-out"]

    @pytest.mark.asyncio
    async def test_lock_does_not_block_other_participants(self):
        registry = SessionRegistry()
        entered = asyncio.Event()

        async with registry.lock(1):

            async def other():
                async with registry.lock(2):
                    entered.set()

            await asyncio.wait_for(other(), timeout=1.0)

        assert entered.is_set()

    @pytest.mark.asyncio
    async def test_locks_are_dropped_when_idle(self):
        registry = SessionRegistry()

        async with registry.lock(1):
            assert 1 in registry._locks

        assert registry._locks == {}
        assert registry._waiters == {}

    @pytest.mark.asyncio
    async def test_concurrent_check_then_insert_creates_one_session(self):
        registry = SessionRegistry()
        created: list[RecordingSession] = []

        async def start():
            async with registry.lock(1):
                if registry.get(1) is None:
                    await asyncio.sleep(0)
                    session = make_session()
                    registry.insert(session)
                    created.append(session)

        await asyncio.gather(*(start() for _ in range(20)))

        assert len(created) == 1
        assert registry.get(1).state is SessionState.ACTIVE
