import asyncio
from contextlib import asynccontextmanager

from ear.errors import SessionRegistryError
from ear.services.voice_recorder.session import RecordingSession

# -------------------------------------------------------------- #
# Session Registry
# -------------------------------------------------------------- #


class SessionRegistry:
    """
    Mapping of participant id -> RecordingSession.

    Create/lookup/remove for one participant are serialized with a per-key lock so two
    near-simultaneous speaking-start signals cannot both create a session. Locks are
    created on demand and dropped once nobody is waiting on them.
    """

    def __init__(self):
        self._sessions: dict[int, RecordingSession] = {}

        self._locks: dict[int, asyncio.Lock] = {}
        self._waiters: dict[int, int] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, participant_id: int) -> bool:
        return participant_id in self._sessions

    # -------------------------------------------------------------- #
    # Locking
    # -------------------------------------------------------------- #

    @asynccontextmanager
    async def lock(self, participant_id: int):
        """Hold the per-participant lock for the duration of the block."""
        lock = self._locks.setdefault(participant_id, asyncio.Lock())
        self._waiters[participant_id] = self._waiters.get(participant_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._drop_waiter(participant_id)
            raise
        try:
            yield
        finally:
            lock.release()
            self._drop_waiter(participant_id)

    def _drop_waiter(self, participant_id: int) -> None:
        self._waiters[participant_id] -= 1
        if self._waiters[participant_id] == 0:
            self._locks.pop(participant_id, None)
            self._waiters.pop(participant_id, None)

    # -------------------------------------------------------------- #
    # Session Access
    # -------------------------------------------------------------- #

    def get(self, participant_id: int) -> RecordingSession | None:
        return self._sessions.get(participant_id)

    def insert(self, session: RecordingSession) -> None:
        """
        Add a new session.

        Raises:
            SessionRegistryError: If the participant already has a session
        """
        if session.participant_id in self._sessions:
            raise SessionRegistryError(
                f"Participant {session.participant_id} already has a recording session"
            )
        self._sessions[session.participant_id] = session

    def remove(self, session: RecordingSession) -> bool:
        """Remove a session if it is still the registered one for its participant."""
        if self._sessions.get(session.participant_id) is session:
            del self._sessions[session.participant_id]
            return True
        return False

    def sessions(self) -> list[RecordingSession]:
        """Snapshot of all registered sessions."""
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()
