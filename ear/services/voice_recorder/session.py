"""
Recording session state for one participant.

This module provides:
- SessionState: Enum of the per-participant state machine states
- RecordingSession: All mutable state of one in-progress recording
"""

import asyncio
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from ear.utils import get_current_timestamp_est


class SessionState(enum.Enum):
    """State of a recording session."""

    ACTIVE = "active"
    GRACE_PERIOD = "grace_period"
    STOPPING = "stopping"
    TERMINATED = "terminated"


@dataclass(eq=False)
class RecordingSession:
    """
    One participant's in-progress (or just ended) recording.

    Attributes:
        participant_id: Discord user id, unique key in the registry
        display_label: Name captured at creation, never updated afterwards
        output_path: Reserved file the encoder writes to
        started_at: Event loop (monotonic) time of creation
        encoder: The EncoderProcessHandle owned by this session
        channel_id: Voice channel the session was started in
        state: Current state machine state
        bytes_forwarded: Raw PCM bytes accepted by the encoder
        pending_deadline: Loop time at which the scheduled stop fires (None when no stop is pending)
    """

    participant_id: int
    display_label: str
    output_path: str
    started_at: float
    encoder: Any
    channel_id: int | None = None
    created_at: datetime = field(default_factory=get_current_timestamp_est)
    state: SessionState = SessionState.ACTIVE
    bytes_forwarded: int = 0
    pending_deadline: float | None = None
    termination_reason: str | None = None
    finalized: bool = False

    # owned tasks
    deadline_task: asyncio.Task | None = None
    max_duration_task: asyncio.Task | None = None
    watcher_task: asyncio.Task | None = None
    shutdown_task: asyncio.Task | None = None

    @property
    def is_live(self) -> bool:
        return self.state is not SessionState.TERMINATED

    def elapsed(self, now: float) -> float:
        """Seconds since the session was created."""
        return now - self.started_at

    def record_forwarded(self, num_bytes: int) -> None:
        if self.is_live:
            self.bytes_forwarded += num_bytes

    def cancel_deadline(self) -> None:
        """Drop any pending silence or minimum-duration deadline."""
        task = self.deadline_task
        self.deadline_task = None
        self.pending_deadline = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def cancel_timers(self) -> None:
        """Cancel every timer owned by the session (deadline and hard cap)."""
        self.cancel_deadline()
        task = self.max_duration_task
        self.max_duration_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
