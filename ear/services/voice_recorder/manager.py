import asyncio
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ear.context import Context

from ear.errors import EncoderError, SessionRegistryError
from ear.services.manager import BaseVoiceRecorderServiceManager, ServicesManager
from ear.services.voice_recorder.finalizer import OutputFinalizer
from ear.services.voice_recorder.policy import RecordingPolicy
from ear.services.voice_recorder.registry import SessionRegistry
from ear.services.voice_recorder.session import RecordingSession, SessionState
from ear.services.voice_recorder.sink import SpeakingSink

# -------------------------------------------------------------- #
# Configuration Constants
# -------------------------------------------------------------- #


class VoiceRecorderConstants:
    """Timing defaults for the capture session state machine."""

    SILENCE_TIMEOUT_SECONDS = 2.0
    MIN_RECORDING_SECONDS = 3.0
    MAX_RECORDING_SECONDS = 60 * 60.0

    ENCODER_SHUTDOWN_TIMEOUT_SECONDS = 5.0
    SHUTDOWN_TIMEOUT_SECONDS = 10.0

    # audio received between a speaking-start signal and session creation (~1s)
    MAX_PREROLL_CHUNKS = 50

    # how long shutdown waits for in-flight speaking events before snapshotting sessions
    EVENT_DRAIN_TIMEOUT_SECONDS = 1.0

    # after the shutdown timeout, killed encoders get this long to exit
    KILL_WAIT_SECONDS = 2.0


# -------------------------------------------------------------- #
# Voice Recorder Manager Service
# -------------------------------------------------------------- #


class VoiceRecorderManagerService(BaseVoiceRecorderServiceManager):
    """
    Per-participant capture session manager.

    Each participant gets at most one RecordingSession, driven through
    ACTIVE -> GRACE_PERIOD -> STOPPING -> TERMINATED by speaking signals and timers:

    - speaking-stop while ACTIVE schedules a silence deadline (GRACE_PERIOD)
    - the silence deadline terminates the session, unless it is younger than the
      minimum duration, in which case termination is deferred (STOPPING)
    - speaking-start while GRACE_PERIOD or STOPPING cancels the pending deadline and
      returns to ACTIVE
    - the hard duration cap, encoder failures and shutdown force TERMINATED from any state

    A terminated session stays registered until its encoder has exited and the
    OutputFinalizer has judged the file; it is then removed.
    """

    def __init__(
        self,
        context: "Context",
        policy: RecordingPolicy,
        audio_format: str = "mp3",
        silence_timeout: float = VoiceRecorderConstants.SILENCE_TIMEOUT_SECONDS,
        min_recording_duration: float = VoiceRecorderConstants.MIN_RECORDING_SECONDS,
        max_recording_duration: float | None = VoiceRecorderConstants.MAX_RECORDING_SECONDS,
        min_content_bytes: int = 1000,
        encoder_shutdown_timeout: float = VoiceRecorderConstants.ENCODER_SHUTDOWN_TIMEOUT_SECONDS,
        shutdown_timeout: float = VoiceRecorderConstants.SHUTDOWN_TIMEOUT_SECONDS,
        speaking_release_seconds: float = 0.2,
    ):
        super().__init__(context)

        self.policy = policy
        self.audio_format = audio_format
        self.silence_timeout = silence_timeout
        self.min_recording_duration = min_recording_duration
        self.max_recording_duration = max_recording_duration
        self.min_content_bytes = min_content_bytes
        self.encoder_shutdown_timeout = encoder_shutdown_timeout
        self.shutdown_timeout = shutdown_timeout
        self.speaking_release_seconds = speaking_release_seconds

        self.registry = SessionRegistry()
        self.finalizer: OutputFinalizer | None = None

        # participant id -> (channel id, display name) of a start received while TERMINATED
        self._pending_restarts: dict[int, tuple[int | None, str | None]] = {}

        # audio that arrived before the session it belongs to was created
        self._preroll: dict[int, list[bytes]] = {}

        # speaking events dispatched from the sink and not yet handled
        self._event_tasks: set[asyncio.Task] = set()

        self._closing = False
        self._shutdown_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        await super().on_start(services)
        self.finalizer = OutputFinalizer(
            self.services.recording_file_service_manager,
            self.services.logging_service,
            min_content_bytes=self.min_content_bytes,
        )
        await self.services.logging_service.info(
            f"VoiceRecorderManagerService initialized (mode={self.policy.mode.value}, "
            f"grace={self.silence_timeout}s, min={self.min_recording_duration}s, "
            f"max={self.max_recording_duration}s)"
        )

    async def on_close(self) -> None:
        await self.shutdown_all()

    # -------------------------------------------------------------- #
    # Sink Integration
    # -------------------------------------------------------------- #

    def create_sink(self) -> SpeakingSink:
        """Create a Pycord sink that feeds this manager."""
        return SpeakingSink(
            self, asyncio.get_running_loop(), release_seconds=self.speaking_release_seconds
        )

    def dispatch_speaking_start(
        self, participant_id: int, channel_id: int | None = None, display_name: str | None = None
    ) -> None:
        """Queue a speaking-start from synchronous code running on the event loop."""
        session = self.registry.get(participant_id)
        if (session is None or not session.is_live) and not self._closing:
            self._preroll.setdefault(participant_id, [])
        self._spawn_event(
            self.on_speaking_start(participant_id, channel_id, display_name),
            f"speaking start for {participant_id}",
        )

    def dispatch_speaking_stop(self, participant_id: int) -> None:
        self._spawn_event(
            self.on_speaking_stop(participant_id), f"speaking stop for {participant_id}"
        )

    def dispatch_audio_error(self, participant_id: int, error: BaseException) -> None:
        self._spawn_event(
            self.on_audio_error(participant_id, error), f"audio error for {participant_id}"
        )

    def feed_audio(self, participant_id: int, data: bytes) -> None:
        """
        Forward PCM to the participant's encoder without blocking.

        Audio for a participant whose session is still being created is held back and
        forwarded once the session exists. Audio for anyone else is dropped.
        """
        session = self.registry.get(participant_id)
        if session is not None and session.is_live:
            self._forward(session, data)
            return

        preroll = self._preroll.get(participant_id)
        if preroll is not None and len(preroll) < VoiceRecorderConstants.MAX_PREROLL_CHUNKS:
            preroll.append(data)

    # -------------------------------------------------------------- #
    # Speaking Signals
    # -------------------------------------------------------------- #

    async def on_speaking_start(
        self,
        participant_id: int,
        channel_id: int | None = None,
        display_name: str | None = None,
    ) -> None:
        async with self.registry.lock(participant_id):
            session = self.registry.get(participant_id)

            if session is None:
                await self._start_session(participant_id, channel_id, display_name)
                return

            if session.state in (SessionState.GRACE_PERIOD, SessionState.STOPPING):
                previous = session.state
                session.cancel_deadline()
                session.state = SessionState.ACTIVE
                await self.services.logging_service.debug(
                    f"{session.display_label} resumed speaking, {previous.value} -> active"
                )
            elif session.state is SessionState.TERMINATED:
                # the old encoder is still flushing; start again once it is gone
                self._pending_restarts[participant_id] = (channel_id, display_name)
                await self.services.logging_service.debug(
                    f"{session.display_label} spoke while their recording was closing, "
                    "queued a new recording"
                )

    async def on_speaking_stop(self, participant_id: int) -> None:
        async with self.registry.lock(participant_id):
            self._pending_restarts.pop(participant_id, None)
            self._preroll.pop(participant_id, None)

            session = self.registry.get(participant_id)
            if session is None:
                await self.services.logging_service.debug(
                    f"Ignoring speaking stop for {participant_id}: no recording session"
                )
                return

            if session.state is SessionState.ACTIVE:
                session.state = SessionState.GRACE_PERIOD
                self._schedule_deadline(session, self.silence_timeout, self._on_silence_deadline)
                await self.services.logging_service.debug(
                    f"{session.display_label} stopped speaking, stopping in {self.silence_timeout}s "
                    "unless they resume"
                )

    async def on_max_duration_reached(self, participant_id: int) -> None:
        async with self.registry.lock(participant_id):
            session = self.registry.get(participant_id)
            if session is None or not session.is_live:
                return
            await self._terminate(session, "maximum duration reached")

    async def on_audio_error(self, participant_id: int, error: BaseException) -> None:
        """Audio for one participant could not be processed; end only their session."""
        await self.services.logging_service.error(
            f"Audio error for participant {participant_id}: {type(error).__name__}: {error}"
        )
        async with self.registry.lock(participant_id):
            session = self.registry.get(participant_id)
            if session is not None and session.is_live:
                await self._terminate(session, f"audio error: {error}")

    # -------------------------------------------------------------- #
    # Queries
    # -------------------------------------------------------------- #

    def is_recording(self, participant_id: int) -> bool:
        session = self.registry.get(participant_id)
        return session is not None and session.is_live

    def get_session(self, participant_id: int) -> RecordingSession | None:
        return self.registry.get(participant_id)

    def get_status(self) -> list[dict]:
        """Summary of every registered session, for status commands."""
        now = asyncio.get_running_loop().time()
        return [
            {
                "participant_id": session.participant_id,
                "display_label": session.display_label,
                "state": session.state.value,
                "elapsed_seconds": round(session.elapsed(now), 1),
                "bytes_forwarded": session.bytes_forwarded,
                "output_path": session.output_path,
            }
            for session in self.registry.sessions()
        ]

    # -------------------------------------------------------------- #
    # Shutdown
    # -------------------------------------------------------------- #

    async def shutdown_all(self) -> None:
        """
        Force-terminate every session and wait for all encoders to exit.

        Concurrent callers share one shutdown pass. Returns once the registry is empty,
        at most ``shutdown_timeout`` (plus a short kill grace) later.
        """
        if self._shutdown_task is None or self._shutdown_task.done():
            self._shutdown_task = asyncio.create_task(self._shutdown_sessions())
        await asyncio.shield(self._shutdown_task)

    async def shutdown_channel(self, channel_id: int) -> None:
        """
        Force-terminate the sessions recorded in one voice channel.

        Sessions in other channels (including other guilds) keep recording. Returns once
        the affected encoders have exited, at most ``shutdown_timeout`` (plus a short kill
        grace) later.
        """
        await self._drain_events()

        sessions = [s for s in self.registry.sessions() if s.channel_id == channel_id]
        for session in sessions:
            self._pending_restarts.pop(session.participant_id, None)
            self._preroll.pop(session.participant_id, None)

        if sessions:
            await self.services.logging_service.info(
                f"Stopping {len(sessions)} recording session(s) in channel {channel_id}..."
            )
            await self._stop_sessions(sessions, "left channel")

    async def _shutdown_sessions(self) -> None:
        self._closing = True
        try:
            self._pending_restarts.clear()
            self._preroll.clear()
            await self._drain_events()

            sessions = self.registry.sessions()
            if not sessions:
                return

            await self.services.logging_service.info(
                f"Stopping {len(sessions)} recording session(s)..."
            )
            await self._stop_sessions(sessions, "shutdown")
            await self.services.logging_service.info("All recording sessions stopped")
        finally:
            self._closing = False

    async def _drain_events(self) -> None:
        # starts already in flight may still insert a session
        in_flight = [task for task in self._event_tasks if not task.done()]
        if in_flight:
            await asyncio.wait(
                in_flight, timeout=VoiceRecorderConstants.EVENT_DRAIN_TIMEOUT_SECONDS
            )

    async def _stop_sessions(self, sessions: list[RecordingSession], reason: str) -> None:
        """Terminate the given sessions and wait for their encoders, killing stragglers."""
        for session in sessions:
            session.cancel_timers()

        for session in sessions:
            async with self.registry.lock(session.participant_id):
                await self._terminate(session, reason)

        watchers = [s.watcher_task for s in sessions if s.watcher_task is not None]
        pending: set[asyncio.Task] = set()
        if watchers:
            _, pending = await asyncio.wait(watchers, timeout=self.shutdown_timeout)

        if pending:
            await self.services.logging_service.warning(
                f"{len(pending)} encoder(s) still running after {self.shutdown_timeout}s, "
                "killing them"
            )
            for session in sessions:
                session.encoder.kill()
            await asyncio.wait(pending, timeout=VoiceRecorderConstants.KILL_WAIT_SECONDS)

        # whatever the watchers did not get to
        for session in sessions:
            if session.watcher_task is not None and not session.watcher_task.done():
                session.watcher_task.cancel()
            if not session.finalized:
                await self.finalizer.finalize(session, session.encoder.returncode)
            self.registry.remove(session)

    # -------------------------------------------------------------- #
    # Session Lifecycle
    # -------------------------------------------------------------- #

    async def _start_session(
        self, participant_id: int, channel_id: int | None, display_name: str | None
    ) -> None:
        """Create, register and open a session. Caller holds the participant lock."""
        preroll = self._preroll.pop(participant_id, None)

        if self._closing or self.context.is_shutting_down():
            await self.services.logging_service.debug(
                f"Not recording {participant_id}: shutting down"
            )
            return

        if not self.policy.is_eligible(participant_id, channel_id):
            await self.services.logging_service.debug(
                f"Not recording {participant_id}: not eligible in channel {channel_id}"
            )
            return

        label = display_name or str(participant_id)
        files = self.services.recording_file_service_manager
        output_path = files.build_output_path(label, self.audio_format)
        encoder = self.services.ffmpeg_service_manager.create_encoder_handle(output_path, label)

        session = RecordingSession(
            participant_id=participant_id,
            display_label=label,
            output_path=output_path,
            started_at=asyncio.get_running_loop().time(),
            encoder=encoder,
            channel_id=channel_id,
        )

        try:
            self.registry.insert(session)
        except SessionRegistryError as e:
            files.release_output_path(output_path)
            await self.services.logging_service.error(str(e))
            return

        for chunk in preroll or []:
            self._forward(session, chunk)

        session.watcher_task = asyncio.create_task(self._watch_encoder(session))
        if self.max_recording_duration:
            session.max_duration_task = asyncio.create_task(self._max_duration_timer(session))

        try:
            await encoder.open()
        except EncoderError as e:
            await self.services.logging_service.error(str(e))
            await self._terminate(session, "encoder failed to start")
            return

        await self.services.logging_service.info(
            f"Started recording {label} ({participant_id}) -> {output_path}"
        )

    async def _terminate(self, session: RecordingSession, reason: str) -> None:
        """
        Move a session to TERMINATED and close its encoder input.

        The encoder gets ``encoder_shutdown_timeout`` to flush and exit before it is
        killed. Caller holds the participant lock. No-op if already terminated.
        """
        if session.state is SessionState.TERMINATED:
            return

        session.state = SessionState.TERMINATED
        session.termination_reason = reason
        session.cancel_timers()
        session.shutdown_task = asyncio.create_task(
            session.encoder.shutdown(self.encoder_shutdown_timeout)
        )

        elapsed = session.elapsed(asyncio.get_running_loop().time())
        await self.services.logging_service.info(
            f"Stopping recording of {session.display_label} ({session.participant_id}) "
            f"after {elapsed:.1f}s: {reason}"
        )

    async def _watch_encoder(self, session: RecordingSession) -> None:
        """Wait for the encoder to exit, then finalize and unregister the session."""
        exit_code = await session.encoder.wait()

        async with self.registry.lock(session.participant_id):
            if session.is_live:
                session.state = SessionState.TERMINATED
                session.termination_reason = "encoder exited"
                session.cancel_timers()
                await self.services.logging_service.warning(
                    f"Encoder for {session.display_label} ({session.participant_id}) exited "
                    f"unexpectedly with code {exit_code}"
                )
                if session.encoder.stderr_tail:
                    await self.services.logging_service.debug(
                        "Encoder output: " + " | ".join(session.encoder.stderr_tail)
                    )

            await self.finalizer.finalize(session, exit_code)
            self.registry.remove(session)
            restart = self._pending_restarts.pop(session.participant_id, None)

        if restart is not None and not self._closing:
            await self.on_speaking_start(session.participant_id, *restart)

    # -------------------------------------------------------------- #
    # Timers
    # -------------------------------------------------------------- #

    def _schedule_deadline(
        self,
        session: RecordingSession,
        delay: float,
        handler: Callable[[RecordingSession], Awaitable[None]],
    ) -> None:
        """Replace the session's pending deadline. Caller holds the participant lock."""
        session.cancel_deadline()
        session.pending_deadline = asyncio.get_running_loop().time() + delay
        session.deadline_task = asyncio.create_task(self._run_deadline(session, delay, handler))

    async def _run_deadline(
        self,
        session: RecordingSession,
        delay: float,
        handler: Callable[[RecordingSession], Awaitable[None]],
    ) -> None:
        await asyncio.sleep(delay)
        async with self.registry.lock(session.participant_id):
            # superseded while waiting for the lock
            if session.deadline_task is not asyncio.current_task():
                return
            session.deadline_task = None
            session.pending_deadline = None
            await handler(session)

    async def _on_silence_deadline(self, session: RecordingSession) -> None:
        if session.state is not SessionState.GRACE_PERIOD:
            return

        elapsed = session.elapsed(asyncio.get_running_loop().time())
        if elapsed < self.min_recording_duration:
            remaining = self.min_recording_duration - elapsed
            session.state = SessionState.STOPPING
            self._schedule_deadline(session, remaining, self._on_min_duration_deadline)
            await self.services.logging_service.debug(
                f"Recording of {session.display_label} is only {elapsed:.1f}s long, "
                f"deferring stop by {remaining:.1f}s"
            )
            return

        await self._terminate(session, "silence")

    async def _on_min_duration_deadline(self, session: RecordingSession) -> None:
        if session.state is SessionState.STOPPING:
            await self._terminate(session, "silence")

    async def _max_duration_timer(self, session: RecordingSession) -> None:
        await asyncio.sleep(self.max_recording_duration)
        async with self.registry.lock(session.participant_id):
            if self.registry.get(session.participant_id) is not session or not session.is_live:
                return
            session.max_duration_task = None
            await self._terminate(session, "maximum duration reached")

    # -------------------------------------------------------------- #
    # Helpers
    # -------------------------------------------------------------- #

    def _forward(self, session: RecordingSession, data: bytes) -> None:
        if session.encoder.write(data):
            session.record_forwarded(len(data))

    def _spawn_event(self, coro: Awaitable[None], description: str) -> None:
        task = asyncio.ensure_future(self._run_event(coro, description))
        self._event_tasks.add(task)
        task.add_done_callback(self._event_tasks.discard)

    async def _run_event(self, coro: Awaitable[None], description: str) -> None:
        try:
            await coro
        except Exception as e:
            await self.services.logging_service.error(
                f"Failed to handle {description}: {type(e).__name__}: {e}"
            )
