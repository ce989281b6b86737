from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ear.services.manager import BaseAsyncLoggingService, BaseRecordingFileServiceManager
    from ear.services.voice_recorder.session import RecordingSession

from ear import pcm

# -------------------------------------------------------------- #
# Output Finalizer
# -------------------------------------------------------------- #

DEFAULT_MIN_CONTENT_BYTES = 1000


class OutputFinalizer:
    """
    Decides whether a finished recording is kept or discarded.

    The decision is made on the amount of raw PCM forwarded to the encoder, never on the
    encoder's exit status alone: a crashed encoder that already received real audio
    leaves its partial file in place.
    """

    def __init__(
        self,
        recording_file_service_manager: "BaseRecordingFileServiceManager",
        logging_service: "BaseAsyncLoggingService",
        min_content_bytes: int = DEFAULT_MIN_CONTENT_BYTES,
    ):
        self.recording_file_service_manager = recording_file_service_manager
        self.logging_service = logging_service
        self.min_content_bytes = min_content_bytes

    async def finalize(self, session: "RecordingSession", exit_code: int | None) -> bool:
        """
        Keep or delete the session's output. Runs at most once per session.

        Args:
            session: The terminated session
            exit_code: Encoder exit code, None if the encoder never started or was
                killed without being reaped

        Returns:
            True if the output was kept
        """
        if session.finalized:
            return False
        session.finalized = True

        label = f"{session.display_label} ({session.participant_id})"

        if exit_code is None:
            await self.logging_service.warning(f"Encoder for {label} ended without an exit status")
        elif exit_code != 0:
            await self.logging_service.warning(f"Encoder for {label} exited with code {exit_code}")

        files = self.recording_file_service_manager
        try:
            if session.bytes_forwarded < self.min_content_bytes:
                await files.delete_recording(session.output_path)
                await self.logging_service.info(
                    f"Discarded recording for {label}: only {session.bytes_forwarded} bytes "
                    f"captured (< {self.min_content_bytes})"
                )
                return False

            # an encoder that never spawned has no output to keep
            if exit_code is None and await files.get_file_size(session.output_path) is None:
                await self.logging_service.info(f"No output was written for {label}")
                return False

            duration_ms = pcm.calculate_pcm_duration_ms(session.bytes_forwarded)
            await self.logging_service.info(
                f"Saved recording for {label}: {session.output_path} "
                f"({session.bytes_forwarded} bytes, ~{duration_ms / 1000:.1f}s of audio)"
            )
            return True
        finally:
            files.release_output_path(session.output_path)
