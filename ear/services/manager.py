from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ear.context import Context


# -------------------------------------------------------------- #
# Services Manager Class
# -------------------------------------------------------------- #


class ServicesManager:
    """Manager for handling multiple service instances."""

    def __init__(
        self,
        context: Context,
        logging_service: BaseAsyncLoggingService,
        recording_file_service_manager: BaseRecordingFileServiceManager,
        ffmpeg_service_manager: BaseFFmpegServiceManager,
        voice_recorder_service_manager: BaseVoiceRecorderServiceManager | None = None,
    ):
        self.context = context

        self.logging_service = logging_service

        # add service managers as attributes
        self.recording_file_service_manager = recording_file_service_manager
        self.ffmpeg_service_manager = ffmpeg_service_manager

        # Voice recorder
        self.voice_recorder_service_manager = voice_recorder_service_manager

    async def initialize_all(self) -> None:
        """Initialize all service managers."""

        # Logging
        await self.logging_service.on_start(self)

        # Services managers
        await self.recording_file_service_manager.on_start(self)
        await self.ffmpeg_service_manager.on_start(self)

        # Voice recorder
        if self.voice_recorder_service_manager:
            await self.voice_recorder_service_manager.on_start(self)

    async def shutdown_all(self, timeout: float = 30.0) -> None:
        """
        Gracefully shutdown all service managers.

        This method ensures that:
        1. No new recordings are accepted
        2. Active recording sessions are terminated and their encoders have exited
        3. File managers are closed
        4. All logs are flushed

        Args:
            timeout: Maximum time in seconds to wait for services to shutdown
        """
        await self.logging_service.info("=" * 60)
        await self.logging_service.info("Starting graceful shutdown of all services...")

        # Mark context as shutting down to prevent new operations
        if self.context:
            self.context.mark_shutdown_started()
            await self.logging_service.info("Shutdown flag set - no new recordings will start")

        try:
            # Phase 1: Stop all recording sessions (encoders must be gone before anything else)
            await self.logging_service.info("Phase 1: Stopping active recording sessions...")
            if self.voice_recorder_service_manager:
                await asyncio.wait_for(
                    self.voice_recorder_service_manager.on_close(), timeout=timeout * 0.7
                )
                await self.logging_service.info("All recording sessions stopped")

            # Phase 2: Stop FFmpeg service
            await self.logging_service.info("Phase 2: Stopping FFmpeg service...")
            await asyncio.wait_for(self.ffmpeg_service_manager.on_close(), timeout=timeout * 0.2)
            await self.logging_service.info("FFmpeg service stopped")

            # Phase 3: Close file managers (no timeout needed - should be fast)
            await self.logging_service.info("Phase 3: Closing file managers...")
            await self.recording_file_service_manager.on_close()
            await self.logging_service.info("File managers closed")

            await self.logging_service.info("Graceful shutdown completed successfully")
            await self.logging_service.info("=" * 60)

        except asyncio.TimeoutError:
            await self.logging_service.error(
                f"Shutdown timeout exceeded ({timeout}s) - forcing shutdown"
            )
        except Exception as e:
            await self.logging_service.error(f"Error during shutdown: {e}")

        # Phase 4: Always flush and close logging (even if there were errors)
        try:
            await asyncio.wait_for(self.logging_service.on_close(), timeout=5.0)
        except asyncio.TimeoutError:
            pass  # Don't wait forever for logging to flush


# -------------------------------------------------------------- #
# Base Service Manager Class
# -------------------------------------------------------------- #


class Manager(ABC):
    """Base class for all manager services."""

    def __init__(self, context: Context):
        self.context = context
        self.services: ServicesManager | None = None

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services: ServicesManager) -> None:
        """Actions to perform on manager start."""
        self.services = services

    async def on_close(self) -> None:
        """Actions to perform on manager close."""
        pass


# -------------------------------------------------------------- #
# Specialized Manager Classes
# -------------------------------------------------------------- #


class BaseAsyncLoggingService(Manager):
    """Specialized manager for asynchronous logging services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def log(self, message: str, level: str = "INFO") -> None:
        """Log a message asynchronously."""
        pass

    @abstractmethod
    async def debug(self, message: str) -> None:
        """Log a debug message asynchronously."""
        pass

    @abstractmethod
    async def info(self, message: str) -> None:
        """Log an info message asynchronously."""
        pass

    @abstractmethod
    async def warning(self, message: str) -> None:
        """Log a warning message asynchronously."""
        pass

    @abstractmethod
    async def error(self, message: str) -> None:
        """Log an error message asynchronously."""
        pass

    @abstractmethod
    async def critical(self, message: str) -> None:
        """Log a critical message asynchronously."""
        pass


class BaseRecordingFileServiceManager(Manager):
    """Specialized manager for recording file services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    def get_recording_path(self) -> str:
        """Get the absolute recording directory."""
        pass

    @abstractmethod
    def build_output_path(self, label: str, extension: str) -> str:
        """Reserve a unique output path for a new recording."""
        pass

    @abstractmethod
    def release_output_path(self, path: str) -> None:
        """Release a path reserved by build_output_path."""
        pass

    @abstractmethod
    async def get_file_size(self, path: str) -> int | None:
        """Size of a recording in bytes, or None if it does not exist."""
        pass

    @abstractmethod
    async def delete_recording(self, path: str) -> bool:
        """Delete a recording file, tolerating its absence."""
        pass


class BaseFFmpegServiceManager(Manager):
    """Specialized manager for FFmpeg services."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    def create_encoder_handle(self, output_path: str, label: str) -> Any:
        """Create an encoder process handle for one recording session."""
        pass


class BaseVoiceRecorderServiceManager(Manager):
    """Specialized manager for the per-participant capture session manager."""

    def __init__(self, context):
        super().__init__(context)

    @abstractmethod
    async def on_speaking_start(
        self,
        participant_id: int,
        channel_id: int | None = None,
        display_name: str | None = None,
    ) -> None:
        """Handle a speaking-start signal for a participant."""
        pass

    @abstractmethod
    async def on_speaking_stop(self, participant_id: int) -> None:
        """Handle a speaking-stop signal for a participant."""
        pass

    @abstractmethod
    async def on_max_duration_reached(self, participant_id: int) -> None:
        """Force-terminate a participant's session."""
        pass

    @abstractmethod
    async def shutdown_all(self) -> None:
        """Force-terminate every session and wait for encoders to exit."""
        pass

    @abstractmethod
    async def shutdown_channel(self, channel_id: int) -> None:
        """Force-terminate the sessions of one voice channel."""
        pass

    @abstractmethod
    def is_recording(self, participant_id: int) -> bool:
        """Check whether a participant currently has a live session."""
        pass
