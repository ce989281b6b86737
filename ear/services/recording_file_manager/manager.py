from __future__ import annotations

import asyncio
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ear.context import Context

from ear.services.manager import BaseRecordingFileServiceManager
from ear.utils import format_filename_timestamp, get_current_timestamp_est, sanitize_label

# -------------------------------------------------------------- #
# Recording File Manager Service
# -------------------------------------------------------------- #


class RecordingFileManagerService(BaseRecordingFileServiceManager):
    """Service for managing recording files."""

    def __init__(self, context: Context, recording_storage_path: str):
        super().__init__(context)
        self.recording_storage_path = recording_storage_path

        # paths handed out to sessions that have not finished yet
        self._reserved: set[str] = set()

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)

        # Run blocking filesystem operations in executor
        loop = asyncio.get_running_loop()

        # check if folder exists
        if not await loop.run_in_executor(None, os.path.exists, self.recording_storage_path):
            await loop.run_in_executor(None, os.makedirs, self.recording_storage_path)

        await self.services.logging_service.info(
            f"RecordingFileManagerService initialized with storage path: {self.get_recording_path()}"
        )
        return True

    async def on_close(self):
        if self._reserved:
            await self.services.logging_service.warning(
                f"{len(self._reserved)} output path(s) still reserved at close"
            )
        self._reserved.clear()
        return True

    # -------------------------------------------------------------- #
    # Recording File Management Methods
    # -------------------------------------------------------------- #

    def get_recording_path(self) -> str:
        """Get the absolute recording directory."""
        return os.path.abspath(self.recording_storage_path)

    def build_output_path(self, label: str, extension: str) -> str:
        """
        Reserve a unique output path for a new recording.

        The name is ``<label>-<timestamp>.<ext>``. If that path already exists on disk or
        is held by a live session, a numeric suffix is appended until it is free.

        Args:
            label: Participant display name (sanitized here)
            extension: File extension without the dot

        Returns:
            Absolute path, reserved until release_output_path is called
        """
        base = f"{sanitize_label(label)}-{format_filename_timestamp(get_current_timestamp_est())}"
        directory = self.get_recording_path()
        extension = extension.lstrip(".")

        candidate = os.path.join(directory, f"{base}.{extension}")
        counter = 1
        while candidate in self._reserved or os.path.exists(candidate):
            candidate = os.path.join(directory, f"{base}-{counter}.{extension}")
            counter += 1

        self._reserved.add(candidate)
        return candidate

    def release_output_path(self, path: str) -> None:
        """Release a path reserved by build_output_path."""
        self._reserved.discard(path)

    def is_reserved(self, path: str) -> bool:
        return path in self._reserved

    async def get_file_size(self, path: str) -> int | None:
        """Size of a file in bytes, or None if it does not exist."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, os.path.getsize, path)
        except FileNotFoundError:
            return None

    async def delete_recording(self, path: str) -> bool:
        """
        Delete a recording file.

        Returns:
            True if a file was removed, False if it was already absent
        """
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, os.remove, path)
        except FileNotFoundError:
            await self.services.logging_service.debug(
                f"Recording already absent, nothing to delete: {path}"
            )
            return False

        await self.services.logging_service.info(f"Deleted recording: {path}")
        return True
