import asyncio
import subprocess
from collections import deque
from contextlib import suppress
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ear.context import Context
    from ear.services.manager import BaseAsyncLoggingService

from ear import pcm
from ear.errors import EncoderError
from ear.services.manager import BaseFFmpegServiceManager

# -------------------------------------------------------------- #
# FFmpeg Constants
# -------------------------------------------------------------- #

# output container -> audio codec
FORMAT_CODECS = {
    "mp3": "libmp3lame",
    "ogg": "libopus",
    "opus": "libopus",
    "m4a": "aac",
    "aac": "aac",
    "wav": "pcm_s16le",
    "flac": "flac",
}

LOSSLESS_FORMATS = {"wav", "flac"}

# chunks buffered per encoder before new audio is dropped (~20ms each, so ~10s)
DEFAULT_MAX_PENDING_CHUNKS = 500

STDERR_TAIL_LINES = 20


# -------------------------------------------------------------- #
# FFmpeg Handler
# -------------------------------------------------------------- #


class FFmpegHandler:
    def __init__(
        self,
        ffmpeg_service_manager: BaseFFmpegServiceManager | None,
        ffmpeg_path: str,
        audio_format: str = "mp3",
        bitrate: str = "128k",
        max_duration_seconds: float | None = None,
    ):
        self.ffmpeg_service_manager = ffmpeg_service_manager
        self.ffmpeg_path = ffmpeg_path
        self.audio_format = audio_format
        self.bitrate = bitrate
        self.max_duration_seconds = max_duration_seconds

    # -------------------------------------------------------------- #
    # FFmpeg Management Methods
    # -------------------------------------------------------------- #

    async def validate_ffmpeg(self) -> bool:
        """Validate that FFmpeg is installed and accessible."""
        try:
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: subprocess.run(
                        [self.ffmpeg_path, "-version"],
                        capture_output=True,
                        timeout=5,
                        text=True,
                    ),
                ),
                timeout=6.0,  # Slightly longer than subprocess timeout
            )
            return result.returncode == 0
        except (OSError, subprocess.TimeoutExpired, asyncio.TimeoutError):
            return False

    def build_encoder_command(self, output_path: str) -> list[str]:
        """
        Build the command line for a streaming PCM -> file encoder.

        Format options MUST come BEFORE -i for raw input.
        """
        cmd = [
            self.ffmpeg_path,
            "-hide_banner",
            "-loglevel",
            "warning",
            "-f",
            pcm.SAMPLE_FORMAT,  # Input format: signed 16-bit little-endian PCM
            "-ar",
            str(pcm.SAMPLE_RATE),  # Input sample rate: 48kHz (Discord's native rate)
            "-ac",
            str(pcm.CHANNELS),  # Input channels: mono
            "-i",
            "pipe:0",
        ]

        codec = FORMAT_CODECS.get(self.audio_format)
        if codec:
            cmd += ["-codec:a", codec]
        if self.audio_format not in LOSSLESS_FORMATS:
            cmd += ["-b:a", self.bitrate]

        # Hard cap on the encoded length, in case the session timer is starved
        if self.max_duration_seconds:
            cmd += ["-t", str(int(self.max_duration_seconds))]

        cmd += ["-y", output_path]
        return cmd

    # -------------------------------------------------------------- #
    # Media Conversion Methods
    # -------------------------------------------------------------- #

    async def convert_file(
        self, input_path: str, output_path: str, options: dict, input_options: dict | None = None
    ) -> tuple[bool, str, str]:
        """
        Convert a media file using FFmpeg with the provided options.

        Args:
            input_path: Path to the input file
            output_path: Path to the output file
            options: Dictionary of FFmpeg output options (e.g., {'-f': 'wav', '-y': None})
            input_options: Dictionary of options placed before -i (needed for raw PCM input)

        Returns:
            Tuple of (success: bool, stdout: str, stderr: str)
        """
        cmd = [self.ffmpeg_path]
        for key, value in (input_options or {}).items():
            cmd.append(key)
            if value is not None:
                cmd.append(str(value))

        cmd += ["-i", input_path]

        for key, value in options.items():
            cmd.append(key)
            if value is not None:
                cmd.append(str(value))

        cmd.append(output_path)

        try:
            # Run FFmpeg process in executor to avoid blocking
            loop = asyncio.get_running_loop()
            result = await asyncio.wait_for(
                loop.run_in_executor(
                    None,
                    lambda: subprocess.run(
                        cmd,
                        capture_output=True,
                        timeout=300,  # 5 minute timeout
                        text=True,
                    ),
                ),
                timeout=310.0,  # Slightly longer than subprocess timeout
            )
            return result.returncode == 0, result.stdout, result.stderr
        except (subprocess.TimeoutExpired, asyncio.TimeoutError):
            return False, "", "FFmpeg process timed out"
        except OSError as e:
            return False, "", str(e)

    async def convert_pcm_to_wav(self, input_path: str, output_path: str) -> tuple[bool, str, str]:
        """Convert a raw recording (s16le, 48 kHz, mono) to WAV."""
        return await self.convert_file(
            input_path,
            output_path,
            options={"-f": "wav", "-y": None},
            input_options={
                "-f": pcm.SAMPLE_FORMAT,
                "-ar": pcm.SAMPLE_RATE,
                "-ac": pcm.CHANNELS,
            },
        )

    def create_encoder_handle(
        self, output_path: str, label: str, logging_service: "BaseAsyncLoggingService | None"
    ) -> "EncoderProcessHandle":
        """Create a new streaming encoder for one recording session."""
        return EncoderProcessHandle(
            self.build_encoder_command(output_path),
            output_path=output_path,
            label=label,
            logging_service=logging_service,
        )


# -------------------------------------------------------------- #
# Encoder Process Handle
# -------------------------------------------------------------- #


class EncoderProcessHandle:
    """
    Streaming FFmpeg encoder owned by exactly one recording session.

    PCM written with write() is buffered on a bounded queue and pumped into the
    subprocess stdin by a writer task, so the caller never blocks on a slow encoder.
    Writes made before open() has finished are buffered and flushed once the process
    is running.
    """

    def __init__(
        self,
        command: list[str],
        output_path: str,
        label: str,
        logging_service: "BaseAsyncLoggingService | None" = None,
        max_pending_chunks: int = DEFAULT_MAX_PENDING_CHUNKS,
    ):
        self.command = command
        self.output_path = output_path
        self.label = label
        self.logging_service = logging_service
        self.max_pending_chunks = max_pending_chunks

        self.process: asyncio.subprocess.Process | None = None
        self.bytes_written = 0
        self.dropped_chunks = 0
        self.write_failed = False
        self.stderr_tail: deque[str] = deque(maxlen=STDERR_TAIL_LINES)

        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._closing = False
        self._killed = False
        self._spawning = False
        self._completion: asyncio.Future = asyncio.get_running_loop().create_future()

        self._writer_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._exit_task: asyncio.Task | None = None

    # -------------------------------------------------------------- #
    # Properties
    # -------------------------------------------------------------- #

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode if self.process else None

    @property
    def done(self) -> bool:
        return self._completion.done()

    @property
    def is_running(self) -> bool:
        return self.process is not None and self.process.returncode is None

    # -------------------------------------------------------------- #
    # Lifecycle
    # -------------------------------------------------------------- #

    async def open(self) -> None:
        """
        Spawn the encoder subprocess.

        Raises:
            EncoderError: If the process cannot be started
        """
        if self.process is not None or self.done:
            return

        self._spawning = True
        try:
            self.process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            self._resolve(None)
            raise EncoderError(f"Failed to spawn encoder for {self.label}: {e}") from e
        finally:
            self._spawning = False

        self._writer_task = asyncio.create_task(self._pump_stdin())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        self._exit_task = asyncio.create_task(self._wait_for_exit())

        if self._killed:
            self._kill_process()

    def write(self, data: bytes) -> bool:
        """
        Queue PCM for the encoder without blocking.

        Returns:
            True if the chunk was accepted, False if it was dropped (closed or backlog full)
        """
        if self._closing or self.done or not data:
            return False

        if self._queue.qsize() >= self.max_pending_chunks:
            self.dropped_chunks += 1
            return False

        self._queue.put_nowait(data)
        return True

    def close(self) -> None:
        """Signal end-of-input; the encoder flushes and exits on its own."""
        if self._closing:
            return
        self._closing = True
        self._queue.put_nowait(None)

        # Never started and not starting: nothing will ever complete
        if self.process is None and not self._spawning:
            self._resolve(None)

    def kill(self) -> None:
        """Forcibly terminate the encoder subprocess."""
        self._killed = True
        self.close()
        self._kill_process()

    async def wait(self) -> int | None:
        """Wait for the encoder to exit and return its exit code (None if it never ran)."""
        return await asyncio.shield(self._completion)

    async def shutdown(self, timeout: float) -> int | None:
        """
        Close the input, wait up to ``timeout`` seconds for a natural exit, then kill.

        Safe to call any number of times.
        """
        self.close()
        try:
            return await asyncio.wait_for(asyncio.shield(self._completion), timeout=timeout)
        except asyncio.TimeoutError:
            await self._log(
                "warning",
                f"Encoder for {self.label} did not exit within {timeout}s after close, killing it",
            )
            self.kill()
            return await self.wait()

    # -------------------------------------------------------------- #
    # Background Tasks
    # -------------------------------------------------------------- #

    async def _pump_stdin(self) -> None:
        """Drain the write queue into the subprocess stdin until end-of-input."""
        stdin = self.process.stdin
        try:
            while True:
                chunk = await self._queue.get()
                if chunk is None:
                    break
                stdin.write(chunk)
                await stdin.drain()
                self.bytes_written += len(chunk)
        except (BrokenPipeError, ConnectionResetError) as e:
            self.write_failed = True
            await self._log("error", f"Encoder pipe for {self.label} broke: {e}")
            self._kill_process()
            return

        with suppress(BrokenPipeError, ConnectionResetError):
            stdin.close()
            await stdin.wait_closed()

    async def _read_stderr(self) -> None:
        """Keep a tail of the encoder diagnostics and surface error lines."""
        while True:
            line = await self.process.stderr.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if not text:
                continue
            self.stderr_tail.append(text)
            if "error" in text.lower():
                await self._log("error", f"FFmpeg error for {self.label}: {text}")

    async def _wait_for_exit(self) -> None:
        code = await self.process.wait()

        # stderr reaches EOF once the process is gone
        if self._stderr_task:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)

        # A writer still parked on the queue has nobody left to write to
        if self._writer_task and not self._writer_task.done():
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task

        self._resolve(code)

    # -------------------------------------------------------------- #
    # Helpers
    # -------------------------------------------------------------- #

    def _kill_process(self) -> None:
        if self.process is not None and self.process.returncode is None:
            with suppress(ProcessLookupError):
                self.process.kill()

    def _resolve(self, code: int | None) -> None:
        if not self._completion.done():
            self._completion.set_result(code)

    async def _log(self, level: str, message: str) -> None:
        if self.logging_service:
            await getattr(self.logging_service, level)(message)


# -------------------------------------------------------------- #
# FFmpeg Manager Service
# -------------------------------------------------------------- #


class FFmpegManagerService(BaseFFmpegServiceManager):
    """Service for managing FFmpeg operations."""

    def __init__(
        self,
        context: "Context",
        ffmpeg_path: str,
        audio_format: str = "mp3",
        bitrate: str = "128k",
        max_duration_seconds: float | None = None,
    ):
        super().__init__(context)

        self.ffmpeg_path = ffmpeg_path
        self.handler = FFmpegHandler(
            self,
            ffmpeg_path,
            audio_format=audio_format,
            bitrate=bitrate,
            max_duration_seconds=max_duration_seconds,
        )
        self.is_available = False

        # every handle created and not yet finished
        self._handles: set[EncoderProcessHandle] = set()

    # -------------------------------------------------------------- #
    # Manager Methods
    # -------------------------------------------------------------- #

    async def on_start(self, services):
        await super().on_start(services)
        await self.services.logging_service.info("FFmpegManagerService initialized")

        # Validate FFmpeg installation
        self.is_available = await self.handler.validate_ffmpeg()
        if self.is_available:
            await self.services.logging_service.info(
                f"FFmpeg validated at path: {self.ffmpeg_path}"
            )
        else:
            await self.services.logging_service.warning(
                f"FFmpeg validation failed at path: {self.ffmpeg_path}"
            )
        return True

    async def on_close(self):
        # Anything still alive here escaped the recorder's own teardown
        leftovers = [handle for handle in self._handles if not handle.done]
        for handle in leftovers:
            await self.services.logging_service.warning(
                f"Killing orphaned encoder for {handle.label} (pid {handle.pid})"
            )
            handle.kill()
        for handle in leftovers:
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(handle.wait(), timeout=2.0)
        self._handles.clear()
        return True

    # -------------------------------------------------------------- #
    # FFmpeg Management Methods
    # -------------------------------------------------------------- #

    def create_encoder_handle(self, output_path: str, label: str) -> EncoderProcessHandle:
        """Create an encoder handle and track it until its process exits."""
        handle = self.handler.create_encoder_handle(
            output_path, label, self.services.logging_service if self.services else None
        )
        self._handles.add(handle)
        handle._completion.add_done_callback(lambda _fut: self._handles.discard(handle))
        return handle

    def get_active_encoder_count(self) -> int:
        return sum(1 for handle in self._handles if not handle.done)
