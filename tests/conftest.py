"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
fixtures and configuration that can be used across all tests.
"""

import asyncio
import os
import shutil
from collections import deque
from unittest.mock import AsyncMock, MagicMock

import pytest

from ear.config import RecorderConfig, RecordingMode
from ear.context import Context
from ear.errors import EncoderError
from ear.services.logger import AsyncLoggingService
from ear.services.manager import BaseFFmpegServiceManager, ServicesManager
from ear.services.recording_file_manager.manager import RecordingFileManagerService
from ear.services.voice_recorder.manager import VoiceRecorderManagerService
from ear.services.voice_recorder.policy import RecordingPolicy

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom settings and markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow running tests")
    config.addinivalue_line("markers", "ffmpeg: Tests that need a real FFmpeg binary")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Apply a timeout to all tests except those marked as slow, and skip FFmpeg tests
    when no FFmpeg binary is available."""
    ffmpeg_available = shutil.which(os.getenv("FFMPEG_PATH", "ffmpeg")) is not None
    skip_ffmpeg = pytest.mark.skip(reason="FFmpeg not installed")

    for item in items:
        if "slow" not in item.keywords:
            item.add_marker(pytest.mark.timeout(30))
        if "ffmpeg" in item.keywords and not ffmpeg_available:
            item.add_marker(skip_ffmpeg)


@pytest.fixture(scope="session")
def shared_test_log_file(tmp_path_factory) -> str:
    """
    Create a single shared log file for all tests in the session.

    This prevents creating a new timestamped log file for each test,
    consolidating all test logs into one file for easier debugging.

    Returns:
        str: Path to the shared log file
    """
    from datetime import datetime

    # Create a logs directory in the test temp directory
    logs_dir = tmp_path_factory.mktemp("logs")

    # Create a single log file with timestamp in the name
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = logs_dir / f"test_run_{timestamp}.log"

    return str(log_file)


# ============================================================================
# Fake Encoder
# ============================================================================


class FakeEncoder:
    """
    In-process stand-in for EncoderProcessHandle.

    Collects written PCM and "encodes" it by dumping the raw bytes to the output path
    when it exits. Exit can be clean (after close), forced (kill) or a crash.
    """

    def __init__(
        self,
        output_path: str,
        label: str,
        fail_open: bool = False,
        close_delay: float = 0.0,
        hang: bool = False,
    ):
        self.output_path = output_path
        self.label = label
        self.fail_open = fail_open
        self.close_delay = close_delay
        self.hang = hang

        self.chunks: list[bytes] = []
        self.opened = False
        self.closed = False
        self.killed = False
        self.returncode: int | None = None
        self.stderr_tail: deque[str] = deque(maxlen=20)
        self._completion = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._completion.done()

    @property
    def bytes_written(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    async def open(self) -> None:
        if self.fail_open:
            self._completion.set_result(None)
            raise EncoderError(f"Failed to spawn encoder for {self.label}: simulated")
        self.opened = True

    def write(self, data: bytes) -> bool:
        if self.closed or self.done:
            return False
        self.chunks.append(data)
        return True

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self.hang or self.done:
            return
        asyncio.get_running_loop().call_later(self.close_delay, self._finish, 0)

    def kill(self) -> None:
        self.killed = True
        self.closed = True
        self._finish(-9)

    def crash(self, code: int = 1) -> None:
        self.stderr_tail.append("Error while encoding: simulated crash")
        self._finish(code)

    async def shutdown(self, timeout: float) -> int | None:
        self.close()
        try:
            return await asyncio.wait_for(asyncio.shield(self._completion), timeout=timeout)
        except asyncio.TimeoutError:
            self.kill()
            return await self.wait()

    async def wait(self) -> int | None:
        return await asyncio.shield(self._completion)

    def _finish(self, code: int) -> None:
        if self.done:
            return
        if self.opened:
            with open(self.output_path, "wb") as f:
                f.write(b"".join(self.chunks))
        self.returncode = code
        self._completion.set_result(code)


class FakeFFmpegService(BaseFFmpegServiceManager):
    """FFmpeg service that hands out FakeEncoders and remembers them."""

    def __init__(self, context):
        super().__init__(context)
        self.handles: list[FakeEncoder] = []
        self.encoder_options: dict = {}

    def create_encoder_handle(self, output_path: str, label: str) -> FakeEncoder:
        handle = FakeEncoder(output_path, label, **self.encoder_options)
        self.handles.append(handle)
        return handle

    def handles_for(self, label: str) -> list[FakeEncoder]:
        return [handle for handle in self.handles if handle.label == label]


# ============================================================================
# Config and Service Fixtures
# ============================================================================


@pytest.fixture
def recorder_config(tmp_path) -> RecorderConfig:
    """
    RecorderConfig with timings shrunk for tests.

    grace 0.2s, minimum duration 0.6s, no hard cap.
    """
    return RecorderConfig(
        discord_token="test-token",
        recording_mode=RecordingMode.ALL_USERS,
        recording_path=str(tmp_path / "recordings"),
        audio_format="mp3",
        silence_timeout_ms=200,
        min_recording_ms=600,
        max_recording_minutes=0,
        speaking_release_ms=50,
        min_content_bytes=1000,
        encoder_shutdown_timeout=0.2,
        shutdown_timeout=0.5,
        log_level="DEBUG",
        log_dir=str(tmp_path / "logs"),
    )


@pytest.fixture
async def make_services(recorder_config, shared_test_log_file):
    """
    Factory building an initialized ServicesManager around a fake FFmpeg service.

    Keyword arguments override VoiceRecorderManagerService constructor arguments.
    Every services manager created is shut down after the test.
    """
    created: list[ServicesManager] = []

    async def _make(policy: RecordingPolicy | None = None, **overrides) -> ServicesManager:
        config = recorder_config
        context = Context(config)

        logging_service = AsyncLoggingService(
            context=context,
            log_dir=os.path.dirname(shared_test_log_file),
            log_file=os.path.basename(shared_test_log_file),
            console_output=False,
            level="DEBUG",
        )
        recording_file_service_manager = RecordingFileManagerService(
            context=context, recording_storage_path=config.recording_path
        )
        ffmpeg_service_manager = FakeFFmpegService(context)

        options = {
            "audio_format": config.audio_format,
            "silence_timeout": config.silence_timeout,
            "min_recording_duration": config.min_recording_duration,
            "max_recording_duration": config.max_recording_duration,
            "min_content_bytes": config.min_content_bytes,
            "encoder_shutdown_timeout": config.encoder_shutdown_timeout,
            "shutdown_timeout": config.shutdown_timeout,
            "speaking_release_seconds": config.speaking_release_ms / 1000,
        }
        options.update(overrides)

        recorder = VoiceRecorderManagerService(
            context=context,
            policy=policy or RecordingPolicy.from_config(config),
            **options,
        )

        services = ServicesManager(
            context=context,
            logging_service=logging_service,
            recording_file_service_manager=recording_file_service_manager,
            ffmpeg_service_manager=ffmpeg_service_manager,
            voice_recorder_service_manager=recorder,
        )
        context.set_services_manager(services)
        await services.initialize_all()
        created.append(services)
        return services

    yield _make

    for services in created:
        await services.shutdown_all(timeout=10.0)


@pytest.fixture
async def services(make_services) -> ServicesManager:
    """Initialized services with default test timings (grace 0.2s, minimum 0.6s)."""
    return await make_services()


@pytest.fixture
def recorder(services) -> VoiceRecorderManagerService:
    return services.voice_recorder_service_manager


@pytest.fixture
def fake_ffmpeg(services) -> FakeFFmpegService:
    return services.ffmpeg_service_manager


# ============================================================================
# Mock Discord Fixtures
# ============================================================================


@pytest.fixture
def mock_discord_bot() -> MagicMock:
    """Create a mock Discord bot instance."""
    bot = MagicMock()
    bot.user = MagicMock()
    bot.user.name = "TestBot"
    bot.user.id = 123456789
    bot.guilds = []
    return bot


@pytest.fixture
def mock_discord_context() -> MagicMock:
    """Create a mock Discord application context (py-cord)."""
    ctx = MagicMock()
    ctx.author = MagicMock()
    ctx.author.name = "TestUser"
    ctx.author.id = 987654321
    ctx.author.voice = None
    ctx.guild = MagicMock()
    ctx.guild.id = 111222333
    ctx.guild.name = "Test Guild"
    ctx.guild.voice_client = None
    ctx.defer = AsyncMock()
    ctx.respond = AsyncMock()
    ctx.edit = AsyncMock()
    ctx.followup = MagicMock()
    ctx.followup.send = AsyncMock()
    return ctx


@pytest.fixture
def mock_voice_channel() -> MagicMock:
    """Create a mock Discord voice channel."""
    channel = MagicMock()
    channel.id = 444555666
    channel.name = "Test Voice Channel"
    channel.guild = MagicMock()
    channel.guild.voice_client = None
    channel.members = []
    channel.connect = AsyncMock()
    return channel


@pytest.fixture
def mock_discord_user_in_voice(
    mock_discord_context: MagicMock,
    mock_voice_channel: MagicMock,
) -> MagicMock:
    """Create a mock Discord user in a voice channel."""
    mock_discord_context.author.voice = MagicMock()
    mock_discord_context.author.voice.channel = mock_voice_channel
    return mock_discord_context
