"""
Configuration loader for the recorder bot.
Loads environment variables from .env.local (then .env) with sensible defaults.
"""

import enum
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from ear.errors import ConfigError
from ear.utils import parse_id_list

# -------------------------------------------------------------- #
# Recording Modes
# -------------------------------------------------------------- #


class RecordingMode(str, enum.Enum):
    SINGLE_USER = "single_user"
    WHITELIST = "whitelist"
    ALL_USERS = "all_users"


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# -------------------------------------------------------------- #
# Recorder Config
# -------------------------------------------------------------- #


@dataclass
class RecorderConfig:
    """Runtime configuration for the recorder."""

    discord_token: str | None = None

    # selection policy
    recording_mode: RecordingMode = RecordingMode.SINGLE_USER
    target_user_ids: list[int] = field(default_factory=list)
    allowed_channel_ids: list[int] = field(default_factory=list)
    blocked_channel_ids: list[int] = field(default_factory=list)

    # output
    recording_path: str = "recordings"
    audio_format: str = "mp3"
    audio_bitrate: str = "128k"
    ffmpeg_path: str = "ffmpeg"

    # session timing
    silence_timeout_ms: int = 2000
    min_recording_ms: int = 3000
    max_recording_minutes: int = 60
    speaking_release_ms: int = 200

    # finalizer
    min_content_bytes: int = 1000

    # teardown
    encoder_shutdown_timeout: float = 5.0
    shutdown_timeout: float = 10.0

    # logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    @property
    def silence_timeout(self) -> float:
        return self.silence_timeout_ms / 1000

    @property
    def min_recording_duration(self) -> float:
        return self.min_recording_ms / 1000

    @property
    def max_recording_duration(self) -> float | None:
        """Hard cap in seconds, or None when disabled."""
        if self.max_recording_minutes <= 0:
            return None
        return self.max_recording_minutes * 60.0

    def validate_for_bot(self) -> None:
        """Checks that only matter when the bot itself is started."""
        if not self.discord_token:
            raise ConfigError(
                "DISCORD_API_TOKEN",
                "not found in environment variables (BOT_TOKEN is also accepted)",
            )
        if (
            self.recording_mode in (RecordingMode.SINGLE_USER, RecordingMode.WHITELIST)
            and not self.target_user_ids
        ):
            raise ConfigError(
                "TARGET_USER_ID", "required for single_user and whitelist modes"
            )


# -------------------------------------------------------------- #
# Environment Parsing
# -------------------------------------------------------------- #


def _get_int(env: dict, name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigError(name, f"expected an integer, got {raw!r}") from e
    if value < minimum:
        raise ConfigError(name, f"must be >= {minimum}, got {value}")
    return value


def _get_float(env: dict, name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigError(name, f"expected a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigError(name, f"must be positive, got {value}")
    return value


def _get_ids(env: dict, name: str) -> list[int]:
    try:
        return parse_id_list(env.get(name))
    except ValueError as e:
        raise ConfigError(name, f"expected comma separated ids, got {env.get(name)!r}") from e


def _pick_name(env: dict, name: str, legacy_name: str) -> str:
    """Variable to read: ``name`` when set, else ``legacy_name`` when that one is set."""
    if (env.get(name) or "").strip():
        return name
    if (env.get(legacy_name) or "").strip():
        return legacy_name
    return name


def load_env_files(project_root: Path | None = None) -> None:
    """Load .env.local first, then any .env. Existing variables are never overridden."""
    root = project_root or Path.cwd()
    load_dotenv(dotenv_path=root / ".env.local")
    load_dotenv(dotenv_path=root / ".env")


def load_recorder_config(env: dict | None = None) -> RecorderConfig:
    """
    Build a RecorderConfig from environment variables.

    Args:
        env: Mapping to read from (defaults to os.environ)

    Returns:
        Parsed configuration

    Raises:
        ConfigError: If any variable holds an invalid value
    """
    if env is None:
        env = dict(os.environ)

    raw_mode = env.get("RECORDING_MODE", RecordingMode.SINGLE_USER.value).strip().lower()
    try:
        mode = RecordingMode(raw_mode)
    except ValueError as e:
        valid = ", ".join(m.value for m in RecordingMode)
        raise ConfigError("RECORDING_MODE", f"expected one of {valid}, got {raw_mode!r}") from e

    audio_format = env.get("AUDIO_FORMAT", "mp3").strip().lstrip(".").lower()
    if not audio_format:
        raise ConfigError("AUDIO_FORMAT", "must not be empty")

    log_level = env.get("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in LOG_LEVELS:
        valid = ", ".join(LOG_LEVELS)
        raise ConfigError("LOG_LEVEL", f"expected one of {valid}, got {log_level!r}")

    return RecorderConfig(
        discord_token=env.get(_pick_name(env, "DISCORD_API_TOKEN", "BOT_TOKEN")) or None,
        recording_mode=mode,
        target_user_ids=_get_ids(env, "TARGET_USER_ID"),
        allowed_channel_ids=_get_ids(env, "ALLOWED_CHANNELS"),
        blocked_channel_ids=_get_ids(env, "BLOCKED_CHANNELS"),
        recording_path=env.get("RECORDING_PATH", "recordings"),
        audio_format=audio_format,
        audio_bitrate=env.get("AUDIO_BITRATE", "128k"),
        ffmpeg_path=env.get("FFMPEG_PATH", "ffmpeg"),
        silence_timeout_ms=_get_int(
            env, _pick_name(env, "SILENCE_TIMEOUT_MS", "SILENCE_TIMEOUT"), 2000
        ),
        min_recording_ms=_get_int(env, "MIN_RECORDING_MS", 3000),
        max_recording_minutes=_get_int(env, "MAX_RECORDING_MINUTES", 60),
        speaking_release_ms=_get_int(env, "SPEAKING_RELEASE_MS", 200, minimum=20),
        min_content_bytes=_get_int(env, "MIN_CONTENT_BYTES", 1000),
        encoder_shutdown_timeout=_get_float(env, "ENCODER_SHUTDOWN_TIMEOUT", 5.0),
        shutdown_timeout=_get_float(env, "SHUTDOWN_TIMEOUT", 10.0),
        log_level=log_level,
        log_dir=env.get("LOG_DIR", "logs"),
    )
