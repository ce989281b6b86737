from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ear.context import Context

from ear.services.logger import AsyncLoggingService
from ear.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Services Manager
# -------------------------------------------------------------- #


def construct_services_manager(
    context: "Context",
    log_file: str | None = None,
    use_timestamp_logs: bool = True,
    console_output: bool = True,
) -> ServicesManager:
    """Construct and return a services manager from the context's RecorderConfig.

    Args:
        context: Context instance holding the RecorderConfig
        log_file: Specific log file name (optional, overrides use_timestamp_logs)
        use_timestamp_logs: If True and log_file is None, creates timestamped log files (default: True)
        console_output: Echo log lines to stdout
    """
    config = context.config

    # create logger
    logging_service = AsyncLoggingService(
        context=context,
        log_dir=config.log_dir,
        log_file=log_file,
        use_timestamp=use_timestamp_logs,
        console_output=console_output,
        level=config.log_level,
    )

    # -------------------------------------------------------------- #
    # Service Managers Setup
    # -------------------------------------------------------------- #

    from ear.services.ffmpeg_manager.manager import FFmpegManagerService
    from ear.services.recording_file_manager.manager import RecordingFileManagerService

    recording_file_service_manager = RecordingFileManagerService(
        context=context, recording_storage_path=config.recording_path
    )

    ffmpeg_service_manager = FFmpegManagerService(
        context=context,
        ffmpeg_path=config.ffmpeg_path,
        audio_format=config.audio_format,
        bitrate=config.audio_bitrate,
        max_duration_seconds=config.max_recording_duration,
    )

    # -------------------------------------------------------------- #
    # Voice Recorder Setup
    # -------------------------------------------------------------- #

    from ear.services.voice_recorder.manager import VoiceRecorderManagerService
    from ear.services.voice_recorder.policy import RecordingPolicy

    voice_recorder_service_manager = VoiceRecorderManagerService(
        context=context,
        policy=RecordingPolicy.from_config(config),
        audio_format=config.audio_format,
        silence_timeout=config.silence_timeout,
        min_recording_duration=config.min_recording_duration,
        max_recording_duration=config.max_recording_duration,
        min_content_bytes=config.min_content_bytes,
        encoder_shutdown_timeout=config.encoder_shutdown_timeout,
        shutdown_timeout=config.shutdown_timeout,
        speaking_release_seconds=config.speaking_release_ms / 1000,
    )

    return ServicesManager(
        context=context,
        logging_service=logging_service,
        recording_file_service_manager=recording_file_service_manager,
        ffmpeg_service_manager=ffmpeg_service_manager,
        voice_recorder_service_manager=voice_recorder_service_manager,
    )
