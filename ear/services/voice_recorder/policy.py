from ear.config import RecorderConfig, RecordingMode

# -------------------------------------------------------------- #
# Recording Policy
# -------------------------------------------------------------- #


class RecordingPolicy:
    """Decides which participants and channels are recorded."""

    def __init__(
        self,
        mode: RecordingMode,
        target_user_ids: list[int] | None = None,
        allowed_channel_ids: list[int] | None = None,
        blocked_channel_ids: list[int] | None = None,
    ):
        self.mode = mode
        self.target_user_ids = set(target_user_ids or [])
        self.allowed_channel_ids = set(allowed_channel_ids or [])
        self.blocked_channel_ids = set(blocked_channel_ids or [])

    @classmethod
    def from_config(cls, config: RecorderConfig) -> "RecordingPolicy":
        return cls(
            config.recording_mode,
            target_user_ids=config.target_user_ids,
            allowed_channel_ids=config.allowed_channel_ids,
            blocked_channel_ids=config.blocked_channel_ids,
        )

    def is_target(self, user_id: int) -> bool:
        return user_id in self.target_user_ids

    def should_record_user(self, user_id: int) -> bool:
        if self.mode is RecordingMode.ALL_USERS:
            return True
        return self.is_target(user_id)

    def should_record_channel(self, channel_id: int | None) -> bool:
        """Blocked channels are always refused; an empty allow list allows everything else."""
        if channel_id is None:
            return not self.allowed_channel_ids
        if channel_id in self.blocked_channel_ids:
            return False
        if not self.allowed_channel_ids:
            return True
        return channel_id in self.allowed_channel_ids

    def is_eligible(self, user_id: int, channel_id: int | None) -> bool:
        return self.should_record_user(user_id) and self.should_record_channel(channel_id)
