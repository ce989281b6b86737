"""
Unit tests for the Voice cog's channel following.

The recorder service is mocked; only the cog's decisions are under test.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from cogs.voice import Voice
from ear.config import RecordingMode
from ear.services.voice_recorder.policy import RecordingPolicy

TARGET_ID = 1
OTHER_ID = 2


def make_cog(mock_discord_bot, policy: RecordingPolicy) -> Voice:
    recorder = MagicMock()
    recorder.policy = policy
    recorder.shutdown_all = AsyncMock()
    recorder.shutdown_channel = AsyncMock()

    context = MagicMock()
    context.is_shutting_down.return_value = False
    context.services_manager.voice_recorder_service_manager = recorder

    return Voice(mock_discord_bot, context)


def make_member(member_id: int, guild, bot: bool = False) -> MagicMock:
    member = MagicMock()
    member.id = member_id
    member.bot = bot
    member.display_name = f"user{member_id}"
    member.guild = guild
    return member


def make_channel(channel_id: int, guild, members=()) -> MagicMock:
    channel = MagicMock()
    channel.id = channel_id
    channel.name = f"channel{channel_id}"
    channel.guild = guild
    channel.members = list(members)
    return channel


def voice_state(channel) -> MagicMock:
    state = MagicMock()
    state.channel = channel
    return state


def connect_bot(guild, channel) -> MagicMock:
    voice_client = MagicMock()
    voice_client.is_connected.return_value = True
    voice_client.channel = channel
    voice_client.recording = True
    voice_client.disconnect = AsyncMock()
    guild.voice_client = voice_client
    return voice_client


@pytest.fixture
def guild() -> MagicMock:
    guild = MagicMock()
    guild.voice_client = None
    return guild


@pytest.fixture
def targeted_cog(mock_discord_bot) -> Voice:
    cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.SINGLE_USER, [TARGET_ID]))
    cog.join_channel_and_record = AsyncMock(return_value=True)
    cog.leave_channel = AsyncMock()
    return cog


@pytest.fixture
def all_users_cog(mock_discord_bot) -> Voice:
    cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
    cog.join_channel_and_record = AsyncMock(return_value=True)
    cog.leave_channel = AsyncMock()
    return cog


# ============================================================================
# Voice State Updates
# ============================================================================


@pytest.mark.unit
class TestFollowTargets:
    """Test following target users in single_user and whitelist modes."""

    @pytest.mark.asyncio
    async def test_target_join_starts_recording(self, targeted_cog, guild):
        channel = make_channel(10, guild)
        member = make_member(TARGET_ID, guild)

        await targeted_cog.on_voice_state_update(member, voice_state(None), voice_state(channel))

        targeted_cog.join_channel_and_record.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_non_target_is_ignored(self, targeted_cog, guild):
        channel = make_channel(10, guild)
        member = make_member(OTHER_ID, guild)

        await targeted_cog.on_voice_state_update(member, voice_state(None), voice_state(channel))

        targeted_cog.join_channel_and_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_bots_are_ignored(self, targeted_cog, guild):
        channel = make_channel(10, guild)
        member = make_member(TARGET_ID, guild, bot=True)

        await targeted_cog.on_voice_state_update(member, voice_state(None), voice_state(channel))

        targeted_cog.join_channel_and_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_blocked_channel_is_ignored(self, mock_discord_bot, guild):
        cog = make_cog(
            mock_discord_bot,
            RecordingPolicy(RecordingMode.SINGLE_USER, [TARGET_ID], blocked_channel_ids=[10]),
        )
        cog.join_channel_and_record = AsyncMock()
        member = make_member(TARGET_ID, guild)

        await cog.on_voice_state_update(
            member, voice_state(None), voice_state(make_channel(10, guild))
        )

        cog.join_channel_and_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_target_leaving_leaves_channel(self, targeted_cog, guild):
        channel = make_channel(10, guild, [make_member(OTHER_ID, guild)])
        connect_bot(guild, channel)
        member = make_member(TARGET_ID, guild)

        await targeted_cog.on_voice_state_update(member, voice_state(channel), voice_state(None))

        targeted_cog.leave_channel.assert_awaited_once_with(guild)

    @pytest.mark.asyncio
    async def test_target_moving_is_followed(self, targeted_cog, guild):
        before = make_channel(10, guild)
        after = make_channel(11, guild)
        connect_bot(guild, before)
        member = make_member(TARGET_ID, guild)

        await targeted_cog.on_voice_state_update(member, voice_state(before), voice_state(after))

        targeted_cog.join_channel_and_record.assert_awaited_once_with(after)


@pytest.mark.unit
class TestAllUsersMode:
    """Test channel following when everyone is recorded."""

    @pytest.mark.asyncio
    async def test_first_human_join_starts_recording(self, all_users_cog, guild):
        channel = make_channel(10, guild)
        member = make_member(OTHER_ID, guild)

        await all_users_cog.on_voice_state_update(member, voice_state(None), voice_state(channel))

        all_users_cog.join_channel_and_record.assert_awaited_once_with(channel)

    @pytest.mark.asyncio
    async def test_join_while_connected_does_not_switch(self, all_users_cog, guild):
        connect_bot(guild, make_channel(10, guild))
        member = make_member(OTHER_ID, guild)

        await all_users_cog.on_voice_state_update(
            member, voice_state(None), voice_state(make_channel(11, guild))
        )

        all_users_cog.join_channel_and_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_empty_channel_is_left(self, all_users_cog, guild):
        channel = make_channel(10, guild, [make_member(99, guild, bot=True)])
        connect_bot(guild, channel)
        member = make_member(OTHER_ID, guild)

        await all_users_cog.on_voice_state_update(member, voice_state(channel), voice_state(None))

        all_users_cog.leave_channel.assert_awaited_once_with(guild)


# ============================================================================
# Join and Leave
# ============================================================================


@pytest.mark.unit
class TestJoinAndLeave:
    """Test the voice connection and recorder hand-off."""

    @pytest.mark.asyncio
    async def test_join_starts_recording_with_recorder_sink(
        self, mock_discord_bot, mock_voice_channel
    ):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
        voice_client = MagicMock()
        mock_voice_channel.connect.return_value = voice_client

        assert await cog.join_channel_and_record(mock_voice_channel) is True

        sink = cog.recorder.create_sink.return_value
        voice_client.start_recording.assert_called_once()
        args, kwargs = voice_client.start_recording.call_args
        assert args[0] is sink
        assert kwargs["sync_start"] is False

    @pytest.mark.asyncio
    async def test_join_refused_during_shutdown(self, mock_discord_bot, mock_voice_channel):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
        cog.context.is_shutting_down.return_value = True

        assert await cog.join_channel_and_record(mock_voice_channel) is False
        mock_voice_channel.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leave_finishes_recordings_before_disconnect(self, mock_discord_bot, guild):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
        voice_client = connect_bot(guild, make_channel(10, guild))
        order: list[str] = []
        voice_client.stop_recording.side_effect = lambda: order.append("stop")
        cog.recorder.shutdown_channel.side_effect = lambda channel_id: order.append("shutdown")
        voice_client.disconnect.side_effect = lambda force: order.append("disconnect")

        await cog.leave_channel(guild)

        assert order == ["stop", "shutdown", "disconnect"]
        cog.recorder.shutdown_channel.assert_awaited_once_with(10)
        cog.recorder.shutdown_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leave_only_stops_recordings_in_that_channel(self, mock_discord_bot):
        guild_a, guild_b = MagicMock(), MagicMock()
        connect_bot(guild_a, make_channel(10, guild_a))
        other_client = connect_bot(guild_b, make_channel(20, guild_b))
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))

        await cog.leave_channel(guild_a)

        cog.recorder.shutdown_channel.assert_awaited_once_with(10)
        other_client.stop_recording.assert_not_called()
        other_client.disconnect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_leave_without_connection_is_noop(self, mock_discord_bot, guild):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))

        await cog.leave_channel(guild)

        cog.recorder.shutdown_channel.assert_not_awaited()


# ============================================================================
# Slash Commands
# ============================================================================


@pytest.mark.unit
class TestSlashCommands:
    """Test slash command responses."""

    @pytest.mark.asyncio
    async def test_record_requires_voice_channel(self, mock_discord_bot, mock_discord_context):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))

        await cog.record.callback(cog, mock_discord_context)

        content = mock_discord_context.edit.call_args.kwargs["content"]
        assert "must be in a voice channel" in content

    @pytest.mark.asyncio
    async def test_record_joins_user_channel(self, mock_discord_bot, mock_discord_user_in_voice):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
        cog.join_channel_and_record = AsyncMock(return_value=True)

        await cog.record.callback(cog, mock_discord_user_in_voice)

        cog.join_channel_and_record.assert_awaited_once_with(
            mock_discord_user_in_voice.author.voice.channel
        )

    @pytest.mark.asyncio
    async def test_recording_status_without_sessions(self, mock_discord_bot, mock_discord_context):
        cog = make_cog(mock_discord_bot, RecordingPolicy(RecordingMode.ALL_USERS))
        cog.recorder.get_status.return_value = []

        await cog.recording_status.callback(cog, mock_discord_context)

        mock_discord_context.respond.assert_awaited_once_with(
            "No active recordings.", ephemeral=True
        )
