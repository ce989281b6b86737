import asyncio
import logging
from typing import TYPE_CHECKING

import discord
from discord.ext import commands

if TYPE_CHECKING:
    from discord import VoiceClient

from ear.config import RecordingMode
from ear.context import Context
from ear.services.voice_recorder.manager import VoiceRecorderManagerService
from ear.services.voice_recorder.policy import RecordingPolicy

logger = logging.getLogger(__name__)


# -------------------------------------------------------------- #
# Cog
# -------------------------------------------------------------- #


class Voice(commands.Cog):
    """Voice channel following and recording commands."""

    def __init__(self, bot: discord.Bot, context: Context):
        self.bot = bot
        self.context = context
        self.services = context.services_manager

    @property
    def recorder(self) -> VoiceRecorderManagerService:
        return self.services.voice_recorder_service_manager

    @property
    def policy(self) -> RecordingPolicy:
        return self.recorder.policy

    # -------------------------------------------------------------- #
    # Utils
    # -------------------------------------------------------------- #

    def find_user_vc(self, ctx: discord.ApplicationContext) -> discord.VoiceChannel | None:
        """Find a voice channel the user is in.

        Args:
            ctx: Discord application context

        Returns:
            Voice channel if user is connected, None otherwise
        """
        return ctx.author.voice.channel if ctx.author.voice else None

    def get_bot_voice_client(self, guild: discord.Guild | None) -> "VoiceClient | None":
        """Get the bot's voice client in a guild, if connected."""
        if guild is None:
            return None

        client = guild.voice_client

        # Has existing connection
        if client and client.is_connected():
            return client
        return None

    @staticmethod
    def count_humans(channel: discord.VoiceChannel) -> int:
        return sum(1 for member in channel.members if not member.bot)

    def has_targets(self, channel: discord.VoiceChannel) -> bool:
        return any(self.policy.is_target(member.id) for member in channel.members)

    # -------------------------------------------------------------- #
    # Channel Following
    # -------------------------------------------------------------- #

    async def join_channel_and_record(self, channel: discord.VoiceChannel) -> bool:
        """Connect to a voice channel and start feeding the recorder.

        Leaves (and finishes every recording in) any other channel of the same guild first.

        Returns:
            True if the bot is recording in the channel afterwards
        """
        if self.context.is_shutting_down():
            return False

        voice_client = self.get_bot_voice_client(channel.guild)
        if voice_client and voice_client.channel.id == channel.id and voice_client.recording:
            return True
        if voice_client:
            await self.leave_channel(channel.guild)

        try:
            voice_client = await channel.connect(timeout=10.0, reconnect=True)
        except (discord.DiscordException, asyncio.TimeoutError) as e:
            logger.error(f"Error joining voice channel {channel.name}: {e}")
            return False

        voice_client.start_recording(
            self.recorder.create_sink(), self._on_recording_finished, channel, sync_start=False
        )
        logger.info(f"Joined voice channel: {channel.name} ({channel.id})")
        return True

    async def leave_channel(self, guild: discord.Guild) -> None:
        """Stop receiving audio, finish this channel's recordings, then disconnect.

        Recordings in other guilds are left running.
        """
        voice_client = self.get_bot_voice_client(guild)
        if voice_client is None:
            return

        if voice_client.recording:
            voice_client.stop_recording()

        # encoders must be gone before the voice connection is
        channel = voice_client.channel
        await self.recorder.shutdown_channel(channel.id)

        await voice_client.disconnect(force=True)
        logger.info(f"Left voice channel: {channel.name}")

    async def leave_all_channels(self) -> None:
        for guild in self.bot.guilds:
            if self.get_bot_voice_client(guild):
                await self.leave_channel(guild)

    async def scan_for_target_users(self) -> bool:
        """Join the first allowed voice channel that holds a target user."""
        logger.info("Scanning all voice channels for target user(s)...")

        for guild in self.bot.guilds:
            for channel in guild.voice_channels:
                if not self.policy.should_record_channel(channel.id):
                    continue
                for member in channel.members:
                    if self.policy.is_target(member.id):
                        logger.info(
                            f"Found target user {member.display_name} in channel: {channel.name}"
                        )
                        return await self.join_channel_and_record(channel)

        logger.info("No target users found in any voice channels")
        return False

    async def _on_recording_finished(self, sink, channel: discord.VoiceChannel) -> None:
        logger.info(f"Stopped receiving audio in {channel.name}")

    # -------------------------------------------------------------- #
    # Listeners
    # -------------------------------------------------------------- #

    async def on_ready(self):
        logger.info(f"Recording mode: {self.policy.mode.value}")
        if self.policy.mode is RecordingMode.ALL_USERS:
            logger.info("Recording all users in voice channels")
            return

        logger.info(f"Target user(s): {', '.join(str(i) for i in self.policy.target_user_ids)}")
        await self.scan_for_target_users()

    async def on_voice_state_update(self, member, before, after):
        """Follow target users (or, in all_users mode, any human) between voice channels.

        Args:
            member: The member whose voice state has changed
            before: The previous voice state
            after: The new voice state
        """
        if member.bot or before.channel == after.channel:
            return

        targeted = self.policy.mode is not RecordingMode.ALL_USERS
        if targeted and not self.policy.is_target(member.id):
            return

        voice_client = self.get_bot_voice_client(member.guild)
        bot_channel_id = voice_client.channel.id if voice_client else None

        # User joined a voice channel
        if before.channel is None:
            if not self.policy.should_record_channel(after.channel.id):
                logger.debug(f"Ignoring channel: {after.channel.name}")
                return

            logger.info(f"User {member.display_name} joined: {after.channel.name}")
            if targeted or voice_client is None:
                await self.join_channel_and_record(after.channel)
            return

        # User left a voice channel
        if after.channel is None:
            logger.info(f"User {member.display_name} left voice channel {before.channel.name}")
            if before.channel.id != bot_channel_id:
                return
            if targeted and not self.has_targets(before.channel):
                await self.leave_channel(member.guild)
            elif not targeted and self.count_humans(before.channel) == 0:
                await self.leave_channel(member.guild)
            return

        # User moved between channels
        logger.info(f"User {member.display_name} moved to: {after.channel.name}")
        if targeted:
            if self.policy.should_record_channel(after.channel.id):
                await self.join_channel_and_record(after.channel)
            elif before.channel.id == bot_channel_id and not self.has_targets(before.channel):
                await self.leave_channel(member.guild)
        elif before.channel.id == bot_channel_id and self.count_humans(before.channel) == 0:
            await self.leave_channel(member.guild)
            if self.policy.should_record_channel(after.channel.id):
                await self.join_channel_and_record(after.channel)

    # -------------------------------------------------------------- #
    # Slash Commands
    # -------------------------------------------------------------- #

    @commands.slash_command(name="record", description="Record the voice channel you are in")
    async def record(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer()

        voice_channel = self.find_user_vc(ctx)
        if not voice_channel:
            await ctx.edit(content="❌ You must be in a voice channel to use this command.")
            return

        if not self.policy.should_record_channel(voice_channel.id):
            await ctx.edit(content="❌ Recording is not allowed in this channel.")
            return

        logger.info(f"Record command called by {ctx.author.id} for channel {voice_channel.id}")
        if await self.join_channel_and_record(voice_channel):
            await ctx.edit(content=f"✅ Recording speakers in {voice_channel.name}.")
        else:
            await ctx.edit(content="❌ Failed to join the voice channel.")

    @commands.slash_command(name="stop", description="Finish all recordings and leave the channel")
    async def stop(self, ctx: discord.ApplicationContext) -> None:
        await ctx.defer()

        if not self.get_bot_voice_client(ctx.guild):
            await ctx.edit(content="❌ The bot is not connected to a voice channel.")
            return

        await ctx.edit(content="⏳ Finishing recordings...")
        await self.leave_channel(ctx.guild)
        await ctx.edit(content="✅ Recordings finished and channel left.")

    @commands.slash_command(
        name="recording_status", description="List the recordings currently in progress"
    )
    async def recording_status(self, ctx: discord.ApplicationContext) -> None:
        sessions = self.recorder.get_status()
        if not sessions:
            await ctx.respond("No active recordings.", ephemeral=True)
            return

        lines = [
            f"• {s['display_label']}: {s['state']}, {s['elapsed_seconds']}s, "
            f"{s['bytes_forwarded']} bytes"
            for s in sessions
        ]
        await ctx.respond("Active recordings:\n" + "\n".join(lines), ephemeral=True)


def setup(context: Context) -> Voice:
    bot = context.bot
    voice = Voice(bot, context)
    bot.add_cog(voice)

    # -------------------------------------------------------------- #
    # Add listeners
    # -------------------------------------------------------------- #

    bot.add_listener(voice.on_ready, "on_ready")
    bot.add_listener(voice.on_voice_state_update, "on_voice_state_update")
    return voice
