# Main File

import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path

import discord

from ear.config import load_env_files, load_recorder_config
from ear.context import Context
from ear.errors import ConfigError
from ear.services.constructor import construct_services_manager

# prefer a project-local .env.local file, then fallback to any .env
load_env_files()

# Configure Python's built-in logging for bot initialization
# (before AsyncLoggingService is available)
logs_dir = Path("logs")
logs_dir.mkdir(parents=True, exist_ok=True)
timestamp = datetime.now().strftime("%Y-%m-%d_%H-%M-%S")
log_file = logs_dir / f"app_{timestamp}.log"

# Configure logging to output to both console and file
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(sys.stdout),
        logging.FileHandler(log_file, mode="a", encoding="utf-8"),
    ],
    force=True,
)

logger = logging.getLogger("main")

# Give the recorder enough room for its own timeout plus encoder kills
SERVICES_SHUTDOWN_TIMEOUT = 30.0

# -------------------------------------------------------------- #
# Discord Bot Setup
# -------------------------------------------------------------- #

intents = discord.Intents.default()
intents.voice_states = True
intents.members = True  # Display names and channel membership for target scanning

bot = discord.Bot(intents=intents)


def load_cogs(context: Context):
    """Load all cog extensions with context.

    Args:
        context: The application context instance
    """
    from cogs.voice import setup as setup_voice

    bot.voice_cog = setup_voice(context)
    logger.info("✓ Loaded cogs.voice")


# -------------------------------------------------------------- #
# Commands
# -------------------------------------------------------------- #


@bot.command(name="shutdown", description="Finish all recordings and stop the bot")
async def shutdown(ctx: discord.ApplicationContext):
    """Stop the bot gracefully, finishing every recording first."""

    # Only work if user is the application owner
    if not await bot.is_owner(ctx.author):
        await ctx.respond("❌ You do not have permission to use this command.")
        return

    await ctx.respond("⏳ Finishing recordings and shutting down...")

    services_logger = bot.context.services_manager.logging_service
    await services_logger.info(f"Shutdown initiated by user: {ctx.author.name} ({ctx.author.id})")

    await bot.voice_cog.leave_all_channels()
    await bot.close()


# -------------------------------------------------------------- #
# Events
# -------------------------------------------------------------- #


@bot.event
async def on_ready():
    """Called when the bot is ready and connected to Discord."""
    services_logger = bot.context.services_manager.logging_service

    await services_logger.info(f"Logged in as {bot.user.name} (ID: {bot.user.id})")
    await services_logger.info(f"Connected to {len(bot.guilds)} guild(s):")
    for guild in bot.guilds:
        await services_logger.info(f"  ✓ {guild.name} (ID: {guild.id})")


@bot.event
async def on_application_command_error(
    ctx: discord.ApplicationContext, error: discord.DiscordException
):
    """Handle errors in application commands."""
    services_logger = bot.context.services_manager.logging_service
    await services_logger.error(f"Error in command {ctx.command.name}: {error}")

    if isinstance(error, discord.CheckFailure):
        await ctx.respond("❌ You don't have permission to use this command.", ephemeral=True)
    else:
        await ctx.respond(f"❌ An error occurred: {str(error)}", ephemeral=True)


# -------------------------------------------------------------- #
# Run Bot
# -------------------------------------------------------------- #


async def main():
    """Main function to load services and cogs, then start the bot."""
    try:
        config = load_recorder_config()
        config.validate_for_bot()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return

    # -------------------------------------------------------------- #
    # Startup services
    # -------------------------------------------------------------- #

    logger.info("Starting services...")

    context = Context(config)

    # Use the same log file that was created for built-in logging
    services_manager = construct_services_manager(context=context, log_file=log_file.name)
    context.set_services_manager(services_manager)
    await services_manager.initialize_all()

    services_logger = services_manager.logging_service
    await services_logger.info("[OK] Initialized all services.")

    # Set bot instance on context
    context.set_bot(bot)

    # Store context on bot for access in commands
    bot.context = context

    # -------------------------------------------------------------- #
    # Start Discord Bot
    # -------------------------------------------------------------- #

    async with bot:
        load_cogs(context)
        try:
            await bot.start(config.discord_token)
        finally:
            # Encoders and log files are flushed however the bot stops
            await services_manager.shutdown_all(timeout=SERVICES_SHUTDOWN_TIMEOUT)


if __name__ == "__main__":
    asyncio.run(main())
