from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import discord

    from ear.config import RecorderConfig
    from ear.services.manager import ServicesManager

# -------------------------------------------------------------- #
# Context Class
# -------------------------------------------------------------- #


class Context:
    """
    Shared state handed to every service and cog: the parsed RecorderConfig, the
    services manager, the Discord bot, and whether the process is shutting down.

    The bot and services are attached after construction since both need the context
    to be built first.
    """

    def __init__(self, config: "RecorderConfig"):
        self.config = config
        self.services_manager: "ServicesManager | None" = None
        self.bot: "discord.Bot | None" = None
        self._shutting_down = False

    def set_services_manager(self, services_manager: "ServicesManager") -> None:
        self.services_manager = services_manager

    def set_bot(self, bot: "discord.Bot") -> None:
        self.bot = bot

    def is_shutting_down(self) -> bool:
        """True once shutdown has begun. No new recordings start after that point."""
        return self._shutting_down

    def mark_shutdown_started(self) -> None:
        self._shutting_down = True
