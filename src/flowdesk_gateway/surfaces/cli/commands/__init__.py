from .discord import register_discord_commands
from .utils import get_version, raise_exit

__all__ = ["register_discord_commands", "get_version", "raise_exit"]
