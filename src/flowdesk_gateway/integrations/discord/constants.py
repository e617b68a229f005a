from __future__ import annotations

from enum import IntEnum

DISCORD_API_BASE_URL = "https://discord.com/api/v10"
DISCORD_GATEWAY_URL = "wss://gateway.discord.gg/?v=10&encoding=json"
DISCORD_GATEWAY_QUERY = "v=10&encoding=json"
DISCORD_OAUTH_TOKEN_URL = "https://discord.com/api/oauth2/token"

# Discord hard limit for message content.
DISCORD_MAX_MESSAGE_LENGTH = 2000

DEFAULT_MESSAGE_CACHE_SIZE = 100


class GatewayOpcode(IntEnum):
    DISPATCH = 0
    HEARTBEAT = 1
    IDENTIFY = 2
    PRESENCE_UPDATE = 3
    VOICE_STATE_UPDATE = 4
    RESUME = 6
    RECONNECT = 7
    REQUEST_GUILD_MEMBERS = 8
    INVALID_SESSION = 9
    HELLO = 10
    HEARTBEAT_ACK = 11


# Gateway intents bitflags (https://discord.com/developers/docs/topics/gateway#gateway-intents).
DISCORD_INTENT_GUILDS = 1 << 0
DISCORD_INTENT_GUILD_MEMBERS = 1 << 1
DISCORD_INTENT_GUILD_VOICE_STATES = 1 << 7
DISCORD_INTENT_GUILD_PRESENCES = 1 << 8
DISCORD_INTENT_GUILD_MESSAGES = 1 << 9
DISCORD_INTENT_DIRECT_MESSAGES = 1 << 12
DISCORD_INTENT_MESSAGE_CONTENT = 1 << 15

# Close codes we send. 1000 makes the server drop the session; anything in the
# 4000 range keeps it resumable.
CLOSE_CODE_NORMAL = 1000
CLOSE_CODE_RESUMABLE = 4000

# Server close codes after which reconnecting cannot help.
FATAL_GATEWAY_CLOSE_CODES = frozenset({4004, 4010, 4011, 4012, 4013, 4014})
# Server close codes that invalidate the session but allow a fresh IDENTIFY.
NON_RESUMABLE_CLOSE_CODES = frozenset({4007, 4009})

DISCORD_CDN_BASE_URL = "https://cdn.discordapp.com"
