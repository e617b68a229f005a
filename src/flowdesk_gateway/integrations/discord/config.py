from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .constants import (
    DEFAULT_MESSAGE_CACHE_SIZE,
    DISCORD_API_BASE_URL,
    DISCORD_INTENT_DIRECT_MESSAGES,
    DISCORD_INTENT_GUILD_MESSAGES,
    DISCORD_INTENT_GUILD_PRESENCES,
    DISCORD_INTENT_GUILD_VOICE_STATES,
    DISCORD_INTENT_GUILDS,
    DISCORD_INTENT_MESSAGE_CONTENT,
    DISCORD_OAUTH_TOKEN_URL,
)
from .errors import DiscordConfigError

DEFAULT_CLIENT_ID_ENV = "FLOWDESK_DISCORD_CLIENT_ID"
DEFAULT_CLIENT_SECRET_ENV = "FLOWDESK_DISCORD_CLIENT_SECRET"
DEFAULT_STATE_FILE = ".flowdesk/discord_state.sqlite3"
DEFAULT_TOKEN_TYPE = "Bearer"
DEFAULT_REQUEST_TIMEOUT_SECONDS = 10.0
DEFAULT_REQUEST_DEADLINE_SECONDS = 120.0
DEFAULT_RECONNECT_BASE_SECONDS = 1.0
DEFAULT_RECONNECT_MAX_SECONDS = 30.0
DEFAULT_SYNC_INTERVAL_SECONDS = 120.0
DEFAULT_SYNC_MESSAGE_LIMIT = 20
DEFAULT_INTENTS = (
    DISCORD_INTENT_GUILDS
    | DISCORD_INTENT_GUILD_VOICE_STATES
    | DISCORD_INTENT_GUILD_PRESENCES
    | DISCORD_INTENT_GUILD_MESSAGES
    | DISCORD_INTENT_DIRECT_MESSAGES
    | DISCORD_INTENT_MESSAGE_CONTENT
)
NOTIFICATION_TYPES = frozenset(
    {"mentions", "direct-messages", "server-messages", "voice-events"}
)
DEFAULT_NOTIFICATION_TYPES = ("mentions", "direct-messages", "voice-events")
TOKEN_TYPES = ("Bearer", "Bot")


@dataclass(frozen=True)
class DiscordNotificationConfig:
    enabled: bool = True
    types: frozenset[str] = frozenset(DEFAULT_NOTIFICATION_TYPES)


@dataclass(frozen=True)
class DiscordPrivacyConfig:
    index_private_messages: bool = False
    share_online_status: bool = True


@dataclass(frozen=True)
class DiscordClientConfig:
    root: Path
    enabled: bool
    client_id_env: str
    client_secret_env: str
    client_id: Optional[str]
    client_secret: Optional[str]
    token_type: str
    api_base_url: str
    token_url: str
    gateway_url: Optional[str]
    intents: int
    state_file: Path
    message_cache_size: int
    request_timeout_seconds: float
    request_deadline_seconds: float
    reconnect_base_seconds: float
    reconnect_max_seconds: float
    monitored_guild_ids: frozenset[str]
    sync_interval_seconds: float
    sync_message_limit: int
    enable_rich_presence: bool
    notifications: DiscordNotificationConfig = field(
        default_factory=DiscordNotificationConfig
    )
    privacy: DiscordPrivacyConfig = field(default_factory=DiscordPrivacyConfig)

    @classmethod
    def from_raw(cls, *, root: Path, raw: dict[str, Any]) -> "DiscordClientConfig":
        cfg: dict[str, Any] = raw if isinstance(raw, dict) else {}
        enabled = _parse_bool_or_default(
            cfg.get("enabled"), default=False, key="discord.enabled"
        )
        client_id_env = str(cfg.get("client_id_env", DEFAULT_CLIENT_ID_ENV)).strip()
        client_secret_env = str(
            cfg.get("client_secret_env", DEFAULT_CLIENT_SECRET_ENV)
        ).strip()
        if not client_id_env:
            raise DiscordConfigError("discord.client_id_env must be non-empty")
        if not client_secret_env:
            raise DiscordConfigError("discord.client_secret_env must be non-empty")

        token_type = str(cfg.get("token_type", DEFAULT_TOKEN_TYPE)).strip()
        normalized_type = {value.lower(): value for value in TOKEN_TYPES}.get(
            token_type.lower()
        )
        if normalized_type is None:
            raise DiscordConfigError("discord.token_type must be 'Bearer' or 'Bot'")

        intents_value = cfg.get("intents", DEFAULT_INTENTS)
        if not isinstance(intents_value, int) or isinstance(intents_value, bool):
            raise DiscordConfigError("discord.intents must be an integer")
        if intents_value < 0:
            raise DiscordConfigError("discord.intents must be >= 0")

        state_file_value = cfg.get("state_file", DEFAULT_STATE_FILE)
        if not isinstance(state_file_value, str) or not state_file_value.strip():
            raise DiscordConfigError("discord.state_file must be a string path")

        gateway_url = cfg.get("gateway_url")
        if gateway_url is not None and not isinstance(gateway_url, str):
            raise DiscordConfigError("discord.gateway_url must be a string")

        reconnect_raw = cfg.get("reconnect")
        reconnect_cfg = reconnect_raw if isinstance(reconnect_raw, dict) else {}
        reconnect_base = _parse_positive_float_or_default(
            reconnect_cfg.get("base_seconds"),
            default=DEFAULT_RECONNECT_BASE_SECONDS,
            key="discord.reconnect.base_seconds",
        )
        reconnect_max = _parse_positive_float_or_default(
            reconnect_cfg.get("max_seconds"),
            default=DEFAULT_RECONNECT_MAX_SECONDS,
            key="discord.reconnect.max_seconds",
        )
        if reconnect_max < reconnect_base:
            raise DiscordConfigError(
                "discord.reconnect.max_seconds must be >= base_seconds"
            )

        notifications_raw = cfg.get("notifications")
        notifications_cfg = (
            notifications_raw if isinstance(notifications_raw, dict) else {}
        )
        notification_types = frozenset(
            _parse_string_ids(
                notifications_cfg.get("types", list(DEFAULT_NOTIFICATION_TYPES))
            )
        )
        unknown_types = notification_types - NOTIFICATION_TYPES
        if unknown_types:
            raise DiscordConfigError(
                "discord.notifications.types has unknown entries: "
                + ", ".join(sorted(unknown_types))
            )
        notifications = DiscordNotificationConfig(
            enabled=_parse_bool_or_default(
                notifications_cfg.get("enabled"),
                default=True,
                key="discord.notifications.enabled",
            ),
            types=notification_types,
        )

        privacy_raw = cfg.get("privacy")
        privacy_cfg = privacy_raw if isinstance(privacy_raw, dict) else {}
        privacy = DiscordPrivacyConfig(
            index_private_messages=_parse_bool_or_default(
                privacy_cfg.get("index_private_messages"),
                default=False,
                key="discord.privacy.index_private_messages",
            ),
            share_online_status=_parse_bool_or_default(
                privacy_cfg.get("share_online_status"),
                default=True,
                key="discord.privacy.share_online_status",
            ),
        )

        client_id = os.environ.get(client_id_env) or None
        client_secret = os.environ.get(client_secret_env) or None

        return cls(
            root=root,
            enabled=enabled,
            client_id_env=client_id_env,
            client_secret_env=client_secret_env,
            client_id=client_id,
            client_secret=client_secret,
            token_type=normalized_type,
            api_base_url=str(cfg.get("api_base_url") or DISCORD_API_BASE_URL),
            token_url=str(cfg.get("token_url") or DISCORD_OAUTH_TOKEN_URL),
            gateway_url=gateway_url or None,
            intents=intents_value,
            state_file=(root / state_file_value).resolve(),
            message_cache_size=_parse_positive_int_or_default(
                cfg.get("message_cache_size"),
                default=DEFAULT_MESSAGE_CACHE_SIZE,
                key="discord.message_cache_size",
            ),
            request_timeout_seconds=_parse_positive_float_or_default(
                cfg.get("request_timeout_seconds"),
                default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
                key="discord.request_timeout_seconds",
            ),
            request_deadline_seconds=_parse_positive_float_or_default(
                cfg.get("request_deadline_seconds"),
                default=DEFAULT_REQUEST_DEADLINE_SECONDS,
                key="discord.request_deadline_seconds",
            ),
            reconnect_base_seconds=reconnect_base,
            reconnect_max_seconds=reconnect_max,
            monitored_guild_ids=frozenset(
                _parse_string_ids(cfg.get("monitored_guild_ids"))
            ),
            sync_interval_seconds=_parse_positive_float_or_default(
                cfg.get("sync_interval_seconds"),
                default=DEFAULT_SYNC_INTERVAL_SECONDS,
                key="discord.sync_interval_seconds",
            ),
            sync_message_limit=_parse_positive_int_or_default(
                cfg.get("sync_message_limit"),
                default=DEFAULT_SYNC_MESSAGE_LIMIT,
                key="discord.sync_message_limit",
            ),
            enable_rich_presence=_parse_bool_or_default(
                cfg.get("enable_rich_presence"),
                default=True,
                key="discord.enable_rich_presence",
            ),
            notifications=notifications,
            privacy=privacy,
        )


def _parse_string_ids(value: Any) -> list[str]:
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple, set, frozenset)) else [value]
    parsed: list[str] = []
    for item in items:
        token = str(item).strip()
        if token:
            parsed.append(token)
    return parsed


def _parse_positive_int_or_default(value: Any, *, default: int, key: str) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise DiscordConfigError(f"{key} must be an integer") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_positive_float_or_default(value: Any, *, default: float, key: str) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise DiscordConfigError(f"{key} must be a number") from exc
    if parsed <= 0:
        return default
    return parsed


def _parse_bool_or_default(value: Any, *, default: bool, key: str) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    raise DiscordConfigError(f"{key} must be a boolean")
