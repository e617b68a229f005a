from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from ...core.logging_utils import log_event
from .config import DiscordNotificationConfig
from .constants import DISCORD_CDN_BASE_URL
from .events import DiscordChannel, DiscordGuild, DiscordMessage, DiscordUser, VoiceState

NOTIFICATION_BODY_PREVIEW_CHARS = 100
MESSAGE_NOTIFICATION_TIMEOUT_MS = 10_000
VOICE_NOTIFICATION_TIMEOUT_MS = 3_000


@dataclass(frozen=True)
class NotificationRequest:
    kind: str
    title: str
    body: str
    icon_url: Optional[str] = None
    actions: tuple[str, ...] = ()
    timeout_ms: int = MESSAGE_NOTIFICATION_TIMEOUT_MS
    source_id: Optional[str] = None


class NotificationSink(Protocol):
    def notify(self, request: NotificationRequest) -> None: ...


class LoggingNotificationSink:
    """Sink used by the CLI service: notifications become log lines."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def notify(self, request: NotificationRequest) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "discord.notification",
            kind=request.kind,
            title=request.title,
            body=request.body,
            source_id=request.source_id,
        )


def avatar_url(user: DiscordUser) -> Optional[str]:
    if not user.avatar:
        return None
    return f"{DISCORD_CDN_BASE_URL}/avatars/{user.id}/{user.avatar}.png"


def _preview(content: str) -> str:
    if len(content) <= NOTIFICATION_BODY_PREVIEW_CHARS:
        return content
    return content[:NOTIFICATION_BODY_PREVIEW_CHARS] + "..."


class NotificationPolicy:
    """Decides which messages and voice events become user notifications."""

    def __init__(
        self,
        config: Optional[DiscordNotificationConfig] = None,
        *,
        monitored_guild_ids: Iterable[str] = (),
    ) -> None:
        self._config = config or DiscordNotificationConfig()
        self._monitored_guild_ids = frozenset(monitored_guild_ids)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def allows(self, notification_type: str) -> bool:
        return self._config.enabled and notification_type in self._config.types

    def message_category(
        self,
        message: DiscordMessage,
        *,
        channel: Optional[DiscordChannel],
        current_user_id: Optional[str],
    ) -> Optional[str]:
        if message.author is None:
            return None
        if current_user_id is not None and message.author.id == current_user_id:
            return None
        if channel is not None and channel.is_direct_message:
            return "direct-messages"
        # Gateway messages carry no guild_id outside guilds.
        if channel is None and message.guild_id is None:
            return "direct-messages"
        if current_user_id is not None and current_user_id in message.mention_ids:
            return "mentions"
        guild_id = (channel.guild_id if channel is not None else None) or message.guild_id
        if guild_id is not None and guild_id in self._monitored_guild_ids:
            return "server-messages"
        return None

    def for_message(
        self,
        message: DiscordMessage,
        *,
        channel: Optional[DiscordChannel],
        guild: Optional[DiscordGuild],
        current_user_id: Optional[str],
    ) -> Optional[NotificationRequest]:
        if not self._config.enabled or message.author is None:
            return None
        category = self.message_category(
            message, channel=channel, current_user_id=current_user_id
        )
        if category is None or not self.allows(category):
            return None
        author = message.author
        if guild is not None:
            channel_name = channel.name if channel is not None else None
            title = f"{author.username} in #{channel_name or 'unknown'} ({guild.name})"
        else:
            title = author.username
        return NotificationRequest(
            kind=category,
            title=title,
            body=_preview(message.content),
            icon_url=avatar_url(author),
            actions=("reply", "view"),
            timeout_ms=MESSAGE_NOTIFICATION_TIMEOUT_MS,
            source_id=message.id,
        )

    def for_voice_state(
        self, state: VoiceState, *, user: Optional[DiscordUser]
    ) -> Optional[NotificationRequest]:
        if not self.allows("voice-events") or user is None or not state.joined:
            return None
        return NotificationRequest(
            kind="voice-events",
            title="Voice Channel Activity",
            body=f"{user.username} joined a voice channel",
            icon_url=avatar_url(user),
            timeout_ms=VOICE_NOTIFICATION_TIMEOUT_MS,
            source_id=state.channel_id,
        )
