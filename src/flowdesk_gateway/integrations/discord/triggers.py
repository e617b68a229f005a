"""Automation trigger configs and the bus predicates built from them."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Optional

from .cache import EntityCache, EntityKind
from .errors import DiscordConfigError
from .events import DiscordChannel, DiscordMessage, DomainEvent, EventKind, VoiceState

MESSAGE_RECEIVED_TRIGGER = "discord-message-received"
VOICE_JOIN_TRIGGER = "discord-voice-join"


def _optional_id(raw: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = raw.get(key)
        if value is None:
            continue
        text = str(value).strip()
        if text:
            return text
    return None


@dataclass(frozen=True)
class MessageTriggerConfig:
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    keywords: tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: Any) -> "MessageTriggerConfig":
        cfg = raw if isinstance(raw, dict) else {}
        keywords_raw = cfg.get("keywords")
        if keywords_raw is None:
            keywords: tuple[str, ...] = ()
        elif isinstance(keywords_raw, (list, tuple)):
            keywords = tuple(str(item) for item in keywords_raw if str(item).strip())
        else:
            raise DiscordConfigError("trigger keywords must be a list of strings")
        return cls(
            guild_id=_optional_id(cfg, "guild_id", "guildId"),
            channel_id=_optional_id(cfg, "channel_id", "channelId"),
            keywords=keywords,
        )

    def matches(
        self, message: DiscordMessage, *, channel: Optional[DiscordChannel] = None
    ) -> bool:
        if self.guild_id is not None:
            guild_id = channel.guild_id if channel is not None else message.guild_id
            if guild_id != self.guild_id:
                return False
        if self.channel_id is not None and message.channel_id != self.channel_id:
            return False
        if self.keywords:
            text = message.content.lower()
            if not any(keyword.lower() in text for keyword in self.keywords):
                return False
        return True


@dataclass(frozen=True)
class VoiceJoinTriggerConfig:
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None

    @classmethod
    def from_raw(cls, raw: Any) -> "VoiceJoinTriggerConfig":
        cfg = raw if isinstance(raw, dict) else {}
        return cls(
            guild_id=_optional_id(cfg, "guild_id", "guildId"),
            channel_id=_optional_id(cfg, "channel_id", "channelId"),
        )

    def matches(self, state: VoiceState) -> bool:
        if self.guild_id is not None and state.guild_id != self.guild_id:
            return False
        if self.channel_id is not None and state.channel_id != self.channel_id:
            return False
        return state.joined


def message_trigger_predicate(
    config: MessageTriggerConfig, *, cache: Optional[EntityCache] = None
) -> Callable[[DomainEvent], bool]:
    def predicate(event: DomainEvent) -> bool:
        if event.kind is not EventKind.MESSAGE_CREATE:
            return False
        message = event.payload
        if not isinstance(message, DiscordMessage):
            return False
        channel = (
            cache.get(EntityKind.CHANNEL, message.channel_id) if cache is not None else None
        )
        return config.matches(
            message, channel=channel if isinstance(channel, DiscordChannel) else None
        )

    return predicate


def voice_join_trigger_predicate(
    config: VoiceJoinTriggerConfig,
) -> Callable[[DomainEvent], bool]:
    def predicate(event: DomainEvent) -> bool:
        if event.kind is not EventKind.VOICE_STATE_UPDATE:
            return False
        state = event.payload
        return isinstance(state, VoiceState) and config.matches(state)

    return predicate
