"""Typed Discord payloads and the domain events handed to the trigger bus.

Decoders accept raw gateway/REST dictionaries and raise `ProtocolError` when a
payload is missing the fields an entity cannot exist without (its id). All
other fields are optional and default to empty values so new server-side
fields never break decoding.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union

from .errors import ProtocolError


class EventKind(str, Enum):
    READY = "READY"
    RESUMED = "RESUMED"
    GUILD_CREATE = "GUILD_CREATE"
    GUILD_UPDATE = "GUILD_UPDATE"
    GUILD_DELETE = "GUILD_DELETE"
    CHANNEL_CREATE = "CHANNEL_CREATE"
    CHANNEL_UPDATE = "CHANNEL_UPDATE"
    CHANNEL_DELETE = "CHANNEL_DELETE"
    MESSAGE_CREATE = "MESSAGE_CREATE"
    MESSAGE_UPDATE = "MESSAGE_UPDATE"
    MESSAGE_DELETE = "MESSAGE_DELETE"
    PRESENCE_UPDATE = "PRESENCE_UPDATE"
    VOICE_STATE_UPDATE = "VOICE_STATE_UPDATE"
    CONNECTION_STATUS = "CONNECTION_STATUS"


class ChannelType(IntEnum):
    GUILD_TEXT = 0
    DM = 1
    GUILD_VOICE = 2
    GROUP_DM = 3
    GUILD_CATEGORY = 4
    GUILD_ANNOUNCEMENT = 5


def _require_id(payload: Any, what: str) -> str:
    if not isinstance(payload, dict):
        raise ProtocolError(f"Discord {what} payload must be an object")
    value = payload.get("id")
    if value is None or value == "":
        raise ProtocolError(f"Discord {what} payload missing id")
    return str(value)


def _opt_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


@dataclass(frozen=True)
class DiscordUser:
    id: str
    username: str = ""
    discriminator: Optional[str] = None
    global_name: Optional[str] = None
    avatar: Optional[str] = None
    bot: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "DiscordUser":
        user_id = _require_id(payload, "user")
        return cls(
            id=user_id,
            username=str(payload.get("username") or ""),
            discriminator=_opt_str(payload.get("discriminator")),
            global_name=_opt_str(payload.get("global_name")),
            avatar=_opt_str(payload.get("avatar")),
            bot=bool(payload.get("bot", False)),
        )

    @property
    def display_name(self) -> str:
        return self.global_name or self.username or self.id


@dataclass(frozen=True)
class DiscordChannel:
    id: str
    type: int = ChannelType.GUILD_TEXT
    guild_id: Optional[str] = None
    name: Optional[str] = None
    parent_id: Optional[str] = None

    @classmethod
    def from_payload(
        cls, payload: Any, *, guild_id: Optional[str] = None
    ) -> "DiscordChannel":
        channel_id = _require_id(payload, "channel")
        channel_type = payload.get("type")
        return cls(
            id=channel_id,
            type=channel_type if isinstance(channel_type, int) else ChannelType.GUILD_TEXT,
            guild_id=_opt_str(payload.get("guild_id")) or guild_id,
            name=_opt_str(payload.get("name")),
            parent_id=_opt_str(payload.get("parent_id")),
        )

    @property
    def is_direct_message(self) -> bool:
        return self.type in (ChannelType.DM, ChannelType.GROUP_DM)


@dataclass(frozen=True)
class DiscordGuild:
    id: str
    name: str = ""
    icon: Optional[str] = None
    owner_id: Optional[str] = None
    unavailable: bool = False

    @classmethod
    def from_payload(cls, payload: Any) -> "DiscordGuild":
        guild_id = _require_id(payload, "guild")
        return cls(
            id=guild_id,
            name=str(payload.get("name") or ""),
            icon=_opt_str(payload.get("icon")),
            owner_id=_opt_str(payload.get("owner_id")),
            unavailable=bool(payload.get("unavailable", False)),
        )


@dataclass(frozen=True)
class DiscordMessage:
    id: str
    channel_id: str
    author: Optional[DiscordUser]
    content: str = ""
    guild_id: Optional[str] = None
    timestamp: Optional[str] = None
    edited_timestamp: Optional[str] = None
    mention_ids: tuple[str, ...] = ()
    attachment_count: int = 0
    embed_count: int = 0
    type: int = 0

    @classmethod
    def from_payload(cls, payload: Any) -> "DiscordMessage":
        message_id = _require_id(payload, "message")
        channel_id = payload.get("channel_id")
        if channel_id is None:
            raise ProtocolError("Discord message payload missing channel_id")
        author_raw = payload.get("author")
        mentions = payload.get("mentions")
        mention_ids = tuple(
            str(item["id"])
            for item in (mentions if isinstance(mentions, list) else [])
            if isinstance(item, dict) and item.get("id") is not None
        )
        attachments = payload.get("attachments")
        embeds = payload.get("embeds")
        message_type = payload.get("type")
        return cls(
            id=message_id,
            channel_id=str(channel_id),
            author=DiscordUser.from_payload(author_raw)
            if isinstance(author_raw, dict)
            else None,
            content=str(payload.get("content") or ""),
            guild_id=_opt_str(payload.get("guild_id")),
            timestamp=_opt_str(payload.get("timestamp")),
            edited_timestamp=_opt_str(payload.get("edited_timestamp")),
            mention_ids=mention_ids,
            attachment_count=len(attachments) if isinstance(attachments, list) else 0,
            embed_count=len(embeds) if isinstance(embeds, list) else 0,
            type=message_type if isinstance(message_type, int) else 0,
        )

    def merged_with(self, partial: dict[str, Any]) -> "DiscordMessage":
        """Apply a MESSAGE_UPDATE partial payload on top of this message."""
        merged = DiscordMessage.from_payload(
            {
                "id": self.id,
                "channel_id": self.channel_id,
                "guild_id": self.guild_id,
                "timestamp": self.timestamp,
                "type": self.type,
                **{key: value for key, value in partial.items() if value is not None},
            }
        )
        return DiscordMessage(
            id=merged.id,
            channel_id=merged.channel_id,
            author=merged.author or self.author,
            content=merged.content if "content" in partial else self.content,
            guild_id=merged.guild_id,
            timestamp=merged.timestamp,
            edited_timestamp=merged.edited_timestamp or self.edited_timestamp,
            mention_ids=merged.mention_ids if "mentions" in partial else self.mention_ids,
            attachment_count=(
                merged.attachment_count
                if "attachments" in partial
                else self.attachment_count
            ),
            embed_count=merged.embed_count if "embeds" in partial else self.embed_count,
            type=merged.type,
        )


@dataclass(frozen=True)
class MessageDeleted:
    id: str
    channel_id: str
    guild_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "MessageDeleted":
        message_id = _require_id(payload, "message delete")
        channel_id = payload.get("channel_id")
        if channel_id is None:
            raise ProtocolError("Discord message delete payload missing channel_id")
        return cls(
            id=message_id,
            channel_id=str(channel_id),
            guild_id=_opt_str(payload.get("guild_id")),
        )


@dataclass(frozen=True)
class DiscordPresence:
    user_id: str
    status: str = "offline"
    guild_id: Optional[str] = None
    activities: tuple[dict[str, Any], ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "DiscordPresence":
        if not isinstance(payload, dict):
            raise ProtocolError("Discord presence payload must be an object")
        user = payload.get("user")
        user_id = _require_id(user, "presence user")
        activities = payload.get("activities")
        return cls(
            user_id=user_id,
            status=str(payload.get("status") or "offline"),
            guild_id=_opt_str(payload.get("guild_id")),
            activities=tuple(
                item for item in (activities if isinstance(activities, list) else [])
                if isinstance(item, dict)
            ),
        )


@dataclass(frozen=True)
class VoiceState:
    user_id: str
    guild_id: Optional[str] = None
    channel_id: Optional[str] = None
    session_id: Optional[str] = None
    self_mute: bool = False
    self_deaf: bool = False
    member_user: Optional[DiscordUser] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "VoiceState":
        if not isinstance(payload, dict):
            raise ProtocolError("Discord voice state payload must be an object")
        user_id = payload.get("user_id")
        if user_id is None:
            raise ProtocolError("Discord voice state payload missing user_id")
        member = payload.get("member")
        member_user_raw = member.get("user") if isinstance(member, dict) else None
        return cls(
            user_id=str(user_id),
            guild_id=_opt_str(payload.get("guild_id")),
            channel_id=_opt_str(payload.get("channel_id")),
            session_id=_opt_str(payload.get("session_id")),
            self_mute=bool(payload.get("self_mute", False)),
            self_deaf=bool(payload.get("self_deaf", False)),
            member_user=DiscordUser.from_payload(member_user_raw)
            if isinstance(member_user_raw, dict)
            else None,
        )

    @property
    def joined(self) -> bool:
        return self.channel_id is not None


@dataclass(frozen=True)
class ReadyInfo:
    user: DiscordUser
    session_id: str
    resume_gateway_url: Optional[str] = None
    guild_ids: tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Any) -> "ReadyInfo":
        if not isinstance(payload, dict):
            raise ProtocolError("Discord READY payload must be an object")
        session_id = payload.get("session_id")
        if not isinstance(session_id, str) or not session_id:
            raise ProtocolError("Discord READY payload missing session_id")
        guilds = payload.get("guilds")
        return cls(
            user=DiscordUser.from_payload(payload.get("user")),
            session_id=session_id,
            resume_gateway_url=_opt_str(payload.get("resume_gateway_url")),
            guild_ids=tuple(
                str(item["id"])
                for item in (guilds if isinstance(guilds, list) else [])
                if isinstance(item, dict) and item.get("id") is not None
            ),
        )


@dataclass(frozen=True)
class ConnectionStatus:
    state: str
    previous_state: Optional[str] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class Resumed:
    session_id: Optional[str] = None


EventPayload = Union[
    ReadyInfo,
    Resumed,
    DiscordGuild,
    DiscordChannel,
    DiscordMessage,
    MessageDeleted,
    DiscordPresence,
    VoiceState,
    ConnectionStatus,
]


@dataclass(frozen=True)
class DomainEvent:
    kind: EventKind
    payload: EventPayload
    received_at: datetime
    raw: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), compare=False, repr=False
    )

    def __post_init__(self) -> None:
        # Detach from the gateway frame so the event stays read-only.
        object.__setattr__(self, "raw", MappingProxyType(dict(self.raw)))
