"""Gateway dispatch decoding, cache maintenance and domain-event fan-out.

The dispatcher is the only writer of the entity cache. Gateway frames arrive
through `dispatch()`; REST results that should be reflected in the cache
(guild lists, channel lists, message history, sent messages) go through the
`ingest_*` methods so cache updates stay in one place.
"""

from __future__ import annotations

import logging
from datetime import datetime
from functools import partial
from typing import Any, Awaitable, Callable, Iterable, Optional

from ...core.logging_utils import log_event
from ...core.time_utils import now_utc
from .bus import TriggerBus
from .cache import EntityCache, EntityKind
from .errors import ProtocolError
from .events import (
    ConnectionStatus,
    DiscordChannel,
    DiscordGuild,
    DiscordMessage,
    DiscordPresence,
    DiscordUser,
    DomainEvent,
    EventKind,
    EventPayload,
    MessageDeleted,
    ReadyInfo,
    Resumed,
    VoiceState,
)
from .notifications import NotificationPolicy, NotificationRequest, NotificationSink

ReadyListener = Callable[[ReadyInfo], Awaitable[None]]


def _snowflake_order(message: DiscordMessage) -> int:
    try:
        return int(message.id)
    except ValueError:
        return 0


class EventDispatcher:
    def __init__(
        self,
        *,
        cache: EntityCache,
        bus: TriggerBus,
        logger: Optional[logging.Logger] = None,
        notification_policy: Optional[NotificationPolicy] = None,
        notification_sink: Optional[NotificationSink] = None,
        message_cap: Optional[int] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._cache = cache
        self._bus = bus
        self._logger = logger or logging.getLogger(__name__)
        self._notification_policy = notification_policy
        self._notification_sink = notification_sink
        self._message_cap = message_cap or cache.default_cap
        self._clock = clock
        self._current_user_id: Optional[str] = None
        self._ready_listeners: list[ReadyListener] = []
        self._handlers: dict[str, Callable[[dict[str, Any]], Optional[DomainEvent]]] = {
            EventKind.READY.value: self._on_ready,
            EventKind.RESUMED.value: self._on_resumed,
            EventKind.GUILD_CREATE.value: partial(
                self._on_guild_upsert, kind=EventKind.GUILD_CREATE
            ),
            EventKind.GUILD_UPDATE.value: partial(
                self._on_guild_upsert, kind=EventKind.GUILD_UPDATE
            ),
            EventKind.GUILD_DELETE.value: self._on_guild_delete,
            EventKind.CHANNEL_CREATE.value: partial(
                self._on_channel_upsert, kind=EventKind.CHANNEL_CREATE
            ),
            EventKind.CHANNEL_UPDATE.value: partial(
                self._on_channel_upsert, kind=EventKind.CHANNEL_UPDATE
            ),
            EventKind.CHANNEL_DELETE.value: self._on_channel_delete,
            EventKind.MESSAGE_CREATE.value: self._on_message_create,
            EventKind.MESSAGE_UPDATE.value: self._on_message_update,
            EventKind.MESSAGE_DELETE.value: self._on_message_delete,
            EventKind.PRESENCE_UPDATE.value: self._on_presence_update,
            EventKind.VOICE_STATE_UPDATE.value: self._on_voice_state_update,
        }

    @property
    def cache(self) -> EntityCache:
        return self._cache

    @property
    def current_user_id(self) -> Optional[str]:
        return self._current_user_id

    def add_ready_listener(self, listener: ReadyListener) -> None:
        self._ready_listeners.append(listener)

    def reset(self) -> None:
        """Forget everything cached for the current identity."""
        self._current_user_id = None
        self._cache.clear()

    async def dispatch(self, event_type: str, data: dict[str, Any]) -> Optional[DomainEvent]:
        handler = self._handlers.get(event_type)
        if handler is None:
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.dispatch.unknown_event",
                event_type=event_type,
            )
            return None
        try:
            event = handler(data)
        except ProtocolError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.dispatch.decode_failed",
                event_type=event_type,
                exc=exc,
            )
            return None
        if event is None:
            return None
        self._bus.publish(event)
        if event.kind is EventKind.READY and isinstance(event.payload, ReadyInfo):
            for listener in list(self._ready_listeners):
                await listener(event.payload)
        return event

    def publish_status(
        self,
        state: str,
        *,
        previous: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> DomainEvent:
        event = self._event(
            EventKind.CONNECTION_STATUS,
            ConnectionStatus(state=state, previous_state=previous, reason=reason),
        )
        self._bus.publish(event)
        return event

    def ingest_guilds(self, payloads: Iterable[dict[str, Any]]) -> list[DiscordGuild]:
        guilds: list[DiscordGuild] = []
        for payload in payloads:
            guild = self._decode_or_skip(DiscordGuild.from_payload, payload, "guild")
            if guild is None:
                continue
            self._cache.upsert(EntityKind.GUILD, guild.id, guild)
            guilds.append(guild)
        return guilds

    def ingest_channels(
        self, payloads: Iterable[dict[str, Any]], *, guild_id: Optional[str] = None
    ) -> list[DiscordChannel]:
        channels: list[DiscordChannel] = []
        for payload in payloads:
            channel = self._decode_or_skip(
                lambda raw: DiscordChannel.from_payload(raw, guild_id=guild_id),
                payload,
                "channel",
            )
            if channel is None:
                continue
            self._cache.upsert(EntityKind.CHANNEL, channel.id, channel)
            channels.append(channel)
        return channels

    def ingest_messages(
        self, channel_id: str, payloads: Iterable[dict[str, Any]]
    ) -> list[DiscordMessage]:
        """Merge fetched history into the channel's bounded list, newest first."""
        fetched: list[DiscordMessage] = []
        for payload in payloads:
            message = self._decode_or_skip(DiscordMessage.from_payload, payload, "message")
            if message is None:
                continue
            if message.author is not None:
                self._cache.upsert(EntityKind.USER, message.author.id, message.author)
            fetched.append(message)
        merged: dict[str, DiscordMessage] = {
            message.id: message
            for message in self._cache.bounded(EntityKind.MESSAGE, channel_id)
        }
        for message in fetched:
            merged[message.id] = message
        ordered = sorted(merged.values(), key=_snowflake_order, reverse=True)
        self._cache.replace_bounded(
            EntityKind.MESSAGE, channel_id, ordered, cap=self._message_cap
        )
        return fetched

    def ingest_sent_message(self, payload: dict[str, Any]) -> Optional[DiscordMessage]:
        message = self._decode_or_skip(DiscordMessage.from_payload, payload, "message")
        if message is not None:
            self._store_message(message)
        return message

    def _decode_or_skip(
        self, decoder: Callable[[Any], Any], payload: Any, what: str
    ) -> Optional[Any]:
        try:
            return decoder(payload)
        except ProtocolError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.dispatch.ingest_skipped",
                entity=what,
                exc=exc,
            )
            return None

    def _event(
        self, kind: EventKind, payload: EventPayload, raw: Optional[dict[str, Any]] = None
    ) -> DomainEvent:
        return DomainEvent(
            kind=kind, payload=payload, received_at=self._clock(), raw=raw or {}
        )

    def _store_message(self, message: DiscordMessage) -> None:
        if message.author is not None:
            self._cache.upsert(EntityKind.USER, message.author.id, message.author)
        replaced = self._cache.update_bounded(
            EntityKind.MESSAGE,
            message.channel_id,
            lambda item: isinstance(item, DiscordMessage) and item.id == message.id,
            lambda _item: message,
        )
        if not replaced:
            self._cache.append_bounded(
                EntityKind.MESSAGE, message.channel_id, message, cap=self._message_cap
            )

    def _on_ready(self, data: dict[str, Any]) -> DomainEvent:
        ready = ReadyInfo.from_payload(data)
        self._current_user_id = ready.user.id
        self._cache.upsert(EntityKind.USER, ready.user.id, ready.user)
        for guild_id in ready.guild_ids:
            if self._cache.get(EntityKind.GUILD, guild_id) is None:
                self._cache.upsert(
                    EntityKind.GUILD, guild_id, DiscordGuild(id=guild_id, unavailable=True)
                )
        log_event(
            self._logger,
            logging.INFO,
            "discord.dispatch.ready",
            user_id=ready.user.id,
            guild_count=len(ready.guild_ids),
        )
        return self._event(EventKind.READY, ready, data)

    def _on_resumed(self, data: dict[str, Any]) -> DomainEvent:
        return self._event(EventKind.RESUMED, Resumed(), data)

    def _on_guild_upsert(self, data: dict[str, Any], *, kind: EventKind) -> DomainEvent:
        guild = DiscordGuild.from_payload(data)
        self._cache.upsert(EntityKind.GUILD, guild.id, guild)
        channels = data.get("channels")
        if isinstance(channels, list):
            self.ingest_channels(
                (item for item in channels if isinstance(item, dict)), guild_id=guild.id
            )
        presences = data.get("presences")
        if isinstance(presences, list):
            for raw in presences:
                presence = self._decode_or_skip(
                    DiscordPresence.from_payload, raw, "presence"
                )
                if presence is not None:
                    self._cache.upsert(EntityKind.PRESENCE, presence.user_id, presence)
        return self._event(kind, guild, data)

    def _on_guild_delete(self, data: dict[str, Any]) -> DomainEvent:
        guild = DiscordGuild.from_payload(data)
        if guild.unavailable:
            # Outage, not removal: keep what we know and flag it.
            existing = self._cache.get(EntityKind.GUILD, guild.id)
            if isinstance(existing, DiscordGuild):
                guild = DiscordGuild(
                    id=existing.id,
                    name=existing.name,
                    icon=existing.icon,
                    owner_id=existing.owner_id,
                    unavailable=True,
                )
            self._cache.upsert(EntityKind.GUILD, guild.id, guild)
            return self._event(EventKind.GUILD_DELETE, guild, data)
        self._cache.remove(EntityKind.GUILD, guild.id)
        for channel in self._cache.values(EntityKind.CHANNEL):
            if isinstance(channel, DiscordChannel) and channel.guild_id == guild.id:
                self._cache.remove(EntityKind.CHANNEL, channel.id)
                self._cache.drop_bounded(EntityKind.MESSAGE, channel.id)
        return self._event(EventKind.GUILD_DELETE, guild, data)

    def _on_channel_upsert(self, data: dict[str, Any], *, kind: EventKind) -> DomainEvent:
        channel = DiscordChannel.from_payload(data)
        self._cache.upsert(EntityKind.CHANNEL, channel.id, channel)
        return self._event(kind, channel, data)

    def _on_channel_delete(self, data: dict[str, Any]) -> DomainEvent:
        channel = DiscordChannel.from_payload(data)
        self._cache.remove(EntityKind.CHANNEL, channel.id)
        self._cache.drop_bounded(EntityKind.MESSAGE, channel.id)
        return self._event(EventKind.CHANNEL_DELETE, channel, data)

    def _on_message_create(self, data: dict[str, Any]) -> DomainEvent:
        message = DiscordMessage.from_payload(data)
        self._store_message(message)
        self._maybe_notify_message(message)
        return self._event(EventKind.MESSAGE_CREATE, message, data)

    def _on_message_update(self, data: dict[str, Any]) -> DomainEvent:
        incoming = DiscordMessage.from_payload(data)
        merged: list[DiscordMessage] = []

        def apply(item: DiscordMessage) -> DiscordMessage:
            updated = item.merged_with(data)
            merged.append(updated)
            return updated

        self._cache.update_bounded(
            EntityKind.MESSAGE,
            incoming.channel_id,
            lambda item: isinstance(item, DiscordMessage) and item.id == incoming.id,
            apply,
        )
        message = merged[0] if merged else incoming
        if message.author is not None:
            self._cache.upsert(EntityKind.USER, message.author.id, message.author)
        return self._event(EventKind.MESSAGE_UPDATE, message, data)

    def _on_message_delete(self, data: dict[str, Any]) -> DomainEvent:
        deleted = MessageDeleted.from_payload(data)
        self._cache.remove_from_bounded(
            EntityKind.MESSAGE,
            deleted.channel_id,
            lambda item: isinstance(item, DiscordMessage) and item.id == deleted.id,
        )
        return self._event(EventKind.MESSAGE_DELETE, deleted, data)

    def _on_presence_update(self, data: dict[str, Any]) -> DomainEvent:
        presence = DiscordPresence.from_payload(data)
        self._cache.upsert(EntityKind.PRESENCE, presence.user_id, presence)
        user_raw = data.get("user")
        if isinstance(user_raw, dict) and user_raw.get("username"):
            user = DiscordUser.from_payload(user_raw)
            self._cache.upsert(EntityKind.USER, user.id, user)
        return self._event(EventKind.PRESENCE_UPDATE, presence, data)

    def _on_voice_state_update(self, data: dict[str, Any]) -> DomainEvent:
        state = VoiceState.from_payload(data)
        if state.member_user is not None:
            self._cache.upsert(EntityKind.USER, state.member_user.id, state.member_user)
        user = self._cache.get(EntityKind.USER, state.user_id)
        if self._notification_policy is not None:
            self._notify(
                self._notification_policy.for_voice_state(
                    state, user=user if isinstance(user, DiscordUser) else None
                )
            )
        return self._event(EventKind.VOICE_STATE_UPDATE, state, data)

    def _maybe_notify_message(self, message: DiscordMessage) -> None:
        if self._notification_policy is None:
            return
        channel = self._cache.get(EntityKind.CHANNEL, message.channel_id)
        channel = channel if isinstance(channel, DiscordChannel) else None
        guild_id = (channel.guild_id if channel is not None else None) or message.guild_id
        guild = self._cache.get(EntityKind.GUILD, guild_id) if guild_id else None
        self._notify(
            self._notification_policy.for_message(
                message,
                channel=channel,
                guild=guild if isinstance(guild, DiscordGuild) else None,
                current_user_id=self._current_user_id,
            )
        )

    def _notify(self, request: Optional[NotificationRequest]) -> None:
        if request is None or self._notification_sink is None:
            return
        try:
            self._notification_sink.notify(request)
        except Exception as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.dispatch.notification_failed",
                kind=request.kind,
                exc=exc,
            )
