from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from flowdesk_gateway.integrations.discord.cache import EntityCache, EntityKind
from flowdesk_gateway.integrations.discord.errors import DiscordConfigError
from flowdesk_gateway.integrations.discord.events import (
    ChannelType,
    DiscordChannel,
    DiscordMessage,
    DiscordUser,
    DomainEvent,
    EventKind,
    VoiceState,
)
from flowdesk_gateway.integrations.discord.search import (
    relevance_score,
    search_cached_messages,
)
from flowdesk_gateway.integrations.discord.triggers import (
    MessageTriggerConfig,
    VoiceJoinTriggerConfig,
    message_trigger_predicate,
    voice_join_trigger_predicate,
)

AT = datetime(2026, 2, 1, tzinfo=timezone.utc)


def _message(
    message_id: str,
    content: str,
    *,
    channel_id: str = "c1",
    guild_id: Optional[str] = None,
    username: str = "alice",
) -> DiscordMessage:
    return DiscordMessage(
        id=message_id,
        channel_id=channel_id,
        author=DiscordUser(id=f"u-{username}", username=username),
        content=content,
        guild_id=guild_id,
        timestamp="2026-02-01T00:00:00+00:00",
    )


def _event(kind: EventKind, payload: Any) -> DomainEvent:
    return DomainEvent(kind=kind, payload=payload, received_at=AT)


def test_message_trigger_config_accepts_camel_case_keys() -> None:
    config = MessageTriggerConfig.from_raw(
        {"guildId": "g1", "channelId": " c1 ", "keywords": ["Deploy", " "]}
    )
    assert config == MessageTriggerConfig(
        guild_id="g1", channel_id="c1", keywords=("Deploy",)
    )
    assert MessageTriggerConfig.from_raw(None) == MessageTriggerConfig()


def test_message_trigger_config_rejects_scalar_keywords() -> None:
    with pytest.raises(DiscordConfigError):
        MessageTriggerConfig.from_raw({"keywords": "deploy"})


def test_message_trigger_keywords_are_case_insensitive() -> None:
    config = MessageTriggerConfig(keywords=("DEPLOY", "rollback"))
    assert config.matches(_message("1", "starting deploy now"))
    assert config.matches(_message("2", "Rollback please"))
    assert not config.matches(_message("3", "all quiet"))


def test_message_trigger_filters_by_guild_and_channel() -> None:
    config = MessageTriggerConfig(guild_id="g1", channel_id="c1")
    assert config.matches(_message("1", "x", guild_id="g1"))
    assert not config.matches(_message("2", "x", guild_id="g2"))
    assert not config.matches(_message("3", "x", channel_id="c2", guild_id="g1"))
    channel = DiscordChannel(id="c1", guild_id="g1")
    assert config.matches(_message("4", "x"), channel=channel)


def test_message_trigger_predicate_uses_cached_channel_guild() -> None:
    cache = EntityCache()
    cache.upsert(EntityKind.CHANNEL, "c1", DiscordChannel(id="c1", guild_id="g1"))
    predicate = message_trigger_predicate(
        MessageTriggerConfig(guild_id="g1"), cache=cache
    )

    assert predicate(_event(EventKind.MESSAGE_CREATE, _message("1", "hi")))
    assert not predicate(_event(EventKind.MESSAGE_UPDATE, _message("1", "hi")))
    assert not predicate(
        _event(EventKind.MESSAGE_CREATE, _message("2", "hi", channel_id="c9"))
    )


def test_voice_join_trigger_only_fires_on_join() -> None:
    config = VoiceJoinTriggerConfig.from_raw({"guild_id": "g1"})
    predicate = voice_join_trigger_predicate(config)

    joined = VoiceState(user_id="u1", guild_id="g1", channel_id="v1")
    left = VoiceState(user_id="u1", guild_id="g1", channel_id=None)
    other_guild = VoiceState(user_id="u1", guild_id="g2", channel_id="v1")

    assert predicate(_event(EventKind.VOICE_STATE_UPDATE, joined))
    assert not predicate(_event(EventKind.VOICE_STATE_UPDATE, left))
    assert not predicate(_event(EventKind.VOICE_STATE_UPDATE, other_guild))
    assert not predicate(_event(EventKind.MESSAGE_CREATE, _message("1", "x")))


def test_voice_join_trigger_channel_filter() -> None:
    config = VoiceJoinTriggerConfig.from_raw({"channelId": "v2"})
    assert config.matches(VoiceState(user_id="u1", channel_id="v2"))
    assert not config.matches(VoiceState(user_id="u1", channel_id="v1"))


def test_relevance_score_prefers_early_substring_matches() -> None:
    assert relevance_score("deploy finished", "deploy") == pytest.approx(1.0)
    late = relevance_score("the nightly deploy", "deploy")
    assert 0.5 <= late < 1.0
    assert relevance_score("alpha beta", "beta gamma") == pytest.approx(0.35)
    assert relevance_score("nothing here", "zzz") == 0.0


def _seeded_cache() -> EntityCache:
    cache = EntityCache()
    cache.upsert(
        EntityKind.CHANNEL, "c1", DiscordChannel(id="c1", guild_id="g1", name="ops")
    )
    cache.upsert(
        EntityKind.CHANNEL, "c2", DiscordChannel(id="c2", guild_id="g2", name="chat")
    )
    cache.append_bounded(EntityKind.MESSAGE, "c1", _message("1", "the deploy failed"))
    cache.append_bounded(EntityKind.MESSAGE, "c1", _message("2", "Deploy again"))
    cache.append_bounded(
        EntityKind.MESSAGE, "c2", _message("3", "lunch?", channel_id="c2", username="deploybot")
    )
    cache.append_bounded(
        EntityKind.MESSAGE, "c2", _message("4", "unrelated", channel_id="c2")
    )
    return cache


def test_search_matches_content_and_author_sorted_by_score() -> None:
    results = search_cached_messages(_seeded_cache(), "deploy")

    assert [result.id for result in results] == ["2", "1", "3"]
    top = results[0]
    assert top.title == "Message from alice"
    assert top.guild_id == "g1"
    assert top.metadata["channel_name"] == "ops"
    assert top.metadata["has_attachments"] is False
    assert results[-1].score == 0.0


def test_search_filters_by_guild_and_channel() -> None:
    cache = _seeded_cache()
    assert [r.id for r in search_cached_messages(cache, "deploy", guild_id="g2")] == ["3"]
    assert [r.id for r in search_cached_messages(cache, "deploy", channel_id="c1")] == [
        "2",
        "1",
    ]


def test_search_empty_query_and_limit() -> None:
    cache = _seeded_cache()
    assert search_cached_messages(cache, "   ") == []
    assert len(search_cached_messages(cache, "deploy", limit=1)) == 1


def test_search_truncates_description() -> None:
    cache = EntityCache()
    cache.append_bounded(EntityKind.MESSAGE, "c1", _message("1", "x" * 300))
    [result] = search_cached_messages(cache, "x")
    assert len(result.description) == 200
    assert result.guild_id is None


def test_search_skips_direct_messages_and_bot_authors() -> None:
    cache = EntityCache()
    cache.upsert(EntityKind.CHANNEL, "dm1", DiscordChannel(id="dm1", type=ChannelType.DM))
    cache.append_bounded(
        EntityKind.MESSAGE, "dm1", _message("1", "secret plan", channel_id="dm1")
    )
    cache.append_bounded(
        EntityKind.MESSAGE,
        "dm1",
        DiscordMessage(
            id="2",
            channel_id="dm1",
            author=DiscordUser(id="u-bot", username="helper", bot=True),
            content="secret reply",
        ),
    )

    assert search_cached_messages(cache, "secret") == []
    assert [
        result.id
        for result in search_cached_messages(cache, "secret", index_private_messages=True)
    ] == ["1"]


def test_search_guild_filter_falls_back_to_message_guild() -> None:
    cache = EntityCache()
    cache.append_bounded(
        EntityKind.MESSAGE, "c9", _message("9", "deploy", channel_id="c9", guild_id="g3")
    )

    [result] = search_cached_messages(cache, "deploy", guild_id="g3")
    assert result.id == "9"
    assert result.guild_id == "g3"
    assert search_cached_messages(cache, "deploy", guild_id="g1") == []
