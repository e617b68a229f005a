from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ...core.logging_utils import log_event
from .cache import EntityCache, EntityKind
from .events import DiscordChannel, DiscordMessage

logger = logging.getLogger(__name__)

SEARCH_RESULT_LIMIT = 50
DESCRIPTION_CHARS = 200


@dataclass(frozen=True)
class SearchResult:
    id: str
    title: str
    description: str
    channel_id: str
    guild_id: Optional[str]
    author_id: Optional[str]
    timestamp: Optional[str]
    score: float
    content_type: str = "message"
    metadata: dict[str, Any] = field(default_factory=dict)


def relevance_score(text: str, query: str) -> float:
    """1.0 for a match at the start, down to 0.5 at the end; 0.7 max for word overlap."""
    lower_text = text.lower()
    lower_query = query.lower()
    if lower_query and lower_query in lower_text:
        index = lower_text.index(lower_query)
        return 1.0 - (index / len(lower_text)) * 0.5
    words = lower_query.split(" ")
    if not words:
        return 0.0
    matches = sum(1 for word in words if word in lower_text)
    return matches / len(words) * 0.7


def _message_matches(message: DiscordMessage, needle: str) -> bool:
    if needle in message.content.lower():
        return True
    author = message.author
    return author is not None and needle in author.username.lower()


def search_cached_messages(
    cache: EntityCache,
    query: str,
    *,
    guild_id: Optional[str] = None,
    channel_id: Optional[str] = None,
    limit: int = SEARCH_RESULT_LIMIT,
    index_private_messages: bool = False,
) -> list[SearchResult]:
    """Score cached messages against `query`, best first.

    Bot-authored messages are never searchable. Direct-message channels are
    skipped unless `index_private_messages` is set.
    """
    needle = query.strip().lower()
    if not needle:
        return []
    results: list[SearchResult] = []
    for cached_channel_id, messages in cache.bounded_items(EntityKind.MESSAGE):
        if channel_id is not None and cached_channel_id != channel_id:
            continue
        channel = cache.get(EntityKind.CHANNEL, cached_channel_id)
        channel = channel if isinstance(channel, DiscordChannel) else None
        if channel is not None and channel.is_direct_message and not index_private_messages:
            continue
        channel_guild_id = channel.guild_id if channel is not None else None
        for message in messages:
            if not isinstance(message, DiscordMessage):
                continue
            if message.author is not None and message.author.bot:
                continue
            if guild_id is not None and (channel_guild_id or message.guild_id) != guild_id:
                continue
            if not _message_matches(message, needle):
                continue
            username = message.author.username if message.author else "unknown"
            results.append(
                SearchResult(
                    id=message.id,
                    title=f"Message from {username}",
                    description=message.content[:DESCRIPTION_CHARS],
                    channel_id=message.channel_id,
                    guild_id=channel_guild_id or message.guild_id,
                    author_id=message.author.id if message.author else None,
                    timestamp=message.timestamp,
                    score=relevance_score(message.content, query.strip()),
                    metadata={
                        "message_type": message.type,
                        "has_attachments": message.attachment_count > 0,
                        "has_embeds": message.embed_count > 0,
                        "channel_name": channel.name if channel is not None else None,
                    },
                )
            )
    results.sort(key=lambda result: result.score, reverse=True)
    log_event(
        logger,
        logging.DEBUG,
        "discord.search.completed",
        query_length=len(query),
        result_count=len(results),
    )
    return results[: max(limit, 0)]
