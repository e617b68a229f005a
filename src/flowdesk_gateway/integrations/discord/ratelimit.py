"""Client-side projection of Discord's REST rate-limit buckets.

Buckets are keyed by HTTP method plus route template: numeric ids and
webhook/interaction tokens are replaced with placeholders, so
`POST /channels/1/messages` and `POST /channels/2/messages` share the key
`POST /channels/{id}/messages`. Once the server names a bucket through
`X-RateLimit-Bucket`, the route is aliased to that hash and every route the
server groups together shares a single client bucket.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional
from urllib.parse import urlsplit

from ...core.logging_utils import log_event

logger = logging.getLogger(__name__)

_SNOWFLAKE_RE = re.compile(r"^\d+$")
_TOKEN_PARENTS = frozenset({"webhooks", "interactions"})
# Reset-After is reported with millisecond precision.
_SAME_WINDOW_SLACK = 0.05


def route_template(path: str) -> str:
    """Collapse literal resource ids in `path` into placeholders."""
    raw_path = urlsplit(path).path or "/"
    segments = raw_path.strip("/").split("/")
    templated: list[str] = []
    for index, segment in enumerate(segments):
        if _SNOWFLAKE_RE.match(segment):
            templated.append("{id}")
            continue
        # /webhooks/{id}/{token} and /interactions/{id}/{token}
        if (
            index >= 2
            and segments[index - 2] in _TOKEN_PARENTS
            and _SNOWFLAKE_RE.match(segments[index - 1])
        ):
            templated.append("{token}")
            continue
        templated.append(segment)
    return "/" + "/".join(templated)


def route_bucket_key(method: str, path: str) -> str:
    return f"{method.upper()} {route_template(path)}"


@dataclass
class RateLimitBucket:
    bucket_key: str
    remaining: int
    limit: int
    reset_at: float
    is_global: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    def is_exhausted(self, now: float) -> bool:
        return self.remaining <= 0 and now < self.reset_at


def _header_float(headers: Mapping[str, str], name: str) -> Optional[float]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _header_int(headers: Mapping[str, str], name: str) -> Optional[int]:
    parsed = _header_float(headers, name)
    if parsed is None:
        return None
    return int(parsed)


class RateLimiter:
    """Gates outbound REST calls per bucket and globally.

    `acquire()` suspends the caller while its bucket is exhausted and reserves
    one request slot; `update()` folds in what the server reported, never
    raising `remaining` within a window it already tracks. Exhausted buckets suspend callers one at a time behind the
    bucket lock rather than queueing work of their own.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._clock = clock
        self._sleep = sleep_fn
        self._buckets: dict[str, RateLimitBucket] = {}
        self._aliases: dict[str, str] = {}
        self._global_bucket: Optional[RateLimitBucket] = None

    @property
    def global_reset_at(self) -> float:
        if self._global_bucket is None:
            return 0.0
        return self._global_bucket.reset_at

    def resolve_bucket_key(self, route_key: str) -> str:
        return self._aliases.get(route_key, route_key)

    def bucket_for(self, route_key: str) -> Optional[RateLimitBucket]:
        return self._buckets.get(self.resolve_bucket_key(route_key))

    def reset(self) -> None:
        self._buckets.clear()
        self._aliases.clear()
        self._global_bucket = None

    async def acquire(self, route_key: str) -> None:
        await self._wait_for_global()
        bucket = self.bucket_for(route_key)
        if bucket is None:
            return
        async with bucket.lock:
            now = self._clock()
            while bucket.is_exhausted(now):
                delay = bucket.reset_at - now
                log_event(
                    logger,
                    logging.DEBUG,
                    "discord.ratelimit.bucket_wait",
                    bucket=bucket.bucket_key,
                    route=route_key,
                    delay_seconds=round(delay, 3),
                )
                await self._sleep(delay)
                now = self._clock()
            if now >= bucket.reset_at and bucket.remaining <= 0:
                # Window rolled over; the next response reports the real count.
                bucket.remaining = max(bucket.limit, 1)
            bucket.remaining = max(bucket.remaining - 1, 0)
        await self._wait_for_global()

    def update(self, route_key: str, headers: Mapping[str, str]) -> None:
        """Apply `X-RateLimit-*` headers from a response on `route_key`."""
        now = self._clock()
        if _is_truthy(headers.get("X-RateLimit-Global")):
            retry_after = _header_float(headers, "Retry-After")
            if retry_after is not None:
                self.note_global_limit(retry_after)

        remaining = _header_int(headers, "X-RateLimit-Remaining")
        if remaining is None:
            return
        limit = _header_int(headers, "X-RateLimit-Limit")
        reset_after = _header_float(headers, "X-RateLimit-Reset-After")
        reset = _header_float(headers, "X-RateLimit-Reset")
        if reset_after is not None:
            reset_at = now + max(reset_after, 0.0)
        elif reset is not None:
            # Epoch seconds; `_clock` may be monotonic or virtual.
            reset_at = now + max(reset - time.time(), 0.0)
        else:
            reset_at = now

        bucket_hash = headers.get("X-RateLimit-Bucket")
        previous_key = self.resolve_bucket_key(route_key)
        bucket_key = f"hash:{bucket_hash}" if bucket_hash else previous_key
        if bucket_key != previous_key:
            self._aliases[route_key] = bucket_key

        bucket = self._buckets.get(bucket_key)
        if bucket is None:
            previous = self._buckets.get(previous_key)
            bucket = RateLimitBucket(
                bucket_key=bucket_key,
                remaining=remaining,
                limit=limit if limit is not None else max(remaining, 1),
                reset_at=reset_at,
            )
            if previous is not None and previous_key != bucket_key:
                bucket.lock = previous.lock
            self._buckets[bucket_key] = bucket
            return
        if limit is not None:
            bucket.limit = limit
        if now < bucket.reset_at and reset_at <= bucket.reset_at + _SAME_WINDOW_SLACK:
            # Same window: the response may predate slots reserved since it was sent.
            bucket.remaining = min(bucket.remaining, max(remaining, 0))
            bucket.reset_at = max(bucket.reset_at, reset_at)
            return
        bucket.remaining = max(remaining, 0)
        bucket.reset_at = reset_at

    def note_global_limit(self, retry_after: float) -> None:
        reset_at = self._clock() + max(retry_after, 0.0)
        if reset_at > self.global_reset_at:
            self._global_bucket = RateLimitBucket(
                bucket_key="global",
                remaining=0,
                limit=0,
                reset_at=reset_at,
                is_global=True,
            )
            log_event(
                logger,
                logging.WARNING,
                "discord.ratelimit.global",
                retry_after_seconds=retry_after,
            )

    async def _wait_for_global(self) -> None:
        while True:
            delay = self.global_reset_at - self._clock()
            if delay <= 0:
                return
            await self._sleep(delay)


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"true", "1", "yes"}
