from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional

import httpx

from ...core.logging_utils import log_event
from ...core.retry import transient_attempts
from .constants import DISCORD_API_BASE_URL
from .errors import ApiError, AuthExpired, RateLimited, ServerError, TransportError
from .ratelimit import RateLimiter, route_bucket_key
from .tokens import TokenManager, TokenSet

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 1.0


def _body_preview(response: httpx.Response) -> str:
    return (response.text or "").strip().replace("\n", " ")[:200]


def _response_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def parse_retry_after(response: httpx.Response) -> float:
    header = response.headers.get("Retry-After")
    if header is not None:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    body = _response_json(response)
    if isinstance(body, dict):
        value = body.get("retry_after")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return max(float(value), 0.0)
    return DEFAULT_RETRY_AFTER_SECONDS


def _is_global_limit(response: httpx.Response) -> bool:
    header = response.headers.get("X-RateLimit-Global")
    if header is not None and header.strip().lower() == "true":
        return True
    body = _response_json(response)
    return isinstance(body, dict) and body.get("global") is True


class DiscordRestClient:
    """Rate-limited Discord REST facade.

    Every call goes token snapshot → bucket gate → HTTP → bucket update. 401
    triggers one serialized token refresh and one retry; 429 waits exactly
    `Retry-After` and retries until the caller's deadline; network failures and
    5xx responses are retried with exponential backoff up to `max_attempts`.
    """

    def __init__(
        self,
        *,
        token_manager: TokenManager,
        rate_limiter: Optional[RateLimiter] = None,
        base_url: str = DISCORD_API_BASE_URL,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
        default_deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._tokens = token_manager
        self._rate_limiter = rate_limiter or RateLimiter(
            clock=clock, sleep_fn=sleep_fn
        )
        self._max_attempts = max(max_attempts, 1)
        self._retry_base_delay = retry_base_delay
        self._retry_max_delay = retry_max_delay
        self._default_deadline_seconds = default_deadline_seconds
        self._clock = clock
        self._sleep = sleep_fn

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "DiscordRestClient":
        return self

    async def __aexit__(self, *_exc_info: object) -> None:
        await self.close()

    async def request(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        deadline_seconds: Optional[float] = None,
        expect_json: bool = True,
    ) -> Any:
        route_key = route_bucket_key(method, path)
        budget = (
            deadline_seconds
            if deadline_seconds is not None
            else self._default_deadline_seconds
        )
        deadline_at = self._clock() + budget if budget is not None else None
        refreshed_after_401 = False

        while True:
            tokens = await self._tokens.get_valid_token()
            response = await self._send(
                method, path, route_key, tokens, payload=payload, params=params
            )
            status_code = response.status_code

            if status_code == 401:
                if refreshed_after_401:
                    raise AuthExpired(
                        f"Discord rejected refreshed credentials for {method} {path}"
                    )
                log_event(
                    logger,
                    logging.INFO,
                    "discord.rest.unauthorized",
                    method=method,
                    route=route_key,
                )
                await self._tokens.refresh(stale=tokens)
                refreshed_after_401 = True
                continue

            if status_code == 429:
                retry_after = parse_retry_after(response)
                is_global = _is_global_limit(response)
                if is_global:
                    self._rate_limiter.note_global_limit(retry_after)
                if deadline_at is not None and self._clock() + retry_after > deadline_at:
                    raise RateLimited(
                        f"Discord rate limit on {method} {path} outlasts request deadline",
                        retry_after=retry_after,
                        is_global=is_global,
                    )
                log_event(
                    logger,
                    logging.INFO,
                    "discord.rest.rate_limited",
                    method=method,
                    route=route_key,
                    retry_after_seconds=retry_after,
                    is_global=is_global,
                )
                await self._sleep(retry_after)
                continue

            if not 200 <= status_code < 300:
                body = _response_json(response)
                raise ApiError(
                    f"Discord API request failed for {method} {path}: "
                    f"status={status_code} body={_body_preview(response)!r}",
                    status=status_code,
                    body=body if body is not None else response.text,
                )

            if not expect_json:
                return None
            if not response.content:
                return {}
            try:
                return response.json()
            except ValueError as exc:
                raise ApiError(
                    f"Discord API returned non-JSON success response for {method} {path}",
                    status=status_code,
                    body=_body_preview(response),
                ) from exc

    async def _send(
        self,
        method: str,
        path: str,
        route_key: str,
        tokens: TokenSet,
        *,
        payload: dict[str, Any] | list[Any] | None,
        params: dict[str, Any] | None,
    ) -> httpx.Response:
        async for attempt in transient_attempts(
            max_attempts=self._max_attempts,
            base_wait=self._retry_base_delay,
            max_wait=self._retry_max_delay,
            logger=logger,
            sleep=self._sleep,
        ):
            with attempt:
                await self._rate_limiter.acquire(route_key)
                try:
                    response = await self._client.request(
                        method,
                        path,
                        json=payload,
                        params=params,
                        headers={"Authorization": tokens.authorization_header},
                    )
                except httpx.TransportError as exc:
                    raise TransportError(
                        f"Discord API network error for {method} {path}: "
                        f"{type(exc).__name__}: {exc}"
                    ) from exc
                self._rate_limiter.update(route_key, response.headers)
                if 500 <= response.status_code < 600:
                    raise ServerError(
                        f"Discord API server error for {method} {path}: "
                        f"status={response.status_code} "
                        f"body={_body_preview(response)!r}",
                        status=response.status_code,
                        body=_body_preview(response),
                    )
                return response
        raise AssertionError("unreachable: tenacity reraises the last error")

    async def get_gateway(self) -> dict[str, Any]:
        payload = await self.request("GET", "/gateway")
        return payload if isinstance(payload, dict) else {}

    async def get_gateway_bot(self) -> dict[str, Any]:
        payload = await self.request("GET", "/gateway/bot")
        return payload if isinstance(payload, dict) else {}

    async def get_current_user(self) -> dict[str, Any]:
        payload = await self.request("GET", "/users/@me")
        return payload if isinstance(payload, dict) else {}

    async def get_user_guilds(self) -> list[dict[str, Any]]:
        payload = await self.request("GET", "/users/@me/guilds")
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def get_guild_channels(self, *, guild_id: str) -> list[dict[str, Any]]:
        payload = await self.request("GET", f"/guilds/{guild_id}/channels")
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def get_channel_messages(
        self,
        *,
        channel_id: str,
        limit: int = 50,
        before: Optional[str] = None,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {"limit": max(1, min(limit, 100))}
        if before:
            params["before"] = before
        payload = await self.request(
            "GET", f"/channels/{channel_id}/messages", params=params
        )
        if not isinstance(payload, list):
            return []
        return [item for item in payload if isinstance(item, dict)]

    async def create_channel_message(
        self,
        *,
        channel_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self.request(
            "POST",
            f"/channels/{channel_id}/messages",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def edit_channel_message(
        self,
        *,
        channel_id: str,
        message_id: str,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        response = await self.request(
            "PATCH",
            f"/channels/{channel_id}/messages/{message_id}",
            payload=payload,
        )
        return response if isinstance(response, dict) else {}

    async def delete_channel_message(
        self,
        *,
        channel_id: str,
        message_id: str,
    ) -> None:
        await self.request(
            "DELETE",
            f"/channels/{channel_id}/messages/{message_id}",
            expect_json=False,
        )
