from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import httpx
import pytest

from flowdesk_gateway.core.time_utils import now_utc
from flowdesk_gateway.integrations.discord.errors import (
    ApiError,
    AuthExpired,
    RateLimited,
    ServerError,
    TransportError,
)
from flowdesk_gateway.integrations.discord.rest import DiscordRestClient, parse_retry_after
from flowdesk_gateway.integrations.discord.tokens import TokenManager, TokenSet


class _MemoryStorage:
    def __init__(self, tokens: Optional[TokenSet]) -> None:
        self.tokens = tokens

    async def load_token_set(self) -> Optional[TokenSet]:
        return self.tokens

    async def save_token_set(self, tokens: TokenSet) -> None:
        self.tokens = tokens

    async def clear_token_set(self) -> None:
        self.tokens = None


class _Endpoint:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        self.calls.append(refresh_token)
        return {
            "access_token": f"access-{len(self.calls) + 1}",
            "refresh_token": f"refresh-{len(self.calls) + 1}",
            "expires_in": 3600,
            "token_type": "Bearer",
            "scope": "identify guilds",
        }


def _tokens(access: str = "access-1") -> TokenSet:
    return TokenSet(
        access_token=access,
        refresh_token="refresh-1",
        expires_at=now_utc() + timedelta(hours=1),
        scope="identify guilds",
    )


async def _make_client(
    handler: Any,
    *,
    sleeps: list[float],
    endpoint: Optional[_Endpoint] = None,
    **kwargs: Any,
) -> DiscordRestClient:
    manager = TokenManager(storage=_MemoryStorage(_tokens()), endpoint=endpoint)
    await manager.load()

    async def _fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = DiscordRestClient(
        token_manager=manager,
        base_url="https://discord.test/api/v10",
        sleep_fn=_fake_sleep,
        **kwargs,
    )
    await client._client.aclose()
    client._client = httpx.AsyncClient(
        base_url="https://discord.test/api/v10",
        transport=httpx.MockTransport(handler),
        timeout=10.0,
    )
    return client


@pytest.mark.anyio
async def test_rest_client_sends_bearer_authorization_and_paths() -> None:
    observed: list[tuple[str, str, Optional[str], str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        observed.append(
            (
                request.method,
                request.url.path,
                request.headers.get("Authorization"),
                request.url.query.decode("ascii"),
            )
        )
        if request.method == "POST":
            return httpx.Response(200, json={"id": "m1", "channel_id": "c1"})
        return httpx.Response(200, json=[{"id": "1"}, "junk"])

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        guilds = await client.get_user_guilds()
        messages = await client.get_channel_messages(
            channel_id="c1", limit=500, before="99"
        )
        created = await client.create_channel_message(
            channel_id="c1", payload={"content": "hello"}
        )
    finally:
        await client.close()

    assert guilds == [{"id": "1"}]
    assert messages == [{"id": "1"}]
    assert created["id"] == "m1"
    assert observed[0][:3] == ("GET", "/api/v10/users/@me/guilds", "Bearer access-1")
    assert observed[1][1] == "/api/v10/channels/c1/messages"
    assert "limit=100" in observed[1][3]
    assert "before=99" in observed[1][3]
    assert observed[2][:2] == ("POST", "/api/v10/channels/c1/messages")
    assert sleeps == []


@pytest.mark.anyio
async def test_429_waits_exactly_retry_after_then_retries_once() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            return httpx.Response(
                429,
                headers={"Retry-After": "2"},
                json={"message": "You are being rate limited.", "retry_after": 2.0},
            )
        return httpx.Response(200, json={"url": "wss://gateway.discord.gg"})

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        payload = await client.get_gateway()
    finally:
        await client.close()

    assert payload == {"url": "wss://gateway.discord.gg"}
    assert calls == 2
    assert sleeps == [2.0]


@pytest.mark.anyio
async def test_429_beyond_deadline_raises_rate_limited() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "30"}, json={})

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        with pytest.raises(RateLimited) as exc_info:
            await client.request("GET", "/gateway", deadline_seconds=5.0)
    finally:
        await client.close()

    assert exc_info.value.retry_after == 30.0
    assert sleeps == []


@pytest.mark.anyio
async def test_401_refreshes_once_and_retries_with_new_token() -> None:
    seen_tokens: list[Optional[str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        authorization = request.headers.get("Authorization")
        seen_tokens.append(authorization)
        if authorization == "Bearer access-1":
            return httpx.Response(401, json={"message": "401: Unauthorized"})
        return httpx.Response(200, json={"id": "100", "username": "me"})

    endpoint = _Endpoint()
    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps, endpoint=endpoint)
    try:
        user = await client.get_current_user()
    finally:
        await client.close()

    assert user["id"] == "100"
    assert endpoint.calls == ["refresh-1"]
    assert seen_tokens == ["Bearer access-1", "Bearer access-2"]


@pytest.mark.anyio
async def test_second_401_after_refresh_raises_auth_expired() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(401, json={"message": "401: Unauthorized"})

    endpoint = _Endpoint()
    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps, endpoint=endpoint)
    try:
        with pytest.raises(AuthExpired):
            await client.get_current_user()
    finally:
        await client.close()

    assert calls == 2
    assert len(endpoint.calls) == 1


@pytest.mark.anyio
async def test_401_without_refresh_endpoint_raises_auth_expired() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={})

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        with pytest.raises(AuthExpired):
            await client.get_current_user()
    finally:
        await client.close()


@pytest.mark.anyio
async def test_non_retryable_status_surfaces_api_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            403, json={"message": "Missing Access", "code": 50001}
        )

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        with pytest.raises(ApiError) as exc_info:
            await client.get_guild_channels(guild_id="g1")
    finally:
        await client.close()

    assert exc_info.value.status == 403
    assert exc_info.value.body == {"message": "Missing Access", "code": 50001}
    assert not isinstance(exc_info.value, ServerError)
    assert sleeps == []


@pytest.mark.anyio
async def test_network_errors_retry_with_backoff_up_to_three_attempts() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.ConnectError("connection refused", request=request)

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        with pytest.raises(TransportError):
            await client.get_gateway()
    finally:
        await client.close()

    assert calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.anyio
async def test_server_errors_are_retried_then_succeed() -> None:
    calls = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls < 3:
            return httpx.Response(503, text="upstream unavailable")
        return httpx.Response(204)

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        await client.delete_channel_message(channel_id="c1", message_id="m1")
    finally:
        await client.close()

    assert calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.anyio
async def test_rate_limit_headers_update_the_route_bucket() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={
                "X-RateLimit-Bucket": "b1",
                "X-RateLimit-Limit": "5",
                "X-RateLimit-Remaining": "4",
                "X-RateLimit-Reset-After": "1.5",
            },
            json=[],
        )

    sleeps: list[float] = []
    client = await _make_client(handler, sleeps=sleeps)
    try:
        await client.get_channel_messages(channel_id="123")
    finally:
        await client.close()

    bucket = client.rate_limiter.bucket_for("GET /channels/{id}/messages")
    assert bucket is not None
    assert bucket.bucket_key == "hash:b1"
    assert bucket.remaining == 4
    assert bucket.limit == 5


@pytest.mark.anyio
async def test_default_rate_limiter_follows_the_injected_clock() -> None:
    now = [500.0]
    sleeps: list[float] = []

    async def _virtual_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        now[0] += seconds

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={
                "X-RateLimit-Limit": "1",
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset-After": "2",
            },
            json=[],
        )

    manager = TokenManager(storage=_MemoryStorage(_tokens()))
    await manager.load()
    client = DiscordRestClient(
        token_manager=manager,
        base_url="https://discord.test/api/v10",
        clock=lambda: now[0],
        sleep_fn=_virtual_sleep,
    )
    await client._client.aclose()
    client._client = httpx.AsyncClient(
        base_url="https://discord.test/api/v10",
        transport=httpx.MockTransport(handler),
    )
    try:
        await client.get_channel_messages(channel_id="1")
        await client.get_channel_messages(channel_id="1")
    finally:
        await client.close()

    assert sleeps == [2.0]
    assert now[0] == 502.0


def test_parse_retry_after_prefers_header_then_body() -> None:
    request = httpx.Request("GET", "https://discord.test")
    assert parse_retry_after(
        httpx.Response(429, headers={"Retry-After": "1.5"}, request=request)
    ) == 1.5
    assert parse_retry_after(
        httpx.Response(429, json={"retry_after": 0.25}, request=request)
    ) == 0.25
    assert parse_retry_after(httpx.Response(429, text="nope", request=request)) == 1.0
