from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol, Sequence

import httpx

from ...core.logging_utils import log_event
from ...core.retry import retry_transient
from ...core.time_utils import now_utc
from .constants import DISCORD_OAUTH_TOKEN_URL
from .errors import ApiError, AuthExpired, DiscordError, ServerError, TransportError

logger = logging.getLogger(__name__)

# Refresh slightly before the server-side expiry so in-flight calls don't race it.
EXPIRY_SKEW = timedelta(seconds=30)


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str]
    expires_at: datetime
    scope: str = ""
    token_type: str = "Bearer"

    def is_expired(self, now: datetime) -> bool:
        # Bot tokens live until revoked; only OAuth grants carry a lifetime.
        if self.token_type == "Bot":
            return False
        return now >= self.expires_at

    @property
    def authorization_header(self) -> str:
        return f"{self.token_type} {self.access_token}"


def token_set_from_response(
    payload: dict[str, Any],
    *,
    now: datetime,
    previous: Optional[TokenSet] = None,
) -> TokenSet:
    access_token = payload.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise AuthExpired("Discord token endpoint response missing access_token")
    expires_in = payload.get("expires_in")
    try:
        expires_seconds = float(expires_in)
    except (TypeError, ValueError):
        expires_seconds = 0.0
    refresh_token = payload.get("refresh_token")
    if not isinstance(refresh_token, str) or not refresh_token:
        refresh_token = previous.refresh_token if previous is not None else None
    scope = payload.get("scope")
    token_type = payload.get("token_type")
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=max(expires_seconds, 0.0)) - EXPIRY_SKEW,
        scope=scope if isinstance(scope, str) else (previous.scope if previous else ""),
        token_type=(
            token_type.capitalize() if isinstance(token_type, str) and token_type else "Bearer"
        ),
    )


class TokenStorage(Protocol):
    async def load_token_set(self) -> Optional[TokenSet]: ...

    async def save_token_set(self, tokens: TokenSet) -> None: ...

    async def clear_token_set(self) -> None: ...


class TokenEndpoint(Protocol):
    async def refresh(self, refresh_token: str) -> dict[str, Any]: ...


class OAuthTokenClient:
    """Client for the OAuth2 token endpoint (refresh and code grants)."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        token_url: str = DISCORD_OAUTH_TOKEN_URL,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    async def close(self) -> None:
        await self._client.aclose()

    async def refresh(self, refresh_token: str) -> dict[str, Any]:
        return await self._post(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def exchange_code(
        self, *, code: str, redirect_uri: str, scopes: Sequence[str]
    ) -> dict[str, Any]:
        return await self._post(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "scope": " ".join(scopes),
            }
        )

    @retry_transient(max_attempts=3, base_wait=0.5, max_wait=5.0)
    async def _post(self, form: dict[str, str]) -> dict[str, Any]:
        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            **form,
        }
        try:
            response = await self._client.post(
                self._token_url,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TransportError as exc:
            raise TransportError(
                f"Discord token endpoint unreachable: {type(exc).__name__}"
            ) from exc
        body_preview = (response.text or "").strip().replace("\n", " ")[:200]
        if 500 <= response.status_code < 600:
            raise ServerError(
                f"Discord token endpoint server error: status={response.status_code}",
                status=response.status_code,
                body=body_preview,
            )
        if response.status_code >= 400:
            raise ApiError(
                f"Discord token endpoint rejected grant: status={response.status_code} "
                f"body={body_preview!r}",
                status=response.status_code,
                body=body_preview,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise ApiError(
                "Discord token endpoint returned non-JSON response",
                status=response.status_code,
                body=body_preview,
            ) from exc
        if not isinstance(payload, dict):
            raise ApiError(
                "Discord token endpoint returned unexpected payload",
                status=response.status_code,
                body=body_preview,
            )
        return payload


class TokenManager:
    """Single writer of the current token set.

    Readers call `snapshot()` and get an immutable `TokenSet`. `refresh()` is
    serialized: callers that pass the `stale` token they were rejected with get
    the newer token if another caller already refreshed it.
    """

    def __init__(
        self,
        *,
        storage: TokenStorage,
        endpoint: Optional[TokenEndpoint] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._storage = storage
        self._endpoint = endpoint
        self._clock = clock
        self._tokens: Optional[TokenSet] = None
        self._refresh_lock = asyncio.Lock()
        self._refresh_count = 0

    @property
    def refresh_count(self) -> int:
        return self._refresh_count

    async def load(self) -> Optional[TokenSet]:
        self._tokens = await self._storage.load_token_set()
        return self._tokens

    def snapshot(self) -> Optional[TokenSet]:
        return self._tokens

    def is_expired(self, tokens: Optional[TokenSet] = None) -> bool:
        current = tokens or self._tokens
        if current is None:
            return True
        return current.is_expired(self._clock())

    async def set_tokens(self, tokens: TokenSet) -> None:
        async with self._refresh_lock:
            self._tokens = tokens
            await self._storage.save_token_set(tokens)

    async def store_grant(self, payload: dict[str, Any]) -> TokenSet:
        tokens = token_set_from_response(payload, now=self._clock())
        await self.set_tokens(tokens)
        return tokens

    async def forget(self) -> None:
        async with self._refresh_lock:
            self._tokens = None
            await self._storage.clear_token_set()

    async def get_valid_token(self) -> TokenSet:
        current = self._tokens
        if current is None:
            raise AuthExpired("Not authenticated with Discord")
        if current.is_expired(self._clock()):
            return await self.refresh(stale=current)
        return current

    async def refresh(self, *, stale: Optional[TokenSet] = None) -> TokenSet:
        async with self._refresh_lock:
            current = self._tokens
            if (
                stale is not None
                and current is not None
                and current.access_token != stale.access_token
                and not current.is_expired(self._clock())
            ):
                return current
            if current is None or not current.refresh_token:
                raise AuthExpired("No Discord refresh token available")
            if self._endpoint is None:
                raise AuthExpired("No Discord token endpoint configured for refresh")
            self._refresh_count += 1
            try:
                payload = await self._endpoint.refresh(current.refresh_token)
                refreshed = token_set_from_response(
                    payload, now=self._clock(), previous=current
                )
            except AuthExpired:
                raise
            except (DiscordError, httpx.HTTPError) as exc:
                log_event(
                    logger,
                    logging.WARNING,
                    "discord.tokens.refresh_failed",
                    exc=exc,
                )
                raise AuthExpired(f"Discord token refresh failed: {exc}") from exc
            self._tokens = refreshed
            await self._storage.save_token_set(refreshed)
            log_event(
                logger,
                logging.INFO,
                "discord.tokens.refreshed",
                expires_at=refreshed.expires_at.isoformat(),
                scope=refreshed.scope,
            )
            return refreshed
