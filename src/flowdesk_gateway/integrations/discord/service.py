from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Optional

from ...core.logging_utils import log_event
from .actions import ActionResult, send_message_action
from .bus import EventPredicate, Subscription, TriggerBus
from .cache import EntityCache
from .config import DiscordClientConfig
from .dispatcher import EventDispatcher
from .errors import AuthExpired, DiscordError
from .events import ChannelType, DiscordChannel, DiscordGuild, DiscordMessage, ReadyInfo
from .gateway import GatewaySession, GatewayState
from .notifications import LoggingNotificationSink, NotificationPolicy, NotificationSink
from .rest import DiscordRestClient
from .search import SearchResult, search_cached_messages
from .state import DiscordStateStore
from .tokens import OAuthTokenClient, TokenEndpoint, TokenManager
from .transport import GatewayTransport, WebsocketsTransport

RICH_PRESENCE_ACTIVITY = {
    "name": "Flow Desk",
    "type": 0,
    "details": "Managing productivity",
    "state": "Connected",
}


class DiscordClientService:
    """Wires token, REST, cache, dispatcher and gateway for one identity."""

    def __init__(
        self,
        config: DiscordClientConfig,
        *,
        logger: logging.Logger,
        state_store: Optional[DiscordStateStore] = None,
        token_endpoint: Optional[TokenEndpoint] = None,
        token_manager: Optional[TokenManager] = None,
        rest_client: Optional[DiscordRestClient] = None,
        transport: Optional[GatewayTransport] = None,
        gateway_session: Optional[GatewaySession] = None,
        cache: Optional[EntityCache] = None,
        bus: Optional[TriggerBus] = None,
        notification_sink: Optional[NotificationSink] = None,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._logger = logger
        self._sleep = sleep_fn

        self._store = (
            state_store if state_store is not None else DiscordStateStore(config.state_file)
        )
        self._owns_store = state_store is None

        self._oauth_client: Optional[OAuthTokenClient] = None
        if token_endpoint is None and config.client_id and config.client_secret:
            self._oauth_client = OAuthTokenClient(
                client_id=config.client_id,
                client_secret=config.client_secret,
                token_url=config.token_url,
                timeout_seconds=config.request_timeout_seconds,
            )
            token_endpoint = self._oauth_client
        self._tokens = token_manager or TokenManager(
            storage=self._store, endpoint=token_endpoint
        )

        self._rest = (
            rest_client
            if rest_client is not None
            else DiscordRestClient(
                token_manager=self._tokens,
                base_url=config.api_base_url,
                timeout_seconds=config.request_timeout_seconds,
                default_deadline_seconds=config.request_deadline_seconds,
            )
        )
        self._owns_rest = rest_client is None

        self._cache = cache or EntityCache(default_cap=config.message_cache_size)
        self._bus = bus or TriggerBus()
        self._dispatcher = EventDispatcher(
            cache=self._cache,
            bus=self._bus,
            logger=logger,
            notification_policy=NotificationPolicy(
                config.notifications, monitored_guild_ids=config.monitored_guild_ids
            ),
            notification_sink=notification_sink or LoggingNotificationSink(logger),
            message_cap=config.message_cache_size,
        )
        self._dispatcher.add_ready_listener(self._on_ready)

        self._gateway = (
            gateway_session
            if gateway_session is not None
            else GatewaySession(
                token_provider=self._gateway_token,
                intents=config.intents,
                transport=transport or WebsocketsTransport(),
                logger=logger,
                gateway_url=config.gateway_url,
                url_resolver=self._resolve_gateway_url,
                on_dispatch=self._on_dispatch,
                on_state_change=self._on_gateway_state_change,
                reconnect_base_seconds=config.reconnect_base_seconds,
                reconnect_max_seconds=config.reconnect_max_seconds,
            )
        )
        self._sync_task: Optional[asyncio.Task[None]] = None

    @property
    def cache(self) -> EntityCache:
        return self._cache

    @property
    def bus(self) -> TriggerBus:
        return self._bus

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def gateway(self) -> GatewaySession:
        return self._gateway

    @property
    def rest(self) -> DiscordRestClient:
        return self._rest

    @property
    def token_manager(self) -> TokenManager:
        return self._tokens

    @property
    def state_store(self) -> DiscordStateStore:
        return self._store

    @property
    def is_authenticated(self) -> bool:
        return self._tokens.snapshot() is not None

    async def initialize(self) -> bool:
        await self._store.initialize()
        tokens = await self._tokens.load()
        log_event(
            self._logger,
            logging.INFO,
            "discord.client.initialized",
            state_file=str(self._config.state_file),
            authenticated=tokens is not None,
        )
        return tokens is not None

    async def run_forever(self) -> None:
        try:
            if not await self.initialize():
                raise AuthExpired(
                    "No stored Discord credentials",
                    user_message=(
                        "Discord is not connected. Run "
                        "`flowdesk-gateway discord set-token` first."
                    ),
                )
            if self._config.monitored_guild_ids:
                self._sync_task = asyncio.create_task(self._sync_loop())
            log_event(
                self._logger,
                logging.INFO,
                "discord.client.starting",
                monitored_guilds=len(self._config.monitored_guild_ids),
                intents=self._config.intents,
            )
            await self._gateway.run()
        finally:
            await self._stop_sync()
            await self._shutdown()

    async def disconnect(self, *, forget_credentials: bool = False) -> None:
        await self._gateway.disconnect()
        await self._stop_sync()
        self._dispatcher.reset()
        if forget_credentials:
            await self._tokens.forget()
        log_event(
            self._logger,
            logging.INFO,
            "discord.client.disconnected",
            forgot_credentials=forget_credentials,
        )

    def subscribe(
        self,
        predicate: Optional[EventPredicate] = None,
        *,
        maxsize: int = 256,
        name: Optional[str] = None,
    ) -> Subscription:
        return self._bus.subscribe(predicate, maxsize=maxsize, name=name)

    async def send_message(
        self,
        channel_id: str,
        content: str,
        *,
        embeds: Optional[list[dict[str, Any]]] = None,
        reply_to_message_id: Optional[str] = None,
    ) -> ActionResult:
        return await send_message_action(
            self._rest,
            self._dispatcher,
            channel_id=channel_id,
            content=content,
            embeds=embeds,
            reply_to_message_id=reply_to_message_id,
        )

    async def get_user_guilds(self) -> list[DiscordGuild]:
        payloads = await self._rest.get_user_guilds()
        return self._dispatcher.ingest_guilds(payloads)

    async def get_guild_channels(self, guild_id: str) -> list[DiscordChannel]:
        payloads = await self._rest.get_guild_channels(guild_id=guild_id)
        return self._dispatcher.ingest_channels(payloads, guild_id=guild_id)

    async def get_channel_messages(
        self, channel_id: str, *, limit: int = 50, before: Optional[str] = None
    ) -> list[DiscordMessage]:
        payloads = await self._rest.get_channel_messages(
            channel_id=channel_id, limit=limit, before=before
        )
        return self._dispatcher.ingest_messages(channel_id, payloads)

    def search(
        self,
        query: str,
        *,
        guild_id: Optional[str] = None,
        channel_id: Optional[str] = None,
    ) -> list[SearchResult]:
        if not self.is_authenticated:
            raise AuthExpired("Not authenticated with Discord")
        results = search_cached_messages(
            self._cache,
            query,
            guild_id=guild_id,
            channel_id=channel_id,
            index_private_messages=self._config.privacy.index_private_messages,
        )
        log_event(
            self._logger,
            logging.INFO,
            "discord.client.search",
            result_count=len(results),
        )
        return results

    async def update_presence(
        self, status: str = "online", activity: Optional[dict[str, Any]] = None
    ) -> None:
        await self._gateway.update_presence(
            status=status, activities=[activity] if activity else []
        )

    async def join_voice_channel(self, guild_id: str, channel_id: str) -> None:
        await self._gateway.update_voice_state(guild_id=guild_id, channel_id=channel_id)

    async def leave_voice_channel(self, guild_id: str) -> None:
        await self._gateway.update_voice_state(guild_id=guild_id, channel_id=None)

    async def sync_monitored_guilds(self) -> int:
        """Refresh channels and recent text-channel history for monitored guilds."""
        synced = 0
        for guild_id in sorted(self._config.monitored_guild_ids):
            channels = await self.get_guild_channels(guild_id)
            for channel in channels:
                if channel.type != ChannelType.GUILD_TEXT:
                    continue
                await self.get_channel_messages(
                    channel.id, limit=self._config.sync_message_limit
                )
                synced += 1
        return synced

    async def _sync_loop(self) -> None:
        while True:
            await self._sleep(self._config.sync_interval_seconds)
            try:
                synced = await self.sync_monitored_guilds()
            except asyncio.CancelledError:
                raise
            except DiscordError as exc:
                log_event(
                    self._logger,
                    logging.WARNING,
                    "discord.client.sync_failed",
                    exc=exc,
                )
                continue
            except Exception as exc:
                log_event(
                    self._logger,
                    logging.ERROR,
                    "discord.client.sync_crashed",
                    exc=exc,
                )
                continue
            log_event(
                self._logger,
                logging.DEBUG,
                "discord.client.synced",
                channel_count=synced,
            )

    async def _stop_sync(self) -> None:
        task = self._sync_task
        self._sync_task = None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _gateway_token(self) -> str:
        tokens = await self._tokens.get_valid_token()
        return tokens.access_token

    async def _resolve_gateway_url(self) -> str:
        if self._config.token_type == "Bot":
            payload = await self._rest.get_gateway_bot()
        else:
            payload = await self._rest.get_gateway()
        url = payload.get("url")
        return url if isinstance(url, str) else ""

    async def _on_dispatch(self, event_type: str, payload: dict[str, Any]) -> None:
        await self._dispatcher.dispatch(event_type, payload)

    def _on_gateway_state_change(
        self, previous: GatewayState, state: GatewayState, reason: Optional[str]
    ) -> None:
        self._dispatcher.publish_status(state.value, previous=previous.value, reason=reason)

    async def _on_ready(self, ready: ReadyInfo) -> None:
        if (
            not self._config.enable_rich_presence
            or not self._config.privacy.share_online_status
        ):
            return
        try:
            await self._gateway.update_presence(
                status="online", activities=[dict(RICH_PRESENCE_ACTIVITY)]
            )
        except DiscordError as exc:
            log_event(
                self._logger,
                logging.WARNING,
                "discord.client.presence_failed",
                user_id=ready.user.id,
                exc=exc,
            )

    async def _shutdown(self) -> None:
        with contextlib.suppress(Exception):
            await self._gateway.disconnect()
        if self._owns_rest:
            with contextlib.suppress(Exception):
                await self._rest.close()
        if self._oauth_client is not None:
            with contextlib.suppress(Exception):
                await self._oauth_client.close()
        if self._owns_store:
            with contextlib.suppress(Exception):
                await self._store.close()


def create_discord_client_service(
    config: DiscordClientConfig,
    *,
    logger: logging.Logger,
    transport: Optional[GatewayTransport] = None,
    notification_sink: Optional[NotificationSink] = None,
) -> DiscordClientService:
    return DiscordClientService(
        config,
        logger=logger,
        transport=transport,
        notification_sink=notification_sink,
    )
