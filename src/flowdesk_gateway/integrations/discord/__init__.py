"""Discord gateway session, rate-limited REST client and entity cache."""

from .actions import ActionResult, send_message_action
from .bus import Subscription, TriggerBus
from .cache import EntityCache, EntityKind
from .config import DEFAULT_STATE_FILE, DiscordClientConfig, DiscordNotificationConfig
from .constants import (
    DISCORD_API_BASE_URL,
    DISCORD_GATEWAY_URL,
    DISCORD_MAX_MESSAGE_LENGTH,
    GatewayOpcode,
)
from .dispatcher import EventDispatcher
from .doctor import DoctorCheck, discord_doctor_checks
from .errors import (
    ApiError,
    AuthExpired,
    DiscordConfigError,
    DiscordError,
    ProtocolError,
    RateLimited,
    ServerError,
    TransportError,
)
from .events import (
    ConnectionStatus,
    DiscordChannel,
    DiscordGuild,
    DiscordMessage,
    DiscordPresence,
    DiscordUser,
    DomainEvent,
    EventKind,
    MessageDeleted,
    ReadyInfo,
    VoiceState,
)
from .gateway import (
    GatewayFrame,
    GatewaySession,
    GatewaySessionState,
    GatewayState,
    build_identify_payload,
    build_resume_payload,
    calculate_reconnect_backoff,
    parse_gateway_frame,
)
from .notifications import NotificationPolicy, NotificationRequest, NotificationSink
from .ratelimit import RateLimitBucket, RateLimiter, route_bucket_key
from .rest import DiscordRestClient
from .search import SearchResult, search_cached_messages
from .service import DiscordClientService, create_discord_client_service
from .state import DiscordStateStore
from .tokens import OAuthTokenClient, TokenManager, TokenSet
from .transport import GatewayConnection, GatewayTransport, WebsocketsTransport
from .triggers import (
    MessageTriggerConfig,
    VoiceJoinTriggerConfig,
    message_trigger_predicate,
    voice_join_trigger_predicate,
)

__all__ = [
    "DEFAULT_STATE_FILE",
    "DISCORD_API_BASE_URL",
    "DISCORD_GATEWAY_URL",
    "DISCORD_MAX_MESSAGE_LENGTH",
    "GatewayOpcode",
    "ActionResult",
    "send_message_action",
    "Subscription",
    "TriggerBus",
    "EntityCache",
    "EntityKind",
    "DiscordClientConfig",
    "DiscordNotificationConfig",
    "EventDispatcher",
    "DoctorCheck",
    "discord_doctor_checks",
    "ApiError",
    "AuthExpired",
    "DiscordConfigError",
    "DiscordError",
    "ProtocolError",
    "RateLimited",
    "ServerError",
    "TransportError",
    "ConnectionStatus",
    "DiscordChannel",
    "DiscordGuild",
    "DiscordMessage",
    "DiscordPresence",
    "DiscordUser",
    "DomainEvent",
    "EventKind",
    "MessageDeleted",
    "ReadyInfo",
    "VoiceState",
    "GatewayFrame",
    "GatewaySession",
    "GatewaySessionState",
    "GatewayState",
    "build_identify_payload",
    "build_resume_payload",
    "calculate_reconnect_backoff",
    "parse_gateway_frame",
    "NotificationPolicy",
    "NotificationRequest",
    "NotificationSink",
    "RateLimitBucket",
    "RateLimiter",
    "route_bucket_key",
    "DiscordRestClient",
    "SearchResult",
    "search_cached_messages",
    "DiscordClientService",
    "create_discord_client_service",
    "DiscordStateStore",
    "OAuthTokenClient",
    "TokenManager",
    "TokenSet",
    "GatewayConnection",
    "GatewayTransport",
    "WebsocketsTransport",
    "MessageTriggerConfig",
    "VoiceJoinTriggerConfig",
    "message_trigger_predicate",
    "voice_join_trigger_predicate",
]
