from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from ...core.logging_utils import log_event
from .constants import DISCORD_MAX_MESSAGE_LENGTH
from .dispatcher import EventDispatcher
from .errors import AuthExpired, DiscordError
from .rest import DiscordRestClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActionResult:
    success: bool
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_type: Optional[str] = None

    @classmethod
    def ok(cls, data: Optional[dict[str, Any]] = None) -> "ActionResult":
        return cls(success=True, data=dict(data or {}))

    @classmethod
    def failed(cls, error: str, *, error_type: Optional[str] = None) -> "ActionResult":
        return cls(success=False, error=error, error_type=error_type)


def build_message_payload(
    content: str,
    *,
    embeds: Optional[list[dict[str, Any]]] = None,
    reply_to_message_id: Optional[str] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"content": content}
    if embeds:
        payload["embeds"] = embeds
    if reply_to_message_id:
        payload["message_reference"] = {"message_id": reply_to_message_id}
    return payload


async def send_message_action(
    rest: DiscordRestClient,
    dispatcher: Optional[EventDispatcher],
    *,
    channel_id: str,
    content: str,
    embeds: Optional[list[dict[str, Any]]] = None,
    reply_to_message_id: Optional[str] = None,
) -> ActionResult:
    """Post a message and report the outcome instead of raising."""
    if not channel_id:
        return ActionResult.failed("channel_id is required", error_type="ValueError")
    if not content and not embeds:
        return ActionResult.failed("content or embeds are required", error_type="ValueError")
    if len(content) > DISCORD_MAX_MESSAGE_LENGTH:
        return ActionResult.failed(
            f"content exceeds {DISCORD_MAX_MESSAGE_LENGTH} characters",
            error_type="ValueError",
        )
    try:
        response = await rest.create_channel_message(
            channel_id=channel_id,
            payload=build_message_payload(
                content, embeds=embeds, reply_to_message_id=reply_to_message_id
            ),
        )
    except DiscordError as exc:
        log_event(
            logger,
            logging.WARNING if not isinstance(exc, AuthExpired) else logging.ERROR,
            "discord.action.send_message_failed",
            channel_id=channel_id,
            exc=exc,
        )
        return ActionResult.failed(
            exc.user_message or str(exc), error_type=type(exc).__name__
        )
    if dispatcher is not None:
        dispatcher.ingest_sent_message(response)
    log_event(
        logger,
        logging.INFO,
        "discord.action.message_sent",
        channel_id=channel_id,
        message_id=response.get("id"),
    )
    return ActionResult.ok(
        {"message_id": response.get("id"), "channel_id": channel_id}
    )
