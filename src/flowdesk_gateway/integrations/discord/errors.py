from __future__ import annotations

from typing import Any, Optional

from ...core.exceptions import FlowDeskError, PermanentError, TransientError


class DiscordError(FlowDeskError):
    """Base Discord integration error."""


class DiscordConfigError(DiscordError, PermanentError):
    """Discord integration configuration error."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity


class TransportError(DiscordError, TransientError):
    """Socket or network failure; retried with backoff."""

    recoverable = TransientError.recoverable
    severity = TransientError.severity

    def __init__(
        self,
        message: str,
        *,
        close_code: Optional[int] = None,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Discord connection problem. Retrying with backoff..."
        super().__init__(message, user_message=user_message)
        self.close_code = close_code


class ProtocolError(DiscordError, TransientError):
    """Malformed gateway frame or unexpected opcode sequence."""

    recoverable = TransientError.recoverable
    severity = TransientError.severity


class RateLimited(DiscordError, TransientError):
    """Rate limit that could not be waited out within the caller's deadline."""

    recoverable = TransientError.recoverable
    severity = TransientError.severity

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[float] = None,
        is_global: bool = False,
        user_message: Optional[str] = None,
    ) -> None:
        if user_message is None:
            user_message = "Discord is rate limiting requests. Try again shortly."
        super().__init__(message, user_message=user_message)
        self.retry_after = retry_after
        self.is_global = is_global


class AuthExpired(DiscordError, PermanentError):
    """Access token rejected and refresh failed or was exhausted."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        if user_message is None:
            user_message = "Discord session expired. Reconnect your account."
        super().__init__(message, user_message=user_message)


class ApiError(DiscordError, PermanentError):
    """Non-2xx response other than 401/429, surfaced verbatim."""

    recoverable = PermanentError.recoverable
    severity = PermanentError.severity

    def __init__(
        self,
        message: str,
        *,
        status: int,
        body: Any = None,
        user_message: Optional[str] = None,
    ) -> None:
        super().__init__(message, user_message=user_message)
        self.status = status
        self.body = body


class ServerError(ApiError, TransientError):
    """5xx response; retried a bounded number of times before surfacing."""

    recoverable = TransientError.recoverable
    severity = TransientError.severity
