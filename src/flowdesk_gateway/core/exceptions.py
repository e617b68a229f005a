"""Shared error hierarchy.

Integrations compose these base classes so retry and severity behavior stays
consistent: anything deriving from `TransientError` may be retried with
backoff, anything deriving from `PermanentError` must be surfaced.
"""

from __future__ import annotations

from typing import Optional


class FlowDeskError(Exception):
    """Base error for the package."""

    recoverable: bool = True
    severity: str = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(FlowDeskError):
    """Failure expected to clear on its own (network, rate limits)."""

    recoverable = True
    severity = "warning"


class PermanentError(FlowDeskError):
    """Failure that retrying will not fix (auth, validation, config)."""

    recoverable = False
    severity = "error"


class ConfigError(PermanentError):
    """Raised when configuration is missing or invalid."""
