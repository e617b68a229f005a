"""Core runtime primitives."""

from .exceptions import FlowDeskError, PermanentError, TransientError
from .logging_utils import log_event, setup_rotating_logger

__all__ = [
    "FlowDeskError",
    "PermanentError",
    "TransientError",
    "log_event",
    "setup_rotating_logger",
]
