from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


@dataclass(frozen=True)
class LogConfig:
    path: Path
    level: str = "INFO"
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 3


def _json_default(value: Any) -> Any:
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: BaseException | None = None,
    **fields: Any,
) -> None:
    """Emit a single-line JSON log record named by `event`."""
    if not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        if value is not None:
            payload[key] = value
    if exc is not None:
        payload["error"] = str(exc)
        payload["error_type"] = type(exc).__name__
    logger.log(level, json.dumps(payload, default=_json_default, sort_keys=False))


def setup_rotating_logger(name: str, config: LogConfig) -> logging.Logger:
    logger = logging.getLogger(name)
    level = logging.getLevelName(config.level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    target = str(config.path.resolve())
    for handler in logger.handlers:
        if getattr(handler, "baseFilename", None) == target:
            return logger
    config.path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        config.path,
        maxBytes=config.max_bytes,
        backupCount=config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
    logger.addHandler(handler)
    logger.propagate = False
    return logger
