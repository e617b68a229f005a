import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError
from .logging_utils import LogConfig

logger = logging.getLogger("flowdesk_gateway.core.config")

CONFIG_FILENAME = "flowdesk.yml"
STATE_DIRNAME = ".flowdesk"
DEFAULT_LOG_FILE = ".flowdesk/flowdesk-gateway.log"


def _default_log_section() -> Dict[str, Any]:
    return {
        "path": DEFAULT_LOG_FILE,
        "level": "INFO",
        "max_bytes": 10 * 1024 * 1024,
        "backup_count": 3,
    }


@dataclass(frozen=True)
class AppConfig:
    root: Path
    config_path: Path
    raw: Dict[str, Any]
    log: LogConfig

    def section(self, name: str) -> Dict[str, Any]:
        value = self.raw.get(name)
        return value if isinstance(value, dict) else {}


def _load_yaml_dict(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must be a mapping: {path}")
    return data


def load_dotenv_for_root(root: Path) -> None:
    """
    Best-effort load of environment variables for the provided root.

    Secrets (client id/secret, bootstrap tokens) are referenced by env var name
    from the YAML config; `.env` files next to the config supply them.
    """
    try:
        root = root.resolve()
        for candidate in (root / ".env", root / STATE_DIRNAME / ".env"):
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=True)
    except OSError as exc:
        logger.debug("Failed to load .env file: %s", exc)


def _parse_log_config(root: Path, raw: Any) -> LogConfig:
    merged = _default_log_section()
    if raw is not None and not isinstance(raw, dict):
        raise ConfigError("log must be a mapping")
    merged.update(raw or {})
    path_value = merged.get("path")
    if not isinstance(path_value, str) or not path_value.strip():
        raise ConfigError("log.path must be a non-empty string")
    level = str(merged.get("level") or "INFO").upper()
    if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        raise ConfigError(f"log.level must be a logging level name, got {level!r}")
    try:
        max_bytes = int(merged.get("max_bytes"))
        backup_count = int(merged.get("backup_count"))
    except (TypeError, ValueError) as exc:
        raise ConfigError("log.max_bytes and log.backup_count must be integers") from exc
    return LogConfig(
        path=(root / path_value).resolve(),
        level=level,
        max_bytes=max(max_bytes, 1024),
        backup_count=max(backup_count, 0),
    )


def find_config_path(start: Path) -> Optional[Path]:
    current = start.resolve()
    if current.is_file():
        return current
    for candidate_dir in (current, *current.parents):
        candidate = candidate_dir / CONFIG_FILENAME
        if candidate.exists():
            return candidate
    return None


def load_config(start: Path, *, load_env: bool = True) -> AppConfig:
    """Load the nearest `flowdesk.yml` walking upward from `start`.

    A missing file is not an error: every section has defaults, and the root
    falls back to `start`.
    """
    config_path = find_config_path(start)
    if config_path is None:
        root = start.resolve()
        config_path = root / CONFIG_FILENAME
    else:
        root = config_path.parent
    if load_env:
        load_dotenv_for_root(root)
    raw = _load_yaml_dict(config_path)
    return AppConfig(
        root=root,
        config_path=config_path,
        raw=raw,
        log=_parse_log_config(root, raw.get("log")),
    )
