"""Discord integration doctor checks."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ...core.config import AppConfig
from .config import DiscordClientConfig
from .constants import (
    DISCORD_INTENT_GUILD_MESSAGES,
    DISCORD_INTENT_GUILD_VOICE_STATES,
    DISCORD_INTENT_MESSAGE_CONTENT,
)
from .errors import DiscordConfigError


@dataclass(frozen=True)
class DoctorCheck:
    name: str
    passed: bool
    message: str
    check_id: str
    severity: str = "error"
    fix: Optional[str] = None


def discord_doctor_checks(config: AppConfig) -> list[DoctorCheck]:
    """Run Discord-specific checks against the loaded app configuration."""
    checks: list[DoctorCheck] = []
    try:
        discord_config = DiscordClientConfig.from_raw(
            root=config.root, raw=config.section("discord")
        )
    except DiscordConfigError as exc:
        checks.append(
            DoctorCheck(
                name="Discord config",
                passed=False,
                message=str(exc),
                check_id="discord.config",
                fix="Correct the discord section of flowdesk.yml.",
            )
        )
        return checks

    if not discord_config.enabled:
        checks.append(
            DoctorCheck(
                name="Discord enabled",
                passed=True,
                message="Discord integration is disabled.",
                check_id="discord.enabled",
                severity="info",
                fix="Set discord.enabled=true in flowdesk.yml to enable.",
            )
        )
        return checks

    if discord_config.client_id and discord_config.client_secret:
        checks.append(
            DoctorCheck(
                name="Discord OAuth client",
                passed=True,
                message=(
                    "OAuth client configured (env: "
                    f"{discord_config.client_id_env}, {discord_config.client_secret_env})."
                ),
                check_id="discord.oauth_client",
                severity="info",
            )
        )
    else:
        missing = [
            name
            for name, value in (
                (discord_config.client_id_env, discord_config.client_id),
                (discord_config.client_secret_env, discord_config.client_secret),
            )
            if not value
        ]
        checks.append(
            DoctorCheck(
                name="Discord OAuth client",
                passed=discord_config.token_type == "Bot",
                message=(
                    "OAuth client credentials not found in environment: "
                    + ", ".join(missing)
                    + "; expired tokens cannot be refreshed."
                ),
                check_id="discord.oauth_client",
                severity="warning" if discord_config.token_type == "Bot" else "error",
                fix="Set " + " and ".join(missing) + " (a .env file works).",
            )
        )

    required = {
        "MESSAGE_CONTENT": DISCORD_INTENT_MESSAGE_CONTENT,
        "GUILD_MESSAGES": DISCORD_INTENT_GUILD_MESSAGES,
        "GUILD_VOICE_STATES": DISCORD_INTENT_GUILD_VOICE_STATES,
    }
    missing_intents = [
        name for name, flag in required.items() if not discord_config.intents & flag
    ]
    if missing_intents:
        checks.append(
            DoctorCheck(
                name="Discord intents",
                passed=False,
                message=(
                    f"discord.intents ({discord_config.intents}) is missing: "
                    + ", ".join(missing_intents)
                ),
                check_id="discord.intents",
                severity="warning",
                fix="Remove discord.intents to use the default bitmask.",
            )
        )
    else:
        checks.append(
            DoctorCheck(
                name="Discord intents",
                passed=True,
                message=f"Discord intents cover messages and voice ({discord_config.intents}).",
                check_id="discord.intents",
                severity="info",
            )
        )

    checks.append(
        DoctorCheck(
            name="Discord monitored guilds",
            passed=True,
            message=(
                f"{len(discord_config.monitored_guild_ids)} monitored guild(s); "
                f"sync every {discord_config.sync_interval_seconds:g}s."
                if discord_config.monitored_guild_ids
                else "No monitored guilds; background sync is off."
            ),
            check_id="discord.monitored_guilds",
            severity="info",
        )
    )

    writable, message, fix = _state_file_writable_check(discord_config.state_file)
    checks.append(
        DoctorCheck(
            name="Discord state file",
            passed=writable,
            message=message,
            check_id="discord.state_file",
            severity="info" if writable else "error",
            fix=fix,
        )
    )
    return checks


def _state_file_writable_check(state_file: Path) -> tuple[bool, str, str | None]:
    if state_file.exists():
        try:
            with state_file.open("ab"):
                pass
        except OSError as exc:
            return (
                False,
                f"Discord state file is not writable: {state_file} ({exc})",
                "Adjust file permissions for the configured state file.",
            )
        return True, f"Discord state file is writable: {state_file}", None

    writable_root = _nearest_existing_parent(state_file.parent)
    if writable_root is None:
        return (
            False,
            f"Discord state file path is not writable: {state_file}",
            "Ensure the state file parent directory exists and is writable.",
        )
    if os.access(writable_root, os.W_OK):
        return True, f"Discord state file can be created at: {state_file}", None
    return (
        False,
        f"Discord state file parent is not writable: {writable_root}",
        "Adjust directory permissions or choose a writable discord.state_file path.",
    )


def _nearest_existing_parent(path: Path) -> Path | None:
    current = path
    while True:
        if current.exists():
            return current
        if current == current.parent:
            return None
        current = current.parent
