from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Optional

import typer

from ....core.config import AppConfig, ConfigError, load_config
from ....core.logging_utils import setup_rotating_logger
from ....core.time_utils import now_utc
from ....integrations.discord.config import DiscordClientConfig
from ....integrations.discord.doctor import discord_doctor_checks
from ....integrations.discord.errors import DiscordConfigError, DiscordError
from ....integrations.discord.service import create_discord_client_service
from ....integrations.discord.state import DiscordStateStore
from ....integrations.discord.tokens import TokenSet, token_set_from_response

DEFAULT_TOKEN_LIFETIME_SECONDS = 7 * 24 * 60 * 60


def _load_app_config(path: Optional[Path], raise_exit: Callable) -> AppConfig:
    try:
        return load_config(path or Path.cwd())
    except ConfigError as exc:
        raise_exit(str(exc), cause=exc)


def _load_discord_config(config: AppConfig, raise_exit: Callable) -> DiscordClientConfig:
    try:
        return DiscordClientConfig.from_raw(
            root=config.root, raw=config.section("discord")
        )
    except DiscordConfigError as exc:
        raise_exit(str(exc), cause=exc)


async def _store_token_set(state_file: Path, tokens: TokenSet) -> None:
    store = DiscordStateStore(state_file)
    try:
        await store.initialize()
        await store.save_token_set(tokens)
    finally:
        await store.close()


def register_discord_commands(app: typer.Typer, *, raise_exit: Callable) -> None:
    @app.command("start")
    def discord_start(
        path: Optional[Path] = typer.Option(
            None, "--path", help="Directory containing flowdesk.yml"
        ),
    ) -> None:
        config = _load_app_config(path, raise_exit)
        discord_cfg = _load_discord_config(config, raise_exit)
        if not discord_cfg.enabled:
            raise_exit("discord is disabled; set discord.enabled: true")
        logger = setup_rotating_logger("flowdesk-gateway-discord", config.log)
        service = create_discord_client_service(discord_cfg, logger=logger)
        try:
            asyncio.run(service.run_forever())
        except DiscordError as exc:
            raise_exit(exc.user_message or str(exc), cause=exc)
        except KeyboardInterrupt:
            typer.echo("Discord client stopped.")

    @app.command("set-token")
    def discord_set_token(
        access_token: str = typer.Option(
            ...,
            "--access-token",
            envvar="FLOWDESK_DISCORD_ACCESS_TOKEN",
            help="OAuth2 access token (or bot token with --token-type Bot)",
        ),
        refresh_token: Optional[str] = typer.Option(
            None,
            "--refresh-token",
            envvar="FLOWDESK_DISCORD_REFRESH_TOKEN",
            help="OAuth2 refresh token",
        ),
        expires_in: int = typer.Option(
            DEFAULT_TOKEN_LIFETIME_SECONDS,
            "--expires-in",
            help="Seconds until the access token expires (ignored for Bot tokens)",
        ),
        scope: str = typer.Option("", "--scope", help="Granted scopes"),
        token_type: Optional[str] = typer.Option(
            None, "--token-type", help="Bearer or Bot (defaults to discord.token_type)"
        ),
        path: Optional[Path] = typer.Option(
            None, "--path", help="Directory containing flowdesk.yml"
        ),
    ) -> None:
        config = _load_app_config(path, raise_exit)
        discord_cfg = _load_discord_config(config, raise_exit)
        resolved_type = token_type or discord_cfg.token_type
        if resolved_type.lower() not in {"bearer", "bot"}:
            raise_exit("--token-type must be 'Bearer' or 'Bot'")
        if expires_in <= 0:
            raise_exit("--expires-in must be positive")
        try:
            tokens = token_set_from_response(
                {
                    "access_token": access_token,
                    "refresh_token": refresh_token,
                    "expires_in": expires_in,
                    "scope": scope,
                    "token_type": resolved_type,
                },
                now=now_utc(),
            )
        except DiscordError as exc:
            raise_exit(str(exc), cause=exc)
        asyncio.run(_store_token_set(discord_cfg.state_file, tokens))
        typer.echo(
            f"Discord token stored in {discord_cfg.state_file} "
            f"(expires {tokens.expires_at.isoformat()})."
        )

    @app.command("doctor")
    def discord_doctor(
        path: Optional[Path] = typer.Option(
            None, "--path", help="Directory containing flowdesk.yml"
        ),
        output_json: bool = typer.Option(False, "--json", help="Emit JSON"),
    ) -> None:
        config = _load_app_config(path, raise_exit)
        checks = discord_doctor_checks(config)
        if output_json:
            typer.echo(json.dumps([asdict(check) for check in checks], indent=2))
        else:
            for check in checks:
                if check.passed:
                    status = "OK" if check.severity == "info" else "WARN"
                else:
                    status = "FAIL" if check.severity == "error" else "WARN"
                typer.echo(f"[{status}] {check.name}: {check.message}")
                if check.fix and not check.passed:
                    typer.echo(f"       fix: {check.fix}")
        if any(not check.passed and check.severity == "error" for check in checks):
            raise typer.Exit(code=1)
