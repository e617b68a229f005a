from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from flowdesk_gateway.core.config import load_config
from flowdesk_gateway.integrations.discord.doctor import discord_doctor_checks


@pytest.fixture(autouse=True)
def _clear_discord_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("FLOWDESK_DISCORD_CLIENT_ID", raising=False)
    monkeypatch.delenv("FLOWDESK_DISCORD_CLIENT_SECRET", raising=False)


def _checks(tmp_path: Path, discord: dict) -> dict:
    (tmp_path / "flowdesk.yml").write_text(
        yaml.safe_dump({"discord": discord}), encoding="utf-8"
    )
    config = load_config(tmp_path, load_env=False)
    return {check.check_id: check for check in discord_doctor_checks(config)}


def test_disabled_integration_reports_info_only(tmp_path: Path) -> None:
    checks = _checks(tmp_path, {"enabled": False})
    assert list(checks) == ["discord.enabled"]
    assert checks["discord.enabled"].passed
    assert checks["discord.enabled"].severity == "info"


def test_invalid_config_is_a_failure(tmp_path: Path) -> None:
    checks = _checks(tmp_path, {"enabled": True, "token_type": "basic"})
    assert list(checks) == ["discord.config"]
    assert not checks["discord.config"].passed
    assert "Bearer" in checks["discord.config"].message


def test_missing_oauth_client_fails_for_bearer_tokens(tmp_path: Path) -> None:
    checks = _checks(tmp_path, {"enabled": True})
    oauth = checks["discord.oauth_client"]
    assert not oauth.passed
    assert oauth.severity == "error"
    assert "FLOWDESK_DISCORD_CLIENT_ID" in oauth.message
    assert "FLOWDESK_DISCORD_CLIENT_SECRET" in oauth.message


def test_missing_oauth_client_only_warns_for_bot_tokens(tmp_path: Path) -> None:
    checks = _checks(tmp_path, {"enabled": True, "token_type": "Bot"})
    oauth = checks["discord.oauth_client"]
    assert oauth.passed
    assert oauth.severity == "warning"


def test_configured_client_and_default_intents_pass(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("FLOWDESK_DISCORD_CLIENT_ID", "cid")
    monkeypatch.setenv("FLOWDESK_DISCORD_CLIENT_SECRET", "secret")
    checks = _checks(tmp_path, {"enabled": True, "monitored_guild_ids": ["g1"]})

    assert checks["discord.oauth_client"].passed
    assert checks["discord.intents"].passed
    assert "1 monitored guild(s)" in checks["discord.monitored_guilds"].message
    state = checks["discord.state_file"]
    assert state.passed
    assert "can be created" in state.message


def test_missing_intents_warn(tmp_path: Path) -> None:
    checks = _checks(tmp_path, {"enabled": True, "intents": 1})
    intents = checks["discord.intents"]
    assert not intents.passed
    assert intents.severity == "warning"
    assert "MESSAGE_CONTENT" in intents.message
    assert "GUILD_VOICE_STATES" in intents.message


def test_existing_state_file_is_writable(tmp_path: Path) -> None:
    state = tmp_path / "state.sqlite3"
    state.write_bytes(b"")
    checks = _checks(tmp_path, {"enabled": True, "state_file": "state.sqlite3"})
    assert checks["discord.state_file"].passed
    assert "is writable" in checks["discord.state_file"].message
