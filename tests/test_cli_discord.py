from __future__ import annotations

import json
import sqlite3
from pathlib import Path

import pytest
import yaml
from typer.testing import CliRunner

from flowdesk_gateway.cli import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def _clear_discord_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "FLOWDESK_DISCORD_CLIENT_ID",
        "FLOWDESK_DISCORD_CLIENT_SECRET",
        "FLOWDESK_DISCORD_ACCESS_TOKEN",
        "FLOWDESK_DISCORD_REFRESH_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)


def _write_config(root: Path, discord: dict) -> None:
    (root / "flowdesk.yml").write_text(
        yaml.safe_dump({"discord": discord}), encoding="utf-8"
    )


def test_version_flag() -> None:
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert result.stdout.startswith("flowdesk-gateway ")


def test_set_token_writes_state_file(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": True, "state_file": "state/discord.sqlite3"})

    result = runner.invoke(
        app,
        [
            "discord",
            "set-token",
            "--path",
            str(tmp_path),
            "--access-token",
            "abc123",
            "--refresh-token",
            "refresh-1",
            "--scope",
            "identify guilds",
        ],
    )

    assert result.exit_code == 0, result.output
    state_file = tmp_path / "state" / "discord.sqlite3"
    assert "Discord token stored in" in result.stdout
    assert state_file.exists()
    with sqlite3.connect(state_file) as conn:
        row = conn.execute(
            "SELECT access_token, refresh_token, scope, token_type FROM token_sets"
        ).fetchone()
    assert row == ("abc123", "refresh-1", "identify guilds", "Bearer")


def test_set_token_rejects_unknown_token_type(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": True})
    result = runner.invoke(
        app,
        [
            "discord",
            "set-token",
            "--path",
            str(tmp_path),
            "--access-token",
            "abc",
            "--token-type",
            "Basic",
        ],
    )
    assert result.exit_code == 1
    assert not (tmp_path / ".flowdesk" / "discord_state.sqlite3").exists()


def test_doctor_json_exits_nonzero_on_error_checks(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": True})

    result = runner.invoke(app, ["discord", "doctor", "--path", str(tmp_path), "--json"])

    assert result.exit_code == 1
    checks = {item["check_id"]: item for item in json.loads(result.stdout)}
    assert checks["discord.oauth_client"]["passed"] is False
    assert checks["discord.oauth_client"]["severity"] == "error"
    assert checks["discord.state_file"]["passed"] is True


def test_doctor_text_output_for_disabled_integration(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": False})

    result = runner.invoke(app, ["discord", "doctor", "--path", str(tmp_path)])

    assert result.exit_code == 0
    assert "[OK] Discord enabled: Discord integration is disabled." in result.stdout


def test_start_refuses_when_disabled(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": False})

    result = runner.invoke(app, ["discord", "start", "--path", str(tmp_path)])

    assert result.exit_code == 1
    assert "discord is disabled" in result.output


def test_invalid_discord_config_exits_with_message(tmp_path: Path) -> None:
    _write_config(tmp_path, {"enabled": True, "intents": "all"})

    result = runner.invoke(app, ["discord", "start", "--path", str(tmp_path)])

    assert result.exit_code == 1
    assert "discord.intents must be an integer" in result.output
