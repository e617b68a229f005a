from __future__ import annotations

import asyncio
import json
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Optional

from ...core.sqlite_utils import connect_sqlite, ensure_schema_version
from ...core.time_utils import now_iso, parse_iso_utc
from .tokens import TokenSet

DISCORD_STATE_SCHEMA_VERSION = 1
TOKEN_ROW_ID = "default"


class DiscordStateStore:
    """Sqlite-backed configuration store: the token set and user preferences."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="discord-state"
        )
        self._connection: Optional[sqlite3.Connection] = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def initialize(self) -> None:
        await self._run(self._ensure_initialized_sync)

    async def close(self) -> None:
        await self._run(self._close_sync)
        self._executor.shutdown(wait=True)

    async def load_token_set(self) -> Optional[TokenSet]:
        return await self._run(self._load_token_set_sync)

    async def save_token_set(self, tokens: TokenSet) -> None:
        await self._run(self._save_token_set_sync, tokens)

    async def clear_token_set(self) -> None:
        await self._run(self._clear_token_set_sync)

    async def get_preference(self, key: str, default: Any = None) -> Any:
        return await self._run(self._get_preference_sync, key, default)

    async def set_preference(self, key: str, value: Any) -> None:
        await self._run(self._set_preference_sync, key, value)

    async def list_preferences(self) -> dict[str, Any]:
        return await self._run(self._list_preferences_sync)

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def _connection_sync(self) -> sqlite3.Connection:
        if self._connection is None:
            self._connection = connect_sqlite(self._db_path, durable=True)
            self._ensure_schema(self._connection)
        return self._connection

    def _ensure_initialized_sync(self) -> None:
        self._connection_sync()

    def _close_sync(self) -> None:
        if self._connection is not None:
            self._connection.close()
            self._connection = None

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        ensure_schema_version(conn, DISCORD_STATE_SCHEMA_VERSION)
        with conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_sets (
                    token_id TEXT PRIMARY KEY,
                    access_token TEXT NOT NULL,
                    refresh_token TEXT,
                    expires_at TEXT NOT NULL,
                    scope TEXT NOT NULL,
                    token_type TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS preferences (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def _load_token_set_sync(self) -> Optional[TokenSet]:
        conn = self._connection_sync()
        row = conn.execute(
            "SELECT * FROM token_sets WHERE token_id = ?", (TOKEN_ROW_ID,)
        ).fetchone()
        if row is None:
            return None
        expires_at = parse_iso_utc(row["expires_at"])
        if expires_at is None:
            return None
        return TokenSet(
            access_token=str(row["access_token"]),
            refresh_token=(
                row["refresh_token"] if isinstance(row["refresh_token"], str) else None
            ),
            expires_at=expires_at,
            scope=str(row["scope"] or ""),
            token_type=str(row["token_type"] or "Bearer"),
        )

    def _save_token_set_sync(self, tokens: TokenSet) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(
                """
                INSERT INTO token_sets (
                    token_id,
                    access_token,
                    refresh_token,
                    expires_at,
                    scope,
                    token_type,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(token_id) DO UPDATE SET
                    access_token=excluded.access_token,
                    refresh_token=excluded.refresh_token,
                    expires_at=excluded.expires_at,
                    scope=excluded.scope,
                    token_type=excluded.token_type,
                    updated_at=excluded.updated_at
                """,
                (
                    TOKEN_ROW_ID,
                    tokens.access_token,
                    tokens.refresh_token,
                    tokens.expires_at.isoformat(),
                    tokens.scope,
                    tokens.token_type,
                    now_iso(),
                ),
            )

    def _clear_token_set_sync(self) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute("DELETE FROM token_sets WHERE token_id = ?", (TOKEN_ROW_ID,))

    def _get_preference_sync(self, key: str, default: Any) -> Any:
        conn = self._connection_sync()
        row = conn.execute(
            "SELECT value_json FROM preferences WHERE key = ?", (key,)
        ).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row["value_json"])
        except json.JSONDecodeError:
            return default

    def _set_preference_sync(self, key: str, value: Any) -> None:
        conn = self._connection_sync()
        with conn:
            conn.execute(
                """
                INSERT INTO preferences (key, value_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json=excluded.value_json,
                    updated_at=excluded.updated_at
                """,
                (key, json.dumps(value), now_iso()),
            )

    def _list_preferences_sync(self) -> dict[str, Any]:
        conn = self._connection_sync()
        rows = conn.execute(
            "SELECT key, value_json FROM preferences ORDER BY key ASC"
        ).fetchall()
        preferences: dict[str, Any] = {}
        for row in rows:
            try:
                preferences[str(row["key"])] = json.loads(row["value_json"])
            except json.JSONDecodeError:
                continue
        return preferences
