from __future__ import annotations

import sqlite3
from pathlib import Path


def _pragmas(*, durable: bool) -> tuple[str, ...]:
    # Credentials are rewritten rarely; durable stores pay for fsync on every commit.
    synchronous = "FULL" if durable else "NORMAL"
    return (
        "PRAGMA journal_mode=WAL;",
        f"PRAGMA synchronous={synchronous};",
        "PRAGMA busy_timeout=5000;",
        "PRAGMA temp_store=MEMORY;",
    )


def connect_sqlite(path: Path, *, durable: bool = False) -> sqlite3.Connection:
    """Open `path` (creating parent directories) with `sqlite3.Row` rows."""
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path)
    conn.row_factory = sqlite3.Row
    for pragma in _pragmas(durable=durable):
        conn.execute(pragma)
    return conn


def ensure_schema_version(conn: sqlite3.Connection, version: int) -> int:
    """Record `version` in `schema_info` on first use; return the stored version."""
    with conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_info (version INTEGER NOT NULL)"
        )
        row = conn.execute(
            "SELECT version FROM schema_info ORDER BY version DESC LIMIT 1"
        ).fetchone()
        if row is None:
            conn.execute("INSERT INTO schema_info(version) VALUES (?)", (version,))
            return version
    return int(row["version"])
