"""Schema of the local snapshot cache."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# One row per synced document. ``synced_at`` is the ``lastUpdated`` of the
# last snapshot known to match the remote copy.
TABLES: list[str] = [
    """
    CREATE TABLE IF NOT EXISTS snapshots (
        namespace   TEXT    PRIMARY KEY,
        document    TEXT    NOT NULL,
        saved_at    INTEGER NOT NULL DEFAULT 0,
        synced_at   INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS schema_info (
        version     INTEGER NOT NULL
    )
    """,
]


async def apply_schema(conn: aiosqlite.Connection) -> None:
    """Create the cache tables on an open connection."""
    for ddl in TABLES:
        await conn.execute(ddl)
    cursor = await conn.execute("SELECT COUNT(*) FROM schema_info")
    row = await cursor.fetchone()
    if row[0] == 0:
        await conn.execute("INSERT INTO schema_info (version) VALUES (?)", (SCHEMA_VERSION,))
    await conn.commit()


async def run_migrations(db_path: str) -> None:
    """Create all tables if they don't exist."""
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        await apply_schema(db)
    logger.info("Snapshot cache schema v%d ready at %s", SCHEMA_VERSION, db_path)
