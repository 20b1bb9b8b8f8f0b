"""Async SQLite connection for the local snapshot cache."""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class Database:
    """Owns one ``aiosqlite`` connection to the cache file.

    Usage::

        async with Database("data/tradedesk.db") as db:
            cache = LocalCache(db)
            doc = await cache.load_local("futures")
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Cache database not connected. Call connect() first.")
        return self._conn

    async def connect(self) -> None:
        """Open the cache, creating its directory, and switch to WAL."""
        if self._conn is not None:
            return
        if self._db_path != MEMORY_PATH:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        if self._db_path != MEMORY_PATH:
            await self._conn.execute("PRAGMA journal_mode=WAL")
        logger.info("Opened snapshot cache: %s", self._db_path)

    async def disconnect(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None
            logger.info("Closed snapshot cache: %s", self._db_path)

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.disconnect()
