"""Local durable cache of book snapshots."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any, Callable

import aiosqlite

from tradedesk.config.constants import ChangeOrigin
from tradedesk.core.book import now_ms
from tradedesk.data.migrations import apply_schema

if TYPE_CHECKING:
    from tradedesk.core.book import Book
    from tradedesk.data.database import Database

logger = logging.getLogger(__name__)


class LocalCache:
    """Best-effort snapshot store on top of ``Database``.

    Every method catches its own storage errors and logs them: a failing
    cache degrades to "nothing cached" and never stops the books.
    """

    def __init__(self, db: "Database") -> None:
        self._db = db

    @property
    def _conn(self) -> aiosqlite.Connection:
        return self._db.connection

    async def initialize(self) -> bool:
        try:
            await apply_schema(self._conn)
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Could not prepare snapshot cache schema")
            return False
        return True

    async def load_local(self, namespace: str) -> dict[str, Any] | None:
        """Return the cached document for *namespace*, or None."""
        try:
            cursor = await self._conn.execute(
                "SELECT document FROM snapshots WHERE namespace = ?", (namespace,)
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to read cached %s snapshot", namespace)
            return None
        if row is None:
            return None
        try:
            document = json.loads(row["document"])
        except (TypeError, ValueError):
            logger.warning("Cached %s snapshot is not valid JSON, ignoring it", namespace)
            return None
        if not isinstance(document, dict):
            logger.warning("Cached %s snapshot is not an object, ignoring it", namespace)
            return None
        if not document:
            return None
        return document

    async def save_local(self, namespace: str, document: dict[str, Any]) -> bool:
        try:
            payload = json.dumps(document)
        except (TypeError, ValueError):
            logger.exception("Snapshot of %s is not JSON serializable", namespace)
            return False
        saved_at = int(document.get("lastUpdated") or 0)
        try:
            await self._conn.execute(
                """
                INSERT INTO snapshots (namespace, document, saved_at)
                VALUES (?, ?, ?)
                ON CONFLICT(namespace)
                DO UPDATE SET document=excluded.document, saved_at=excluded.saved_at
                """,
                (namespace, payload, saved_at),
            )
            await self._conn.commit()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to cache %s snapshot", namespace)
            return False
        logger.debug("Cached %s snapshot (%d bytes)", namespace, len(payload))
        return True

    async def get_synced_at(self, namespace: str) -> int:
        """``lastUpdated`` of the last snapshot matched with the remote; 0 if none."""
        try:
            cursor = await self._conn.execute(
                "SELECT synced_at FROM snapshots WHERE namespace = ?", (namespace,)
            )
            row = await cursor.fetchone()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to read sync timestamp of %s", namespace)
            return 0
        return int(row["synced_at"]) if row is not None else 0

    async def set_synced_at(self, namespace: str, timestamp: int) -> bool:
        try:
            await self._conn.execute(
                """
                INSERT INTO snapshots (namespace, document, synced_at)
                VALUES (?, '{}', ?)
                ON CONFLICT(namespace) DO UPDATE SET synced_at=excluded.synced_at
                """,
                (namespace, int(timestamp)),
            )
            await self._conn.commit()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to store sync timestamp of %s", namespace)
            return False
        return True

    async def clear(self, namespace: str | None = None) -> bool:
        """Drop the cached snapshot of *namespace*, or of every namespace."""
        try:
            if namespace is None:
                await self._conn.execute("DELETE FROM snapshots")
            else:
                await self._conn.execute("DELETE FROM snapshots WHERE namespace = ?", (namespace,))
            await self._conn.commit()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to clear snapshot cache")
            return False
        logger.info("Cleared snapshot cache (%s)", namespace or "all")
        return True

    async def namespaces(self) -> list[str]:
        try:
            cursor = await self._conn.execute("SELECT namespace FROM snapshots ORDER BY namespace")
            rows = await cursor.fetchall()
        except (aiosqlite.Error, RuntimeError):
            logger.exception("Failed to list cached snapshots")
            return []
        return [row["namespace"] for row in rows]


class CacheMirror:
    """Caches every local change of a book without a remote session.

    Each change is stamped ``max(clock, previous + 1)`` like a synced edit,
    so a later ``sync`` pushes the offline work.
    """

    def __init__(
        self,
        book: "Book",
        cache: LocalCache,
        version: int = 0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._book = book
        self._cache = cache
        self._clock = clock or now_ms
        self._version = version
        self._writes: set[asyncio.Task] = set()  # type: ignore[type-arg]
        self._remove_listener: Callable[[], None] | None = None

    @property
    def version(self) -> int:
        return self._version

    def attach(self) -> None:
        if self._remove_listener is None:
            self._remove_listener = self._book.add_listener(self._on_change)

    async def close(self) -> None:
        """Stop listening and wait for the outstanding writes."""
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    def _on_change(self, book: "Book", origin: ChangeOrigin) -> None:
        if origin != ChangeOrigin.LOCAL:
            return
        self._version = max(self._clock(), self._version + 1)
        task = asyncio.create_task(
            self._cache.save_local(book.namespace, book.to_document(self._version))
        )
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)
