from __future__ import annotations

import asyncio
import functools
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, TypeVar

from .const import DEFAULT_MAX_QUEUE_BYTES, DEFAULT_MAX_QUEUE_ITEMS
from .models import QueueItem

_LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


class QueueStorageError(RuntimeError):
    """Raised when an item cannot be persisted even after evicting older ones."""


class QueueStore:
    """SQLite-backed durable queue of deferred punch requests.

    Only the worker context writes to the store. Every read returns fresh
    :class:`QueueItem` instances so callers never hold live rows.
    """

    def __init__(
        self,
        path: str | Path,
        *,
        max_items: int = DEFAULT_MAX_QUEUE_ITEMS,
        max_bytes: int = DEFAULT_MAX_QUEUE_BYTES,
    ) -> None:
        self._is_memory = str(path) == ":memory:"
        self.path = Path(path)
        if not self._is_memory:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.max_items = max(1, int(max_items))
        self.max_bytes = max(1, int(max_bytes))
        self.storage_warning = False
        self._shared_conn: sqlite3.Connection | None = None
        self._memory_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        if self._is_memory:
            # The async_* helpers hop threads, so the shared connection is guarded.
            with self._memory_lock:
                if self._shared_conn is None:
                    self._shared_conn = sqlite3.connect(":memory:", check_same_thread=False)
                    self._shared_conn.row_factory = sqlite3.Row
                yield self._shared_conn
        else:
            conn = sqlite3.connect(self.path)
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS queue_items (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    url TEXT NOT NULL,
                    method TEXT NOT NULL,
                    headers TEXT NOT NULL,
                    body TEXT,
                    timestamp INTEGER NOT NULL,
                    size INTEGER NOT NULL DEFAULT 0
                );

                CREATE INDEX IF NOT EXISTS idx_queue_items_order
                    ON queue_items(timestamp, seq);

                CREATE TABLE IF NOT EXISTS portal_cache (
                    path TEXT PRIMARY KEY,
                    payload TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            conn.commit()

    # ------------------------------------------------------------------
    def enqueue(self, item: QueueItem) -> list[str]:
        """Persist ``item`` and return the ids evicted to make room for it.

        Eviction and insert share one ``BEGIN IMMEDIATE`` transaction. When
        SQLite reports the disk is full the attempt is rolled back and retried
        with one more oldest item evicted, so a failed enqueue never loses
        items that were already queued.
        """

        size = item.size
        if size > self.max_bytes:
            self._flag_storage_warning("item %s (%d bytes) exceeds the queue budget", item.id, size)
            raise QueueStorageError(f"item {item.id} is larger than the queue budget ({size} bytes)")

        evicted: list[str] | None = None
        extra = 0
        while evicted is None:
            with self._connection() as conn:
                try:
                    conn.execute("BEGIN IMMEDIATE")
                    victims = self._evict_for(conn, size, extra=extra)
                    self._insert(conn, item, size)
                    conn.commit()
                except sqlite3.Error as err:
                    conn.rollback()
                    quota = isinstance(err, sqlite3.OperationalError) and _is_quota_error(err)
                    if not quota or extra >= self._count(conn):
                        raise QueueStorageError(str(err)) from err
                    extra += 1
                else:
                    evicted = victims
        if evicted:
            self._flag_storage_warning("evicted %d oldest item(s) to store %s", len(evicted), item.id)
        return evicted

    def _insert(self, conn: sqlite3.Connection, item: QueueItem, size: int) -> None:
        conn.execute(
            """
            INSERT INTO queue_items(id, url, method, headers, body, timestamp, size)
            VALUES(?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.url,
                item.method,
                json.dumps(dict(item.headers), separators=(",", ":")),
                item.body,
                item.timestamp,
                size,
            ),
        )

    def _count(self, conn: sqlite3.Connection) -> int:
        row = conn.execute("SELECT COUNT(*) AS total FROM queue_items").fetchone()
        return int(row["total"]) if row else 0

    def _evict_for(self, conn: sqlite3.Connection, incoming_size: int, *, extra: int = 0) -> list[str]:
        """Delete oldest items until ``incoming_size`` fits, plus ``extra`` more."""

        row = conn.execute("SELECT COUNT(*) AS total, COALESCE(SUM(size), 0) AS bytes FROM queue_items").fetchone()
        count = int(row["total"])
        used = int(row["bytes"])
        if not extra and count + 1 <= self.max_items and used + incoming_size <= self.max_bytes:
            return []
        rows = conn.execute("SELECT id, size FROM queue_items ORDER BY timestamp ASC, seq ASC").fetchall()
        evicted: list[str] = []
        for victim in rows:
            fits = count + 1 <= self.max_items and used + incoming_size <= self.max_bytes
            if fits and len(evicted) >= extra:
                break
            evicted.append(victim["id"])
            count -= 1
            used -= int(victim["size"])
        conn.executemany("DELETE FROM queue_items WHERE id = ?", ((item_id,) for item_id in evicted))
        return evicted

    def _flag_storage_warning(self, message: str, *args: Any) -> None:
        self.storage_warning = True
        _LOGGER.warning("Offline queue storage: " + message, *args)

    def list_all(self) -> list[QueueItem]:
        with self._connection() as conn:
            rows = conn.execute(
                """
                SELECT id, url, method, headers, body, timestamp
                  FROM queue_items
                 ORDER BY timestamp ASC, seq ASC
                """
            ).fetchall()
        return [QueueItem.from_dict(dict(row)) for row in rows]

    def remove(self, item_id: str) -> bool:
        """Delete one item. Removing an unknown id is a no-op."""

        with self._connection() as conn:
            cursor = conn.execute("DELETE FROM queue_items WHERE id = ?", (item_id,))
            conn.commit()
            removed = cursor.rowcount > 0
        return removed

    def contains(self, item_id: str) -> bool:
        with self._connection() as conn:
            row = conn.execute("SELECT 1 FROM queue_items WHERE id = ?", (item_id,)).fetchone()
        return row is not None

    def clear(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM queue_items").fetchone()
            conn.execute("DELETE FROM queue_items")
            conn.commit()
        self.storage_warning = False
        return int(row["total"]) if row else 0

    def size(self) -> int:
        with self._connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM queue_items").fetchone()
        if not row:
            return 0
        total = row["total"]
        return int(total) if total is not None else 0

    # ------------------------------------------------------------------
    def update_portal_cache(self, path: str, payload: Any) -> None:
        with self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO portal_cache(path, payload, updated_at)
                VALUES(?, ?, ?)
                """,
                (path, json.dumps(payload, separators=(",", ":")), datetime.now(tz=UTC).isoformat()),
            )
            conn.commit()

    def fetch_portal_cache(self, path: str) -> Any | None:
        with self._connection() as conn:
            row = conn.execute("SELECT payload FROM portal_cache WHERE path = ?", (path,)).fetchone()
        if not row:
            return None
        return json.loads(row["payload"])

    def portal_cache_updated_at(self) -> datetime | None:
        with self._connection() as conn:
            row = conn.execute("SELECT MAX(updated_at) AS ts FROM portal_cache").fetchone()
        if not row or row["ts"] is None:
            return None
        try:
            ts = datetime.fromisoformat(str(row["ts"]))
        except ValueError:
            return None
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=UTC)
        return ts

    # ------------------------------------------------------------------
    async def _run(self, func: Callable[..., _T], *args: Any) -> _T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def async_enqueue(self, item: QueueItem) -> list[str]:
        return await self._run(self.enqueue, item)

    async def async_list_all(self) -> list[QueueItem]:
        return await self._run(self.list_all)

    async def async_remove(self, item_id: str) -> bool:
        return await self._run(self.remove, item_id)

    async def async_contains(self, item_id: str) -> bool:
        return await self._run(self.contains, item_id)

    async def async_clear(self) -> int:
        return await self._run(self.clear)

    async def async_size(self) -> int:
        return await self._run(self.size)

    async def async_update_portal_cache(self, path: str, payload: Any) -> None:
        await self._run(self.update_portal_cache, path, payload)

    async def async_fetch_portal_cache(self, path: str) -> Any | None:
        return await self._run(self.fetch_portal_cache, path)


def _is_quota_error(err: sqlite3.OperationalError) -> bool:
    message = str(err).lower()
    return "full" in message or "quota" in message


__all__ = ["QueueStorageError", "QueueStore"]
