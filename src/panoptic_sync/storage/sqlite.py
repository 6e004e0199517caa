"""SQLite implementation of the StorageAdapter protocol."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

SCHEMA = """
-- Namespaced key/value entries (checkpoints, position metadata, pending lists)
CREATE TABLE IF NOT EXISTS kv (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SQLiteStorage:
    """SQLite-backed key/value store. Values are stored as JSON text.

    Each ``set`` is a single upsert committed on its own, so a failed write
    never leaves a half-written value behind.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self._db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        assert self._db is not None, "Store not initialized"
        return self._db

    async def get(self, key: str) -> object | None:
        async with self.db.execute("SELECT value FROM kv WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
        if row is None:
            return None
        return json.loads(row["value"])

    async def set(self, key: str, value: object) -> None:
        await self.db.execute(
            """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, json.dumps(value, sort_keys=True), _now()),
        )
        await self.db.commit()

    async def delete(self, key: str) -> None:
        await self.db.execute("DELETE FROM kv WHERE key = ?", (key,))
        await self.db.commit()

    async def has(self, key: str) -> bool:
        async with self.db.execute("SELECT 1 FROM kv WHERE key = ?", (key,)) as cur:
            return await cur.fetchone() is not None

    async def keys(self, prefix: str = "") -> list[str]:
        async with self.db.execute(
            "SELECT key FROM kv WHERE substr(key, 1, ?) = ? ORDER BY key",
            (len(prefix), prefix),
        ) as cur:
            rows = await cur.fetchall()
        return [r["key"] for r in rows]

    async def clear(self, prefix: str = "") -> int:
        cur = await self.db.execute(
            "DELETE FROM kv WHERE substr(key, 1, ?) = ?",
            (len(prefix), prefix),
        )
        await self.db.commit()
        return cur.rowcount
