"""SQLite implementation of the entity store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .store import EntityStore, new_entity_id


class SQLiteEntityStore(EntityStore):
    """Persist entity records as JSON documents in a single SQLite table."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _merge(self, collection: str, entity_id: str, changes: dict[str, Any]) -> bool:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT data FROM entities WHERE collection = ? AND id = ?",
                (collection, entity_id),
            )
            row = cur.fetchone()
            if row is None:
                return False
            data = json.loads(row["data"])
            data.update(changes)
            cur.execute(
                "UPDATE entities SET data = ? WHERE collection = ? AND id = ?",
                (json.dumps(data, default=str), collection, entity_id),
            )
            self._conn.commit()
            return True

    # ------------------------------------------------------------------
    # Store API
    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = dict(record)
        stored.setdefault("id", new_entity_id())
        await asyncio.to_thread(
            self._execute,
            "INSERT INTO entities (collection, id, data) VALUES (?, ?, ?)",
            collection,
            stored["id"],
            json.dumps(stored, default=str),
        )
        return stored

    async def get(self, collection: str, entity_id: str) -> dict[str, Any] | None:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM entities WHERE collection = ? AND id = ?",
            collection,
            entity_id,
        )
        return json.loads(rows[0]["data"]) if rows else None

    async def update(
        self, collection: str, entity_id: str, changes: dict[str, Any]
    ) -> bool:
        return await asyncio.to_thread(self._merge, collection, entity_id, changes)

    async def delete(self, collection: str, entity_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute,
            "DELETE FROM entities WHERE collection = ? AND id = ?",
            collection,
            entity_id,
        )
        return deleted > 0

    async def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT data FROM entities WHERE collection = ? ORDER BY rowid",
            collection,
        )
        records = [json.loads(r["data"]) for r in rows]
        return [r for r in records if all(r.get(k) == v for k, v in filters.items())]
