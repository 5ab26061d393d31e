"""SQLite implementation of the idempotency store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from ..constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES
from ..contracts import isoformat_utc, utcnow
from .store import IdempotencyCheck, IdempotencyRecord, IdempotencyStore


class SQLiteIdempotencyStore(IdempotencyStore):
    """Persist idempotency keys using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                result TEXT,
                actor_id TEXT NOT NULL,
                workspace_id TEXT,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_idempotency_expires "
            "ON idempotency_keys(expires_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods, run in a worker thread
    def _claim(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str],
        ttl_minutes: int,
    ) -> tuple[bool, sqlite3.Row | None]:
        now = utcnow()
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "DELETE FROM idempotency_keys WHERE key = ? AND expires_at <= ?",
                (key, isoformat_utc(now)),
            )
            cur.execute(
                """
                INSERT OR IGNORE INTO idempotency_keys
                    (key, workflow_name, result, actor_id, workspace_id, created_at, expires_at)
                VALUES (?, ?, NULL, ?, ?, ?, ?)
                """,
                (
                    key,
                    workflow_name,
                    actor_id,
                    workspace_id,
                    isoformat_utc(now),
                    isoformat_utc(now + timedelta(minutes=ttl_minutes)),
                ),
            )
            claimed = cur.rowcount == 1
            row = None
            if not claimed:
                cur.execute("SELECT result FROM idempotency_keys WHERE key = ?", (key,))
                row = cur.fetchone()
            self._conn.commit()
        return claimed, row

    def _upsert(
        self,
        key: str,
        workflow_name: str,
        result: str,
        actor_id: str,
        workspace_id: Optional[str],
        ttl_minutes: int,
    ) -> None:
        now = utcnow()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO idempotency_keys
                    (key, workflow_name, result, actor_id, workspace_id, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    result = excluded.result,
                    expires_at = excluded.expires_at
                """,
                (
                    key,
                    workflow_name,
                    result,
                    actor_id,
                    workspace_id,
                    isoformat_utc(now),
                    isoformat_utc(now + timedelta(minutes=ttl_minutes)),
                ),
            )
            self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _delete_pending(self, key: str) -> None:
        with self._lock:
            self._conn.execute(
                "DELETE FROM idempotency_keys WHERE key = ? AND result IS NULL", (key,)
            )
            self._conn.commit()

    def _delete_expired(self) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= ?",
                (isoformat_utc(utcnow()),),
            )
            self._conn.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Store API
    async def check(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> IdempotencyCheck:
        claimed, row = await asyncio.to_thread(
            self._claim, key, workflow_name, actor_id, workspace_id, ttl_minutes
        )
        if claimed:
            return IdempotencyCheck(is_duplicate=False)
        if row is None or row["result"] is None:
            return IdempotencyCheck(is_duplicate=False, in_progress=True)
        return IdempotencyCheck(is_duplicate=True, cached_result=json.loads(row["result"]))

    async def store(
        self,
        key: str,
        workflow_name: str,
        result: dict[str, Any],
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> None:
        await asyncio.to_thread(
            self._upsert,
            key,
            workflow_name,
            json.dumps(result),
            actor_id,
            workspace_id,
            ttl_minutes,
        )

    async def release(self, key: str) -> None:
        await asyncio.to_thread(self._delete_pending, key)

    async def get(self, key: str) -> IdempotencyRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM idempotency_keys WHERE key = ? AND expires_at > ?",
            key,
            isoformat_utc(utcnow()),
        )
        if not row:
            return None
        return IdempotencyRecord(
            key=row["key"],
            workflow_name=row["workflow_name"],
            actor_id=row["actor_id"],
            workspace_id=row["workspace_id"],
            result=json.loads(row["result"]) if row["result"] else None,
            created_at=datetime.fromisoformat(row["created_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )

    async def purge_expired(self) -> int:
        return await asyncio.to_thread(self._delete_expired)
