"""SQLite implementation of the audit recorder."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import AuditEvent, StoredAuditEvent, isoformat_utc, utcnow
from .recorder import AuditQuery, AuditRecorder


class SQLiteAuditRecorder(AuditRecorder):
    """Persist audit events using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                actor_role TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                changes TEXT,
                metadata TEXT,
                ip_address TEXT,
                user_agent TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_events_entity "
            "ON audit_events(entity_type, entity_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_events_workspace "
            "ON audit_events(workspace_id, created_at)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _executemany(self, query: str, rows: list[tuple[Any, ...]]) -> None:
        cur = self._conn.cursor()
        cur.executemany(query, rows)
        self._conn.commit()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Recorder API
    async def _insert(self, events: list[AuditEvent]) -> list[str]:
        created_at = isoformat_utc(utcnow())
        ids = [str(uuid.uuid4()) for _ in events]
        rows = [
            (
                event_id,
                e.entity_type.value,
                e.entity_id,
                e.action.value,
                e.actor_id,
                e.actor_role.value,
                e.workspace_id,
                e.changes.model_dump_json() if e.changes else None,
                json.dumps(e.metadata, default=str) if e.metadata is not None else None,
                e.ip_address,
                e.user_agent,
                created_at,
            )
            for event_id, e in zip(ids, events)
        ]
        await asyncio.to_thread(
            self._executemany,
            """
            INSERT INTO audit_events (
                id, entity_type, entity_id, action, actor_id, actor_role,
                workspace_id, changes, metadata, ip_address, user_agent, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        return ids

    async def _select(self, query: AuditQuery) -> list[StoredAuditEvent]:
        where = []
        params: list[Any] = []
        for column, op, value in query.filters():
            where.append(f"{column} {op} ?")
            params.append(isoformat_utc(value) if isinstance(value, datetime) else value)
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT * FROM audit_events WHERE {' AND '.join(where)} "
            "ORDER BY created_at DESC, seq DESC LIMIT ? OFFSET ?",
            *params,
            query.limit,
            query.offset,
        )
        return [
            StoredAuditEvent(
                id=r["id"],
                entity_type=r["entity_type"],
                entity_id=r["entity_id"],
                action=r["action"],
                actor_id=r["actor_id"],
                actor_role=r["actor_role"],
                workspace_id=r["workspace_id"],
                changes=json.loads(r["changes"]) if r["changes"] else None,
                metadata=json.loads(r["metadata"]) if r["metadata"] else None,
                ip_address=r["ip_address"],
                user_agent=r["user_agent"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]
