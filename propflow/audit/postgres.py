"""PostgreSQL implementation of the audit recorder."""

from __future__ import annotations

import json
import uuid
from typing import Any

import asyncpg

from ..contracts import AuditEvent, StoredAuditEvent, utcnow
from .recorder import AuditQuery, AuditRecorder


async def connect(dsn: str) -> asyncpg.Connection:
    """Open a connection that maps JSONB columns to Python objects."""
    conn = await asyncpg.connect(dsn)
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda v: json.dumps(v, default=str),
        decoder=json.loads,
        schema="pg_catalog",
    )
    return conn


class PostgresAuditRecorder(AuditRecorder):
    """Persist audit events using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                actor_role TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                changes JSONB,
                metadata JSONB,
                ip_address TEXT,
                user_agent TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_events_entity "
            "ON audit_events(entity_type, entity_id)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_audit_events_workspace "
            "ON audit_events(workspace_id, created_at DESC)"
        )

    # ------------------------------------------------------------------
    async def _insert(self, events: list[AuditEvent]) -> list[str]:
        created_at = utcnow()
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
                e.changes.model_dump(mode="json") if e.changes else None,
                e.metadata,
                e.ip_address,
                e.user_agent,
                created_at,
            )
            for event_id, e in zip(ids, events)
        ]
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.executemany(
                    """
                    INSERT INTO audit_events (
                        id, entity_type, entity_id, action, actor_id, actor_role,
                        workspace_id, changes, metadata, ip_address, user_agent, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                    """,
                    rows,
                )
        finally:
            await conn.close()
        return ids

    async def _select(self, query: AuditQuery) -> list[StoredAuditEvent]:
        where = []
        params: list[Any] = []
        for column, op, value in query.filters():
            params.append(value)
            where.append(f"{column} {op} ${len(params)}")
        params.extend([query.limit, query.offset])
        sql = (
            f"SELECT * FROM audit_events WHERE {' AND '.join(where)} "
            f"ORDER BY created_at DESC, seq DESC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        conn = await self._connect()
        try:
            rows = await conn.fetch(sql, *params)
        finally:
            await conn.close()
        return [
            StoredAuditEvent(
                id=r["id"],
                entity_type=r["entity_type"],
                entity_id=r["entity_id"],
                action=r["action"],
                actor_id=r["actor_id"],
                actor_role=r["actor_role"],
                workspace_id=r["workspace_id"],
                changes=r["changes"],
                metadata=r["metadata"],
                ip_address=r["ip_address"],
                user_agent=r["user_agent"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
