"""PostgreSQL implementation of the idempotency store."""

from __future__ import annotations

from typing import Any, Optional

import asyncpg

from ..audit.postgres import connect
from ..constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES
from .store import IdempotencyCheck, IdempotencyRecord, IdempotencyStore


class PostgresIdempotencyStore(IdempotencyStore):
    """Persist idempotency keys using PostgreSQL.

    The claim runs in one transaction; ``ON CONFLICT DO NOTHING`` makes
    concurrent callers with the same key serialize on the primary key.
    """

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
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                workflow_name TEXT NOT NULL,
                result JSONB,
                actor_id TEXT NOT NULL,
                workspace_id TEXT,
                created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                expires_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_idempotency_expires "
            "ON idempotency_keys(expires_at)"
        )

    # ------------------------------------------------------------------
    async def check(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> IdempotencyCheck:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM idempotency_keys WHERE key = $1 AND expires_at <= NOW()",
                    key,
                )
                claimed = await conn.fetchval(
                    """
                    INSERT INTO idempotency_keys
                        (key, workflow_name, result, actor_id, workspace_id, expires_at)
                    VALUES ($1, $2, NULL, $3, $4, NOW() + make_interval(mins => $5))
                    ON CONFLICT (key) DO NOTHING
                    RETURNING key
                    """,
                    key,
                    workflow_name,
                    actor_id,
                    workspace_id,
                    ttl_minutes,
                )
                if claimed is not None:
                    return IdempotencyCheck(is_duplicate=False)
                existing = await conn.fetchval(
                    "SELECT result FROM idempotency_keys WHERE key = $1", key
                )
        finally:
            await conn.close()
        if existing is None:
            return IdempotencyCheck(is_duplicate=False, in_progress=True)
        return IdempotencyCheck(is_duplicate=True, cached_result=existing)

    async def store(
        self,
        key: str,
        workflow_name: str,
        result: dict[str, Any],
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO idempotency_keys
                    (key, workflow_name, result, actor_id, workspace_id, expires_at)
                VALUES ($1, $2, $3, $4, $5, NOW() + make_interval(mins => $6))
                ON CONFLICT (key) DO UPDATE SET
                    result = EXCLUDED.result,
                    expires_at = EXCLUDED.expires_at
                """,
                key,
                workflow_name,
                result,
                actor_id,
                workspace_id,
                ttl_minutes,
            )
        finally:
            await conn.close()

    async def release(self, key: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "DELETE FROM idempotency_keys WHERE key = $1 AND result IS NULL", key
            )
        finally:
            await conn.close()

    async def get(self, key: str) -> IdempotencyRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM idempotency_keys WHERE key = $1 AND expires_at > NOW()",
                key,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return IdempotencyRecord(**dict(row))

    async def purge_expired(self) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM idempotency_keys WHERE expires_at <= NOW()"
            )
        finally:
            await conn.close()
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(status.split()[-1])
