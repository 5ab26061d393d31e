"""PostgreSQL implementation of the entity store."""

from __future__ import annotations

from typing import Any

import asyncpg

from ..audit.postgres import connect
from .store import EntityStore, new_entity_id


class PostgresEntityStore(EntityStore):
    """Persist entity records as JSONB documents."""

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
            CREATE TABLE IF NOT EXISTS entities (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )

    # ------------------------------------------------------------------
    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = dict(record)
        stored.setdefault("id", new_entity_id())
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO entities (collection, id, data) VALUES ($1, $2, $3)",
                collection,
                stored["id"],
                stored,
            )
        finally:
            await conn.close()
        return stored

    async def get(self, collection: str, entity_id: str) -> dict[str, Any] | None:
        conn = await self._connect()
        try:
            return await conn.fetchval(
                "SELECT data FROM entities WHERE collection = $1 AND id = $2",
                collection,
                entity_id,
            )
        finally:
            await conn.close()

    async def update(
        self, collection: str, entity_id: str, changes: dict[str, Any]
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "UPDATE entities SET data = data || $3 WHERE collection = $1 AND id = $2",
                collection,
                entity_id,
                changes,
            )
        finally:
            await conn.close()
        return status != "UPDATE 0"

    async def delete(self, collection: str, entity_id: str) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM entities WHERE collection = $1 AND id = $2",
                collection,
                entity_id,
            )
        finally:
            await conn.close()
        return status != "DELETE 0"

    async def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT data FROM entities WHERE collection = $1 AND data @> $2::jsonb",
                collection,
                filters,
            )
        finally:
            await conn.close()
        return [r["data"] for r in rows]
