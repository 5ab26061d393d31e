"""In-memory implementation of the idempotency store."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Dict, Optional

from ..constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES
from ..contracts import utcnow
from .store import IdempotencyCheck, IdempotencyRecord, IdempotencyStore


class InMemoryIdempotencyStore(IdempotencyStore):
    """Keep idempotency records in local memory.

    Only deduplicates callers within one process; use a database or Redis
    backend when several server instances share traffic.
    """

    def __init__(self) -> None:
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    def _live(self, key: str) -> IdempotencyRecord | None:
        record = self._records.get(key)
        if record is not None and record.expires_at <= utcnow():
            del self._records[key]
            return None
        return record

    async def check(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> IdempotencyCheck:
        async with self._lock:
            record = self._live(key)
            if record is None:
                now = utcnow()
                self._records[key] = IdempotencyRecord(
                    key=key,
                    workflow_name=workflow_name,
                    actor_id=actor_id,
                    workspace_id=workspace_id,
                    created_at=now,
                    expires_at=now + timedelta(minutes=ttl_minutes),
                )
                return IdempotencyCheck(is_duplicate=False)
            if record.result is None:
                return IdempotencyCheck(is_duplicate=False, in_progress=True)
            return IdempotencyCheck(is_duplicate=True, cached_result=record.result)

    async def store(
        self,
        key: str,
        workflow_name: str,
        result: dict[str, Any],
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> None:
        async with self._lock:
            now = utcnow()
            existing = self._live(key)
            self._records[key] = IdempotencyRecord(
                key=key,
                workflow_name=workflow_name,
                actor_id=actor_id,
                workspace_id=workspace_id,
                result=result,
                created_at=existing.created_at if existing else now,
                expires_at=now + timedelta(minutes=ttl_minutes),
            )

    async def release(self, key: str) -> None:
        async with self._lock:
            record = self._records.get(key)
            if record is not None and record.result is None:
                del self._records[key]

    async def get(self, key: str) -> IdempotencyRecord | None:
        return self._live(key)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = utcnow()
            expired = [k for k, r in self._records.items() if r.expires_at <= now]
            for key in expired:
                del self._records[key]
            return len(expired)
