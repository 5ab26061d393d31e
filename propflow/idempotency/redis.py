"""Redis implementation of the idempotency store."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES
from ..contracts import utcnow
from .store import IdempotencyCheck, IdempotencyRecord, IdempotencyStore

KEY_PREFIX = "propflow:idempotency:"


class RedisIdempotencyStore(IdempotencyStore):
    """Idempotency keys shared across processes through Redis.

    A claim is a ``SET NX EX`` of a pending record; Redis expires keys itself.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self._redis: Optional[Any] = None

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _client(self) -> Any:
        if not self._redis:
            await self.connect()
        return self._redis

    @staticmethod
    def _record(
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str],
        ttl_minutes: int,
        result: Optional[dict[str, Any]] = None,
    ) -> IdempotencyRecord:
        now = utcnow()
        return IdempotencyRecord(
            key=key,
            workflow_name=workflow_name,
            actor_id=actor_id,
            workspace_id=workspace_id,
            result=result,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
        )

    async def check(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> IdempotencyCheck:
        client = await self._client()
        pending = self._record(key, workflow_name, actor_id, workspace_id, ttl_minutes)
        while True:
            claimed = await client.set(
                KEY_PREFIX + key,
                pending.model_dump_json(),
                nx=True,
                ex=max(ttl_minutes * 60, 1),
            )
            if claimed:
                return IdempotencyCheck(is_duplicate=False)
            raw = await client.get(KEY_PREFIX + key)
            if raw is None:
                # expired between SET and GET
                continue
            existing = IdempotencyRecord.model_validate_json(raw)
            if existing.result is None:
                return IdempotencyCheck(is_duplicate=False, in_progress=True)
            return IdempotencyCheck(is_duplicate=True, cached_result=existing.result)

    async def store(
        self,
        key: str,
        workflow_name: str,
        result: dict[str, Any],
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> None:
        client = await self._client()
        record = self._record(
            key, workflow_name, actor_id, workspace_id, ttl_minutes, result=result
        )
        await client.set(
            KEY_PREFIX + key, record.model_dump_json(), ex=max(ttl_minutes * 60, 1)
        )

    async def release(self, key: str) -> None:
        client = await self._client()
        async with client.pipeline(transaction=True) as pipe:
            await pipe.watch(KEY_PREFIX + key)
            raw = await pipe.get(KEY_PREFIX + key)
            if raw is None or IdempotencyRecord.model_validate_json(raw).result is not None:
                return
            pipe.multi()
            pipe.delete(KEY_PREFIX + key)
            try:
                await pipe.execute()
            except WatchError:
                # a result was stored meanwhile; keep it
                pass

    async def get(self, key: str) -> IdempotencyRecord | None:
        client = await self._client()
        raw = await client.get(KEY_PREFIX + key)
        if raw is None:
            return None
        return IdempotencyRecord.model_validate_json(raw)

    async def purge_expired(self) -> int:
        # Redis evicts expired keys on its own.
        return 0
