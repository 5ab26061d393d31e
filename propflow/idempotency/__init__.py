"""Idempotency keys for workflow executions."""

from __future__ import annotations

from typing import Optional

from ..config import PropflowConfig, load_config, resolve_database_url
from .inmemory import InMemoryIdempotencyStore
from .sqlite import SQLiteIdempotencyStore
from .store import IdempotencyCheck, IdempotencyRecord, IdempotencyStore

_store_instance: IdempotencyStore | None = None


def get_idempotency_store(
    database_url: Optional[str] = None, config: Optional[PropflowConfig] = None
) -> IdempotencyStore:
    """Factory function to obtain the idempotency store.

    ``idempotency.backend: redis`` selects Redis; otherwise the store lives in
    the same database as the audit trail.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()

    if config.idempotency.backend == "redis":
        from .redis import RedisIdempotencyStore

        redis_conf = config.idempotency.redis
        _store_instance = RedisIdempotencyStore(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
        )
        return _store_instance

    database_url = resolve_database_url(database_url, config)

    if not database_url:
        _store_instance = InMemoryIdempotencyStore()
    elif database_url.startswith("sqlite://"):
        _store_instance = SQLiteIdempotencyStore(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresIdempotencyStore

        _store_instance = PostgresIdempotencyStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "IdempotencyCheck",
    "IdempotencyRecord",
    "IdempotencyStore",
    "InMemoryIdempotencyStore",
    "SQLiteIdempotencyStore",
    "get_idempotency_store",
]
