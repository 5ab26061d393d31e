"""Entity store and cascade effects."""

from __future__ import annotations

from typing import Optional

from ..config import PropflowConfig, resolve_database_url
from .applier import COLLECTIONS, CascadeApplier, collection_for
from .inmemory import InMemoryEntityStore
from .sqlite import SQLiteEntityStore
from .store import EntityStore, new_entity_id

_store_instance: EntityStore | None = None


def get_entity_store(
    database_url: Optional[str] = None, config: Optional[PropflowConfig] = None
) -> EntityStore:
    """Factory function to obtain the entity store.

    Uses the same database selection rules as :func:`propflow.audit.get_audit_recorder`.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    database_url = resolve_database_url(database_url, config)

    if not database_url:
        _store_instance = InMemoryEntityStore()
    elif database_url.startswith("sqlite://"):
        _store_instance = SQLiteEntityStore(database_url.replace("sqlite://", "", 1))
    elif database_url.startswith(("postgres://", "postgresql://")):
        from .postgres import PostgresEntityStore

        _store_instance = PostgresEntityStore(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _store_instance


__all__ = [
    "COLLECTIONS",
    "CascadeApplier",
    "EntityStore",
    "InMemoryEntityStore",
    "SQLiteEntityStore",
    "collection_for",
    "get_entity_store",
    "new_entity_id",
]
