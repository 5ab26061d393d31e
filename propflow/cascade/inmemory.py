"""In-memory implementation of the entity store."""

from __future__ import annotations

import copy
from typing import Any, Dict

from .store import EntityStore, new_entity_id


class InMemoryEntityStore(EntityStore):
    """Keep entity records in local memory.

    Useful for tests or when no database is configured. Records are copied on
    the way in and out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, dict[str, Any]]] = {}

    def _collection(self, name: str) -> Dict[str, dict[str, Any]]:
        return self._collections.setdefault(name, {})

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(record)
        stored.setdefault("id", new_entity_id())
        records = self._collection(collection)
        if stored["id"] in records:
            raise ValueError(f"{collection}/{stored['id']} already exists")
        records[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def get(self, collection: str, entity_id: str) -> dict[str, Any] | None:
        record = self._collection(collection).get(entity_id)
        return copy.deepcopy(record) if record is not None else None

    async def update(
        self, collection: str, entity_id: str, changes: dict[str, Any]
    ) -> bool:
        record = self._collection(collection).get(entity_id)
        if record is None:
            return False
        record.update(copy.deepcopy(changes))
        return True

    async def delete(self, collection: str, entity_id: str) -> bool:
        return self._collection(collection).pop(entity_id, None) is not None

    async def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(r)
            for r in self._collection(collection).values()
            if all(r.get(k) == v for k, v in filters.items())
        ]
