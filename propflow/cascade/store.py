"""Entity store abstraction used by cascades and the built-in workflows."""

from __future__ import annotations

import uuid
from typing import Any, Protocol


def new_entity_id() -> str:
    return str(uuid.uuid4())


class EntityStore(Protocol):
    """Protocol for the business entity store.

    Records are plain JSON-compatible dicts keyed by ``id`` within a named
    collection (``tenants``, ``bills``, ...). Backends raise on I/O failure.
    """

    async def insert(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert ``record``, assigning an ``id`` when missing, and return it."""

    async def get(self, collection: str, entity_id: str) -> dict[str, Any] | None:
        """Return the record or ``None``."""

    async def update(
        self, collection: str, entity_id: str, changes: dict[str, Any]
    ) -> bool:
        """Merge ``changes`` into the record. Return ``False`` if it is missing."""

    async def delete(self, collection: str, entity_id: str) -> bool:
        """Delete the record. Return ``False`` if it is missing."""

    async def find(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        """Return records whose top-level fields equal every filter."""
