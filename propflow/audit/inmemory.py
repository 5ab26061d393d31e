"""In-memory implementation of the audit recorder."""

from __future__ import annotations

import uuid

from ..contracts import AuditEvent, StoredAuditEvent, utcnow
from .recorder import AuditQuery, AuditRecorder


class InMemoryAuditRecorder(AuditRecorder):
    """Keep audit events in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._events: list[StoredAuditEvent] = []

    async def _insert(self, events: list[AuditEvent]) -> list[str]:
        created_at = utcnow()
        stored = [
            StoredAuditEvent(
                **event.model_dump(), id=str(uuid.uuid4()), created_at=created_at
            )
            for event in events
        ]
        self._events.extend(stored)
        return [e.id for e in stored]

    async def _select(self, query: AuditQuery) -> list[StoredAuditEvent]:
        matching = [e for e in reversed(self._events) if query.matches(e)]
        return matching[query.offset : query.offset + query.limit]

    @property
    def events(self) -> list[StoredAuditEvent]:
        """All recorded events in insertion order."""
        return list(self._events)
