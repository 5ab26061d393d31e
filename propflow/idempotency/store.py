"""Idempotency store abstraction and records."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from pydantic import BaseModel

from ..constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES


class IdempotencyRecord(BaseModel):
    """Cached outcome of one logical operation attempt.

    ``result`` is ``None`` while the caller that claimed the key is still
    running the workflow.
    """

    key: str
    workflow_name: str
    actor_id: str
    workspace_id: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    created_at: datetime
    expires_at: datetime


class IdempotencyCheck(BaseModel):
    """Answer of :meth:`IdempotencyStore.check`.

    ``is_duplicate`` with ``cached_result`` means a previous run finished
    within the TTL. ``in_progress`` means another caller holds the key and
    has not stored its result yet. Otherwise the key is now claimed by the
    caller.
    """

    is_duplicate: bool
    cached_result: Optional[dict[str, Any]] = None
    in_progress: bool = False


class IdempotencyStore(Protocol):
    """Protocol for idempotency backends.

    ``check`` must be atomic: of several concurrent callers using the same
    key, exactly one gets a fresh claim. Backends raise on I/O failure; the
    engine treats that as "no idempotency available".
    """

    async def check(
        self,
        key: str,
        workflow_name: str,
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> IdempotencyCheck:
        """Look up ``key`` and claim it when no live record exists."""

    async def store(
        self,
        key: str,
        workflow_name: str,
        result: dict[str, Any],
        actor_id: str,
        workspace_id: Optional[str] = None,
        ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES,
    ) -> None:
        """Persist the result for ``key`` and restart its TTL."""

    async def release(self, key: str) -> None:
        """Drop the claim on ``key`` unless a result was already stored.

        Lets a later caller run the workflow again after the claimant could
        not finish or could not store its result.
        """

    async def get(self, key: str) -> IdempotencyRecord | None:
        """Return the live record for ``key`` if any."""

    async def purge_expired(self) -> int:
        """Delete expired records and return how many were removed."""
