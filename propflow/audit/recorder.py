"""Audit recorder abstraction and event helpers."""

from __future__ import annotations

import abc
import json
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from ..constants import DEFAULT_AUDIT_QUERY_LIMIT, ENTITY_HISTORY_LIMIT
from ..contracts import (
    ActorRole,
    AuditAction,
    AuditChanges,
    AuditEvent,
    EntityType,
    StoredAuditEvent,
    as_utc,
)
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result

logger = logging.getLogger(__name__)


class AuditQuery(BaseModel):
    """Filters for reading the audit trail. ``workspace_id`` is mandatory."""

    workspace_id: str
    entity_type: Optional[EntityType] = None
    entity_id: Optional[str] = None
    action: Optional[AuditAction] = None
    actor_id: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None
    limit: int = Field(default=DEFAULT_AUDIT_QUERY_LIMIT, gt=0)
    offset: int = Field(default=0, ge=0)

    def filters(self) -> list[tuple[str, str, Any]]:
        """Return ``(column, operator, value)`` triples for SQL backends."""
        clauses: list[tuple[str, str, Any]] = [("workspace_id", "=", self.workspace_id)]
        if self.entity_type is not None:
            clauses.append(("entity_type", "=", self.entity_type.value))
        if self.entity_id is not None:
            clauses.append(("entity_id", "=", self.entity_id))
        if self.action is not None:
            clauses.append(("action", "=", self.action.value))
        if self.actor_id is not None:
            clauses.append(("actor_id", "=", self.actor_id))
        if self.from_date is not None:
            clauses.append(("created_at", ">=", as_utc(self.from_date)))
        if self.to_date is not None:
            clauses.append(("created_at", "<=", as_utc(self.to_date)))
        return clauses

    def matches(self, event: StoredAuditEvent) -> bool:
        if event.workspace_id != self.workspace_id:
            return False
        if self.entity_type is not None and event.entity_type != self.entity_type:
            return False
        if self.entity_id is not None and event.entity_id != self.entity_id:
            return False
        if self.action is not None and event.action != self.action:
            return False
        if self.actor_id is not None and event.actor_id != self.actor_id:
            return False
        if self.from_date is not None and event.created_at < as_utc(self.from_date):
            return False
        if self.to_date is not None and event.created_at > as_utc(self.to_date):
            return False
        return True


class AuditRecorder(abc.ABC):
    """Append-only store of audit events.

    There is deliberately no update or delete operation. Backend failures are
    logged and surfaced as failed results rather than raised.
    """

    async def log_audit_event(self, event: AuditEvent) -> ServiceResult[str]:
        result = await self.log_audit_events([event])
        if not result.success:
            return error_result(result.error)
        return success_result(result.data[0])

    async def log_audit_events(
        self, events: Iterable[AuditEvent]
    ) -> ServiceResult[list[str]]:
        batch = list(events)
        if not batch:
            return success_result([])
        try:
            ids = await self._insert(batch)
        except Exception as exc:
            logger.exception(f"Failed to log batch of {len(batch)} audit events")
            return error_result(
                service_error(
                    ErrorCode.UNKNOWN_ERROR,
                    "Failed to log audit events",
                    original_error=exc,
                )
            )
        return success_result(ids)

    async def query_audit_events(
        self, query: AuditQuery
    ) -> ServiceResult[list[StoredAuditEvent]]:
        try:
            events = await self._select(query)
        except Exception as exc:
            logger.exception(
                f"Failed to query audit events for workspace {query.workspace_id}"
            )
            return error_result(
                service_error(
                    ErrorCode.UNKNOWN_ERROR,
                    "Failed to query audit events",
                    original_error=exc,
                )
            )
        return success_result(events)

    async def get_entity_history(
        self, entity_type: EntityType, entity_id: str, workspace_id: str
    ) -> ServiceResult[list[StoredAuditEvent]]:
        """Most recent events for one entity, newest first."""
        return await self.query_audit_events(
            AuditQuery(
                workspace_id=workspace_id,
                entity_type=entity_type,
                entity_id=entity_id,
                limit=ENTITY_HISTORY_LIMIT,
            )
        )

    @abc.abstractmethod
    async def _insert(self, events: list[AuditEvent]) -> list[str]:
        """Persist ``events`` and return their ids in order."""
        raise NotImplementedError

    @abc.abstractmethod
    async def _select(self, query: AuditQuery) -> list[StoredAuditEvent]:
        """Return events matching ``query``, newest first."""
        raise NotImplementedError


# ----------------------------------------------------------------------
# Helpers


def _fingerprint(values: dict[str, Any], key: str) -> Optional[str]:
    if key not in values:
        return None
    return json.dumps(values[key], sort_keys=True, default=str)


def create_audit_event(
    entity_type: EntityType,
    entity_id: str,
    action: AuditAction,
    *,
    actor_id: str,
    actor_role: ActorRole,
    workspace_id: str,
    before: Optional[dict[str, Any]] = None,
    after: Optional[dict[str, Any]] = None,
    metadata: Optional[dict[str, Any]] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> AuditEvent:
    """Build an audit event, deriving ``fields_changed`` from the snapshots.

    Only keys present in ``after`` are compared.
    """

    changes: Optional[AuditChanges] = None
    if before is not None or after is not None:
        fields_changed = None
        if before is not None and after is not None:
            fields_changed = [
                key
                for key in after
                if _fingerprint(before, key) != _fingerprint(after, key)
            ]
        changes = AuditChanges(before=before, after=after, fields_changed=fields_changed)

    return AuditEvent(
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor_id,
        actor_role=actor_role,
        workspace_id=workspace_id,
        changes=changes,
        metadata=metadata,
        ip_address=ip_address,
        user_agent=user_agent,
    )


def diff_objects(before: dict[str, Any], after: dict[str, Any]) -> AuditChanges:
    """Compare two snapshots over the union of their keys.

    The returned ``before``/``after`` contain only the differing fields.
    """

    fields_changed: list[str] = []
    before_diff: dict[str, Any] = {}
    after_diff: dict[str, Any] = {}

    keys = list(before) + [k for k in after if k not in before]
    for key in keys:
        if _fingerprint(before, key) != _fingerprint(after, key):
            fields_changed.append(key)
            before_diff[key] = before.get(key)
            after_diff[key] = after.get(key)

    return AuditChanges(before=before_diff, after=after_diff, fields_changed=fields_changed)
