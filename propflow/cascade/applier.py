"""Apply cascade effects produced by workflow definitions."""

from __future__ import annotations

import logging
from types import MappingProxyType
from typing import Mapping

from ..contracts import AuditAction, CascadeEffect, EntityType, isoformat_utc, utcnow
from .store import EntityStore

logger = logging.getLogger(__name__)

COLLECTIONS: Mapping[EntityType, str] = MappingProxyType(
    {
        EntityType.TENANT: "tenants",
        EntityType.PROPERTY: "properties",
        EntityType.ROOM: "rooms",
        EntityType.BILL: "bills",
        EntityType.PAYMENT: "payments",
        EntityType.EXPENSE: "expenses",
        EntityType.COMPLAINT: "complaints",
        EntityType.NOTICE: "notices",
        EntityType.VISITOR: "visitors",
        EntityType.STAFF: "staff_members",
        EntityType.EXIT_CLEARANCE: "exit_clearance",
        EntityType.APPROVAL: "approvals",
        EntityType.METER_READING: "meter_readings",
        EntityType.CHARGE: "charges",
        EntityType.ROLE: "roles",
        EntityType.WORKSPACE: "workspaces",
    }
)

_unmapped = set(EntityType.business_types()) - set(COLLECTIONS)
if _unmapped:
    raise RuntimeError(
        f"Entity types without a collection: {sorted(t.value for t in _unmapped)}"
    )
if EntityType.WORKFLOW in COLLECTIONS:
    raise RuntimeError("workflow runs are not stored in an entity collection")


def collection_for(entity_type: EntityType) -> str:
    """Collection name backing ``entity_type``."""
    return COLLECTIONS[entity_type]


class CascadeApplier:
    """Performs cascade effects against an :class:`EntityStore`.

    Cascades are auxiliary to a workflow's primary effect, so every failure is
    logged and reported as ``False`` instead of raised.
    """

    def __init__(self, store: EntityStore) -> None:
        self.store = store

    async def apply(self, effect: CascadeEffect) -> bool:
        collection = collection_for(effect.entity_type)
        try:
            if effect.action == AuditAction.UPDATE:
                applied = await self.store.update(
                    collection, effect.entity_id, dict(effect.data or {})
                )
            elif effect.action == AuditAction.STATUS_CHANGE:
                status = (effect.data or {}).get("status")
                applied = await self.store.update(
                    collection,
                    effect.entity_id,
                    {"status": status, "updated_at": isoformat_utc(utcnow())},
                )
            elif effect.action == AuditAction.DELETE:
                applied = await self.store.delete(collection, effect.entity_id)
            else:
                logger.info(
                    f"Cascade action {effect.action.value!r} on {collection} is not supported; ignoring"
                )
                return False
        except Exception:
            logger.exception(
                f"Cascade {effect.action.value} on {collection}/{effect.entity_id} failed"
            )
            return False

        if not applied:
            logger.warning(
                f"Cascade {effect.action.value} found no {collection}/{effect.entity_id}"
            )
        return applied
