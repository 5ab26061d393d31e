"""Tenant onboarding workflow."""

from __future__ import annotations

import secrets
from datetime import date
from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from ..audit import create_audit_event
from ..cascade import EntityStore
from ..contracts import (
    ActorRole,
    AuditAction,
    AuditEvent,
    CascadeEffect,
    EntityType,
    NotificationPayload,
    WorkflowContext,
)
from ..definition import StepDefinition, WorkflowDefinition
from ..errors import ErrorCode, ServiceResult, error_result, service_error, success_result
from ..notifications import build_invitation_notification, build_welcome_notification

TENANT_CREATE = "tenant_create"


class TenantCreateInput(BaseModel):
    name: str
    phone: str
    email: Optional[str] = None
    property_id: str
    property_name: str
    room_id: str
    monthly_rent: float
    check_in_date: date
    send_welcome_notification: bool = True
    send_invitation: bool = False
    workspace_name: str = ""
    inviter_name: str = ""


class PersonLink(BaseModel):
    person_id: str
    created: bool


class TenantRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str
    room_id: str
    property_id: str
    status: str


class InvitationLink(BaseModel):
    invitation_id: str
    token: str


class TenantStay(BaseModel):
    id: str
    tenant_id: str
    join_date: str


class TenantCreateResults(BaseModel):
    create_person_link: PersonLink
    create_tenant_row: TenantRow
    link_invitation: Optional[InvitationLink] = None
    record_tenant_stay: Optional[TenantStay] = None


class TenantCreateOutput(BaseModel):
    tenant_id: str
    person_id: str
    tenant_stay_id: Optional[str] = None
    invitation_sent: bool = False


def build_tenant_create_workflow(
    store: EntityStore,
) -> WorkflowDefinition[TenantCreateInput, TenantCreateOutput]:
    """Create a tenant in a room, optionally inviting them to the portal.

    ``create_person_link`` reuses the person record of a known email address
    and only deletes it on rollback when it was created by this run.
    """

    async def create_person_link(
        context: WorkflowContext, input: TenantCreateInput, results: Mapping[str, Any]
    ) -> ServiceResult[PersonLink]:
        if input.email:
            existing = await store.find("people", email=input.email)
            if existing:
                return success_result(PersonLink(person_id=existing[0]["id"], created=False))
        person = await store.insert(
            "people", {"name": input.name, "email": input.email, "phone": input.phone}
        )
        return success_result(PersonLink(person_id=person["id"], created=True))

    async def delete_person_link(
        context: WorkflowContext, input: TenantCreateInput, link: PersonLink
    ) -> None:
        if link.created:
            await store.delete("people", link.person_id)

    async def create_tenant_row(
        context: WorkflowContext, input: TenantCreateInput, results: Mapping[str, Any]
    ) -> ServiceResult[TenantRow]:
        link: PersonLink = results["create_person_link"]
        tenant = await store.insert(
            "tenants",
            {
                "name": input.name,
                "email": input.email,
                "phone": input.phone,
                "person_id": link.person_id,
                "property_id": input.property_id,
                "room_id": input.room_id,
                "monthly_rent": input.monthly_rent,
                "check_in_date": input.check_in_date.isoformat(),
                "status": "active",
                "workspace_id": context.workspace_id,
                "owner_id": context.actor_id,
            },
        )
        return success_result(TenantRow.model_validate(tenant))

    async def delete_tenant_row(
        context: WorkflowContext, input: TenantCreateInput, tenant: TenantRow
    ) -> None:
        await store.delete("tenants", tenant.id)

    async def link_invitation(
        context: WorkflowContext, input: TenantCreateInput, results: Mapping[str, Any]
    ) -> ServiceResult[Optional[InvitationLink]]:
        if not input.send_invitation:
            return success_result(None)
        if not input.email:
            return error_result(
                service_error(
                    ErrorCode.VALIDATION_ERROR,
                    "An email address is required to invite a tenant",
                    details={"field": "email"},
                )
            )
        tenant: TenantRow = results["create_tenant_row"]
        invitation = await store.insert(
            "invitations",
            {
                "tenant_id": tenant.id,
                "person_id": results["create_person_link"].person_id,
                "email": input.email,
                "token": secrets.token_urlsafe(24),
                "status": "pending",
                "workspace_id": context.workspace_id,
            },
        )
        return success_result(
            InvitationLink(invitation_id=invitation["id"], token=invitation["token"])
        )

    async def revoke_invitation(
        context: WorkflowContext,
        input: TenantCreateInput,
        invitation: Optional[InvitationLink],
    ) -> None:
        if invitation is not None:
            await store.delete("invitations", invitation.invitation_id)

    async def record_tenant_stay(
        context: WorkflowContext, input: TenantCreateInput, results: Mapping[str, Any]
    ) -> ServiceResult[TenantStay]:
        tenant: TenantRow = results["create_tenant_row"]
        stay = await store.insert(
            "tenant_stays",
            {
                "tenant_id": tenant.id,
                "property_id": input.property_id,
                "room_id": input.room_id,
                "join_date": input.check_in_date.isoformat(),
                "monthly_rent": input.monthly_rent,
                "status": "active",
            },
        )
        return success_result(TenantStay.model_validate(stay))

    def cascades(
        context: WorkflowContext, input: TenantCreateInput, results: TenantCreateResults
    ) -> list[CascadeEffect]:
        return [
            CascadeEffect(
                entity_type=EntityType.ROOM,
                entity_id=input.room_id,
                action=AuditAction.STATUS_CHANGE,
                data={"status": "occupied"},
            )
        ]

    def audit_events(
        context: WorkflowContext, input: TenantCreateInput, results: TenantCreateResults
    ) -> list[AuditEvent]:
        tenant = results.create_tenant_row
        return [
            create_audit_event(
                EntityType.TENANT,
                tenant.id,
                AuditAction.CREATE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
                after=tenant.model_dump(),
                metadata={"workflow_id": context.workflow_id},
            )
        ]

    def notifications(
        context: WorkflowContext, input: TenantCreateInput, results: TenantCreateResults
    ) -> list[NotificationPayload]:
        tenant = results.create_tenant_row
        payloads = []
        if input.send_welcome_notification:
            payloads.append(
                build_welcome_notification(
                    tenant.id, property_name=input.property_name, tenant_name=input.name
                )
            )
        if results.link_invitation is not None:
            payloads.append(
                build_invitation_notification(
                    results.create_person_link.person_id,
                    ActorRole.TENANT,
                    workspace_name=input.workspace_name,
                    inviter_name=input.inviter_name,
                    token=results.link_invitation.token,
                )
            )
        return payloads

    def build_output(results: TenantCreateResults) -> TenantCreateOutput:
        return TenantCreateOutput(
            tenant_id=results.create_tenant_row.id,
            person_id=results.create_person_link.person_id,
            tenant_stay_id=results.record_tenant_stay.id if results.record_tenant_stay else None,
            invitation_sent=results.link_invitation is not None,
        )

    return WorkflowDefinition(
        name=TENANT_CREATE,
        steps=[
            StepDefinition("create_person_link", create_person_link, rollback=delete_person_link),
            StepDefinition("create_tenant_row", create_tenant_row, rollback=delete_tenant_row),
            StepDefinition("link_invitation", link_invitation, rollback=revoke_invitation),
            StepDefinition(
                "record_tenant_stay",
                record_tenant_stay,
                optional=True,
                no_rollback_reason="last step; nothing can fail after it",
            ),
        ],
        cascades=cascades,
        audit_events=audit_events,
        notifications=notifications,
        build_output=build_output,
        results_type=TenantCreateResults,
        output_type=TenantCreateOutput,
    )
