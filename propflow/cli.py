"""Command line interface for inspecting propflow state."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import typer

from propflow.audit import AuditQuery, get_audit_recorder
from propflow.config import configure_logging, load_config
from propflow.constants import DEFAULT_AUDIT_QUERY_LIMIT
from propflow.contracts import AuditAction, EntityType, StoredAuditEvent
from propflow.idempotency import get_idempotency_store

app = typer.Typer(help="CLI for propflow workflows")

# Command groups
audit_app = typer.Typer(help="Commands for reading the audit trail")
idempotency_app = typer.Typer(help="Commands for managing idempotency keys")

app.add_typer(audit_app, name="audit")
app.add_typer(idempotency_app, name="idempotency")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(
        None, help="Override the log level from the configuration"
    ),
) -> None:
    """propflow CLI entry point."""
    configure_logging(log_level or load_config().log_level)


def _echo_events(events: list[StoredAuditEvent]) -> None:
    if not events:
        typer.echo("No audit events found")
        return
    for event in events:
        line = (
            f"{event.created_at.isoformat()}\t{event.entity_type.value}/{event.entity_id}"
            f"\t{event.action.value}\t{event.actor_role.value}:{event.actor_id}"
        )
        if event.changes and event.changes.fields_changed:
            line += f"\t{','.join(event.changes.fields_changed)}"
        typer.echo(line)


@audit_app.command("query")
def audit_query(
    workspace: str = typer.Option(..., help="Workspace to read events from"),
    entity_type: Optional[EntityType] = typer.Option(None),
    entity_id: Optional[str] = typer.Option(None),
    action: Optional[AuditAction] = typer.Option(None),
    actor: Optional[str] = typer.Option(None, help="Only events by this actor id"),
    from_date: Optional[datetime] = typer.Option(None, "--from"),
    to_date: Optional[datetime] = typer.Option(None, "--to"),
    limit: int = typer.Option(DEFAULT_AUDIT_QUERY_LIMIT, min=1),
    offset: int = typer.Option(0, min=0),
) -> None:
    """
    List audit events of a workspace, newest first.

    Example:
        propflow audit query --workspace ws_1 --entity-type tenant --limit 10
        # Output: 2026-01-05T10:00:00+00:00    tenant/t_1    create    owner:u_1
    """
    query = AuditQuery(
        workspace_id=workspace,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        actor_id=actor,
        from_date=from_date,
        to_date=to_date,
        limit=limit,
        offset=offset,
    )
    result = asyncio.run(get_audit_recorder().query_audit_events(query))
    if not result.success:
        typer.secho(result.error.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_events(result.data)


@audit_app.command("history")
def audit_history(
    entity_type: EntityType,
    entity_id: str,
    workspace: str = typer.Option(..., help="Workspace the entity belongs to"),
) -> None:
    """Show the change history of one entity."""
    result = asyncio.run(
        get_audit_recorder().get_entity_history(entity_type, entity_id, workspace)
    )
    if not result.success:
        typer.secho(result.error.message, fg=typer.colors.RED)
        raise typer.Exit(code=1)
    _echo_events(result.data)


@idempotency_app.command("show")
def idempotency_show(key: str) -> None:
    """Show the live record stored for an idempotency key."""
    record = asyncio.run(get_idempotency_store().get(key))
    if record is None:
        typer.echo("Idempotency key not found")
        raise typer.Exit(code=1)
    state = "in flight" if record.result is None else "completed"
    typer.echo(f"{record.key}: {record.workflow_name} ({state})")
    typer.echo(f"Actor: {record.actor_id}  Workspace: {record.workspace_id or '-'}")
    typer.echo(f"Expires: {record.expires_at.isoformat()}")
    if record.result is not None:
        typer.echo(f"Success: {record.result.get('success')}")


@idempotency_app.command("purge")
def idempotency_purge() -> None:
    """Delete expired idempotency keys."""
    removed = asyncio.run(get_idempotency_store().purge_expired())
    typer.echo(f"Purged {removed} expired idempotency key(s)")
