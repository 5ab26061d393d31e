"""Workflow engine: runs definitions with rollback, idempotency and audit."""

from __future__ import annotations

import asyncio
import logging
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pydantic import BaseModel, Field, TypeAdapter

from .audit import AuditRecorder, InMemoryAuditRecorder, create_audit_event, get_audit_recorder
from .cascade import CascadeApplier, InMemoryEntityStore, get_entity_store
from .config import PropflowConfig, load_config
from .contracts import (
    ActorRole,
    AuditAction,
    AuditEvent,
    EntityType,
    NotificationChannel,
    NotificationPayload,
    WorkflowContext,
    WorkflowResult,
    new_workflow_id,
)
from .definition import StepDefinition, WorkflowDefinition
from .errors import ErrorCode, ServiceError, ServiceResult, service_error
from .execute import create_workflow_context, execute_step
from .idempotency import IdempotencyStore, InMemoryIdempotencyStore, get_idempotency_store
from .notifications import InMemoryOutbox, NotificationDispatcher, get_notification_dispatcher
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OperationOptions(BaseModel):
    """What :meth:`WorkflowEngine.wrap_operation` records after a success."""

    entity_type: EntityType
    entity_id: str
    action: AuditAction
    actor_id: str
    actor_role: ActorRole
    workspace_id: str
    before: Optional[dict[str, Any]] = None
    after: Optional[dict[str, Any]] = None
    metadata: Optional[dict[str, Any]] = None
    notifications: list[NotificationPayload] = Field(default_factory=list)
    skip_audit: bool = False
    skip_notifications: bool = False


class WorkflowEngine:
    """Executes workflow definitions.

    Steps run strictly one after another. A failing required step triggers
    the rollback of every completed step, most recent first, and nothing else
    happens. After all required steps succeed the engine applies cascades,
    writes the audit batch and dispatches notifications; failures in those
    phases are logged and never change the outcome.
    """

    def __init__(
        self,
        audit: AuditRecorder | None = None,
        notifications: NotificationDispatcher | None = None,
        cascades: CascadeApplier | None = None,
        idempotency: IdempotencyStore | None = None,
        config: PropflowConfig | None = None,
    ) -> None:
        self.audit = audit or InMemoryAuditRecorder()
        self.notifications = notifications or NotificationDispatcher(
            {channel: InMemoryOutbox() for channel in NotificationChannel}
        )
        self.cascades = cascades or CascadeApplier(InMemoryEntityStore())
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.config = config or PropflowConfig()
        self._pending_stores: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # Public API
    async def execute(
        self,
        definition: WorkflowDefinition[Any, Any],
        input: Any,
        actor_id: str,
        actor_role: ActorRole | str,
        workspace_id: str,
        *,
        skip_audit: bool = False,
        skip_notifications: bool = False,
        metadata: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> WorkflowResult:
        actor_role = ActorRole(actor_role)

        claimed = False
        if idempotency_key:
            replay, claimed = await self._claim(
                definition, idempotency_key, actor_id, workspace_id
            )
            if replay is not None:
                return replay

        context = create_workflow_context(
            definition.name, actor_id, actor_role, workspace_id, metadata
        )
        logger.info(f"Starting workflow {definition.name} ({context.workflow_id})")

        try:
            result = await self._run(
                definition, input, context, skip_audit, skip_notifications
            )
        except BaseException:
            if claimed:
                await self._release(idempotency_key, definition.name)
            raise

        if idempotency_key:
            self._store_in_background(
                idempotency_key, definition.name, result, actor_id, workspace_id
            )
        return result

    async def wrap_operation(
        self,
        operation: Callable[[], Awaitable[ServiceResult[T]]],
        options: OperationOptions,
    ) -> ServiceResult[T]:
        """Run a single operation and, on success, audit it and notify."""

        result = await operation()
        if not result.success:
            return result

        if not options.skip_audit:
            event = create_audit_event(
                options.entity_type,
                options.entity_id,
                options.action,
                actor_id=options.actor_id,
                actor_role=options.actor_role,
                workspace_id=options.workspace_id,
                before=options.before,
                after=options.after,
                metadata=options.metadata,
            )
            logged = await self.audit.log_audit_event(event)
            if not logged.success:
                logger.error(
                    f"Audit event for {options.entity_type.value}/{options.entity_id} "
                    f"was not recorded: {logged.error.message}"
                )

        if options.notifications and not options.skip_notifications:
            await self.notifications.send_notifications(options.notifications)

        return result

    async def drain(self) -> None:
        """Wait for background idempotency writes to finish."""
        while self._pending_stores:
            await asyncio.gather(*list(self._pending_stores))

    # ------------------------------------------------------------------
    # Idempotency
    async def _claim(
        self,
        definition: WorkflowDefinition[Any, Any],
        key: str,
        actor_id: str,
        workspace_id: str,
    ) -> tuple[WorkflowResult | None, bool]:
        """Return a result to replay (or ``None``) and whether the key was claimed.

        ``(None, False)`` means the store is unavailable and the caller runs
        without deduplication.
        """

        settings = self.config.idempotency
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.in_flight_wait_seconds
        attempt = 0

        while True:
            try:
                check = await self.idempotency.check(
                    key, definition.name, actor_id, workspace_id, settings.ttl_minutes
                )
            except Exception:
                logger.exception(
                    f"Idempotency check for {definition.name} failed; running without it"
                )
                return None, False

            if check.is_duplicate and check.cached_result is not None:
                logger.info(f"Replaying cached result of {definition.name} for key {key}")
                return self._restore(definition, check.cached_result), False
            if not check.in_progress:
                return None, True

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(
                    f"Gave up waiting for in-flight {definition.name} with key {key}"
                )
                timeout = WorkflowResult(
                    success=False,
                    workflow_id=new_workflow_id(),
                    steps_completed=0,
                    steps_total=len(definition.steps),
                    errors=[
                        service_error(
                            ErrorCode.CONCURRENT_MODIFICATION,
                            "Another request with the same idempotency key is still running",
                            details={"idempotency_key": key},
                        )
                    ],
                )
                return timeout, False
            delay = compute_backoff(attempt, base=2.0, jitter=0.05, initial=0.05, cap=1.0)
            await asyncio.sleep(min(delay, remaining))
            attempt += 1

    @staticmethod
    def _restore(
        definition: WorkflowDefinition[Any, Any], cached: dict[str, Any]
    ) -> WorkflowResult:
        result = WorkflowResult.model_validate(cached)
        if result.success and definition.output_type is not None:
            result.data = TypeAdapter(definition.output_type).validate_python(result.data)
        return result

    def _store_in_background(
        self,
        key: str,
        workflow_name: str,
        result: WorkflowResult,
        actor_id: str,
        workspace_id: str,
    ) -> None:
        task = asyncio.create_task(
            self._store_result(key, workflow_name, result, actor_id, workspace_id)
        )
        self._pending_stores.add(task)
        task.add_done_callback(self._pending_stores.discard)

    async def _store_result(
        self,
        key: str,
        workflow_name: str,
        result: WorkflowResult,
        actor_id: str,
        workspace_id: str,
    ) -> None:
        try:
            await self.idempotency.store(
                key,
                workflow_name,
                result.to_cache(),
                actor_id,
                workspace_id,
                self.config.idempotency.ttl_minutes,
            )
        except Exception:
            logger.exception(
                f"Failed to store idempotency result of {workflow_name} ({result.workflow_id})"
            )
            await self._release(key, workflow_name)

    async def _release(self, key: str, workflow_name: str) -> None:
        try:
            await self.idempotency.release(key)
        except Exception:
            logger.exception(f"Failed to release idempotency key {key} of {workflow_name}")

    # ------------------------------------------------------------------
    # Execution
    async def _run(
        self,
        definition: WorkflowDefinition[Any, Any],
        input: Any,
        context: WorkflowContext,
        skip_audit: bool,
        skip_notifications: bool,
    ) -> WorkflowResult:
        results: dict[str, Any] = {}
        completed: list[tuple[StepDefinition, Any]] = []
        failed_optional: list[tuple[str, ServiceError]] = []

        for step in definition.steps:
            prior = MappingProxyType(dict(results))
            outcome = await execute_step(
                context,
                step.name,
                lambda: step.execute(context, input, prior),
            )

            if outcome.success:
                results[step.name] = outcome.data
                completed.append((step, outcome.data))
                continue

            if step.optional:
                logger.warning(
                    f"[{context.workflow_id}] Optional step {step.name!r} failed, continuing"
                )
                failed_optional.append((step.name, outcome.error))
                continue

            logger.warning(
                f"[{context.workflow_id}] Step {step.name!r} failed, rolling back "
                f"{len(completed)} completed step(s)"
            )
            await self._rollback(context, input, completed)
            return WorkflowResult(
                success=False,
                workflow_id=context.workflow_id,
                steps_completed=len(completed),
                steps_total=len(definition.steps),
                errors=[outcome.error],
            )

        try:
            view = definition.results_view(results)
            output = definition.build_output(view)
        except Exception as exc:
            logger.exception(
                f"[{context.workflow_id}] Building the output of {definition.name} failed, "
                f"rolling back {len(completed)} completed step(s)"
            )
            await self._rollback(context, input, completed)
            return WorkflowResult(
                success=False,
                workflow_id=context.workflow_id,
                steps_completed=len(completed),
                steps_total=len(definition.steps),
                errors=[
                    service_error(
                        ErrorCode.WORKFLOW_STEP_FAILED,
                        f"Building the output of {definition.name} failed: {exc}",
                        details={"step": "build_output"},
                        original_error=exc,
                    )
                ],
            )

        await self._apply_cascades(definition, input, context, view)

        audit_ids: list[str] = []
        if not skip_audit:
            audit_ids = await self._write_audit(
                definition, input, context, view, failed_optional
            )

        notification_ids: list[str] = []
        if not skip_notifications:
            notification_ids = await self._dispatch_notifications(
                definition, input, context, view
            )

        logger.info(f"Completed workflow {definition.name} ({context.workflow_id})")
        return WorkflowResult(
            success=True,
            data=output,
            workflow_id=context.workflow_id,
            steps_completed=len(context.completed_steps()),
            steps_total=len(definition.steps),
            audit_events=audit_ids,
            notifications_sent=notification_ids,
            failed_optional_steps=[name for name, _ in failed_optional] or None,
        )

    async def _rollback(
        self,
        context: WorkflowContext,
        input: Any,
        completed: list[tuple[StepDefinition, Any]],
    ) -> None:
        for step, step_result in reversed(completed):
            if step.rollback is None:
                continue
            try:
                await step.rollback(context, input, step_result)
                logger.info(f"[{context.workflow_id}] Rolled back step {step.name!r}")
            except Exception:
                logger.exception(
                    f"[{context.workflow_id}] Rollback failed for step {step.name!r}"
                )

    async def _apply_cascades(
        self,
        definition: WorkflowDefinition[Any, Any],
        input: Any,
        context: WorkflowContext,
        view: Any,
    ) -> None:
        if definition.cascades is None:
            return
        try:
            effects = definition.cascades(context, input, view)
        except Exception:
            logger.exception(f"[{context.workflow_id}] Building cascades failed")
            return
        for effect in effects:
            await self.cascades.apply(effect)

    async def _write_audit(
        self,
        definition: WorkflowDefinition[Any, Any],
        input: Any,
        context: WorkflowContext,
        view: Any,
        failed_optional: list[tuple[str, ServiceError]],
    ) -> list[str]:
        events: list[AuditEvent] = []
        if definition.audit_events is not None:
            try:
                events.extend(definition.audit_events(context, input, view))
            except Exception:
                logger.exception(f"[{context.workflow_id}] Building audit events failed")

        if failed_optional:
            events.append(
                create_audit_event(
                    EntityType.WORKFLOW,
                    context.workflow_id,
                    AuditAction.COMPLETE,
                    actor_id=context.actor_id,
                    actor_role=context.actor_role,
                    workspace_id=context.workspace_id,
                    metadata={
                        "workflow_type": context.workflow_type,
                        "failed_optional_steps": [
                            {"step": name, "code": error.code.value, "message": error.message}
                            for name, error in failed_optional
                        ],
                    },
                )
            )

        if not events:
            return []
        logged = await self.audit.log_audit_events(events)
        if not logged.success:
            logger.error(
                f"[{context.workflow_id}] Audit batch of {len(events)} event(s) "
                f"was not recorded: {logged.error.message}"
            )
            return []
        return logged.data

    async def _dispatch_notifications(
        self,
        definition: WorkflowDefinition[Any, Any],
        input: Any,
        context: WorkflowContext,
        view: Any,
    ) -> list[str]:
        if definition.notifications is None:
            return []
        try:
            payloads = definition.notifications(context, input, view)
        except Exception:
            logger.exception(f"[{context.workflow_id}] Building notifications failed")
            return []
        if not payloads:
            return []
        sent = await self.notifications.send_notifications(payloads)
        return sent.data if sent.success else []


# ----------------------------------------------------------------------
# Module-level helpers

_engine_instance: WorkflowEngine | None = None


def get_engine(config: Optional[PropflowConfig] = None) -> WorkflowEngine:
    """Factory function to obtain the process-wide engine."""

    global _engine_instance
    if _engine_instance is not None and config is None:
        return _engine_instance

    config = config or load_config()
    _engine_instance = WorkflowEngine(
        audit=get_audit_recorder(config=config),
        notifications=get_notification_dispatcher(config),
        cascades=CascadeApplier(get_entity_store(config=config)),
        idempotency=get_idempotency_store(config=config),
        config=config,
    )
    return _engine_instance


async def execute_workflow(
    definition: WorkflowDefinition[Any, Any],
    input: Any,
    actor_id: str,
    actor_role: ActorRole | str,
    workspace_id: str,
    **options: Any,
) -> WorkflowResult:
    """Run ``definition`` on the default engine. See :meth:`WorkflowEngine.execute`."""
    return await get_engine().execute(
        definition, input, actor_id, actor_role, workspace_id, **options
    )
