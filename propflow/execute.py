"""Step execution for propflow workflows."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from .contracts import ActorRole, StepStatus, WorkflowContext, WorkflowStep, utcnow
from .errors import (
    ErrorCode,
    ServiceException,
    ServiceResult,
    error_result,
    service_error,
    success_result,
)

logger = logging.getLogger(__name__)


def create_workflow_context(
    workflow_type: str,
    actor_id: str,
    actor_role: ActorRole,
    workspace_id: str,
    metadata: Optional[dict[str, Any]] = None,
) -> WorkflowContext:
    return WorkflowContext(
        workflow_type=workflow_type,
        actor_id=actor_id,
        actor_role=actor_role,
        workspace_id=workspace_id,
        metadata=dict(metadata or {}),
    )


async def execute_step(
    context: WorkflowContext,
    name: str,
    executor: Callable[[], Awaitable[ServiceResult[Any]]],
) -> ServiceResult[Any]:
    """Run ``executor`` as step ``name`` of ``context``.

    The step record is appended in ``in_progress`` before the executor is
    awaited and stays on the context whatever the outcome. Exceptions never
    escape: they become a ``WORKFLOW_STEP_FAILED`` error, except
    :class:`ServiceException` which carries its own error.
    """

    step = WorkflowStep(
        id=f"step_{len(context.steps) + 1}",
        name=name,
        status=StepStatus.IN_PROGRESS,
        started_at=utcnow(),
    )
    context.steps.append(step)

    try:
        result = await executor()
    except ServiceException as exc:
        result = error_result(exc.error)
    except Exception as exc:
        logger.exception(f"[{context.workflow_id}] Step {name!r} raised")
        result = error_result(
            service_error(
                ErrorCode.WORKFLOW_STEP_FAILED,
                f"Step {name} failed: {exc}",
                details={"step": name},
                original_error=exc,
            )
        )
    else:
        if not isinstance(result, ServiceResult):
            result = success_result(result)
        elif not result.success and result.error is None:
            result = error_result(
                service_error(
                    ErrorCode.WORKFLOW_STEP_FAILED,
                    f"Step {name} failed",
                    details={"step": name},
                )
            )

    step.completed_at = utcnow()
    if result.success:
        step.status = StepStatus.COMPLETED
        step.result = result.data
    else:
        step.status = StepStatus.FAILED
        step.error = result.error
        logger.info(f"[{context.workflow_id}] Step {name!r} failed: {result.error.message}")
    return result
