"""Tests for the step executor."""

import pytest

from propflow.contracts import ActorRole, StepStatus
from propflow.errors import (
    ErrorCode,
    ServiceException,
    ServiceResult,
    error_result,
    service_error,
    success_result,
)
from propflow.execute import create_workflow_context, execute_step


@pytest.fixture
def context():
    return create_workflow_context(
        "tenant_create", "owner_1", ActorRole.OWNER, "ws_1", metadata={"source": "test"}
    )


def test_create_workflow_context(context):
    assert context.workflow_type == "tenant_create"
    assert context.actor_role == ActorRole.OWNER
    assert context.metadata == {"source": "test"}
    assert context.steps == []


@pytest.mark.asyncio
async def test_successful_step_is_recorded(context):
    async def executor():
        return success_result({"id": "t_1"})

    result = await execute_step(context, "create_tenant", executor)

    assert result.success is True
    step = context.steps[0]
    assert step.id == "step_1"
    assert step.name == "create_tenant"
    assert step.status == StepStatus.COMPLETED
    assert step.result == {"id": "t_1"}
    assert step.started_at <= step.completed_at


@pytest.mark.asyncio
async def test_step_is_in_progress_while_running(context):
    seen = []

    async def executor():
        seen.append(context.steps[-1].status)
        return success_result(None)

    await execute_step(context, "lookup", executor)

    assert seen == [StepStatus.IN_PROGRESS]


@pytest.mark.asyncio
async def test_error_result_marks_step_failed(context):
    async def executor():
        return error_result(service_error(ErrorCode.ROOM_AT_CAPACITY, "Room is full"))

    result = await execute_step(context, "assign_room", executor)

    assert result.error.code == ErrorCode.ROOM_AT_CAPACITY
    assert context.steps[0].status == StepStatus.FAILED
    assert context.steps[0].error.message == "Room is full"


@pytest.mark.asyncio
async def test_exception_becomes_step_failure(context):
    async def executor():
        raise RuntimeError("database unavailable")

    result = await execute_step(context, "create_bill", executor)

    assert result.success is False
    assert result.error.code == ErrorCode.WORKFLOW_STEP_FAILED
    assert result.error.message == "Step create_bill failed: database unavailable"
    assert result.error.details == {"step": "create_bill"}
    assert isinstance(result.error.original_error, RuntimeError)
    assert context.steps[0].status == StepStatus.FAILED


@pytest.mark.asyncio
async def test_service_exception_keeps_its_error(context):
    async def executor():
        raise ServiceException(service_error(ErrorCode.PENDING_DUES, "Tenant has dues"))

    result = await execute_step(context, "check_dues", executor)

    assert result.error.code == ErrorCode.PENDING_DUES


@pytest.mark.asyncio
async def test_plain_return_value_is_wrapped(context):
    async def executor():
        return 42

    result = await execute_step(context, "count", executor)

    assert result == success_result(42)


@pytest.mark.asyncio
async def test_failure_without_error_gets_one(context):
    async def executor():
        return ServiceResult(success=False)

    result = await execute_step(context, "silent", executor)

    assert result.error.code == ErrorCode.WORKFLOW_STEP_FAILED


@pytest.mark.asyncio
async def test_step_ids_follow_execution_order(context):
    async def executor():
        return success_result(None)

    for name in ("a", "b", "c"):
        await execute_step(context, name, executor)

    assert [s.id for s in context.steps] == ["step_1", "step_2", "step_3"]
    assert len(context.completed_steps()) == 3
