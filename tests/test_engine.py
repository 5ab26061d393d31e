import asyncio

import pytest
from pydantic import BaseModel

import propflow.engine as engine_module
from propflow.audit import create_audit_event
from propflow.cascade import CascadeApplier, InMemoryEntityStore
from propflow.config import IdempotencyConfig, PropflowConfig
from propflow.contracts import (
    ActorRole,
    AuditAction,
    CascadeEffect,
    EntityType,
    WorkflowResult,
)
from propflow.definition import StepDefinition, WorkflowDefinition
from propflow.engine import OperationOptions, WorkflowEngine, execute_workflow
from propflow.errors import ErrorCode, error_result, service_error, success_result
from propflow.idempotency import InMemoryIdempotencyStore
from propflow.notifications import build_welcome_notification


class StepLog:
    """Builds steps that record every execution and rollback."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.rollbacks: list[str] = []

    def step(
        self,
        name,
        *,
        fail=False,
        raises=False,
        optional=False,
        rollback=True,
        rollback_raises=False,
    ):
        async def execute(context, input, prior):
            self.calls.append(name)
            if raises:
                raise RuntimeError(f"{name} exploded")
            if fail:
                return error_result(
                    service_error(ErrorCode.VALIDATION_ERROR, f"{name} failed")
                )
            return success_result({"step": name, "seen": sorted(prior)})

        async def undo(context, input, step_result):
            self.rollbacks.append(name)
            if rollback_raises:
                raise RuntimeError(f"rollback of {name} exploded")

        return StepDefinition(
            name,
            execute,
            rollback=undo if rollback else None,
            optional=optional,
            no_rollback_reason=None if rollback else "nothing to undo",
        )


class Output(BaseModel):
    steps: list[str]


def _definition(steps, **kwargs):
    def audit_events(context, input, results):
        return [
            create_audit_event(
                EntityType.TENANT,
                input["tenant_id"],
                AuditAction.UPDATE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
                before={"name": "old"},
                after={"name": "new"},
            ),
            create_audit_event(
                EntityType.ROOM,
                "room_1",
                AuditAction.STATUS_CHANGE,
                actor_id=context.actor_id,
                actor_role=context.actor_role,
                workspace_id=context.workspace_id,
            ),
        ]

    def notifications(context, input, results):
        return [
            build_welcome_notification(
                input["tenant_id"], property_name="Maple House", tenant_name="Asha"
            )
        ]

    options = dict(
        name="test_flow",
        steps=steps,
        audit_events=audit_events,
        notifications=notifications,
        build_output=lambda results: Output(steps=sorted(results)),
        output_type=Output,
    )
    options.update(kwargs)
    return WorkflowDefinition(**options)


INPUT = {"tenant_id": "t_1"}


async def _run(engine, definition, **options):
    return await engine.execute(
        definition, INPUT, "user_1", ActorRole.OWNER, "ws_1", **options
    )


@pytest.mark.asyncio
async def test_successful_run_counts_steps_and_writes_audit_batch(engine, audit, outbox):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("b"), log.step("c")])

    result = await _run(engine, definition)

    assert result.success is True
    assert result.steps_completed == result.steps_total == 3
    assert result.data == Output(steps=["a", "b", "c"])
    assert result.failed_optional_steps is None
    assert result.workflow_id.startswith("wf_")

    assert [(e.entity_type, e.entity_id) for e in audit.events] == [
        (EntityType.TENANT, "t_1"),
        (EntityType.ROOM, "room_1"),
    ]
    assert result.audit_events == [e.id for e in audit.events]
    assert audit.events[0].changes.fields_changed == ["name"]

    assert len(outbox.messages) == 2
    assert result.notifications_sent == [",".join(m.id for m in outbox.messages)]


@pytest.mark.asyncio
async def test_steps_see_read_only_results_of_previous_steps(engine):
    seen = {}

    async def first(context, input, prior):
        return success_result("first-result")

    async def second(context, input, prior):
        seen.update(prior)
        with pytest.raises(TypeError):
            prior["first"] = "tampered"
        return success_result(None)

    definition = WorkflowDefinition(
        name="chain",
        steps=[
            StepDefinition("first", first, no_rollback_reason="pure"),
            StepDefinition("second", second),
        ],
        build_output=lambda results: dict(results),
    )

    result = await _run(engine, definition)

    assert result.success
    assert seen == {"first": "first-result"}
    assert result.data == {"first": "first-result", "second": None}


@pytest.mark.asyncio
async def test_required_failure_rolls_back_completed_steps_in_reverse(
    engine, audit, outbox
):
    log = StepLog()
    definition = _definition(
        [log.step("a"), log.step("b"), log.step("c", fail=True), log.step("d")]
    )

    result = await _run(engine, definition)

    assert result.success is False
    assert log.calls == ["a", "b", "c"]
    assert log.rollbacks == ["b", "a"]
    assert result.steps_completed == 2
    assert result.steps_total == 4
    assert [e.message for e in result.errors] == ["c failed"]
    assert result.audit_events is None
    assert audit.events == []
    assert outbox.messages == []


@pytest.mark.asyncio
async def test_raised_exception_becomes_step_failed_error(engine):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("b", raises=True)])

    result = await _run(engine, definition)

    assert result.success is False
    assert result.errors[0].code == ErrorCode.WORKFLOW_STEP_FAILED
    assert "b exploded" in result.errors[0].message
    assert log.rollbacks == ["a"]


@pytest.mark.asyncio
async def test_rollback_failure_does_not_stop_earlier_rollbacks(engine):
    log = StepLog()
    definition = _definition(
        [log.step("a"), log.step("b", rollback_raises=True), log.step("c", fail=True)]
    )

    result = await _run(engine, definition)

    assert result.success is False
    assert log.rollbacks == ["b", "a"]


@pytest.mark.asyncio
async def test_optional_failure_is_reported_once_and_audited(engine, audit):
    log = StepLog()
    definition = _definition(
        [log.step("a"), log.step("extra", fail=True, optional=True), log.step("c")]
    )

    result = await _run(engine, definition)

    assert result.success is True
    assert result.failed_optional_steps == ["extra"]
    assert log.calls == ["a", "extra", "c"]
    assert log.rollbacks == []
    assert result.steps_completed == 2
    assert result.steps_total == 3
    assert result.data == Output(steps=["a", "c"])

    summary = [e for e in audit.events if e.entity_type == EntityType.WORKFLOW]
    assert len(summary) == 1
    assert summary[0].entity_id == result.workflow_id
    assert summary[0].metadata["failed_optional_steps"] == [
        {"step": "extra", "code": "VALIDATION_ERROR", "message": "extra failed"}
    ]
    assert len(result.audit_events) == 3


@pytest.mark.asyncio
async def test_skip_flags_suppress_audit_and_notifications(engine, audit, outbox):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("opt", fail=True, optional=True)])

    result = await _run(engine, definition, skip_audit=True, skip_notifications=True)

    assert result.success is True
    assert result.audit_events == []
    assert result.notifications_sent == []
    assert audit.events == []
    assert outbox.messages == []


@pytest.mark.asyncio
async def test_cascades_are_applied_after_success(engine, entity_store):
    await entity_store.insert("rooms", {"id": "room_1", "status": "vacant"})
    await entity_store.insert("tenants", {"id": "t_1", "status": "active"})
    log = StepLog()

    def cascades(context, input, results):
        return [
            CascadeEffect(
                entity_type=EntityType.ROOM,
                entity_id="room_1",
                action=AuditAction.STATUS_CHANGE,
                data={"status": "occupied"},
            ),
            CascadeEffect(
                entity_type=EntityType.TENANT,
                entity_id="missing",
                action=AuditAction.UPDATE,
                data={"x": 1},
            ),
        ]

    result = await _run(engine, _definition([log.step("a")], cascades=cascades))

    assert result.success is True
    room = await entity_store.get("rooms", "room_1")
    assert room["status"] == "occupied"
    assert "updated_at" in room


@pytest.mark.asyncio
async def test_failing_builders_do_not_fail_the_workflow(engine, audit):
    log = StepLog()

    def broken(context, input, results):
        raise KeyError("nope")

    definition = _definition(
        [log.step("a")], cascades=broken, audit_events=broken, notifications=broken
    )

    result = await _run(engine, definition)

    assert result.success is True
    assert result.audit_events == []
    assert result.notifications_sent == []


@pytest.mark.asyncio
async def test_same_idempotency_key_replays_identical_result(
    engine, audit, outbox, idempotency_store
):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("b")])

    first = await _run(engine, definition, idempotency_key="key-1")
    await engine.drain()
    second = await _run(engine, definition, idempotency_key="key-1")

    assert second.model_dump_json() == first.model_dump_json()
    assert isinstance(second.data, Output)
    assert log.calls == ["a", "b"]
    assert len(audit.events) == 2
    assert len(outbox.messages) == 2

    record = await idempotency_store.get("key-1")
    assert record.workflow_name == "test_flow"
    assert record.result["workflow_id"] == first.workflow_id


@pytest.mark.asyncio
async def test_failed_result_is_replayed_too(engine):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("b", fail=True)])

    first = await _run(engine, definition, idempotency_key="key-2")
    await engine.drain()
    second = await _run(engine, definition, idempotency_key="key-2")

    assert second.success is False
    assert second.model_dump_json() == first.model_dump_json()
    assert log.calls == ["a", "b"]


@pytest.mark.asyncio
async def test_different_keys_run_independently(engine):
    log = StepLog()
    definition = _definition([log.step("a")])

    await _run(engine, definition, idempotency_key="k1")
    await _run(engine, definition, idempotency_key="k2")
    await engine.drain()

    assert log.calls == ["a", "a"]


@pytest.mark.asyncio
async def test_build_output_error_rolls_back_and_fails(engine, audit, outbox):
    log = StepLog()

    def broken_output(results):
        raise KeyError("steps")

    definition = _definition([log.step("a"), log.step("b")], build_output=broken_output)

    result = await _run(engine, definition)

    assert result.success is False
    assert result.steps_completed == 2
    assert result.errors[0].code == ErrorCode.WORKFLOW_STEP_FAILED
    assert result.errors[0].details == {"step": "build_output"}
    assert log.rollbacks == ["b", "a"]
    assert audit.events == []
    assert outbox.messages == []


class NeedsMissingStep(BaseModel):
    a: dict
    missing: dict


@pytest.mark.asyncio
async def test_invalid_results_type_rolls_back_and_fails(engine, audit):
    log = StepLog()
    definition = _definition([log.step("a")], results_type=NeedsMissingStep)

    result = await _run(engine, definition)

    assert result.success is False
    assert result.errors[0].code == ErrorCode.WORKFLOW_STEP_FAILED
    assert log.rollbacks == ["a"]
    assert audit.events == []


@pytest.mark.asyncio
async def test_output_failure_is_replayed_for_the_same_key(engine):
    log = StepLog()

    def broken_output(results):
        raise ValueError("bad output")

    broken = _definition([log.step("a")], build_output=broken_output)

    first = await _run(engine, broken, idempotency_key="key-out")
    await engine.drain()
    second = await _run(engine, _definition([log.step("a")]), idempotency_key="key-out")

    assert first.success is False
    assert second.model_dump_json() == first.model_dump_json()
    assert second.errors[0].code == ErrorCode.WORKFLOW_STEP_FAILED
    assert log.calls == ["a"]


class StoreDownIdempotencyStore(InMemoryIdempotencyStore):
    async def store(self, *args, **kwargs):
        raise ConnectionError("idempotency backend down")


@pytest.mark.asyncio
async def test_failed_store_releases_the_claim(audit):
    store = StoreDownIdempotencyStore()
    engine = WorkflowEngine(audit=audit, idempotency=store)
    log = StepLog()
    definition = _definition([log.step("a")])

    first = await _run(engine, definition, idempotency_key="key-4")
    await engine.drain()
    assert await store.get("key-4") is None

    second = await _run(engine, definition, idempotency_key="key-4")
    await engine.drain()

    assert first.success is True
    assert second.success is first.success
    assert log.calls == ["a", "a"]


@pytest.mark.asyncio
async def test_interrupted_run_releases_the_claim(engine, idempotency_store):
    async def interrupted(context, input, prior):
        raise asyncio.CancelledError()

    log = StepLog()
    definition = _definition([log.step("a"), StepDefinition("b", interrupted)])

    with pytest.raises(asyncio.CancelledError):
        await _run(engine, definition, idempotency_key="key-5")

    assert await idempotency_store.get("key-5") is None
    retry = await _run(engine, _definition([log.step("a")]), idempotency_key="key-5")
    await engine.drain()
    assert retry.success is True
    assert log.calls == ["a", "a"]


@pytest.mark.asyncio
async def test_release_leaves_a_key_held_by_another_caller(audit):
    store = InMemoryIdempotencyStore()
    await store.check("held", "test_flow", "someone_else", "ws_1")
    engine = WorkflowEngine(
        audit=audit,
        idempotency=store,
        config=PropflowConfig(idempotency=IdempotencyConfig(in_flight_wait_seconds=0.1)),
    )

    result = await _run(engine, _definition([StepLog().step("a")]), idempotency_key="held")

    assert result.errors[0].code == ErrorCode.CONCURRENT_MODIFICATION
    assert (await store.get("held")).actor_id == "someone_else"


class UnavailableIdempotencyStore:
    async def check(self, *args, **kwargs):
        raise ConnectionError("idempotency backend down")

    async def store(self, *args, **kwargs):
        raise ConnectionError("idempotency backend down")

    async def get(self, key):
        raise ConnectionError("idempotency backend down")

    async def release(self, key):
        raise ConnectionError("idempotency backend down")

    async def purge_expired(self):
        raise ConnectionError("idempotency backend down")


@pytest.mark.asyncio
@pytest.mark.parametrize("fail_step", [False, True])
async def test_unavailable_idempotency_store_keeps_outcome(audit, outbox, fail_step):
    log = StepLog()
    definition = _definition([log.step("a"), log.step("b", fail=fail_step)])

    healthy = WorkflowEngine(audit=audit)
    broken = WorkflowEngine(audit=audit, idempotency=UnavailableIdempotencyStore())

    expected = await _run(healthy, definition)
    actual = await _run(broken, definition, idempotency_key="key-3")
    await broken.drain()
    again = await _run(broken, definition, idempotency_key="key-3")

    ignored = {"workflow_id", "audit_events", "notifications_sent"}
    assert actual.model_dump(exclude=ignored) == expected.model_dump(exclude=ignored)
    assert again.model_dump(exclude=ignored) == expected.model_dump(exclude=ignored)
    assert actual.success is (not fail_step)


@pytest.mark.asyncio
async def test_in_flight_key_times_out_with_concurrent_modification(audit):
    store = InMemoryIdempotencyStore()
    await store.check("busy", "test_flow", "someone_else", "ws_1")
    engine = WorkflowEngine(
        audit=audit,
        idempotency=store,
        config=PropflowConfig(idempotency=IdempotencyConfig(in_flight_wait_seconds=0.2)),
    )
    log = StepLog()

    result = await _run(engine, _definition([log.step("a")]), idempotency_key="busy")

    assert result.success is False
    assert result.errors[0].code == ErrorCode.CONCURRENT_MODIFICATION
    assert log.calls == []


@pytest.mark.asyncio
async def test_waits_for_in_flight_key_and_replays_its_result(engine, idempotency_store):
    await idempotency_store.check("late", "test_flow", "someone_else", "ws_1")
    cached = WorkflowResult(
        success=True,
        data={"steps": ["x"]},
        workflow_id="wf_1_abc",
        steps_completed=1,
        steps_total=1,
        audit_events=[],
        notifications_sent=[],
    )

    async def finish_later():
        await asyncio.sleep(0.1)
        await idempotency_store.store(
            "late", "test_flow", cached.to_cache(), "someone_else", "ws_1"
        )

    log = StepLog()
    finisher = asyncio.create_task(finish_later())
    result = await _run(engine, _definition([log.step("a")]), idempotency_key="late")
    await finisher

    assert log.calls == []
    assert result.workflow_id == "wf_1_abc"
    assert result.data == Output(steps=["x"])


@pytest.mark.asyncio
async def test_wrap_operation_audits_and_notifies_on_success(engine, audit, outbox):
    async def operation():
        return success_result({"id": "t_1"})

    options = OperationOptions(
        entity_type=EntityType.TENANT,
        entity_id="t_1",
        action=AuditAction.UPDATE,
        actor_id="user_1",
        actor_role=ActorRole.STAFF,
        workspace_id="ws_1",
        before={"phone": "1", "name": "A"},
        after={"phone": "2", "name": "A"},
        notifications=[
            build_welcome_notification("t_1", property_name="Maple", tenant_name="A")
        ],
    )

    result = await engine.wrap_operation(operation, options)

    assert result.success and result.data == {"id": "t_1"}
    assert len(audit.events) == 1
    assert audit.events[0].changes.fields_changed == ["phone"]
    assert len(outbox.messages) == 2


@pytest.mark.asyncio
async def test_wrap_operation_failure_records_nothing(engine, audit, outbox):
    async def operation():
        return error_result(service_error(ErrorCode.NOT_FOUND, "missing"))

    options = OperationOptions(
        entity_type=EntityType.TENANT,
        entity_id="t_1",
        action=AuditAction.DELETE,
        actor_id="user_1",
        actor_role=ActorRole.OWNER,
        workspace_id="ws_1",
    )

    result = await engine.wrap_operation(operation, options)

    assert result.success is False
    assert audit.events == []
    assert outbox.messages == []


@pytest.mark.asyncio
async def test_execute_workflow_uses_default_engine(engine, monkeypatch):
    monkeypatch.setattr(engine_module, "_engine_instance", engine)
    log = StepLog()

    result = await execute_workflow(
        _definition([log.step("a")]), INPUT, "user_1", "staff", "ws_1"
    )

    assert result.success is True
    assert log.calls == ["a"]


@pytest.mark.asyncio
async def test_default_engine_components_work_out_of_the_box():
    engine = WorkflowEngine(cascades=CascadeApplier(InMemoryEntityStore()))
    log = StepLog()

    result = await _run(engine, _definition([log.step("a")]), idempotency_key="k")
    await engine.drain()

    assert result.success is True
    assert len(result.audit_events) == 2
