"""Tests for workflow definition validation."""

from types import MappingProxyType

import pytest
from pydantic import BaseModel

from propflow.definition import StepDefinition, WorkflowDefinition
from propflow.errors import WorkflowDefinitionError, success_result


async def _noop(context, input, results):
    return success_result(None)


async def _undo(context, input, result):
    return None


def _workflow(*steps, **kwargs):
    return WorkflowDefinition(name="test", steps=list(steps), build_output=dict, **kwargs)


def test_steps_are_frozen_into_a_tuple():
    definition = _workflow(StepDefinition("a", _noop, rollback=_undo), StepDefinition("b", _noop))
    assert definition.steps == tuple(definition.steps)
    assert definition.step_names == ["a", "b"]


def test_empty_workflow_is_rejected():
    with pytest.raises(WorkflowDefinitionError, match="no steps"):
        _workflow()


def test_missing_name_is_rejected():
    with pytest.raises(WorkflowDefinitionError):
        WorkflowDefinition(name="", steps=[StepDefinition("a", _noop)], build_output=dict)


def test_duplicate_step_names_are_rejected():
    with pytest.raises(WorkflowDefinitionError, match="twice"):
        _workflow(StepDefinition("a", _noop, rollback=_undo), StepDefinition("a", _noop))


def test_step_without_rollback_before_required_step_is_rejected():
    with pytest.raises(WorkflowDefinitionError, match="no_rollback_reason"):
        _workflow(StepDefinition("a", _noop), StepDefinition("b", _noop))


def test_documented_missing_rollback_is_accepted():
    definition = _workflow(
        StepDefinition("lookup", _noop, no_rollback_reason="read-only"),
        StepDefinition("write", _noop),
    )
    assert definition.step_names == ["lookup", "write"]


def test_last_required_step_needs_no_rollback():
    _workflow(
        StepDefinition("a", _noop, rollback=_undo),
        StepDefinition("b", _noop),
        StepDefinition("c", _noop, optional=True),
    )


def test_results_view_is_read_only_without_results_type():
    definition = _workflow(StepDefinition("a", _noop))

    view = definition.results_view({"a": 1})

    assert isinstance(view, MappingProxyType)
    with pytest.raises(TypeError):
        view["a"] = 2


def test_results_view_validates_results_type():
    class Results(BaseModel):
        a: int
        b: str = "missing"

    definition = _workflow(StepDefinition("a", _noop), results_type=Results)

    view = definition.results_view({"a": "3"})

    assert view == Results(a=3)
