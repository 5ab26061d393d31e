"""Declarative workflow definitions."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Generic, Mapping, Optional, Sequence, TypeVar

from pydantic import BaseModel

from .contracts import AuditEvent, CascadeEffect, NotificationPayload, WorkflowContext
from .errors import ServiceResult, WorkflowDefinitionError

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")

StepFn = Callable[[WorkflowContext, Any, Mapping[str, Any]], Awaitable[ServiceResult[Any]]]
RollbackFn = Callable[[WorkflowContext, Any, Any], Awaitable[None]]


@dataclass(frozen=True)
class StepDefinition:
    """One named unit of work.

    ``rollback`` receives the step's own result and compensates for it.
    Steps whose effect cannot or need not be undone must say so in
    ``no_rollback_reason``.
    """

    name: str
    execute: StepFn
    rollback: Optional[RollbackFn] = None
    optional: bool = False
    no_rollback_reason: Optional[str] = None


@dataclass(frozen=True)
class WorkflowDefinition(Generic[InputT, OutputT]):
    """Reusable template of a workflow: ordered steps plus result builders.

    Builders (``build_output``, ``cascades``, ``notifications`` and
    ``audit_events``) are pure functions of the results of the steps. When
    ``results_type`` is set, they receive an instance of it validated from
    the step results keyed by step name; results of optional steps that
    failed are absent, so their fields need a default. Without it they get a
    read-only mapping.

    ``output_type`` is used to turn cached outputs of idempotent replays back
    into the type ``build_output`` returns.
    """

    name: str
    steps: Sequence[StepDefinition]
    build_output: Callable[[Any], OutputT]
    cascades: Optional[Callable[[WorkflowContext, InputT, Any], list[CascadeEffect]]] = None
    notifications: Optional[
        Callable[[WorkflowContext, InputT, Any], list[NotificationPayload]]
    ] = None
    audit_events: Optional[Callable[[WorkflowContext, InputT, Any], list[AuditEvent]]] = None
    results_type: Optional[type[BaseModel]] = None
    output_type: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.name:
            raise WorkflowDefinitionError("Workflow definitions need a name")
        if not self.steps:
            raise WorkflowDefinitionError(f"Workflow {self.name!r} has no steps")

        seen: set[str] = set()
        for step in self.steps:
            if step.name in seen:
                raise WorkflowDefinitionError(
                    f"Workflow {self.name!r} declares step {step.name!r} twice"
                )
            seen.add(step.name)

        for index, step in enumerate(self.steps):
            if step.optional or step.rollback or step.no_rollback_reason:
                continue
            later_required = [s.name for s in self.steps[index + 1 :] if not s.optional]
            if later_required:
                raise WorkflowDefinitionError(
                    f"Step {step.name!r} of workflow {self.name!r} has no rollback but "
                    f"{later_required[0]!r} can fail after it; add a rollback or a "
                    "no_rollback_reason"
                )

    @property
    def step_names(self) -> list[str]:
        return [step.name for step in self.steps]

    def results_view(self, results: Mapping[str, Any]) -> Any:
        """What builders receive for the collected step results."""
        if self.results_type is None:
            return MappingProxyType(dict(results))
        return self.results_type.model_validate(dict(results))
