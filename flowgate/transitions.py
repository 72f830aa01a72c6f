"""Pure state transitions for instances and approval tasks.

Every function takes the current state and returns a ``Transition``: a new
state plus the side effects the caller must carry out. Inputs are never
mutated. A transition out of a terminal state is a no-op (no effects), which
keeps ``fail``/``complete``/``cancel`` and task expiry idempotent.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .contracts import (
    ApprovalTask,
    ApprovalType,
    ApproverStatus,
    InstanceError,
    InstanceStatus,
    StepError,
    StepStatus,
    TaskStatus,
    VoteAction,
    WorkflowInstance,
)
from .errors import NotFoundError

StateT = TypeVar("StateT", WorkflowInstance, ApprovalTask)


class Effect(str, Enum):
    PERSIST = "persist"
    RESUME_INSTANCE = "resume_instance"
    FAIL_INSTANCE = "fail_instance"


@dataclass(frozen=True)
class Transition(Generic[StateT]):
    state: StateT
    effects: tuple[Effect, ...] = ()

    @property
    def changed(self) -> bool:
        return Effect.PERSIST in self.effects


def _duration_ms(start: Optional[datetime], end: datetime) -> Optional[int]:
    if start is None:
        return None
    return int((end - start).total_seconds() * 1000)


def _noop(state: StateT) -> Transition[StateT]:
    return Transition(state=state)


# ----------------------------------------------------------------------
# Instance transitions


def start_instance(instance: WorkflowInstance, now: datetime) -> Transition[WorkflowInstance]:
    if instance.status != InstanceStatus.PENDING:
        return _noop(instance)
    new = instance.model_copy(deep=True)
    new.status = InstanceStatus.RUNNING
    new.start_time = now
    new.current_step.index = 0
    new.current_step.start_time = now
    new.current_step.retry_count = 0
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))


def begin_step(instance: WorkflowInstance, now: datetime) -> Transition[WorkflowInstance]:
    index = instance.current_step.index
    if instance.is_terminal or index >= len(instance.steps):
        return _noop(instance)
    new = instance.model_copy(deep=True)
    record = new.steps[index]
    record.status = StepStatus.RUNNING
    record.start_time = now
    record.end_time = None
    record.error = None
    new.current_step.start_time = now
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))


def finish_step(
    instance: WorkflowInstance,
    now: datetime,
    *,
    status: StepStatus = StepStatus.COMPLETED,
    output: Any = None,
    error: Optional[StepError] = None,
    advance: bool = True,
    attempts: int = 0,
) -> Transition[WorkflowInstance]:
    """Close the current step record and optionally advance the index."""
    index = instance.current_step.index
    if instance.is_terminal or index >= len(instance.steps):
        return _noop(instance)
    new = instance.model_copy(deep=True)
    record = new.steps[index]
    record.status = status
    record.end_time = now
    record.output = output
    record.error = error
    new.current_step.retry_count = max(attempts - 1, 0)
    if advance:
        new.current_step.index = index + 1
        new.current_step.start_time = None
        new.current_step.retry_count = 0
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))


def complete_instance(
    instance: WorkflowInstance, now: datetime, *, skip_remaining: bool = False
) -> Transition[WorkflowInstance]:
    """Complete the instance.

    With ``skip_remaining`` (a workflow timeout completing early) every step
    record not yet closed is marked ``skipped`` and the index moves past the
    last step.
    """
    if instance.is_terminal:
        return _noop(instance)
    new = instance.model_copy(deep=True)
    if skip_remaining:
        for record in new.steps[new.current_step.index :]:
            if record.status in (StepStatus.PENDING, StepStatus.RUNNING):
                record.status = StepStatus.SKIPPED
                record.end_time = now
        new.current_step.index = len(new.steps)
        new.current_step.start_time = None
    new.status = InstanceStatus.COMPLETED
    new.end_time = now
    new.duration_ms = _duration_ms(new.start_time, now)
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))


def fail_instance(
    instance: WorkflowInstance,
    error: InstanceError,
    now: datetime,
    step_error: Optional[StepError] = None,
) -> Transition[WorkflowInstance]:
    """Fail the instance; ``step_error`` also closes the failing step record."""
    if instance.is_terminal:
        return _noop(instance)
    new = instance.model_copy(deep=True)
    new.status = InstanceStatus.FAILED
    new.error = error
    new.end_time = now
    new.duration_ms = _duration_ms(new.start_time, now)
    new.updated_at = now
    index = error.step_index
    if step_error is not None and index is not None and 0 <= index < len(new.steps):
        record = new.steps[index]
        if record.status in (StepStatus.PENDING, StepStatus.RUNNING):
            record.status = StepStatus.FAILED
            record.end_time = now
            record.error = step_error
    return Transition(new, (Effect.PERSIST,))


def cancel_instance(
    instance: WorkflowInstance, now: datetime
) -> Transition[WorkflowInstance]:
    if instance.is_terminal:
        return _noop(instance)
    new = instance.model_copy(deep=True)
    new.status = InstanceStatus.CANCELLED
    new.end_time = now
    new.duration_ms = _duration_ms(new.start_time, now)
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))


# ----------------------------------------------------------------------
# Approval task transitions


def quorum_reached(task: ApprovalTask) -> bool:
    approved = task.approved_count
    if task.type == ApprovalType.SINGLE:
        return approved >= 1
    if task.type == ApprovalType.MULTIPLE:
        return approved >= (task.required_approvals or 1)
    percentage = approved / len(task.approvers) * 100
    return percentage >= (task.required_percentage or 0)


def apply_vote(
    task: ApprovalTask,
    user: str,
    action: VoteAction,
    comment: Optional[str],
    now: datetime,
) -> Transition[ApprovalTask]:
    """Record ``user``'s vote and recompute the aggregate status.

    Re-voting overwrites the approver's previous vote. A single rejection
    vetoes the task whatever its type.
    """
    if task.find_approver(user) is None:
        raise NotFoundError("Approver", user)
    if task.is_terminal:
        return _noop(task)

    new = task.model_copy(deep=True)
    approver = new.find_approver(user)
    approver.status = (
        ApproverStatus.APPROVED if action == VoteAction.APPROVE else ApproverStatus.REJECTED
    )
    approver.comment = comment
    approver.timestamp = now
    new.updated_at = now

    if approver.status == ApproverStatus.REJECTED:
        new.status = TaskStatus.REJECTED
        new.decided_by = user
        return Transition(new, (Effect.PERSIST, Effect.FAIL_INSTANCE))
    if quorum_reached(new):
        new.status = TaskStatus.APPROVED
        new.decided_by = user
        return Transition(new, (Effect.PERSIST, Effect.RESUME_INSTANCE))
    return Transition(new, (Effect.PERSIST,))


def expire_task(task: ApprovalTask, now: datetime) -> Transition[ApprovalTask]:
    if task.is_terminal or task.deadline is None or task.deadline > now:
        return _noop(task)
    new = task.model_copy(deep=True)
    new.status = TaskStatus.EXPIRED
    new.updated_at = now
    return Transition(new, (Effect.PERSIST, Effect.FAIL_INSTANCE))


def close_task(task: ApprovalTask, now: datetime) -> Transition[ApprovalTask]:
    """Expire a task whose instance already ended, regardless of its deadline."""
    if task.is_terminal:
        return _noop(task)
    new = task.model_copy(deep=True)
    new.status = TaskStatus.EXPIRED
    new.updated_at = now
    return Transition(new, (Effect.PERSIST,))
