"""Approval gate: human votes that pause and resume workflow instances."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Optional

from .contracts import (
    ApprovalConfig,
    ApprovalFilter,
    ApprovalTask,
    Approver,
    TaskStatus,
    VoteAction,
    WorkflowInstance,
    utc_now,
)
from .engine import InstanceStateMachine
from .errors import (
    ApprovalExpiredError,
    ApprovalRejectedError,
    ConcurrentUpdateError,
    NotFoundError,
)
from .persistence import WorkflowRepository
from .transitions import Effect, Transition, apply_vote, close_task, expire_task

logger = logging.getLogger(__name__)


class ApprovalGate:
    """Creates approval tasks, records votes and hands outcomes to the engine."""

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: InstanceStateMachine,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_retries: int = 5,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._clock = clock
        self._max_retries = max_retries

    async def create_task(
        self, instance: WorkflowInstance, step_index: int, config: ApprovalConfig
    ) -> ApprovalTask:
        now = self._clock()
        task = ApprovalTask(
            instance_id=instance.id,
            step_index=step_index,
            type=config.type,
            approvers=[Approver(user=user) for user in config.approvers],
            required_approvals=config.required_approvals,
            required_percentage=config.required_percentage,
            deadline=config.resolve_deadline(now),
            created_at=now,
            updated_at=now,
        )
        task = await self._repository.create_task(task)
        logger.info(
            f"Created {task.type.value} approval task {task.id} for instance "
            f"{instance.id} step {step_index}"
        )
        return task

    async def vote(
        self,
        task_id: str,
        user_id: str,
        action: VoteAction | str,
        comment: Optional[str] = None,
    ) -> ApprovalTask:
        """Record a vote and, when it decides the task, resume or fail the instance.

        Votes on a task that is no longer pending return it unchanged.
        """
        action = VoteAction(action)
        task, _ = await self._update(
            task_id,
            lambda current: apply_vote(current, user_id, action, comment, self._clock()),
        )
        return task

    async def expire(self, task: ApprovalTask, now: Optional[datetime] = None) -> bool:
        """Expire ``task`` if its deadline has passed. Returns True if this call did it."""
        now = now or self._clock()
        _, changed = await self._update(task.id, lambda current: expire_task(current, now))
        return changed

    async def close_for_instance(self, instance_id: str) -> int:
        """Expire every pending task of an instance that has reached a terminal status."""
        now = self._clock()
        closed = 0
        for task in await self._repository.list_tasks(
            status=TaskStatus.PENDING, instance_id=instance_id
        ):
            _, changed = await self._update(task.id, lambda current: close_task(current, now))
            if changed:
                closed += 1
                logger.info(f"Closed approval task {task.id} of ended instance {instance_id}")
        return closed

    async def list_pending(
        self, filter: Optional[ApprovalFilter] = None
    ) -> list[ApprovalTask]:
        filter = filter or ApprovalFilter()
        return await self._repository.list_tasks(
            status=TaskStatus.PENDING,
            instance_id=filter.instance_id,
            approver=filter.approver,
        )

    # ------------------------------------------------------------------
    async def _update(
        self,
        task_id: str,
        transition: Callable[[ApprovalTask], Transition[ApprovalTask]],
    ) -> tuple[ApprovalTask, bool]:
        for _ in range(self._max_retries):
            task = await self._repository.get_task(task_id)
            if task is None:
                raise NotFoundError("ApprovalTask", task_id)
            result = transition(task)
            if not result.changed:
                return task, False
            stored = await self._repository.update_task(result.state)
            if stored is None:
                logger.debug(f"Retrying write of approval task {task_id} after a lost race")
                continue
            await self._apply_effects(stored, result.effects)
            return stored, True
        raise ConcurrentUpdateError(
            f"Approval task {task_id} kept changing after {self._max_retries} attempts"
        )

    async def _apply_effects(self, task: ApprovalTask, effects: tuple[Effect, ...]) -> None:
        if Effect.RESUME_INSTANCE in effects:
            logger.info(f"Approval task {task.id} approved (decided by {task.decided_by})")
            instance = await self._repository.get_instance(task.instance_id)
            if instance is not None:
                await self._engine.resume(instance, task=task)
        elif Effect.FAIL_INSTANCE in effects:
            if task.status == TaskStatus.REJECTED:
                error: Exception = ApprovalRejectedError(task.id, task.decided_by or "")
            else:
                error = ApprovalExpiredError(task.id, task.deadline or task.updated_at)
            logger.info(f"Approval task {task.id} {task.status.value}")
            instance = await self._repository.get_instance(task.instance_id)
            if instance is not None:
                await self._engine.fail(instance, error, task.step_index)
