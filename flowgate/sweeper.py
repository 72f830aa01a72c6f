"""Background sweep expiring overdue approvals and timed-out instances."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from .approvals import ApprovalGate
from .contracts import TaskStatus, utc_now
from .engine import InstanceStateMachine
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        repository: WorkflowRepository,
        gate: ApprovalGate,
        engine: Optional[InstanceStateMachine] = None,
        *,
        interval: float = 60.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._repository = repository
        self._gate = gate
        self._engine = engine
        self.interval = interval
        self._clock = clock
        self._task: Optional[asyncio.Task] = None

    async def run_once(self, now: Optional[datetime] = None) -> int:
        """Expire every pending task due at ``now``; return how many this pass expired."""
        now = now or self._clock()
        due = await self._repository.list_tasks(status=TaskStatus.PENDING, due_before=now)
        expired = 0
        for task in due:
            if await self._gate.expire(task, now):
                expired += 1
        timed_out = await self._engine.enforce_timeouts(now) if self._engine else 0
        if expired or timed_out:
            logger.info(
                f"Sweep expired {expired} approval task(s) and timed out {timed_out} instance(s)"
            )
        return expired

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Expiry sweep failed")
            await asyncio.sleep(self.interval)
