"""Error taxonomy for the workflow engine."""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class FlowgateError(Exception):
    """Base class for all engine errors."""

    code = "FLOWGATE_ERROR"


class ValidationError(FlowgateError):
    """Malformed definition, trigger data or condition tree."""

    code = "VALIDATION_ERROR"


class NotFoundError(FlowgateError):
    """Unknown definition, instance, task or approver."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class ConditionError(FlowgateError):
    """Structural problem in a condition tree.

    Never escapes ``ConditionEvaluator.evaluate``; the evaluator fails closed.
    """

    code = "CONDITION_ERROR"


class StepExecutionError(FlowgateError):
    """A step handler raised, or its retries were exhausted."""

    code = "STEP_EXECUTION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        step_index: Optional[int] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.step_index = step_index
        self.attempts = attempts
        self.cause = cause


class StepTimeoutError(StepExecutionError):
    """The step timer fired before the handler returned."""

    code = "STEP_TIMEOUT"


class ApprovalRejectedError(FlowgateError):
    """An approver vetoed an approval task."""

    code = "APPROVAL_REJECTED"

    def __init__(self, task_id: str, approver: str) -> None:
        self.task_id = task_id
        self.approver = approver
        super().__init__(f"Approval {task_id} rejected by {approver}")


class ApprovalExpiredError(FlowgateError):
    """The approval deadline passed before quorum was reached."""

    code = "APPROVAL_EXPIRED"

    def __init__(self, task_id: str, deadline: datetime) -> None:
        self.task_id = task_id
        self.deadline = deadline
        super().__init__(f"Approval {task_id} expired at {deadline.isoformat()}")


class WorkflowTimeoutError(FlowgateError):
    """The instance outlived its definition's overall timeout."""

    code = "WORKFLOW_TIMEOUT"


class ConcurrentUpdateError(FlowgateError):
    """A compare-and-set write kept losing to concurrent writers."""

    code = "CONCURRENT_UPDATE"


def error_code(error: BaseException) -> str:
    """Return the taxonomy code for ``error`` (``UNKNOWN_ERROR`` for foreign ones)."""
    code = getattr(error, "code", None)
    return code if isinstance(code, str) and code else "UNKNOWN_ERROR"
