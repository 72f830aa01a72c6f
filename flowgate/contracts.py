"""Core data contracts for flowgate workflows.

Field names are snake_case; the camelCase spelling of every field is
accepted on input so definitions authored as JSON/YAML documents
(``maxAttempts``, ``timeoutMs``...) validate unchanged.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------------------------------------------------
# Enumerations


class StepType(str, Enum):
    """Closed set of step kinds; each has one registered handler."""

    NOTIFICATION = "notification"
    EMAIL = "email"
    SMS = "sms"
    WEBHOOK = "webhook"
    FUNCTION = "function"
    DELAY = "delay"
    CONDITION = "condition"
    PARALLEL = "parallel"
    APPROVAL = "approval"


class FallbackAction(str, Enum):
    SKIP = "skip"
    RETRY = "retry"
    FAIL = "fail"
    ALTERNATE = "alternate"


class DefinitionStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class WorkflowType(str, Enum):
    APPOINTMENT = "appointment"
    PAYMENT = "payment"
    REVIEW = "review"
    REPORT = "report"
    CUSTOM = "custom"


class TimeoutAction(str, Enum):
    FAIL = "fail"
    COMPLETE = "complete"
    CALLBACK = "callback"


class VariableType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"


class InstanceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_INSTANCE_STATUSES = frozenset(
    {InstanceStatus.COMPLETED, InstanceStatus.FAILED, InstanceStatus.CANCELLED}
)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ApprovalType(str, Enum):
    SINGLE = "single"
    MULTIPLE = "multiple"
    PERCENTAGE = "percentage"


class ApproverStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class TaskStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXPIRED = "expired"


class VoteAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


# ----------------------------------------------------------------------
# Step configuration


class RetryPolicy(CamelModel):
    """Bounded retry with exponential backoff."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    initial_delay_ms: int = Field(
        default=1000,
        ge=0,
        validation_alias=AliasChoices("initial_delay_ms", "initialDelayMs", "initialDelay"),
    )


class ErrorHandling(CamelModel):
    continue_on_error: bool = False
    fallback_action: FallbackAction = FallbackAction.FAIL
    alternate: Optional[StepSpec] = None


class ApprovalConfig(CamelModel):
    """Configuration of an ``approval`` step."""

    type: ApprovalType = ApprovalType.SINGLE
    approvers: List[str] = Field(min_length=1)
    required_approvals: Optional[int] = Field(default=None, ge=1)
    required_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    deadline: Optional[datetime] = None
    deadline_ms: Optional[int] = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _check_quorum(self) -> ApprovalConfig:
        if len(set(self.approvers)) != len(self.approvers):
            raise ValueError("approvers must be unique")
        if self.type == ApprovalType.MULTIPLE:
            if self.required_approvals is None:
                raise ValueError("requiredApprovals is required for multiple approval")
            if self.required_approvals > len(self.approvers):
                raise ValueError("requiredApprovals exceeds the number of approvers")
        if self.type == ApprovalType.PERCENTAGE and self.required_percentage is None:
            raise ValueError("requiredPercentage is required for percentage approval")
        return self

    def resolve_deadline(self, now: datetime) -> Optional[datetime]:
        if self.deadline is not None:
            return self.deadline
        if self.deadline_ms is not None:
            return now + timedelta(milliseconds=self.deadline_ms)
        return None


class DelayConfig(CamelModel):
    duration_ms: int = Field(ge=0)


class ConditionConfig(CamelModel):
    condition: Any
    output_variable: Optional[str] = None


_TYPED_CONFIGS: Dict[StepType, type[CamelModel]] = {
    StepType.APPROVAL: ApprovalConfig,
    StepType.DELAY: DelayConfig,
    StepType.CONDITION: ConditionConfig,
}


class StepSpec(CamelModel):
    """Defines one step in a workflow definition."""

    name: str = Field(min_length=1)
    type: StepType
    config: Dict[str, Any] = Field(default_factory=dict)
    retry_policy: RetryPolicy = Field(
        default_factory=RetryPolicy,
        validation_alias=AliasChoices("retry_policy", "retryPolicy", "retryConfig"),
    )
    timeout_ms: Optional[int] = Field(
        default=30000,
        gt=0,
        validation_alias=AliasChoices("timeout_ms", "timeoutMs", "timeout"),
    )
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)

    @model_validator(mode="after")
    def _check_typed_config(self) -> StepSpec:
        config_model = _TYPED_CONFIGS.get(self.type)
        if config_model is not None:
            config_model.model_validate(self.config)
        if self.error_handling.alternate is not None:
            if self.error_handling.alternate.type == StepType.APPROVAL:
                raise ValueError("an alternate step cannot be an approval")
        return self

    def approval_config(self) -> ApprovalConfig:
        return ApprovalConfig.model_validate(self.config)

    def delay_config(self) -> DelayConfig:
        return DelayConfig.model_validate(self.config)

    def condition_config(self) -> ConditionConfig:
        return ConditionConfig.model_validate(self.config)


ErrorHandling.model_rebuild()
StepSpec.model_rebuild()


# ----------------------------------------------------------------------
# Workflow definition


class TriggerSpec(CamelModel):
    event_name: str = Field(
        min_length=1,
        validation_alias=AliasChoices("event_name", "eventName", "event"),
    )
    conditions: Any = None


class VariableSpec(CamelModel):
    type: VariableType = VariableType.STRING
    default_value: Any = None
    required: bool = False


class WorkflowTimeout(CamelModel):
    duration_ms: int = Field(
        default=3_600_000,
        gt=0,
        validation_alias=AliasChoices("duration_ms", "durationMs", "duration"),
    )
    action: TimeoutAction = TimeoutAction.FAIL


class WorkflowDefinition(CamelModel):
    """Versioned, immutable specification of a multi-step process."""

    id: str = Field(default_factory=new_id)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    type: WorkflowType = WorkflowType.CUSTOM
    status: DefinitionStatus = DefinitionStatus.DRAFT
    trigger: TriggerSpec
    steps: List[StepSpec] = Field(min_length=1)
    variables: Dict[str, VariableSpec] = Field(default_factory=dict)
    timeout: WorkflowTimeout = Field(default_factory=WorkflowTimeout)
    version: int = Field(default=1, ge=1)
    creator: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


# ----------------------------------------------------------------------
# Runtime state


class CurrentStep(CamelModel):
    index: int = Field(default=0, ge=0)
    start_time: Optional[datetime] = None
    retry_count: int = 0


class StepError(CamelModel):
    code: str
    message: str


class StepRecord(CamelModel):
    """Runtime log entry of an individual step."""

    name: str
    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    error: Optional[StepError] = None
    output: Any = None


class InstanceTrigger(CamelModel):
    event_name: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class InstanceError(CamelModel):
    code: str
    message: str
    step_index: Optional[int] = None


class WorkflowInstance(CamelModel):
    """One execution of a workflow definition."""

    id: str = Field(default_factory=new_id)
    definition_id: str
    definition_version: int
    workflow_name: str
    status: InstanceStatus = InstanceStatus.PENDING
    trigger: InstanceTrigger = Field(default_factory=InstanceTrigger)
    variables: Dict[str, Any] = Field(default_factory=dict)
    current_step: CurrentStep = Field(default_factory=CurrentStep)
    steps: List[StepRecord] = Field(default_factory=list)
    error: Optional[InstanceError] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_INSTANCE_STATUSES


class Approver(CamelModel):
    user: str
    status: ApproverStatus = ApproverStatus.PENDING
    comment: Optional[str] = None
    timestamp: Optional[datetime] = None


class ApprovalTask(CamelModel):
    """A pause point requiring human votes before an instance resumes."""

    id: str = Field(default_factory=new_id)
    instance_id: str
    step_index: int = Field(ge=0)
    type: ApprovalType
    approvers: List[Approver] = Field(min_length=1)
    required_approvals: Optional[int] = None
    required_percentage: Optional[float] = None
    deadline: Optional[datetime] = None
    status: TaskStatus = TaskStatus.PENDING
    decided_by: Optional[str] = None
    revision: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status != TaskStatus.PENDING

    @property
    def approved_count(self) -> int:
        return sum(1 for a in self.approvers if a.status == ApproverStatus.APPROVED)

    def find_approver(self, user: str) -> Optional[Approver]:
        return next((a for a in self.approvers if a.user == user), None)


class ApprovalFilter(CamelModel):
    approver: Optional[str] = None
    instance_id: Optional[str] = None


class WorkflowStats(CamelModel):
    definitions_by_status: Dict[str, int] = Field(default_factory=dict)
    instances_by_status: Dict[str, int] = Field(default_factory=dict)
    pending_approvals: int = 0
    average_duration_ms: Optional[float] = None


class DomainEvent(CamelModel):
    """Envelope carried by transports from the event source to triggers."""

    event_id: str = Field(default_factory=new_id)
    event_name: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "DomainEvent":
        return cls.model_validate_json(data)
