"""flowgate: workflow orchestration with approval gates."""

from .approvals import ApprovalGate
from .conditions import ConditionEvaluator, evaluate_condition
from .config import FlowgateConfig, load_config
from .contracts import (
    ApprovalFilter,
    ApprovalTask,
    StepSpec,
    StepType,
    WorkflowDefinition,
    WorkflowInstance,
)
from .engine import InstanceStateMachine
from .events import EventPump, publish_event
from .execute import StepExecutor
from .handlers import HandlerRegistry, StepContext, default_registry
from .persistence import get_repository
from .service import WorkflowService
from .sweeper import ExpirySweeper
from .transports import get_transport
from .triggers import TriggerRegistry

__version__ = "0.1.0"
__all__ = [
    "ApprovalFilter",
    "ApprovalGate",
    "ApprovalTask",
    "ConditionEvaluator",
    "EventPump",
    "ExpirySweeper",
    "FlowgateConfig",
    "HandlerRegistry",
    "InstanceStateMachine",
    "StepContext",
    "StepExecutor",
    "StepSpec",
    "StepType",
    "TriggerRegistry",
    "WorkflowDefinition",
    "WorkflowInstance",
    "WorkflowService",
    "default_registry",
    "evaluate_condition",
    "get_repository",
    "get_transport",
    "load_config",
    "publish_event",
]
