"""Shared fixtures for flowgate tests."""

from __future__ import annotations

from typing import Any, Callable

import pytest

import flowgate.persistence as persistence
from flowgate.config import FlowgateConfig
from flowgate.contracts import StepType
from flowgate.handlers import HandlerRegistry, StepContext, default_registry
from flowgate.persistence import InMemoryWorkflowRepository
from flowgate.service import WorkflowService


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class RecordingHandler:
    """Step handler that records every call and returns a fixed output."""

    def __init__(self, output: Any = None, fail_with: Exception | None = None) -> None:
        self.output = output
        self.fail_with = fail_with
        self.calls: list[tuple[str, StepContext]] = []

    async def __call__(self, step, context: StepContext) -> Any:
        self.calls.append((step.name, context))
        if self.fail_with is not None:
            raise self.fail_with
        return self.output if self.output is not None else {"step": step.name}


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    for var in ("FLOWGATE_CONFIG", "FLOWGATE_DATABASE_URL", "DATABASE_URL", "FLOWGATE_TRANSPORT"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def notify() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def handlers(notify: RecordingHandler) -> HandlerRegistry:
    registry = default_registry()
    registry.register(StepType.NOTIFICATION, notify)
    registry.register(StepType.EMAIL, notify)
    return registry


@pytest.fixture
def make_service(repository, handlers, sleeps) -> Callable[..., WorkflowService]:
    def factory(**kwargs: Any) -> WorkflowService:
        kwargs.setdefault("config", FlowgateConfig())
        kwargs.setdefault("sleep", sleeps)
        return WorkflowService(
            kwargs.pop("repository", repository),
            kwargs.pop("handlers", handlers),
            **kwargs,
        )

    return factory


@pytest.fixture
def service(make_service) -> WorkflowService:
    return make_service()


@pytest.fixture
def spec() -> Callable[..., dict]:
    """Build a definition document in the camelCase authoring shape."""

    def factory(*steps: dict, **overrides: Any) -> dict:
        document = {
            "name": "refund",
            "trigger": {"eventName": "refund.requested"},
            "steps": list(steps) or [{"name": "notify", "type": "notification"}],
        }
        document.update(overrides)
        return document

    return factory
