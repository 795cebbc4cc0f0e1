"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from workflow_orchestrator.orchestrator.outbound import OutboundRequest, OutboundResult
from workflow_orchestrator.orchestrator.store.memory import InMemoryRunStateStore
from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJobService
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.workflow.events import EngineEvent, EventBus
from workflow_orchestrator.orchestrator.workflow.steps import Workflow


class FakeClock:
    """Manually advanced clock for deadline tests."""

    def __init__(self) -> None:
        self.now = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, *, ms: int) -> None:
        self.now = self.now + timedelta(milliseconds=ms)


class FakeExecutor:
    """Records outbound calls; answers from ``results`` or with a 200."""

    def __init__(self) -> None:
        self.requests: list[OutboundRequest] = []
        self.results: list[OutboundResult] = []

    def execute(self, request: OutboundRequest) -> OutboundResult:
        self.requests.append(request)
        if self.results:
            return self.results.pop(0)
        return OutboundResult(ok=True, status_code=200, body={"echo": request.body})


class EventRecorder:
    def __init__(self) -> None:
        self.events: list[EngineEvent] = []

    def __call__(self, event: EngineEvent) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [e.type for e in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryRunStateStore:
    return InMemoryRunStateStore()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def bus(recorder: EventRecorder) -> EventBus:
    bus = EventBus()
    bus.subscribe(recorder)
    return bus


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def engine(
    store: InMemoryRunStateStore, bus: EventBus, executor: FakeExecutor, clock: FakeClock
) -> WorkflowEngine:
    return WorkflowEngine(
        store=store,
        events=bus,
        executor=executor,
        public_base_url="http://orchestrator.test",
        clock=clock,
    )


@pytest.fixture
def batch_service(
    store: InMemoryRunStateStore, bus: EventBus, clock: FakeClock
) -> BatchJobService:
    return BatchJobService(store=store, events=bus, clock=clock)


@pytest.fixture
def make_workflow(engine: WorkflowEngine) -> Callable[..., Workflow]:
    """Save a workflow from raw step dicts and return it."""

    def _make(steps: list[dict[str, Any]], **fields: Any) -> Workflow:
        payload: dict[str, Any] = {"name": fields.pop("name", "test workflow"), "steps": steps}
        payload.update(fields)
        workflow, _ = engine.save_workflow(payload)
        return workflow

    return _make
