from __future__ import annotations

import secrets
import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)

# Paused is only entered by an explicit operator request, never by the engine itself.
ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.RUNNING: {
        RunStatus.PAUSED,
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
    },
    RunStatus.PAUSED: {RunStatus.RUNNING, RunStatus.FAILED, RunStatus.CANCELLED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
    RunStatus.CANCELLED: set(),
}


class IllegalTransitionError(ValueError):
    pass


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_run_secret() -> str:
    return f"wfsec_{secrets.token_hex(24)}"


class WorkflowRun(BaseModel):
    """One execution of a workflow.

    Only :class:`~workflow_orchestrator.orchestrator.workflow.engine.WorkflowEngine`
    changes ``status``, ``current_step_ids`` and ``completed_step_ids``.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    workflow_id: str
    status: RunStatus = RunStatus.PENDING
    current_step_ids: list[str] = Field(default_factory=list)
    completed_step_ids: list[str] = Field(default_factory=list)
    failed_step_id: str | None = None
    error: str | None = None
    input_payload: dict[str, Any] = Field(default_factory=dict)
    output_payload: dict[str, Any] | None = None
    step_inputs: dict[str, Any] = Field(default_factory=dict)
    step_outputs: dict[str, Any] = Field(default_factory=dict)
    step_started_at: dict[str, datetime] = Field(default_factory=dict)
    review_step_ids: list[str] = Field(default_factory=list)
    callback_secret: str = Field(default_factory=new_run_secret)
    parent_run_id: str | None = None
    parent_step_id: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES


def transition(*, current: WorkflowRun, to: RunStatus) -> WorkflowRun:
    allowed = ALLOWED_TRANSITIONS.get(current.status, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal run transition: {current.status.value} -> {to.value}"
        )
    now = _utc_now()
    updates: dict[str, Any] = {"status": to, "updated_at": now}
    if to == RunStatus.RUNNING and current.started_at is None:
        updates["started_at"] = now
    if to in TERMINAL_RUN_STATUSES:
        updates["completed_at"] = now
    return current.model_copy(update=updates)
