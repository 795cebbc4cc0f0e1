"""Pydantic models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJob, ReviewDecision
from workflow_orchestrator.orchestrator.workflow.state_machine import WorkflowRun
from workflow_orchestrator.orchestrator.workflow.units import ExecutionUnit


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRunRequest(ApiModel):
    input: dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("input", "inputPayload")
    )


class UnitCompletionRequest(ApiModel):
    success: bool = True
    output: Any = None
    error: str | None = None


class ReviewRequest(ApiModel):
    decision: ReviewDecision
    reviewed_by: str | None = None
    notes: str | None = None


class ReviewRequestRequest(ApiModel):
    reason: str = "Manual review requested"


class DiagramParseRequest(ApiModel):
    diagram: str = Field(validation_alias=AliasChoices("diagram", "mermaidDiagram", "text"))


class DiagramRenderRequest(ApiModel):
    steps: list[dict[str, Any]] = Field(default_factory=list)
    name: str | None = None
    entry_step_id: str | None = None
    direction: str = Field(default="TD", pattern="^(TD|TB|LR|RL|BT)$")


class BatchJobCreateRequest(ApiModel):
    name: str
    job_type: str = "generic"
    description: str | None = None
    expected_count: int | None = Field(default=None, ge=0)
    min_success_percent: float = Field(default=100, ge=0, le=100)
    max_wait_ms: int | None = Field(default=None, ge=0)
    fail_on_timeout: bool = False
    requires_manual_review: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


def run_json(run: WorkflowRun, *, include_secret: bool = False) -> dict[str, Any]:
    """Run as returned by the API; the callback secret only appears when asked for."""

    exclude = None if include_secret else {"callback_secret"}
    return run.model_dump(mode="json", by_alias=True, exclude=exclude)


def unit_json(unit: ExecutionUnit) -> dict[str, Any]:
    return unit.model_dump(mode="json", by_alias=True)


def batch_job_json(job: BatchJob, *, include_secret: bool = False) -> dict[str, Any]:
    exclude = None if include_secret else {"callback_secret"}
    return job.model_dump(mode="json", by_alias=True, exclude=exclude)
