"""Fan-in: which batch a join watches, its policy, and the aggregate it emits."""

from __future__ import annotations

from datetime import UTC, datetime
from fnmatch import fnmatchcase
from typing import Any

from .counters import BatchCounters, JoinDecision, JoinPolicy
from .steps import AwaitConfig, JoinStep, Step, StepType, Workflow


def resolve_join_source(workflow: Workflow, join: JoinStep) -> Step | None:
    """The step whose batch ``join`` aggregates.

    Explicit ``awaitStepId`` first, then the first step whose id or tag matches
    ``awaitTag``, then the nearest foreach before the join.
    """

    if join.config.await_step_id:
        return workflow.get_step(join.config.await_step_id)

    if join.config.await_tag:
        pattern = join.config.await_tag
        for step in workflow.steps:
            if step.id == join.id:
                continue
            tag = step.config.tag
            if fnmatchcase(step.id, pattern) or (tag is not None and fnmatchcase(tag, pattern)):
                return step
        return None

    position = next((i for i, s in enumerate(workflow.steps) if s.id == join.id), None)
    if position is None:
        return None
    for step in reversed(workflow.steps[:position]):
        if step.kind == StepType.FOREACH:
            return step
    return None


def joins_awaiting(workflow: Workflow, source_step_id: str) -> list[JoinStep]:
    out: list[JoinStep] = []
    for step in workflow.steps:
        if isinstance(step, JoinStep):
            source = resolve_join_source(workflow, step)
            if source is not None and source.id == source_step_id:
                out.append(step)
    return out


def policy_for_step(step: Step) -> JoinPolicy:
    config = step.config
    if not isinstance(config, AwaitConfig):
        return JoinPolicy()
    return JoinPolicy(
        min_success_percent=config.min_success_percent,
        min_count=step.config.min_count if isinstance(step, JoinStep) else None,
        max_wait_ms=config.max_wait_ms,
        fail_on_timeout=config.fail_on_timeout,
        requires_manual_review=config.requires_manual_review,
    )


def build_aggregate(
    counters: BatchCounters, decision: JoinDecision, *, now: datetime | None = None
) -> dict[str, Any]:
    items = [
        item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in counters.items
    ]
    return {
        "outcome": decision.outcome.value,
        "reason": decision.reason,
        "results": [item.data for item in counters.items if item.success is True],
        "errors": [
            {"unitId": item.unit_id, "key": item.key, "error": item.error, "data": item.data}
            for item in counters.items
            if item.success is False
        ],
        "items": items,
        "expectedCount": counters.expected_count,
        "receivedCount": counters.received_count,
        "processedCount": counters.processed_count,
        "failedCount": counters.failed_count,
        "successPercent": round(decision.success_percent, 2),
        "warnings": list(counters.warnings),
        "aggregatedAt": (now or datetime.now(tz=UTC)).isoformat(),
    }


def step_output(
    step: Step, counters: BatchCounters, decision: JoinDecision, *, now: datetime | None = None
) -> Any:
    """Output handed to the next step once ``step``'s batch fires.

    A single successful result on a non-aggregating step passes through as-is;
    everything else gets the aggregate envelope.
    """

    if step.kind not in {StepType.JOIN, StepType.FOREACH} and len(counters.items) == 1:
        only = counters.items[0]
        if only.success is True:
            return only.data
    return build_aggregate(counters, decision, now=now)
