"""Fan-out: one execution unit per collection element.

Units carry the element under the loop's item variable together with a
shared :class:`LoopContext`, and all of them point at the same batch key
``(run id, foreach step id)`` so the join can find them again.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .counters import BatchEvent, BatchItem, BatchKey
from .errors import FanOutLimitError, WorkflowValidationError
from .steps import ForeachStep
from .units import ExecutionUnit, LoopContext, UnitStatus

DEFAULT_MAX_ITEMS = 100


@dataclass(frozen=True, slots=True)
class FanOutPlan:
    units: list[ExecutionUnit]
    event: BatchEvent


def effective_max_items(step: ForeachStep, default: int = DEFAULT_MAX_ITEMS) -> int:
    return step.config.max_items or default


def unit_input(
    prior_output: Any, *, item_variable: str, item: Any, index: int, total: int | None
) -> dict[str, Any]:
    base = dict(prior_output) if isinstance(prior_output, dict) else {}
    base[item_variable] = item
    base["_index"] = index
    if total is not None:
        base["_total"] = total
    return base


def _make_unit(
    step: ForeachStep,
    *,
    run_id: str,
    body_step_id: str,
    body_step_type: str,
    parent_unit_id: str | None,
    prior_output: Any,
    item: Any,
    index: int,
    total: int | None,
) -> ExecutionUnit:
    variable = step.config.item_variable
    return ExecutionUnit(
        run_id=run_id,
        step_id=body_step_id,
        originating_step_id=step.id,
        parent_unit_id=parent_unit_id,
        unit_type=body_step_type,
        status=UnitStatus.PENDING,
        input=unit_input(
            prior_output, item_variable=variable, item=item, index=index, total=total
        ),
        loop=LoopContext(index=index, total=total, item_variable=variable),
        batch_owner_id=run_id,
        batch_step_id=step.id,
    )


def plan_fan_out(
    step: ForeachStep,
    collection: object,
    *,
    run_id: str,
    body_step_id: str,
    body_step_type: str,
    prior_output: Any = None,
    parent_unit_id: str | None = None,
    default_max_items: int = DEFAULT_MAX_ITEMS,
) -> FanOutPlan:
    """Plan the units and the initial counter event for a bounded collection.

    The whole collection is accepted up front: expected = received = N and the
    batch is closed, so the join waits only for the N outcomes.
    """

    if not isinstance(collection, list):
        raise WorkflowValidationError(
            f'Foreach "{step.display_name}" expected a list at '
            f"{step.config.items_path!r}, got {type(collection).__name__}"
        )
    limit = effective_max_items(step, default_max_items)
    if len(collection) > limit:
        raise FanOutLimitError(
            f'Foreach "{step.display_name}" has {len(collection)} items; the limit is {limit}'
        )

    total = len(collection)
    units = [
        _make_unit(
            step,
            run_id=run_id,
            body_step_id=body_step_id,
            body_step_type=body_step_type,
            parent_unit_id=parent_unit_id,
            prior_output=prior_output,
            item=item,
            index=index,
            total=total,
        )
        for index, item in enumerate(collection)
    ]
    arrivals = tuple(BatchItem(unit_id=unit.id, data=unit.input) for unit in units)
    return FanOutPlan(
        units=units,
        event=BatchEvent(arrivals=arrivals, expected_count=total, complete=True),
    )


def plan_streamed_units(
    step: ForeachStep,
    items: Sequence[BatchItem],
    *,
    run_id: str,
    body_step_id: str,
    body_step_type: str,
    already_received: int,
    prior_output: Any = None,
    default_max_items: int = DEFAULT_MAX_ITEMS,
) -> list[ExecutionUnit]:
    """Units for items delivered by callbacks to a foreach without a static collection."""

    limit = effective_max_items(step, default_max_items)
    if already_received + len(items) > limit:
        raise FanOutLimitError(
            f'Foreach "{step.display_name}" would receive '
            f"{already_received + len(items)} items; the limit is {limit}"
        )
    return [
        _make_unit(
            step,
            run_id=run_id,
            body_step_id=body_step_id,
            body_step_type=body_step_type,
            parent_unit_id=None,
            prior_output=prior_output,
            item=item.data,
            index=already_received + offset,
            total=None,
        )
        for offset, item in enumerate(items)
    ]


def batch_key_for(run_id: str, step_id: str) -> BatchKey:
    return BatchKey(run_id, step_id)
