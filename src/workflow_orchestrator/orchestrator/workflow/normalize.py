"""Save-time repairs for workflow definitions.

Writes are never rejected for missing or duplicate step ids; a fresh id is
generated instead. Everything else that cannot be repaired raises
:class:`WorkflowValidationError`.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .errors import WorkflowValidationError
from .steps import Connection, Step, Workflow, parse_step

logger = logging.getLogger(__name__)


def new_step_id() -> str:
    return f"step_{uuid.uuid4().hex[:10]}"


def repair_step_ids(steps: list[Step]) -> tuple[list[Step], list[str]]:
    """Give every step a unique, non-empty id.

    Returns the repaired steps and the ids that were generated.
    """

    seen: set[str] = set()
    repaired: list[Step] = []
    generated: list[str] = []
    for step in steps:
        step_id = step.id.strip()
        if not step_id or step_id in seen:
            step_id = new_step_id()
            while step_id in seen:
                step_id = new_step_id()
            generated.append(step_id)
            logger.info(
                "Generated step id",
                extra={"original_id": step.id, "step_id": step_id, "step_name": step.name},
            )
        seen.add(step_id)
        repaired.append(step if step_id == step.id else step.model_copy(update={"id": step_id}))
    return repaired, generated


def chain_linear_steps(steps: list[Step]) -> list[Step]:
    """Connect steps in list order when no step declares any connection.

    Older definitions were plain ordered lists; the engine only follows
    explicit connections.
    """

    if len(steps) < 2 or any(step.connections for step in steps):
        return steps
    chained: list[Step] = []
    for idx, step in enumerate(steps):
        if idx + 1 < len(steps):
            step = step.model_copy(
                update={"connections": [Connection(target_step_id=steps[idx + 1].id)]}
            )
        chained.append(step)
    return chained


def normalize_steps(raw_steps: list[Mapping[str, Any]]) -> list[Step]:
    out: list[Step] = []
    for idx, raw in enumerate(raw_steps):
        if not isinstance(raw, Mapping):
            raise WorkflowValidationError(f"Step #{idx} must be an object")
        try:
            out.append(parse_step(raw))
        except ValidationError as e:
            raise WorkflowValidationError(f"Step #{idx} is invalid: {e}") from e
    return out


def normalize_workflow(raw: Mapping[str, Any] | Workflow) -> tuple[Workflow, list[str]]:
    """Validate a workflow payload and apply save-time repairs.

    Returns the workflow and the list of generated step ids.
    """

    if isinstance(raw, Workflow):
        workflow = raw
    else:
        try:
            workflow = Workflow.model_validate(dict(raw))
        except ValidationError as e:
            raise WorkflowValidationError(f"Invalid workflow: {e}") from e

    steps, generated = repair_step_ids(list(workflow.steps))
    steps = chain_linear_steps(steps)

    known = {step.id for step in steps}
    for step in steps:
        for connection in step.connections:
            if connection.target_step_id not in known:
                raise WorkflowValidationError(
                    f'Step "{step.display_name}" connects to unknown step '
                    f"{connection.target_step_id!r}"
                )
    if workflow.entry_step_id and workflow.entry_step_id not in known:
        raise WorkflowValidationError(f"Unknown entry step {workflow.entry_step_id!r}")

    return workflow.model_copy(update={"steps": steps}), generated
