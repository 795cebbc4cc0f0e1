"""Persistence contract the engine runs against.

Besides plain load/save by id, a store must provide three atomic primitives:

- ``apply_batch_event``: dedupe, declare, increment and close in one step
- ``try_mark_fired``: one-shot compare-and-set per firing key
- ``transition_unit``: move a unit to a new status unless it is already terminal
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

from workflow_orchestrator.orchestrator.workflow.counters import (
    BatchCounters,
    BatchEvent,
    BatchKey,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import RunStatus, WorkflowRun
from workflow_orchestrator.orchestrator.workflow.steps import Workflow
from workflow_orchestrator.orchestrator.workflow.units import ExecutionUnit, UnitStatus

if TYPE_CHECKING:
    from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJob


class RunStateStore(Protocol):
    def save_workflow(self, workflow: Workflow) -> Workflow: ...

    def get_workflow(self, workflow_id: str) -> Workflow | None: ...

    def list_workflows(self) -> list[Workflow]: ...

    def delete_workflow(self, workflow_id: str) -> bool: ...

    def save_run(self, run: WorkflowRun) -> WorkflowRun: ...

    def get_run(self, run_id: str) -> WorkflowRun | None: ...

    def list_runs(
        self, *, workflow_id: str | None = None, status: RunStatus | None = None
    ) -> list[WorkflowRun]: ...

    def save_units(self, units: Sequence[ExecutionUnit]) -> None: ...

    def get_unit(self, unit_id: str) -> ExecutionUnit | None: ...

    def list_units(self, run_id: str, *, step_id: str | None = None) -> list[ExecutionUnit]: ...

    def transition_unit(
        self,
        unit_id: str,
        *,
        status: UnitStatus,
        output: Any = None,
        error: str | None = None,
    ) -> ExecutionUnit | None:
        """Return the updated unit, or None when it was already terminal."""
        ...

    def cancel_open_units(self, run_id: str) -> list[str]: ...

    def get_counters(self, key: BatchKey) -> BatchCounters | None: ...

    def apply_batch_event(self, key: BatchKey, event: BatchEvent) -> tuple[BatchCounters, bool]:
        """Apply ``event`` atomically; the flag is False for a duplicate."""
        ...

    def try_mark_fired(self, key: BatchKey, outcome: str) -> bool: ...

    def get_fired(self, key: BatchKey) -> str | None: ...

    def try_mark_review_requested(self, key: BatchKey) -> bool: ...

    def clear_review_requested(self, key: BatchKey) -> None: ...

    def save_batch_job(self, job: BatchJob) -> BatchJob: ...

    def get_batch_job(self, job_id: str) -> BatchJob | None: ...

    def list_batch_jobs(self) -> list[BatchJob]: ...
