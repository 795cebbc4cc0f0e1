from __future__ import annotations

import threading
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from workflow_orchestrator.orchestrator.workflow.counters import (
    BatchCounters,
    BatchEvent,
    BatchKey,
    apply_event,
    new_counters,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import RunStatus, WorkflowRun
from workflow_orchestrator.orchestrator.workflow.steps import Workflow
from workflow_orchestrator.orchestrator.workflow.units import (
    TERMINAL_UNIT_STATUSES,
    ExecutionUnit,
    UnitStatus,
)

if TYPE_CHECKING:
    from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJob


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class InMemoryRunStateStore:
    """Process-local store. One lock guards every record.

    Records are pydantic models treated as immutable: writers replace them via
    ``model_copy`` rather than mutating in place.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._workflows: dict[str, Workflow] = {}
        self._runs: dict[str, WorkflowRun] = {}
        self._units: dict[str, ExecutionUnit] = {}
        self._counters: dict[BatchKey, BatchCounters] = {}
        self._fired: dict[BatchKey, str] = {}
        self._reviews: set[BatchKey] = set()
        self._batch_jobs: dict[str, BatchJob] = {}

    def _changed_unlocked(self) -> None:
        """Called with the lock held after every write."""

    # Workflows

    def save_workflow(self, workflow: Workflow) -> Workflow:
        with self._lock:
            now = _utc_now()
            existing = self._workflows.get(workflow.id)
            created_at = workflow.created_at or (existing.created_at if existing else None) or now
            stored = workflow.model_copy(update={"created_at": created_at, "updated_at": now})
            self._workflows[workflow.id] = stored
            self._changed_unlocked()
            return stored

    def get_workflow(self, workflow_id: str) -> Workflow | None:
        with self._lock:
            return self._workflows.get(workflow_id)

    def list_workflows(self) -> list[Workflow]:
        with self._lock:
            return list(self._workflows.values())

    def delete_workflow(self, workflow_id: str) -> bool:
        with self._lock:
            removed = self._workflows.pop(workflow_id, None) is not None
            if removed:
                self._changed_unlocked()
            return removed

    # Runs

    def save_run(self, run: WorkflowRun) -> WorkflowRun:
        with self._lock:
            self._runs[run.id] = run
            self._changed_unlocked()
            return run

    def get_run(self, run_id: str) -> WorkflowRun | None:
        with self._lock:
            return self._runs.get(run_id)

    def list_runs(
        self, *, workflow_id: str | None = None, status: RunStatus | None = None
    ) -> list[WorkflowRun]:
        with self._lock:
            runs = list(self._runs.values())
        if workflow_id is not None:
            runs = [r for r in runs if r.workflow_id == workflow_id]
        if status is not None:
            runs = [r for r in runs if r.status == status]
        return sorted(runs, key=lambda r: r.created_at)

    # Execution units

    def save_units(self, units: Sequence[ExecutionUnit]) -> None:
        if not units:
            return
        with self._lock:
            for unit in units:
                self._units[unit.id] = unit
            self._changed_unlocked()

    def get_unit(self, unit_id: str) -> ExecutionUnit | None:
        with self._lock:
            return self._units.get(unit_id)

    def list_units(self, run_id: str, *, step_id: str | None = None) -> list[ExecutionUnit]:
        with self._lock:
            units = [u for u in self._units.values() if u.run_id == run_id]
        if step_id is not None:
            units = [u for u in units if u.step_id == step_id or u.originating_step_id == step_id]
        return sorted(units, key=lambda u: (u.created_at, u.loop.index if u.loop else 0))

    def transition_unit(
        self,
        unit_id: str,
        *,
        status: UnitStatus,
        output: Any = None,
        error: str | None = None,
    ) -> ExecutionUnit | None:
        with self._lock:
            unit = self._units.get(unit_id)
            if unit is None:
                raise KeyError(unit_id)
            if unit.status in TERMINAL_UNIT_STATUSES:
                return None
            updates: dict[str, Any] = {"status": status, "updated_at": _utc_now()}
            if output is not None:
                updates["output"] = output
            if error is not None:
                updates["error"] = error
            updated = unit.model_copy(update=updates)
            self._units[unit_id] = updated
            self._changed_unlocked()
            return updated

    def cancel_open_units(self, run_id: str) -> list[str]:
        with self._lock:
            cancelled: list[str] = []
            now = _utc_now()
            for unit_id, unit in self._units.items():
                if unit.run_id != run_id or unit.status in TERMINAL_UNIT_STATUSES:
                    continue
                self._units[unit_id] = unit.model_copy(
                    update={"status": UnitStatus.CANCELLED, "updated_at": now}
                )
                cancelled.append(unit_id)
            if cancelled:
                self._changed_unlocked()
            return cancelled

    # Batch counters

    def get_counters(self, key: BatchKey) -> BatchCounters | None:
        with self._lock:
            return self._counters.get(key)

    def apply_batch_event(self, key: BatchKey, event: BatchEvent) -> tuple[BatchCounters, bool]:
        with self._lock:
            current = self._counters.get(key) or new_counters(key)
            updated = apply_event(current, event)
            if updated is None:
                return current, False
            self._counters[key] = updated
            self._changed_unlocked()
            return updated, True

    def try_mark_fired(self, key: BatchKey, outcome: str) -> bool:
        with self._lock:
            if key in self._fired:
                return False
            self._fired[key] = outcome
            self._reviews.discard(key)
            self._changed_unlocked()
            return True

    def get_fired(self, key: BatchKey) -> str | None:
        with self._lock:
            return self._fired.get(key)

    def try_mark_review_requested(self, key: BatchKey) -> bool:
        with self._lock:
            if key in self._reviews or key in self._fired:
                return False
            self._reviews.add(key)
            self._changed_unlocked()
            return True

    def clear_review_requested(self, key: BatchKey) -> None:
        with self._lock:
            if key in self._reviews:
                self._reviews.discard(key)
                self._changed_unlocked()

    # Batch jobs

    def save_batch_job(self, job: BatchJob) -> BatchJob:
        with self._lock:
            stored = job.model_copy(update={"updated_at": _utc_now()})
            self._batch_jobs[job.id] = stored
            self._changed_unlocked()
            return stored

    def get_batch_job(self, job_id: str) -> BatchJob | None:
        with self._lock:
            return self._batch_jobs.get(job_id)

    def list_batch_jobs(self) -> list[BatchJob]:
        with self._lock:
            jobs = list(self._batch_jobs.values())
        return sorted(jobs, key=lambda j: j.created_at)
