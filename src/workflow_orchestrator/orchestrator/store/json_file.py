"""JSON-file persistence for the run state store.

Every write rewrites one snapshot file while the store lock is held, so a
restarted process picks up runs, counters and fired flags where they were.
This suits a single local process; anything bigger wants a database-backed
implementation of the same protocol.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from workflow_orchestrator.orchestrator.store.memory import InMemoryRunStateStore
from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJob
from workflow_orchestrator.orchestrator.workflow.counters import BatchCounters, BatchKey
from workflow_orchestrator.orchestrator.workflow.state_machine import WorkflowRun
from workflow_orchestrator.orchestrator.workflow.steps import Workflow
from workflow_orchestrator.orchestrator.workflow.units import ExecutionUnit

logger = logging.getLogger(__name__)

_SNAPSHOT_VERSION = 1


class JsonFileRunStateStore(InMemoryRunStateStore):
    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        with self._lock:
            self._load_unlocked()

    def _load_unlocked(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning(
                "State file is not valid JSON; starting empty", extra={"path": str(self.path)}
            )
            return
        if not isinstance(raw, dict):
            logger.warning(
                "State file has unexpected shape; starting empty",
                extra={"path": str(self.path)},
            )
            return

        try:
            for item in raw.get("workflows", []):
                workflow = Workflow.model_validate(item)
                self._workflows[workflow.id] = workflow
            for item in raw.get("runs", []):
                run = WorkflowRun.model_validate(item)
                self._runs[run.id] = run
            for item in raw.get("units", []):
                unit = ExecutionUnit.model_validate(item)
                self._units[unit.id] = unit
            for item in raw.get("counters", []):
                counters = BatchCounters.model_validate(item)
                self._counters[counters.key] = counters
            for item in raw.get("fired", []):
                self._fired[BatchKey(item["ownerId"], item["stepId"])] = str(item["outcome"])
            for item in raw.get("reviews", []):
                self._reviews.add(BatchKey(item["ownerId"], item["stepId"]))
            for item in raw.get("batchJobs", []):
                job = BatchJob.model_validate(item)
                self._batch_jobs[job.id] = job
        except (ValidationError, KeyError, TypeError) as e:
            logger.error(
                "State file could not be loaded",
                extra={"path": str(self.path), "error": str(e)},
            )
            raise

    def _snapshot_unlocked(self) -> dict[str, Any]:
        def dump(model: Any) -> Any:
            return model.model_dump(mode="json", by_alias=True)

        return {
            "version": _SNAPSHOT_VERSION,
            "workflows": [dump(w) for w in self._workflows.values()],
            "runs": [dump(r) for r in self._runs.values()],
            "units": [dump(u) for u in self._units.values()],
            "counters": [dump(c) for c in self._counters.values()],
            "fired": [
                {"ownerId": k.owner_id, "stepId": k.step_id, "outcome": v}
                for k, v in self._fired.items()
            ],
            "reviews": [{"ownerId": k.owner_id, "stepId": k.step_id} for k in self._reviews],
            "batchJobs": [dump(j) for j in self._batch_jobs.values()],
        }

    def _changed_unlocked(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(self._snapshot_unlocked(), indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )
