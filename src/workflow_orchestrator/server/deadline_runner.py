"""Background polling runner that fires ``maxWaitMs`` deadlines."""

from __future__ import annotations

import logging
import threading

from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJobService
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine

logger = logging.getLogger(__name__)


class DeadlineMonitor:
    """Daemon thread calling ``check_deadlines`` on the engine and batch jobs.

    A failing sweep is logged and the next one runs on schedule.
    """

    def __init__(
        self,
        *,
        engine: WorkflowEngine,
        batch_jobs: BatchJobService,
        interval_seconds: float,
    ) -> None:
        self._engine = engine
        self._batch_jobs = batch_jobs
        self._interval = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="workflow-deadline-monitor", daemon=True
        )
        self._thread.start()
        logger.info("Deadline monitor started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def sweep(self) -> tuple[list[str], list[str]]:
        runs = self._engine.check_deadlines()
        jobs = [job.id for job in self._batch_jobs.check_deadlines()]
        if runs or jobs:
            logger.info("Deadlines fired", extra={"runs": runs, "batch_jobs": jobs})
        return runs, jobs

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self.sweep()
            except Exception:
                logger.exception("Deadline sweep failed")
