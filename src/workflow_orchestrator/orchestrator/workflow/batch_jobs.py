"""Standalone batch jobs: fan-in for bulk external work outside any workflow run.

A batch job shares the run joins' counters and boundary evaluation
(:mod:`.counters`) and only adds its own lifecycle around them:

    pending -> awaiting_responses -> completed | completed_with_warnings
                                   | failed | manual_review | cancelled

``manual_review`` is left by :meth:`BatchJobService.submit_review`.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .callbacks import CallbackAck, NormalizedCallback, verify_secret
from .counters import (
    BatchEvent,
    BatchKey,
    JoinDecision,
    JoinOutcome,
    JoinPolicy,
    evaluate_join,
    new_counters,
)
from .errors import NotFoundError, WorkflowValidationError
from .events import EngineEvent, EventPublisher
from .fan_in import build_aggregate
from .locks import KeyedLocks

if TYPE_CHECKING:
    from workflow_orchestrator.orchestrator.store.base import RunStateStore

logger = logging.getLogger(__name__)

BATCH_STEP_ID = "batch"


class BatchJobStatus(str, Enum):
    PENDING = "pending"
    AWAITING_RESPONSES = "awaiting_responses"
    COMPLETED = "completed"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    CANCELLED = "cancelled"
    MANUAL_REVIEW = "manual_review"


SEALED_BATCH_STATUSES: frozenset[BatchJobStatus] = frozenset(
    {
        BatchJobStatus.COMPLETED,
        BatchJobStatus.COMPLETED_WITH_WARNINGS,
        BatchJobStatus.FAILED,
        BatchJobStatus.CANCELLED,
    }
)


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCEED_WITH_PARTIAL = "proceed_with_partial"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_batch_secret() -> str:
    return f"whsec_{secrets.token_hex(24)}"


class BatchJob(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str
    job_type: str = "generic"
    description: str | None = None
    status: BatchJobStatus = BatchJobStatus.PENDING
    expected_count: int | None = Field(default=None, ge=0)
    min_success_percent: float = Field(default=100, ge=0, le=100)
    max_wait_ms: int | None = Field(default=None, ge=0)
    fail_on_timeout: bool = False
    requires_manual_review: bool = False
    callback_secret: str = Field(default_factory=new_batch_secret)
    metadata: dict[str, Any] = Field(default_factory=dict)
    aggregate_result: dict[str, Any] | None = None
    outcome_reason: str | None = None
    review_reason: str | None = None
    review_decision: ReviewDecision | None = None
    reviewed_by: str | None = None
    review_notes: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def batch_key(self) -> BatchKey:
        return BatchKey(self.id, BATCH_STEP_ID)

    @property
    def is_sealed(self) -> bool:
        return self.status in SEALED_BATCH_STATUSES

    def policy(self) -> JoinPolicy:
        return JoinPolicy(
            min_success_percent=self.min_success_percent,
            max_wait_ms=self.max_wait_ms,
            fail_on_timeout=self.fail_on_timeout,
            requires_manual_review=self.requires_manual_review,
        )


_STATUS_FOR_OUTCOME: dict[JoinOutcome, BatchJobStatus] = {
    JoinOutcome.SUCCESS: BatchJobStatus.COMPLETED,
    JoinOutcome.PARTIAL_SUCCESS: BatchJobStatus.COMPLETED_WITH_WARNINGS,
    JoinOutcome.FAILURE: BatchJobStatus.FAILED,
}

OUTCOME_FOR_REVIEW: dict[ReviewDecision, JoinOutcome] = {
    ReviewDecision.APPROVED: JoinOutcome.SUCCESS,
    ReviewDecision.PROCEED_WITH_PARTIAL: JoinOutcome.PARTIAL_SUCCESS,
    ReviewDecision.REJECTED: JoinOutcome.FAILURE,
}


class BatchJobService:
    def __init__(
        self,
        *,
        store: RunStateStore,
        events: EventPublisher | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._events = events
        self._clock = clock
        self._locks = KeyedLocks()

    def _publish(self, event_type: str, job: BatchJob, **payload: object) -> None:
        if self._events is None:
            return
        body = {"jobId": job.id, "status": job.status.value, **payload}
        self._events.publish(EngineEvent(type=event_type, payload=body))

    def _require(self, job_id: str) -> BatchJob:
        job = self._store.get_batch_job(job_id)
        if job is None:
            raise NotFoundError(f"Batch job {job_id} not found")
        return job

    def get_job(self, job_id: str) -> BatchJob:
        return self._require(job_id)

    def list_jobs(self, *, status: BatchJobStatus | None = None) -> list[BatchJob]:
        jobs = self._store.list_batch_jobs()
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return jobs

    def create_job(
        self,
        *,
        name: str,
        job_type: str = "generic",
        description: str | None = None,
        expected_count: int | None = None,
        min_success_percent: float = 100,
        max_wait_ms: int | None = None,
        fail_on_timeout: bool = False,
        requires_manual_review: bool = False,
        metadata: dict[str, Any] | None = None,
    ) -> BatchJob:
        if not name.strip():
            raise WorkflowValidationError("Batch job name is required")
        if not 0 <= min_success_percent <= 100:
            raise WorkflowValidationError("minSuccessPercent must be between 0 and 100")
        if expected_count is not None and expected_count < 0:
            raise WorkflowValidationError("expectedCount must be non-negative")

        job = BatchJob(
            name=name.strip(),
            job_type=job_type,
            description=description,
            expected_count=expected_count,
            min_success_percent=min_success_percent,
            max_wait_ms=max_wait_ms,
            fail_on_timeout=fail_on_timeout,
            requires_manual_review=requires_manual_review,
            metadata=metadata or {},
        )
        job = self._store.save_batch_job(job)
        self._store.apply_batch_event(job.batch_key, BatchEvent(expected_count=expected_count))
        logger.info("Batch job created", extra={"job_id": job.id, "job_type": job.job_type})
        self._publish("batch.created", job)
        return job

    def start_job(self, job_id: str) -> BatchJob:
        with self._locks.hold(job_id):
            job = self._require(job_id)
            if job.status != BatchJobStatus.PENDING:
                raise WorkflowValidationError(f"Batch job is {job.status.value}, not pending")
            job = self._store.save_batch_job(
                job.model_copy(
                    update={
                        "status": BatchJobStatus.AWAITING_RESPONSES,
                        "started_at": self._clock(),
                    }
                )
            )
            self._publish("batch.started", job)
            return self._evaluate_unlocked(job)

    def ingest_callback(
        self, job_id: str, *, secret: str | None, callback: NormalizedCallback
    ) -> CallbackAck:
        job = self._require(job_id)
        verify_secret(job.callback_secret, secret)

        with self._locks.hold(job_id):
            job = self._require(job_id)
            if job.is_sealed:
                counters = self._store.get_counters(job.batch_key)
                return CallbackAck(
                    accepted=False,
                    received_count=counters.received_count if counters else 0,
                    expected_count=counters.expected_count if counters else None,
                    is_complete=True,
                    reason=f"Batch job is {job.status.value}",
                    status=job.status.value,
                )

            event = BatchEvent(
                arrivals=tuple(callback.items),
                expected_count=callback.expected_count,
                complete=callback.complete,
                idempotency_key=callback.idempotency_key,
            )
            counters, applied = self._store.apply_batch_event(job.batch_key, event)
            if applied:
                logger.info(
                    "Batch items received",
                    extra={
                        "job_id": job.id,
                        "items": len(callback.items),
                        "received_count": counters.received_count,
                    },
                )
                self._publish(
                    "batch.item_received",
                    job,
                    receivedCount=counters.received_count,
                    expectedCount=counters.expected_count,
                )
                job = self._evaluate_unlocked(job)

            return CallbackAck(
                accepted=applied,
                duplicate=not applied,
                received_count=counters.received_count,
                expected_count=counters.expected_count,
                is_complete=counters.is_closed,
                status=job.status.value,
                warnings=list(counters.warnings),
            )

    def _evaluate_unlocked(self, job: BatchJob) -> BatchJob:
        if job.status != BatchJobStatus.AWAITING_RESPONSES:
            return job
        counters = self._store.get_counters(job.batch_key)
        if counters is None:
            return job
        decision = evaluate_join(
            counters, job.policy(), started_at=job.started_at, now=self._clock()
        )
        if decision.outcome == JoinOutcome.WAITING:
            return job
        if decision.outcome == JoinOutcome.MANUAL_REVIEW:
            if not self._store.try_mark_review_requested(job.batch_key):
                return job
            reason = f"Success threshold missed ({decision.reason})"
            return self._park_for_review(job, reason=reason)
        return self._finish_unlocked(job, decision)

    def _park_for_review(self, job: BatchJob, *, reason: str) -> BatchJob:
        job = self._store.save_batch_job(
            job.model_copy(
                update={"status": BatchJobStatus.MANUAL_REVIEW, "review_reason": reason}
            )
        )
        logger.warning("Batch job needs manual review", extra={"job_id": job.id, "reason": reason})
        self._publish("batch.review_requested", job, reason=reason)
        return job

    def _finish_unlocked(self, job: BatchJob, decision: JoinDecision) -> BatchJob:
        if not self._store.try_mark_fired(job.batch_key, decision.outcome.value):
            refreshed = self._store.get_batch_job(job.id)
            return refreshed or job
        counters = self._store.get_counters(job.batch_key) or new_counters(job.batch_key)
        status = _STATUS_FOR_OUTCOME[decision.outcome]
        if status == BatchJobStatus.COMPLETED and counters.failed_count > 0:
            status = BatchJobStatus.COMPLETED_WITH_WARNINGS
        now = self._clock()
        job = self._store.save_batch_job(
            job.model_copy(
                update={
                    "status": status,
                    "aggregate_result": build_aggregate(counters, decision, now=now),
                    "outcome_reason": decision.reason,
                    "completed_at": now,
                }
            )
        )
        log = logger.warning if status == BatchJobStatus.FAILED else logger.info
        log(
            "Batch job finished",
            extra={"job_id": job.id, "status": status.value, "reason": decision.reason},
        )
        self._publish("batch.completed", job, reason=decision.reason)
        return job

    def request_manual_review(self, job_id: str, *, reason: str) -> BatchJob:
        with self._locks.hold(job_id):
            job = self._require(job_id)
            if job.status not in {BatchJobStatus.PENDING, BatchJobStatus.AWAITING_RESPONSES}:
                raise WorkflowValidationError(
                    f"Cannot request review for a {job.status.value} batch job"
                )
            self._store.try_mark_review_requested(job.batch_key)
            return self._park_for_review(job, reason=reason)

    def submit_review(
        self,
        job_id: str,
        *,
        decision: ReviewDecision,
        reviewed_by: str | None = None,
        notes: str | None = None,
    ) -> BatchJob:
        with self._locks.hold(job_id):
            job = self._require(job_id)
            if job.status != BatchJobStatus.MANUAL_REVIEW:
                raise WorkflowValidationError(f"Batch job is {job.status.value}, not under review")
            counters = self._store.get_counters(job.batch_key) or new_counters(job.batch_key)
            job = job.model_copy(
                update={
                    "review_decision": decision,
                    "reviewed_by": reviewed_by,
                    "review_notes": notes,
                    "reviewed_at": self._clock(),
                }
            )
            self._publish("batch.reviewed", job, decision=decision.value)
            outcome = OUTCOME_FOR_REVIEW[decision]
            return self._finish_unlocked(
                job,
                JoinDecision(outcome, f"review_{decision.value}", counters.success_percent),
            )

    def cancel_job(self, job_id: str) -> BatchJob:
        with self._locks.hold(job_id):
            job = self._require(job_id)
            if job.is_sealed:
                raise WorkflowValidationError(f"Batch job is already {job.status.value}")
            self._store.try_mark_fired(job.batch_key, "cancelled")
            job = self._store.save_batch_job(
                job.model_copy(
                    update={"status": BatchJobStatus.CANCELLED, "completed_at": self._clock()}
                )
            )
            logger.info("Batch job cancelled", extra={"job_id": job.id})
            self._publish("batch.cancelled", job)
            return job

    def check_deadlines(self) -> list[BatchJob]:
        """Re-evaluate every waiting job against the clock; returns jobs that changed."""

        changed: list[BatchJob] = []
        for job in self.list_jobs(status=BatchJobStatus.AWAITING_RESPONSES):
            if job.max_wait_ms is None:
                continue
            with self._locks.hold(job.id):
                current = self._require(job.id)
                updated = self._evaluate_unlocked(current)
                if updated.status != current.status:
                    changed.append(updated)
        return changed

    def get_stats(self, job_id: str) -> dict[str, Any]:
        job = self._require(job_id)
        counters = self._store.get_counters(job.batch_key)
        received = counters.received_count if counters else 0
        processed = counters.processed_count if counters else 0
        failed = counters.failed_count if counters else 0
        return {
            "jobId": job.id,
            "status": job.status.value,
            "expectedCount": counters.expected_count if counters else job.expected_count,
            "receivedCount": received,
            "processedCount": processed,
            "failedCount": failed,
            "pendingCount": max(received - processed - failed, 0),
            "successPercent": round(counters.success_percent, 2) if counters else 100.0,
            "isComplete": counters.is_closed if counters else False,
            "warnings": list(counters.warnings) if counters else [],
        }
