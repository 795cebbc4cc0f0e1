"""Batch job REST API.

Standalone fan-in jobs: create, feed results through the callback endpoint,
review and inspect. All routes are mounted under `/api/v1`.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Header, HTTPException, Query, Request

from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJobService, BatchJobStatus
from workflow_orchestrator.orchestrator.workflow.callbacks import (
    normalize_callback,
    secret_from_headers,
)
from workflow_orchestrator.server.models import (
    BatchJobCreateRequest,
    ReviewRequest,
    ReviewRequestRequest,
    batch_job_json,
)

router = APIRouter()


def _service(request: Request) -> BatchJobService:
    service = getattr(request.app.state, "batch_jobs", None)
    if not isinstance(service, BatchJobService):
        # This should never happen for the real app, but keeps the API fail-fast.
        raise HTTPException(status_code=500, detail="Batch job service not configured")
    return service


@router.post("/batch-jobs", status_code=201)
def create_batch_job(request: Request, req: BatchJobCreateRequest) -> dict[str, Any]:
    job = _service(request).create_job(
        name=req.name,
        job_type=req.job_type,
        description=req.description,
        expected_count=req.expected_count,
        min_success_percent=req.min_success_percent,
        max_wait_ms=req.max_wait_ms,
        fail_on_timeout=req.fail_on_timeout,
        requires_manual_review=req.requires_manual_review,
        metadata=req.metadata,
    )
    return batch_job_json(job, include_secret=True)


@router.get("/batch-jobs")
def list_batch_jobs(
    request: Request, status: BatchJobStatus | None = Query(default=None)
) -> list[dict[str, Any]]:
    return [batch_job_json(job) for job in _service(request).list_jobs(status=status)]


@router.get("/batch-jobs/{job_id}")
def get_batch_job(request: Request, job_id: str) -> dict[str, Any]:
    return batch_job_json(_service(request).get_job(job_id))


@router.get("/batch-jobs/{job_id}/stats")
def get_batch_job_stats(request: Request, job_id: str) -> dict[str, Any]:
    return _service(request).get_stats(job_id)


@router.post("/batch-jobs/{job_id}/start")
def start_batch_job(request: Request, job_id: str) -> dict[str, Any]:
    return batch_job_json(_service(request).start_job(job_id))


@router.post("/batch-jobs/{job_id}/callback")
def batch_job_callback(
    request: Request,
    job_id: str,
    payload: Any = Body(default=None),
    expected_count: str | None = Header(default=None, alias="X-Expected-Count"),
    batch_complete: str | None = Header(default=None, alias="X-Batch-Complete"),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
) -> dict[str, object]:
    service = _service(request)
    secret = secret_from_headers(request.headers)
    callback = normalize_callback(
        payload,
        expected_count_header=expected_count,
        complete_header=batch_complete,
        idempotency_key_header=idempotency_key,
    )
    return service.ingest_callback(job_id, secret=secret, callback=callback).to_json()


@router.post("/batch-jobs/{job_id}/review")
def review_batch_job(request: Request, job_id: str, req: ReviewRequest) -> dict[str, Any]:
    job = _service(request).submit_review(
        job_id, decision=req.decision, reviewed_by=req.reviewed_by, notes=req.notes
    )
    return batch_job_json(job)


@router.post("/batch-jobs/{job_id}/request-review")
def request_batch_job_review(
    request: Request, job_id: str, req: ReviewRequestRequest
) -> dict[str, Any]:
    return batch_job_json(_service(request).request_manual_review(job_id, reason=req.reason))


@router.post("/batch-jobs/{job_id}/cancel")
def cancel_batch_job(request: Request, job_id: str) -> dict[str, Any]:
    return batch_job_json(_service(request).cancel_job(job_id))
