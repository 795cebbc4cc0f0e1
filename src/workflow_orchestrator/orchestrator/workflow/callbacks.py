"""Callback ingestion: authentication and payload normalization.

Three payload shapes are accepted and all become "N items arrived":

- ``{"item": {...}}``                      one item
- ``{"items": [...]}`` or a JSON array     N items (N may be 0)
- any other object                         the object itself is one item

Batch controls travel out of band from the items, either as headers
(``X-Expected-Count``, ``X-Workflow-Complete``/``X-Batch-Complete``,
``Idempotency-Key``) or in the body under ``workflowUpdate``
(``{"total": 5, "complete": true}``). Headers win over the body.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .counters import BatchItem
from .errors import AuthenticationError, WorkflowValidationError

SECRET_HEADER = "X-Workflow-Secret"
EXPECTED_COUNT_HEADER = "X-Expected-Count"
RUN_COMPLETE_HEADER = "X-Workflow-Complete"
BATCH_COMPLETE_HEADER = "X-Batch-Complete"
IDEMPOTENCY_KEY_HEADER = "Idempotency-Key"

_CONTROL_KEYS = ("workflowUpdate", "batchUpdate", "idempotencyKey")
_FAILED_STATUSES = {"failed", "error", "failure"}


@dataclass(frozen=True, slots=True)
class NormalizedCallback:
    items: list[BatchItem] = field(default_factory=list)
    expected_count: int | None = None
    complete: bool | None = None
    idempotency_key: str | None = None


@dataclass(frozen=True, slots=True)
class CallbackAck:
    accepted: bool
    received_count: int = 0
    expected_count: int | None = None
    is_complete: bool = False
    unit_ids: list[str] = field(default_factory=list)
    duplicate: bool = False
    reason: str | None = None
    status: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_json(self) -> dict[str, object]:
        return {
            "acknowledged": True,
            "accepted": self.accepted,
            "duplicate": self.duplicate,
            "receivedCount": self.received_count,
            "expectedCount": self.expected_count,
            "isComplete": self.is_complete,
            "unitIds": list(self.unit_ids),
            "reason": self.reason,
            "status": self.status,
            "warnings": list(self.warnings),
        }


def verify_secret(expected: str, presented: str | None) -> None:
    if not presented:
        raise AuthenticationError("Missing callback secret")
    if not hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8")):
        raise AuthenticationError("Invalid callback secret")


def secret_from_headers(headers: Mapping[str, str]) -> str | None:
    """Read the per-run secret from ``X-Workflow-Secret`` or a bearer token."""

    lowered = {k.lower(): v for k, v in headers.items()}
    secret = lowered.get(SECRET_HEADER.lower())
    if secret:
        return secret.strip()
    auth = lowered.get("authorization", "")
    scheme, _, token = auth.partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return None


def parse_count(value: object, *, source: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise WorkflowValidationError(f"{source} must be a non-negative integer")
    try:
        count = int(str(value).strip()) if not isinstance(value, int) else value
    except ValueError as e:
        raise WorkflowValidationError(f"{source} must be a non-negative integer") from e
    if count < 0:
        raise WorkflowValidationError(f"{source} must be a non-negative integer")
    return count


def parse_flag(value: object, *, source: str) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in {"true", "1", "yes"}:
        return True
    if text in {"false", "0", "no"}:
        return False
    raise WorkflowValidationError(f"{source} must be true or false")


def to_batch_item(raw: Any) -> BatchItem:
    if not isinstance(raw, Mapping):
        return BatchItem(data=raw, success=True)
    error = raw.get("error")
    status = raw.get("status")
    failed = (
        raw.get("success") is False
        or bool(error)
        or (isinstance(status, str) and status.lower() in _FAILED_STATUSES)
    )
    key = raw.get("itemKey")
    return BatchItem(
        key=str(key) if key is not None and key != "" else None,
        success=not failed,
        data=dict(raw),
        error=(str(error) if error else ("Item reported failure" if failed else None)),
    )


def normalize_callback(
    body: Any,
    *,
    expected_count_header: str | None = None,
    complete_header: str | None = None,
    idempotency_key_header: str | None = None,
) -> NormalizedCallback:
    controls: Mapping[str, Any] = {}
    idempotency_key: str | None = None
    raw_items: list[Any]

    if isinstance(body, list):
        raw_items = list(body)
    elif isinstance(body, Mapping):
        update = body.get("workflowUpdate") or body.get("batchUpdate")
        if isinstance(update, Mapping):
            controls = update
        key = body.get("idempotencyKey")
        idempotency_key = str(key) if key else None

        if "item" in body:
            raw_items = [body["item"]]
        elif isinstance(body.get("items"), list):
            raw_items = list(body["items"])
        else:
            rest = {k: v for k, v in body.items() if k not in _CONTROL_KEYS}
            raw_items = [rest] if rest else []
    elif body is None:
        raw_items = []
    else:
        raw_items = [body]

    expected = parse_count(expected_count_header, source=EXPECTED_COUNT_HEADER)
    if expected is None:
        expected = parse_count(
            controls.get("total", controls.get("expectedCount")), source="workflowUpdate.total"
        )
    complete = parse_flag(complete_header, source="completion header")
    if complete is None:
        complete = parse_flag(
            controls.get("complete", controls.get("isComplete")),
            source="workflowUpdate.complete",
        )
    if idempotency_key_header:
        idempotency_key = idempotency_key_header.strip() or idempotency_key

    return NormalizedCallback(
        items=[to_batch_item(raw) for raw in raw_items],
        expected_count=expected,
        complete=complete,
        idempotency_key=idempotency_key,
    )
