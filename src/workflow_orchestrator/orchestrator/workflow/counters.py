"""Batch counters and the join boundary evaluation.

This is the single implementation of the counting and threshold rules. Run
joins, awaiting steps and standalone batch jobs all call
:func:`apply_event` (through a store, under its lock) and :func:`evaluate_join`.

A batch is *closed* when the source said it is done (``is_complete``) or the
declared expected count has been reached. It is *settled* when every received
item has an outcome. A join only fires on a closed, settled batch, on an early
``min_count`` quorum, or on its deadline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CounterInvariantError(RuntimeError):
    pass


@dataclass(frozen=True, slots=True)
class BatchKey:
    """Scopes a set of counters: (run id, originating step id) or (job id, "batch")."""

    owner_id: str
    step_id: str

    def __str__(self) -> str:
        return f"{self.owner_id}:{self.step_id}"


class BatchItem(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    key: str | None = None
    unit_id: str | None = None
    # None while the item is accepted but not yet processed.
    success: bool | None = None
    data: Any = None
    error: str | None = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class BatchCounters(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    owner_id: str
    step_id: str
    expected_count: int | None = None
    received_count: int = 0
    processed_count: int = 0
    failed_count: int = 0
    is_complete: bool = False
    warnings: list[str] = Field(default_factory=list)
    items: list[BatchItem] = Field(default_factory=list)
    seen_keys: list[str] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))

    @property
    def key(self) -> BatchKey:
        return BatchKey(self.owner_id, self.step_id)

    @property
    def settled_count(self) -> int:
        return self.processed_count + self.failed_count

    @property
    def count_met(self) -> bool:
        return self.expected_count is not None and self.received_count >= self.expected_count

    @property
    def is_closed(self) -> bool:
        return self.is_complete or self.count_met

    @property
    def is_settled(self) -> bool:
        return self.settled_count >= self.received_count

    @property
    def success_percent(self) -> float:
        if self.settled_count == 0:
            return 100.0
        return self.processed_count / self.settled_count * 100.0


@dataclass(frozen=True, slots=True)
class BatchEvent:
    """One ingestion event; applied atomically and at most once per idempotency key.

    ``arrivals`` are newly accepted items (received + 1 each, and settled at
    once when ``success`` is known). ``settlements`` report outcomes for items
    that were already received, such as fan-out units finishing.
    """

    arrivals: tuple[BatchItem, ...] = ()
    settlements: tuple[BatchItem, ...] = ()
    expected_count: int | None = None
    complete: bool | None = None
    # Single-shot results: close the batch when nobody declared a total.
    close_if_undeclared: bool = False
    idempotency_key: str | None = None
    extra_warnings: tuple[str, ...] = field(default_factory=tuple)


def new_counters(key: BatchKey) -> BatchCounters:
    return BatchCounters(owner_id=key.owner_id, step_id=key.step_id)


def apply_event(
    counters: BatchCounters, event: BatchEvent, *, now: datetime | None = None
) -> BatchCounters | None:
    """Return the counters after ``event``, or None when the event is a duplicate.

    Callers must hold the store lock for ``counters.key``.
    """

    seen = set(counters.seen_keys)
    if event.idempotency_key and event.idempotency_key in seen:
        return None

    new_keys: list[str] = []
    if event.idempotency_key:
        seen.add(event.idempotency_key)
        new_keys.append(event.idempotency_key)

    received = counters.received_count
    processed = counters.processed_count
    failed = counters.failed_count
    items = list(counters.items)
    warnings = list(counters.warnings) + list(event.extra_warnings)

    for item in event.arrivals:
        if item.key:
            if item.key in seen:
                continue
            seen.add(item.key)
            new_keys.append(item.key)
        received += 1
        if item.success is True:
            processed += 1
        elif item.success is False:
            failed += 1
        items.append(item)

    for item in event.settlements:
        if item.success is None:
            continue
        if item.key:
            if item.key in seen:
                continue
            seen.add(item.key)
            new_keys.append(item.key)
        if processed + failed >= received:
            raise CounterInvariantError(
                f"Settlement would exceed received count for batch {counters.key}"
            )
        if item.success:
            processed += 1
        else:
            failed += 1
        for idx, existing in enumerate(items):
            if item.unit_id and existing.unit_id == item.unit_id and existing.success is None:
                items[idx] = existing.model_copy(
                    update={"success": item.success, "data": item.data, "error": item.error}
                )
                break
        else:
            items.append(item)

    expected = counters.expected_count
    if event.expected_count is not None:
        if expected is None:
            expected = event.expected_count
        elif expected != event.expected_count:
            warnings.append(
                f"Expected count mismatch: kept {expected}, ignored {event.expected_count}"
            )

    complete = counters.is_complete
    if event.complete:
        complete = True
    elif event.complete is None and event.close_if_undeclared and expected is None:
        complete = True

    return counters.model_copy(
        update={
            "expected_count": expected,
            "received_count": received,
            "processed_count": processed,
            "failed_count": failed,
            "is_complete": complete,
            "warnings": warnings,
            "items": items,
            "seen_keys": counters.seen_keys + new_keys,
            "updated_at": now or datetime.now(tz=UTC),
        }
    )


class JoinOutcome(str, Enum):
    WAITING = "waiting"
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILURE = "failure"
    MANUAL_REVIEW = "manual_review"


@dataclass(frozen=True, slots=True)
class JoinPolicy:
    min_success_percent: float = 100.0
    min_count: int | None = None
    max_wait_ms: int | None = None
    fail_on_timeout: bool = True
    requires_manual_review: bool = False

    def deadline(self, started_at: datetime | None) -> datetime | None:
        if started_at is None or self.max_wait_ms is None:
            return None
        return started_at + timedelta(milliseconds=self.max_wait_ms)


@dataclass(frozen=True, slots=True)
class JoinDecision:
    outcome: JoinOutcome
    reason: str
    success_percent: float

    @property
    def fired(self) -> bool:
        return self.outcome not in {JoinOutcome.WAITING, JoinOutcome.MANUAL_REVIEW}


def _missed_threshold(policy: JoinPolicy) -> JoinOutcome:
    return JoinOutcome.MANUAL_REVIEW if policy.requires_manual_review else JoinOutcome.FAILURE


def evaluate_join(
    counters: BatchCounters,
    policy: JoinPolicy,
    *,
    started_at: datetime | None = None,
    now: datetime | None = None,
) -> JoinDecision:
    """Decide whether a join over ``counters`` should fire, and how."""

    rate = counters.success_percent
    threshold_met = rate >= policy.min_success_percent
    min_count = policy.min_count or None

    if counters.is_closed and counters.is_settled:
        reason = "count_met" if counters.count_met else "completion_signal"
        if threshold_met and (min_count is None or counters.processed_count >= min_count):
            return JoinDecision(JoinOutcome.SUCCESS, reason, rate)
        return JoinDecision(_missed_threshold(policy), reason, rate)

    if min_count is not None and counters.processed_count >= min_count and threshold_met:
        return JoinDecision(JoinOutcome.SUCCESS, "min_count_met", rate)

    deadline = policy.deadline(started_at)
    if deadline is not None and (now or datetime.now(tz=UTC)) >= deadline:
        if not policy.fail_on_timeout:
            return JoinDecision(JoinOutcome.PARTIAL_SUCCESS, "deadline_passed", rate)
        return JoinDecision(_missed_threshold(policy), "deadline_passed", rate)

    return JoinDecision(JoinOutcome.WAITING, "not_satisfied", rate)
