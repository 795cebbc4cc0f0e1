from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class UnitStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    WAITING = "waiting"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_UNIT_STATUSES: frozenset[UnitStatus] = frozenset(
    {UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.CANCELLED}
)


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def new_unit_id() -> str:
    return uuid.uuid4().hex


class LoopContext(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    index: int
    # None for callback-fed loops whose size is not known yet.
    total: int | None = None
    item_variable: str = "item"


class ExecutionUnit(BaseModel):
    """One spawned piece of work belonging to exactly one step of one run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str = Field(default_factory=new_unit_id)
    run_id: str
    step_id: str
    originating_step_id: str
    parent_unit_id: str | None = None
    unit_type: str
    status: UnitStatus = UnitStatus.PENDING
    input: Any = None
    loop: LoopContext | None = None
    batch_owner_id: str
    batch_step_id: str
    output: Any = None
    error: str | None = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_UNIT_STATUSES

    @property
    def is_fan_out_child(self) -> bool:
        return self.loop is not None
