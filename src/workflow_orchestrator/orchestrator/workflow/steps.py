"""Step type model.

A workflow is an ordered list of typed steps joined by connections. Each step
type has its own config model; unknown keys (top-level and inside ``config``)
are preserved in pydantic's extra bag so they survive load/save and diagram
round trips.

Legacy step payloads are normalized by :func:`canonical_step_dict` before
validation. Nothing past that function sees ``type``/``execution``/
``branches``/flattened config keys.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field, field_validator
from pydantic.alias_generators import to_camel

from .errors import WorkflowValidationError


class StepType(str, Enum):
    TRIGGER = "trigger"
    AGENT = "agent"
    MANUAL = "manual"
    EXTERNAL = "external"
    WEBHOOK = "webhook"
    DECISION = "decision"
    FOREACH = "foreach"
    JOIN = "join"
    FLOW = "flow"


# Steps whose completion is reported by someone else (unit result or callback).
AWAITING_STEP_TYPES: frozenset[StepType] = frozenset(
    {StepType.AGENT, StepType.MANUAL, StepType.EXTERNAL, StepType.WEBHOOK}
)

DEFAULT_SUCCESS_STATUS_CODES: tuple[int, ...] = (200, 201, 202, 204)


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class Connection(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    target_step_id: str
    condition: str | None = None
    label: str | None = None

    @field_validator("condition", "label", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class StepConfig(_CamelModel):
    """Config shared by every step type. ``tag`` is matched by join tag patterns."""

    tag: str | None = None


class AwaitConfig(StepConfig):
    min_success_percent: float = Field(default=100, ge=0, le=100)
    max_wait_ms: int | None = Field(default=None, ge=0)
    fail_on_timeout: bool = True
    requires_manual_review: bool = False


class AgentConfig(AwaitConfig):
    additional_instructions: str | None = None
    default_assignee_id: str | None = None


class ManualConfig(AgentConfig):
    pass


class ExternalConfig(AwaitConfig):
    url: str | None = None
    method: str = "POST"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    # None falls back to the executor default.
    timeout_ms: int | None = Field(default=None, gt=0)
    success_status_codes: list[int] = Field(
        default_factory=lambda: list(DEFAULT_SUCCESS_STATUS_CODES)
    )


class WebhookConfig(ExternalConfig):
    await_callback: bool = False


class DecisionConfig(StepConfig):
    default_connection: str | None = None
    # Evaluated once; yes/no connections follow its truth value.
    condition: str | None = None


class ForeachConfig(AwaitConfig):
    # None means the collection is streamed in through callbacks.
    items_path: str | None = None
    item_variable: str = "item"
    max_items: int | None = Field(default=None, ge=1)
    expected_count_path: str | None = None


class JoinConfig(AwaitConfig):
    await_step_id: str | None = None
    await_tag: str | None = None
    min_count: int | None = Field(default=None, ge=0)


class FlowConfig(StepConfig):
    workflow_id: str | None = None
    input_mapping: dict[str, str] = Field(default_factory=dict)


class BaseStep(_CamelModel):
    id: str = ""
    name: str = ""
    description: str | None = None
    connections: list[Connection] = Field(default_factory=list)

    @property
    def kind(self) -> StepType:
        return StepType(getattr(self, "step_type"))

    @property
    def display_name(self) -> str:
        return self.name or self.id


class TriggerStep(BaseStep):
    step_type: Literal["trigger"] = "trigger"
    config: StepConfig = Field(default_factory=StepConfig)


class AgentStep(BaseStep):
    step_type: Literal["agent"] = "agent"
    config: AgentConfig = Field(default_factory=AgentConfig)


class ManualStep(BaseStep):
    step_type: Literal["manual"] = "manual"
    config: ManualConfig = Field(default_factory=ManualConfig)


class ExternalStep(BaseStep):
    step_type: Literal["external"] = "external"
    config: ExternalConfig = Field(default_factory=ExternalConfig)


class WebhookStep(BaseStep):
    step_type: Literal["webhook"] = "webhook"
    config: WebhookConfig = Field(default_factory=WebhookConfig)


class DecisionStep(BaseStep):
    step_type: Literal["decision"] = "decision"
    config: DecisionConfig = Field(default_factory=DecisionConfig)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def branches(self) -> list[dict[str, str | None]]:
        """Legacy branch list, derived from connections for older clients."""

        return [
            {"condition": c.condition, "targetStepId": c.target_step_id}
            for c in self.connections
        ]


class ForeachStep(BaseStep):
    step_type: Literal["foreach"] = "foreach"
    config: ForeachConfig = Field(default_factory=ForeachConfig)


class JoinStep(BaseStep):
    step_type: Literal["join"] = "join"
    config: JoinConfig = Field(default_factory=JoinConfig)


class FlowStep(BaseStep):
    step_type: Literal["flow"] = "flow"
    config: FlowConfig = Field(default_factory=FlowConfig)


Step = Annotated[
    Union[
        TriggerStep,
        AgentStep,
        ManualStep,
        ExternalStep,
        WebhookStep,
        DecisionStep,
        ForeachStep,
        JoinStep,
        FlowStep,
    ],
    Field(discriminator="step_type"),
]

STEP_ADAPTER: TypeAdapter[Step] = TypeAdapter(Step)

_STEP_TYPE_VALUES = {t.value for t in StepType}

_LEGACY_EXECUTION_MODES = {"manual": "manual", "automated": "agent", "automatic": "agent"}

_LEGACY_REGULAR_STEP = "step"

_STEP_TYPE_ALIASES = {
    "subflow": "flow",
    "subworkflow": "flow",
    "sub_workflow": "flow",
    "branch": "decision",
    "condition": "decision",
    "loop": "foreach",
    "merge": "join",
}

# Keys older payloads kept at the top level of a step; they belong in ``config``.
_FLATTENED_CONFIG_KEYS = {
    "itemsPath": "itemsPath",
    "itemVariable": "itemVariable",
    "maxItems": "maxItems",
    "expectedCountPath": "expectedCountPath",
    "awaitStepId": "awaitStepId",
    "awaitTag": "awaitTag",
    "minCount": "minCount",
    "minSuccessPercent": "minSuccessPercent",
    "maxWaitMs": "maxWaitMs",
    "failOnTimeout": "failOnTimeout",
    "requiresManualReview": "requiresManualReview",
    "defaultConnection": "defaultConnection",
    "additionalInstructions": "additionalInstructions",
    "defaultAssigneeId": "defaultAssigneeId",
    "subflowId": "workflowId",
    "inputMapping": "inputMapping",
    "awaitCallback": "awaitCallback",
}

_NESTED_CONFIG_KEYS = ("externalConfig", "webhookConfig")


def _resolve_step_type(explicit: object, legacy_type: object, execution: object) -> str:
    unknown: str | None = None
    if explicit is not None:
        value = str(explicit).strip().lower()
        value = _STEP_TYPE_ALIASES.get(value, value)
        if value in _STEP_TYPE_VALUES:
            return value
        if value in _LEGACY_EXECUTION_MODES:
            return _LEGACY_EXECUTION_MODES[value]
        # Older payloads store regular steps as stepType "step" with the mode in type/execution.
        if value != _LEGACY_REGULAR_STEP:
            unknown = value

    for candidate in (legacy_type, execution):
        if not isinstance(candidate, str):
            continue
        value = candidate.strip().lower()
        value = _STEP_TYPE_ALIASES.get(value, value)
        if value in _STEP_TYPE_VALUES:
            return value
        if value in _LEGACY_EXECUTION_MODES:
            return _LEGACY_EXECUTION_MODES[value]

    if unknown is not None:
        raise WorkflowValidationError(f"Unknown step type: {explicit!r}")
    return StepType.AGENT.value


def _legacy_connections(data: dict[str, Any]) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    branches = data.get("branches")
    if isinstance(branches, list):
        for branch in branches:
            if not isinstance(branch, Mapping):
                continue
            target = branch.get("targetStepId") or branch.get("target_step_id")
            if not target:
                continue
            out.append(
                {
                    "targetStepId": target,
                    "condition": branch.get("condition"),
                    "label": branch.get("label"),
                }
            )
    next_step_id = data.get("nextStepId")
    if not out and isinstance(next_step_id, str) and next_step_id:
        out.append({"targetStepId": next_step_id})
    return out


def canonical_step_dict(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Rewrite a raw step payload into the canonical camelCase shape.

    - ``type``/``execution`` (manual/automated) resolve to ``stepType``
    - ``branches`` and ``nextStepId`` become ``connections`` when none are given
    - flattened config keys and ``externalConfig``/``webhookConfig`` move into ``config``
    """

    data = dict(raw)
    legacy_type = data.pop("type", None)
    execution = data.pop("execution", None)
    explicit = data.pop("stepType", None)
    snake = data.pop("step_type", None)
    data["stepType"] = _resolve_step_type(
        explicit if explicit is not None else snake, legacy_type, execution
    )

    config_raw = data.get("config")
    config: dict[str, Any] = dict(config_raw) if isinstance(config_raw, Mapping) else {}
    for nested_key in _NESTED_CONFIG_KEYS:
        nested = data.pop(nested_key, None)
        if isinstance(nested, Mapping):
            for key, value in nested.items():
                config.setdefault(key, value)
    for flat_key, config_key in _FLATTENED_CONFIG_KEYS.items():
        if flat_key in data:
            config.setdefault(config_key, data.pop(flat_key))
    data["config"] = config

    connections = data.get("connections")
    if not connections:
        data["connections"] = _legacy_connections(data)
    elif not isinstance(connections, list):
        raise WorkflowValidationError("Step connections must be a list")
    data.pop("branches", None)
    data.pop("nextStepId", None)
    return data


def parse_step(raw: Mapping[str, Any]) -> Step:
    return STEP_ADAPTER.validate_python(canonical_step_dict(raw))


def dump_step(step: Step) -> dict[str, Any]:
    return step.model_dump(mode="json", by_alias=True, exclude_none=True)


class Workflow(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str = ""
    name: str = ""
    description: str | None = None
    is_active: bool = True
    steps: list[Step] = Field(default_factory=list)
    entry_step_id: str | None = None
    mermaid_diagram: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("steps", mode="before")
    @classmethod
    def _canonical_steps(cls, value: object) -> object:
        if isinstance(value, list):
            return [canonical_step_dict(v) if isinstance(v, Mapping) else v for v in value]
        return value

    def step_map(self) -> dict[str, Step]:
        return {step.id: step for step in self.steps}

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def entry_steps(self) -> list[Step]:
        """Trigger steps, else the designated entry step, else the first step."""

        triggers = [s for s in self.steps if s.kind == StepType.TRIGGER]
        if triggers:
            return triggers
        if self.entry_step_id:
            entry = self.get_step(self.entry_step_id)
            if entry is not None:
                return [entry]
        return self.steps[:1]
