"""Mermaid flowchart <-> step graph compiler.

Node shapes map to step types::

    id[/"Start"/]           trigger
    id["Review"]            agent
    id("Approve")           manual (also ((...)) and ([...]))
    id{{"Call CRM"}}        external ("Webhook: ..." -> webhook)
    id{"Approved?"}         decision
    id[["Each: Row (items)"]]   foreach; "Join: ..." -> join, "Run: ..." -> flow

Label annotations are lifted into config and stripped from the name:
``(path)`` on foreach is the collection path, ``@NN%`` on join is the success
threshold and ``(step)`` its source, ``(workflow)`` on flow the nested workflow.

Anything the shape and label cannot carry is written as a metadata comment and
wins over label-derived values on decode::

    %% @step(review): {"config":{"maxWaitMs":60000},"description":"..."}

Decision edges labelled ``Yes``/``True`` or ``No``/``False`` follow the truth
value of the decision's own ``config.condition``; set it with a metadata comment
such as ``%% @step(check): {"config":{"condition":"approved"}}``. Any other edge
label is evaluated as a condition in its own right.

Decoding never fails as a whole: malformed lines are skipped and reported in
``DecodedDiagram.warnings``.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from .errors import WorkflowValidationError
from .steps import (
    Connection,
    FlowStep,
    ForeachStep,
    JoinStep,
    Step,
    StepType,
    dump_step,
    parse_step,
)

logger = logging.getLogger(__name__)

_MISSING = object()

_SAFE_NODE_ID_RE = re.compile(r"^[A-Za-z0-9_]+$")
_RESERVED_NODE_IDS = frozenset(
    {"end", "graph", "flowchart", "subgraph", "class", "classdef", "style", "click", "direction"}
)
_HEADER_RE = re.compile(r"^(flowchart|graph)\b", re.IGNORECASE)
_IGNORED_RE = re.compile(r"^(subgraph|classDef|class|style|linkStyle|click|direction)\b\s")
_STEP_META_RE = re.compile(r"^%%\s*@step\(\s*(?P<id>[^)]+?)\s*\)\s*:?\s*(?P<json>\{.*\})\s*$")
_LEGACY_META_RE = re.compile(r"^%%\s*@meta\s+(?P<id>\S+)\s+(?P<json>\{.*\})\s*$")
_WORKFLOW_META_RE = re.compile(r"^%%\s*@workflow\s*:?\s*(?P<json>\{.*\})\s*$")
_ARROW_RE = re.compile(r"\s*(?:-\.->|==>|-->|---)\s*(?:\|(?P<label>[^|]*)\|\s*)?")
_QUOTED_RE = re.compile(r'"[^"]*"')
_NODE_RE = re.compile(r"^(?P<id>[A-Za-z0-9_]+)\s*(?P<shape>.*)$")
_PREFIX_RE = re.compile(r"^(?P<prefix>each|join|run|webhook|external)\s*:\s*(?P<rest>.*)$", re.I)
_PAREN_SUFFIX_RE = re.compile(r"\s*\((?P<value>[^()]*)\)\s*$")
_PERCENT_SUFFIX_RE = re.compile(r"\s*@\s*(?P<value>\d+(?:\.\d+)?)\s*%\s*$")
_ENTITY_RE = re.compile(r"#(quot|\d+);")
_CLASS_SHORTHAND_RE = re.compile(r":::[\w-]+\s*$")

# (open, close, shape); longer delimiters first so "[[" is not read as "[".
_SHAPES: tuple[tuple[str, str, str], ...] = (
    ("[[", "]]", "subroutine"),
    ("[/", "/]", "parallelogram"),
    ("((", "))", "circle"),
    ("([", "])", "stadium"),
    ("{{", "}}", "hexagon"),
    ("[", "]", "rect"),
    ("(", ")", "round"),
    ("{", "}", "diamond"),
)

_SHAPE_FOR_TYPE: dict[StepType, tuple[str, str]] = {
    StepType.TRIGGER: ("[/", "/]"),
    StepType.AGENT: ("[", "]"),
    StepType.MANUAL: ("(", ")"),
    StepType.EXTERNAL: ("{{", "}}"),
    StepType.WEBHOOK: ("{{", "}}"),
    StepType.DECISION: ("{", "}"),
    StepType.FOREACH: ("[[", "]]"),
    StepType.JOIN: ("[[", "]]"),
    StepType.FLOW: ("[[", "]]"),
}

_CLASS_STYLES: dict[StepType, str] = {
    StepType.TRIGGER: "fill:#ecfdf5,stroke:#059669",
    StepType.AGENT: "fill:#eff6ff,stroke:#2563eb",
    StepType.MANUAL: "fill:#fefce8,stroke:#ca8a04",
    StepType.EXTERNAL: "fill:#fdf4ff,stroke:#c026d3",
    StepType.WEBHOOK: "fill:#fdf2f8,stroke:#db2777",
    StepType.DECISION: "fill:#fff7ed,stroke:#ea580c",
    StepType.FOREACH: "fill:#f0fdfa,stroke:#0d9488",
    StepType.JOIN: "fill:#f0fdfa,stroke:#0f766e",
    StepType.FLOW: "fill:#f5f3ff,stroke:#7c3aed",
}

# Keys that shape, label and edges already carry; never written to metadata.
_STRUCTURAL_KEYS = frozenset({"id", "name", "stepType", "config", "connections", "branches"})


@dataclass(frozen=True, slots=True)
class DecodedDiagram:
    steps: list[Step]
    name: str | None = None
    entry_step_id: str | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class _Node:
    node_id: str
    shape: str
    label: str
    line_no: int


def _escape(text: str) -> str:
    return (
        text.replace("#", "#35;")
        .replace('"', "#quot;")
        .replace("|", "#124;")
        .replace("\n", "#10;")
    )


def _unescape(text: str) -> str:
    def _entity(match: re.Match[str]) -> str:
        code = match.group(1)
        if code == "quot":
            return '"'
        return chr(int(code))

    return _ENTITY_RE.sub(_entity, text)


def _unquote(text: str) -> str:
    value = text.strip()
    if len(value) >= 2 and value[0] == value[-1] == '"':
        value = value[1:-1]
    return _unescape(value)


def _parse_shape(text: str) -> tuple[str, str] | None:
    for open_, close, shape in _SHAPES:
        if (
            text.startswith(open_)
            and text.endswith(close)
            and len(text) >= len(open_) + len(close)
        ):
            inner = text[len(open_) : len(text) - len(close)]
            return shape, _unquote(inner)
    return None


def _format_percent(value: float) -> str:
    return f"{value:g}"


def _pop_paren(text: str) -> tuple[str, str | None]:
    match = _PAREN_SUFFIX_RE.search(text)
    if not match:
        return text, None
    value = match.group("value").strip()
    return text[: match.start()].rstrip(), value or None


def classify_node(shape: str, label: str) -> tuple[StepType, str, dict[str, Any]]:
    """Map a node's shape and label to (step type, display name, config)."""

    prefix_match = _PREFIX_RE.match(label.strip())
    prefix = prefix_match.group("prefix").lower() if prefix_match else None
    rest = prefix_match.group("rest") if prefix_match else label

    if shape == "parallelogram":
        return StepType.TRIGGER, label, {}
    if shape == "rect":
        return StepType.AGENT, label, {}
    if shape in {"round", "circle", "stadium"}:
        return StepType.MANUAL, label, {}
    if shape == "diamond":
        return StepType.DECISION, label, {}
    if shape == "hexagon":
        if prefix == "webhook":
            return StepType.WEBHOOK, rest, {}
        if prefix == "external":
            return StepType.EXTERNAL, rest, {}
        return StepType.EXTERNAL, label, {}

    # subroutine
    if prefix == "join":
        name = rest
        config: dict[str, Any] = {}
        percent = _PERCENT_SUFFIX_RE.search(name)
        if percent:
            config["minSuccessPercent"] = float(percent.group("value"))
            name = name[: percent.start()].rstrip()
        name, await_step_id = _pop_paren(name)
        if await_step_id:
            config["awaitStepId"] = await_step_id
        return StepType.JOIN, name, config
    if prefix == "run":
        name, workflow_id = _pop_paren(rest)
        return StepType.FLOW, name, ({"workflowId": workflow_id} if workflow_id else {})
    name = rest if prefix == "each" else label
    name, items_path = _pop_paren(name)
    return StepType.FOREACH, name, ({"itemsPath": items_path} if items_path else {})


def _label_for(step: Step) -> str:
    name = step.name
    if step.kind == StepType.WEBHOOK:
        return f"Webhook: {name}"
    if isinstance(step, ForeachStep):
        items_path = step.config.items_path
        return f"Each: {name} ({items_path})" if items_path else f"Each: {name}"
    if isinstance(step, JoinStep):
        label = f"Join: {name}"
        if step.config.await_step_id:
            label += f" ({step.config.await_step_id})"
        if step.config.min_success_percent != 100:
            label += f" @{_format_percent(step.config.min_success_percent)}%"
        return label
    if isinstance(step, FlowStep):
        workflow_id = step.config.workflow_id
        return f"Run: {name} ({workflow_id})" if workflow_id else f"Run: {name}"
    return name


def _edge_text(source: StepType, connection: Connection) -> str | None:
    if source == StepType.DECISION:
        return connection.condition or connection.label
    return connection.label or connection.condition


def _connection_from_edge(source: StepType, target_step_id: str, text: str | None) -> Connection:
    if source == StepType.DECISION:
        return Connection(target_step_id=target_step_id, condition=text)
    return Connection(target_step_id=target_step_id, label=text)


def topological_order(node_ids: Sequence[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    """Kahn's algorithm; unreached nodes (cycles) keep their textual order at the end."""

    indegree = {node_id: 0 for node_id in node_ids}
    adjacency: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    for source, target in edges:
        if source in indegree and target in indegree:
            adjacency[source].append(target)
            indegree[target] += 1

    queue = deque(node_id for node_id in node_ids if indegree[node_id] == 0)
    order: list[str] = []
    visited: set[str] = set()
    while queue:
        node_id = queue.popleft()
        order.append(node_id)
        visited.add(node_id)
        for target in adjacency[node_id]:
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)

    order.extend(node_id for node_id in node_ids if node_id not in visited)
    return order


def _mask_quoted(line: str) -> str:
    return _QUOTED_RE.sub(lambda m: '"' + "_" * (len(m.group()) - 2) + '"', line)


def _parse_statement(
    line: str,
) -> tuple[list[_Node | str], list[str | None]] | None:
    """Split a node/edge statement into node refs and edge texts.

    Returns None when any segment is not a valid node reference.
    """

    masked = _mask_quoted(line)
    segments: list[str] = []
    texts: list[str | None] = []
    cursor = 0
    for match in _ARROW_RE.finditer(masked):
        segments.append(line[cursor : match.start()])
        if match.group("label") is not None:
            raw = line[match.start("label") : match.end("label")]
            texts.append(_unquote(raw) or None)
        else:
            texts.append(None)
        cursor = match.end()
    segments.append(line[cursor:])

    refs: list[_Node | str] = []
    for segment in segments:
        node_match = _NODE_RE.match(_CLASS_SHORTHAND_RE.sub("", segment.strip()))
        if not node_match:
            return None
        node_id = node_match.group("id")
        shape_text = node_match.group("shape").strip()
        if not shape_text:
            refs.append(node_id)
            continue
        parsed = _parse_shape(shape_text)
        if parsed is None:
            return None
        refs.append(_Node(node_id=node_id, shape=parsed[0], label=parsed[1].strip(), line_no=0))
    return refs, texts


def _load_json_object(raw: str) -> dict[str, Any] | None:
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return None
    return value if isinstance(value, dict) else None


def decode_diagram(text: str) -> DecodedDiagram:
    nodes: dict[str, _Node] = {}
    edges: list[tuple[str, str, str | None]] = []
    metadata: dict[str, dict[str, Any]] = {}
    workflow_meta: dict[str, Any] = {}
    warnings: list[str] = []

    def _skip(line_no: int, reason: str, line: str) -> None:
        warnings.append(f"line {line_no}: {reason}")
        logger.warning(
            "Skipping diagram line",
            extra={"line_no": line_no, "reason": reason, "line": line[:200]},
        )

    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip().rstrip(";").strip()
        if not line:
            continue

        if line.startswith("%%"):
            meta_match = _STEP_META_RE.match(line) or _LEGACY_META_RE.match(line)
            if meta_match:
                obj = _load_json_object(meta_match.group("json"))
                if obj is None:
                    _skip(line_no, "invalid step metadata", line)
                else:
                    metadata[meta_match.group("id")] = obj
                continue
            workflow_match = _WORKFLOW_META_RE.match(line)
            if workflow_match:
                obj = _load_json_object(workflow_match.group("json"))
                if obj is None:
                    _skip(line_no, "invalid workflow metadata", line)
                else:
                    workflow_meta.update(obj)
            continue

        if _HEADER_RE.match(line) or _IGNORED_RE.match(line) or line == "end":
            continue

        parsed = _parse_statement(line)
        if parsed is None:
            _skip(line_no, "unparseable statement", line)
            continue

        refs, texts = parsed
        ids: list[str] = []
        for ref in refs:
            if isinstance(ref, _Node):
                ref.line_no = line_no
                nodes.setdefault(ref.node_id, ref)
                ids.append(ref.node_id)
            else:
                ids.append(ref)
        for idx, edge_text in enumerate(texts):
            edges.append((ids[idx], ids[idx + 1], edge_text))

    node_order = list(nodes)
    step_ids: dict[str, str] = {}
    drafts: dict[str, dict[str, Any]] = {}
    for node_id in node_order:
        node = nodes[node_id]
        step_type, name, config = classify_node(node.shape, node.label)
        draft: dict[str, Any] = {
            "id": node_id,
            "name": name.strip(),
            "stepType": step_type.value,
            "config": config,
            "connections": None,
        }
        for key, value in metadata.get(node_id, {}).items():
            if key == "config" and isinstance(value, dict):
                draft["config"] = {**draft["config"], **value}
            else:
                draft[key] = value
        step_ids[node_id] = str(draft["id"])
        drafts[node_id] = draft

    for source, target, edge_text in edges:
        if source not in drafts or target not in drafts:
            continue
        draft = drafts[source]
        if "connections" in metadata.get(source, {}):
            continue
        try:
            source_type = StepType(str(draft["stepType"]).lower())
        except ValueError:
            source_type = StepType.AGENT
        connection = _connection_from_edge(source_type, step_ids[target], edge_text)
        if draft["connections"] is None:
            draft["connections"] = []
        draft["connections"].append(connection.model_dump(by_alias=True, exclude_none=True))

    ordered = topological_order(node_order, [(s, t) for s, t, _ in edges])

    steps: list[Step] = []
    for node_id in ordered:
        draft = drafts[node_id]
        if draft["connections"] is None:
            draft["connections"] = []
        try:
            steps.append(parse_step(draft))
        except (ValidationError, WorkflowValidationError) as e:
            _skip(nodes[node_id].line_no, f"invalid step {node_id!r}: {e}", nodes[node_id].label)

    known = {step.id for step in steps}
    cleaned: list[Step] = []
    for step in steps:
        kept = [c for c in step.connections if c.target_step_id in known]
        if len(kept) != len(step.connections):
            step = step.model_copy(update={"connections": kept})
        cleaned.append(step)

    name = workflow_meta.get("name")
    entry = workflow_meta.get("entryStepId")
    return DecodedDiagram(
        steps=cleaned,
        name=name if isinstance(name, str) else None,
        entry_step_id=entry if isinstance(entry, str) and entry in known else None,
        warnings=warnings,
    )


def _assign_node_ids(steps: Sequence[Step]) -> dict[str, str]:
    taken = {
        step.id
        for step in steps
        if _SAFE_NODE_ID_RE.match(step.id) and step.id.lower() not in _RESERVED_NODE_IDS
    }
    out: dict[str, str] = {}
    used: set[str] = set()
    for idx, step in enumerate(steps):
        if step.id in out:
            continue
        if step.id in taken and step.id not in used:
            node_id = step.id
        else:
            node_id = f"n{idx}"
            suffix = 0
            while node_id in taken or node_id in used:
                suffix += 1
                node_id = f"n{idx}_{suffix}"
        out[step.id] = node_id
        used.add(node_id)
    return out


def _step_metadata(step: Step, node_id: str, node_ids: dict[str, str]) -> dict[str, Any]:
    """Everything the decoder would not rebuild from this step's shape, label and edges."""

    open_, close = _SHAPE_FOR_TYPE[step.kind]
    parsed = _parse_shape(f'{open_}"{_escape(_label_for(step))}"{close}')
    if parsed is None:
        raise WorkflowValidationError(f"Cannot encode step {step.id!r} as a diagram node")
    decoded_type, decoded_name, decoded_config = classify_node(parsed[0], parsed[1].strip())

    meta: dict[str, Any] = {}
    if node_id != step.id:
        meta["id"] = step.id
    if decoded_type != step.kind:
        meta["stepType"] = step.kind.value
    if decoded_name.strip() != step.name:
        meta["name"] = step.name

    actual = step.config.model_dump(mode="json", by_alias=True)
    defaults = type(step.config)().model_dump(mode="json", by_alias=True)
    expected = {**defaults, **decoded_config}
    config_meta = {
        key: value for key, value in actual.items() if expected.get(key, _MISSING) != value
    }
    if config_meta:
        meta["config"] = config_meta

    for key, value in dump_step(step).items():
        if key not in _STRUCTURAL_KEYS:
            meta[key] = value

    reproducible = all(
        connection.target_step_id in node_ids
        and _connection_from_edge(
            step.kind, connection.target_step_id, _edge_text(step.kind, connection)
        )
        == connection
        for connection in step.connections
    )
    if not reproducible:
        meta["connections"] = [
            c.model_dump(mode="json", by_alias=True, exclude_none=True) for c in step.connections
        ]
    return meta


def encode_diagram(
    steps: Sequence[Step],
    *,
    name: str | None = None,
    entry_step_id: str | None = None,
    direction: str = "TD",
) -> str:
    """Render steps as a Mermaid flowchart. Same steps in, same text out."""

    node_ids = _assign_node_ids(steps)
    lines = [f"flowchart {direction}"]

    metadata_lines: list[str] = []
    emitted: set[str] = set()
    for step in steps:
        if step.id in emitted:
            continue
        emitted.add(step.id)
        node_id = node_ids[step.id]
        open_, close = _SHAPE_FOR_TYPE[step.kind]
        lines.append(f'    {node_id}{open_}"{_escape(_label_for(step))}"{close}')
        meta = _step_metadata(step, node_id, node_ids)
        if meta:
            payload = json.dumps(meta, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
            metadata_lines.append(f"    %% @step({node_id}): {payload}")

    edge_lines: list[str] = []
    for step in steps:
        source = node_ids[step.id]
        for connection in step.connections:
            target = node_ids.get(connection.target_step_id)
            if target is None:
                continue
            edge_text = _edge_text(step.kind, connection)
            if edge_text:
                edge_lines.append(f'    {source} -->|"{_escape(edge_text)}"| {target}')
            else:
                edge_lines.append(f"    {source} --> {target}")
    if edge_lines:
        lines.append("")
        lines.extend(edge_lines)

    by_type: dict[StepType, list[str]] = {}
    for step in steps:
        members = by_type.setdefault(step.kind, [])
        if node_ids[step.id] not in members:
            members.append(node_ids[step.id])
    if by_type:
        lines.append("")
        for step_type in StepType:
            if step_type in by_type:
                lines.append(f"    classDef {step_type.value} {_CLASS_STYLES[step_type]}")
        for step_type in StepType:
            if step_type in by_type:
                lines.append(f"    class {','.join(by_type[step_type])} {step_type.value}")

    workflow_meta: dict[str, Any] = {}
    if name:
        workflow_meta["name"] = name
    if entry_step_id:
        workflow_meta["entryStepId"] = entry_step_id
    if metadata_lines or workflow_meta:
        lines.append("")
        if workflow_meta:
            payload = json.dumps(
                workflow_meta, sort_keys=True, ensure_ascii=False, separators=(",", ":")
            )
            lines.append(f"    %% @workflow: {payload}")
        lines.extend(metadata_lines)

    return "\n".join(lines) + "\n"
