from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

import pytest

from workflow_orchestrator.orchestrator.outbound import OutboundResult
from workflow_orchestrator.orchestrator.workflow.batch_jobs import ReviewDecision
from workflow_orchestrator.orchestrator.workflow.callbacks import normalize_callback
from workflow_orchestrator.orchestrator.workflow.counters import BatchKey
from workflow_orchestrator.orchestrator.workflow.engine import (
    RUN_COMPLETED,
    RUN_PAUSED,
    RUN_RESUMED,
    RUN_STARTED,
    STEP_CALLBACK_RECEIVED,
    STEP_COMPLETED,
    STEP_REVIEW_REQUESTED,
    UNIT_COMPLETED,
    WorkflowEngine,
)
from workflow_orchestrator.orchestrator.workflow.errors import (
    AuthenticationError,
    FanOutLimitError,
    NotFoundError,
    WorkflowValidationError,
)
from workflow_orchestrator.orchestrator.workflow.state_machine import (
    IllegalTransitionError,
    RunStatus,
    WorkflowRun,
)
from workflow_orchestrator.orchestrator.workflow.steps import Workflow
from workflow_orchestrator.orchestrator.workflow.units import ExecutionUnit, UnitStatus

MakeWorkflow = Callable[..., Workflow]

LINEAR = [
    {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "review"}]},
    {"id": "review", "stepType": "agent"},
]


def _fan_in_steps(
    join_config: dict[str, Any] | None = None, loop_config: dict[str, Any] | None = None
) -> list[dict[str, Any]]:
    return [
        {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "loop"}]},
        {
            "id": "loop",
            "stepType": "foreach",
            "config": {"itemsPath": "rows", **(loop_config or {})},
            "connections": [{"targetStepId": "work"}],
        },
        {"id": "work", "stepType": "agent", "connections": [{"targetStepId": "merge"}]},
        {"id": "merge", "name": "Merge", "stepType": "join", "config": join_config or {}},
    ]


def _units(engine: WorkflowEngine, run: WorkflowRun, step_id: str) -> list[ExecutionUnit]:
    return engine.list_units(run.id, step_id=step_id)


def _complete_units(engine: WorkflowEngine, run: WorkflowRun, outcomes: list[bool]) -> None:
    units = _units(engine, run, "work")
    assert len(units) >= len(outcomes)
    for unit, success in zip(units, outcomes, strict=False):
        engine.complete_unit(
            run.id,
            unit.id,
            secret=run.callback_secret,
            success=success,
            output={"unit": unit.id} if success else None,
        )


# Definitions


def test_save_workflow_from_diagram(engine: WorkflowEngine) -> None:
    workflow, generated = engine.save_workflow(
        {"mermaidDiagram": "flowchart TD\n    a[/Start/] --> b[Work]\n"}
    )

    assert workflow.id
    assert generated == []
    assert [s.id for s in workflow.steps] == ["a", "b"]
    assert workflow.mermaid_diagram is not None
    assert workflow.mermaid_diagram.startswith("flowchart TD")
    assert engine.get_workflow(workflow.id) == workflow


def test_list_and_delete_workflows(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    active = make_workflow(LINEAR)
    inactive = make_workflow(LINEAR, isActive=False)

    assert {w.id for w in engine.list_workflows()} == {active.id, inactive.id}
    assert [w.id for w in engine.list_workflows(include_inactive=False)] == [active.id]

    engine.delete_workflow(active.id)
    with pytest.raises(NotFoundError):
        engine.get_workflow(active.id)
    with pytest.raises(NotFoundError):
        engine.delete_workflow(active.id)


def test_start_run_validation(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    inactive = make_workflow(LINEAR, isActive=False)
    active = make_workflow(LINEAR)

    with pytest.raises(NotFoundError):
        engine.start_run("missing")
    with pytest.raises(WorkflowValidationError, match="not active"):
        engine.start_run(inactive.id)
    with pytest.raises(WorkflowValidationError):
        engine.start_run(active.id, ["not", "an", "object"])  # type: ignore[arg-type]


# Linear runs


def test_linear_agent_run_completes(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, recorder: Any
) -> None:
    workflow = make_workflow(LINEAR)

    run = engine.start_run(workflow.id, {"doc": "draft-1"})

    assert run.status == RunStatus.RUNNING
    assert run.current_step_ids == ["review"]
    assert run.completed_step_ids == ["start"]
    [unit] = _units(engine, run, "review")
    assert unit.status == UnitStatus.IN_PROGRESS
    assert unit.input == {"doc": "draft-1"}

    ack = engine.complete_unit(
        run.id, unit.id, secret=run.callback_secret, output={"approved": True}
    )

    assert ack.accepted
    done = engine.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    assert done.step_outputs["review"] == {"approved": True}
    assert done.output_payload == done.step_outputs
    assert done.completed_step_ids == ["start", "review"]
    assert done.current_step_ids == []
    types = recorder.types()
    assert types[0] == RUN_STARTED
    assert types[-1] == RUN_COMPLETED
    assert UNIT_COMPLETED in types


def test_unit_result_after_completion_is_noop(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)
    [unit] = _units(engine, run, "review")
    engine.complete_unit(run.id, unit.id, secret=run.callback_secret)

    ack = engine.complete_unit(run.id, unit.id, secret=run.callback_secret)

    assert not ack.accepted
    assert ack.reason == "Run is completed"


def test_failed_unit_fails_run(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)
    [unit] = _units(engine, run, "review")

    engine.complete_unit(
        run.id, unit.id, secret=run.callback_secret, success=False, error="model refused"
    )

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert failed.failed_step_id == "review"
    assert failed.error == 'Step "review" failed: model refused'


def test_unknown_unit_is_not_found(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)

    with pytest.raises(NotFoundError):
        engine.complete_unit(run.id, "nope", secret=run.callback_secret)


# Decisions


DECISION = [
    {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "check"}]},
    {
        "id": "check",
        "stepType": "decision",
        "connections": [
            {"targetStepId": "high", "condition": "score >= 80"},
            {"targetStepId": "low", "condition": "else"},
        ],
    },
    {"id": "high", "stepType": "agent"},
    {"id": "low", "stepType": "agent"},
]


@pytest.mark.parametrize(("score", "target"), [(91, "high"), (80, "high"), (10, "low")])
def test_decision_routes_on_previous_output(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, score: int, target: str
) -> None:
    run = engine.start_run(make_workflow(DECISION).id, {"score": score})

    assert run.current_step_ids == [target]


def test_default_connection_config(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    steps = [dict(step) for step in DECISION]
    steps[1] = {
        **steps[1],
        "config": {"defaultConnection": "low"},
        "connections": [
            {"targetStepId": "high", "condition": "score >= 80"},
            {"targetStepId": "low", "condition": "score < 0"},
        ],
    }

    run = engine.start_run(make_workflow(steps).id, {"score": 50})

    assert run.current_step_ids == ["low"]


def test_unmatched_decision_fails_run(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    steps = [dict(step) for step in DECISION]
    steps[1] = {**steps[1], "connections": [{"targetStepId": "high", "condition": "score >= 80"}]}

    run = engine.start_run(make_workflow(steps).id, {"score": 10})

    assert run.status == RunStatus.FAILED
    assert run.failed_step_id == "check"
    assert run.error is not None and "matched no condition" in run.error


YES_NO = [
    {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "check"}]},
    {
        "id": "check",
        "stepType": "decision",
        "config": {"condition": "approved"},
        "connections": [
            {"targetStepId": "ship", "condition": "Yes"},
            {"targetStepId": "hold", "condition": "No"},
        ],
    },
    {"id": "ship", "stepType": "agent"},
    {"id": "hold", "stepType": "agent"},
]


@pytest.mark.parametrize(("approved", "target"), [(True, "ship"), (False, "hold")])
def test_yes_no_connections_follow_decision_condition(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, approved: bool, target: str
) -> None:
    run = engine.start_run(make_workflow(YES_NO).id, {"approved": approved})

    assert run.current_step_ids == [target]


def test_yes_no_connections_without_condition_use_default(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    steps = [dict(step) for step in YES_NO]
    steps[1] = {**steps[1], "config": {"defaultConnection": "hold"}}

    run = engine.start_run(make_workflow(steps).id, {"approved": True, "Yes": True})

    assert run.current_step_ids == ["hold"]


def test_decision_diagram_with_yes_no_edges(engine: WorkflowEngine) -> None:
    diagram = """flowchart TD
    start[/"Start"/] --> check{"Approved?"}
    check -->|Yes| ship["Ship"]
    check -->|No| hold["Hold"]
    %% @step(check): {"config":{"condition":"approved"}}
"""
    workflow, _ = engine.save_workflow({"name": "Approval", "mermaidDiagram": diagram})

    assert engine.start_run(workflow.id, {"approved": True}).current_step_ids == ["ship"]
    assert engine.start_run(workflow.id, {"approved": False}).current_step_ids == ["hold"]


# Fan-out / fan-in


def test_foreach_join_success(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, recorder: Any
) -> None:
    workflow = make_workflow(_fan_in_steps({"minSuccessPercent": 80}))
    run = engine.start_run(workflow.id, {"rows": [1, 2, 3, 4, 5]})

    assert set(run.current_step_ids) == {"loop", "merge"}
    units = _units(engine, run, "work")
    assert len(units) == 5
    assert sorted(u.input["item"] for u in units) == [1, 2, 3, 4, 5]

    _complete_units(engine, run, [True, True, True, True, False])

    done = engine.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    merged = done.step_outputs["merge"]
    assert merged["outcome"] == "success"
    assert merged["successPercent"] == 80.0
    assert len(merged["results"]) == 4
    assert len(merged["errors"]) == 1
    assert set(done.completed_step_ids) == {"start", "loop", "work", "merge"}
    completions = [
        e for e in recorder.events if e.type == STEP_COMPLETED and e.step_id == "merge"
    ]
    assert len(completions) == 1


def test_foreach_join_below_threshold_fails(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps({"minSuccessPercent": 80}))
    run = engine.start_run(workflow.id, {"rows": [1, 2, 3, 4, 5]})

    _complete_units(engine, run, [True, True, True, False, False])

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert failed.failed_step_id == "merge"
    assert failed.error is not None
    assert failed.error.startswith('Step "Merge" failed: 3 succeeded, 2 failed')


def test_join_below_min_count_reports_the_minimum(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps({"minSuccessPercent": 50, "minCount": 3}))
    run = engine.start_run(workflow.id, {"rows": [1, 2]})

    _complete_units(engine, run, [True, True])

    failed = engine.get_run(run.id)
    assert failed.status == RunStatus.FAILED
    assert failed.error == 'Step "Merge" failed: 2 succeeded, 0 failed (minimum is 3)'


def test_join_waits_for_every_outcome(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    workflow = make_workflow(_fan_in_steps({"minSuccessPercent": 50}))
    run = engine.start_run(workflow.id, {"rows": [1, 2, 3, 4]})

    _complete_units(engine, run, [True, True, True])

    waiting = engine.get_run(run.id)
    assert waiting.status == RunStatus.RUNNING
    assert "merge" in waiting.current_step_ids
    counters = engine.get_counters(run.id, "loop")
    assert counters is not None
    assert (counters.received_count, counters.processed_count) == (4, 3)


def test_manual_review_then_proceed(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, recorder: Any
) -> None:
    workflow = make_workflow(
        _fan_in_steps({"minSuccessPercent": 80, "requiresManualReview": True})
    )
    run = engine.start_run(workflow.id, {"rows": [1, 2, 3, 4, 5]})
    _complete_units(engine, run, [True, True, True, False, False])

    parked = engine.get_run(run.id)
    assert parked.status == RunStatus.RUNNING
    assert parked.review_step_ids == ["merge"]
    assert STEP_REVIEW_REQUESTED in recorder.types()

    with pytest.raises(WorkflowValidationError):
        engine.resolve_review(run.id, "work", decision=ReviewDecision.APPROVED)

    resolved = engine.resolve_review(
        run.id, "merge", decision=ReviewDecision.PROCEED_WITH_PARTIAL, reviewed_by="ops"
    )

    assert resolved.status == RunStatus.COMPLETED
    assert resolved.review_step_ids == []
    assert resolved.step_outputs["merge"]["outcome"] == "partial_success"
    assert resolved.step_outputs["merge"]["reason"] == "review_proceed_with_partial"


def test_manual_review_rejected_fails_run(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(
        _fan_in_steps({"minSuccessPercent": 80, "requiresManualReview": True})
    )
    run = engine.start_run(workflow.id, {"rows": [1, 2]})
    _complete_units(engine, run, [True, False])

    rejected = engine.resolve_review(run.id, "merge", decision=ReviewDecision.REJECTED)

    assert rejected.status == RunStatus.FAILED
    assert rejected.error == 'Step "Merge" failed: Rejected in manual review'


def test_empty_collection_completes_immediately(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    run = engine.start_run(make_workflow(_fan_in_steps()).id, {"rows": []})

    assert run.status == RunStatus.COMPLETED
    assert run.step_outputs["merge"]["receivedCount"] == 0


def test_foreach_over_cap_fails_step(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"maxItems": 2}))

    run = engine.start_run(workflow.id, {"rows": [1, 2, 3]})

    assert run.status == RunStatus.FAILED
    assert run.failed_step_id == "loop"
    assert run.error is not None and "the limit is 2" in run.error


def test_concurrent_unit_results_fire_join_once(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, recorder: Any
) -> None:
    workflow = make_workflow(_fan_in_steps())
    run = engine.start_run(workflow.id, {"rows": list(range(20))})
    units = _units(engine, run, "work")

    def _complete(unit: ExecutionUnit) -> bool:
        ack = engine.complete_unit(run.id, unit.id, secret=run.callback_secret, output=unit.id)
        return ack.accepted

    with ThreadPoolExecutor(max_workers=8) as pool:
        accepted = list(pool.map(_complete, units))

    assert all(accepted)
    done = engine.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    assert len(done.step_outputs["merge"]["results"]) == 20
    fired = [e for e in recorder.events if e.type == STEP_COMPLETED and e.step_id == "merge"]
    assert len(fired) == 1


# Streamed foreach


def test_streamed_foreach_with_expected_count(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"itemsPath": None}))
    run = engine.start_run(workflow.id)

    first = engine.ingest_callback(
        run.id,
        "loop",
        secret=run.callback_secret,
        callback=normalize_callback(
            {"items": [{"n": 1}, {"n": 2}]}, expected_count_header="3"
        ),
    )
    assert first.accepted
    assert len(first.unit_ids) == 2
    assert (first.received_count, first.expected_count, first.is_complete) == (2, 3, False)

    second = engine.ingest_callback(
        run.id,
        "loop",
        secret=run.callback_secret,
        callback=normalize_callback({"item": {"n": 3}}),
    )
    assert second.is_complete

    units = _units(engine, run, "work")
    assert len(units) == 3
    assert [u.loop.index for u in units if u.loop] == [0, 1, 2]
    _complete_units(engine, run, [True, True, True])

    done = engine.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    assert len(done.step_outputs["merge"]["results"]) == 3


def test_streamed_callback_is_idempotent(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"itemsPath": None}))
    run = engine.start_run(workflow.id)
    callback = normalize_callback(
        {"items": [{"n": 1}, {"n": 2}]}, idempotency_key_header="delivery-1"
    )

    engine.ingest_callback(run.id, "loop", secret=run.callback_secret, callback=callback)
    repeat = engine.ingest_callback(run.id, "loop", secret=run.callback_secret, callback=callback)

    assert repeat.duplicate
    assert not repeat.accepted
    assert repeat.received_count == 2
    assert len(_units(engine, run, "work")) == 2


def test_streamed_foreach_over_cap_is_rejected(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"itemsPath": None, "maxItems": 2}))
    run = engine.start_run(workflow.id)

    with pytest.raises(FanOutLimitError):
        engine.ingest_callback(
            run.id,
            "loop",
            secret=run.callback_secret,
            callback=normalize_callback([1, 2, 3]),
        )

    counters = engine.get_counters(run.id, "loop")
    assert counters is not None and counters.received_count == 0
    assert engine.get_run(run.id).status == RunStatus.RUNNING


def test_redelivered_callback_under_cap_is_a_duplicate(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"itemsPath": None, "maxItems": 2}))
    run = engine.start_run(workflow.id)
    callback = normalize_callback([1, 2], idempotency_key_header="delivery-1")

    engine.ingest_callback(run.id, "loop", secret=run.callback_secret, callback=callback)
    repeat = engine.ingest_callback(run.id, "loop", secret=run.callback_secret, callback=callback)

    assert repeat.duplicate
    assert repeat.received_count == 2
    assert len(_units(engine, run, "work")) == 2


def test_redelivered_item_keys_are_skipped(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    workflow = make_workflow(_fan_in_steps(loop_config={"itemsPath": None, "maxItems": 3}))
    run = engine.start_run(workflow.id)

    def _send(*keys: str) -> Any:
        items = [{"itemKey": key, "n": key} for key in keys]
        return engine.ingest_callback(
            run.id, "loop", secret=run.callback_secret, callback=normalize_callback(items)
        )

    _send("a", "b")
    overlap = _send("b", "c")

    assert overlap.accepted
    assert overlap.received_count == 3
    assert len(overlap.unit_ids) == 1
    units = _units(engine, run, "work")
    assert sorted(u.input["item"]["n"] for u in units) == ["a", "b", "c"]


# External calls and callbacks


EXTERNAL = [
    {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "call"}]},
    {
        "id": "call",
        "stepType": "external",
        "config": {"url": "https://crm.test/orders/{{ $input.orderId }}"},
    },
]


def test_external_call_then_callback(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, executor: Any, recorder: Any
) -> None:
    run = engine.start_run(make_workflow(EXTERNAL).id, {"orderId": "o-7"})

    [request] = executor.requests
    assert request.url == "https://crm.test/orders/o-7"
    assert request.headers["X-Workflow-Secret"] == run.callback_secret
    callback_url = f"http://orchestrator.test/api/v1/workflow-runs/{run.id}/callback/call"
    assert request.headers["X-Workflow-Callback-Url"] == callback_url
    assert request.body["callbackUrl"] == callback_url
    assert request.body["input"] == {"orderId": "o-7"}
    assert engine.get_run(run.id).current_step_ids == ["call"]

    ack = engine.ingest_callback(
        run.id,
        "call",
        secret=run.callback_secret,
        callback=normalize_callback({"status": "shipped"}),
    )

    assert ack.accepted and ack.is_complete
    done = engine.get_run(run.id)
    assert done.status == RunStatus.COMPLETED
    assert done.step_outputs["call"] == {"status": "shipped"}
    assert STEP_CALLBACK_RECEIVED in recorder.types()


def test_late_callback_is_acknowledged_without_effect(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    run = engine.start_run(make_workflow(EXTERNAL).id, {"orderId": "o-7"})
    engine.ingest_callback(
        run.id, "call", secret=run.callback_secret, callback=normalize_callback({"ok": 1})
    )

    late = engine.ingest_callback(
        run.id, "call", secret=run.callback_secret, callback=normalize_callback({"ok": 2})
    )

    assert not late.accepted
    assert late.reason == "Run is completed"
    assert engine.get_run(run.id).step_outputs["call"] == {"ok": 1}


def test_callback_for_step_not_waiting_is_noop(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    run = engine.start_run(make_workflow(EXTERNAL).id, {"orderId": "o-7"})

    ack = engine.ingest_callback(
        run.id, "start", secret=run.callback_secret, callback=normalize_callback({})
    )

    assert not ack.accepted
    assert ack.reason == "Step is not awaiting results"
    with pytest.raises(NotFoundError):
        engine.ingest_callback(
            run.id, "ghost", secret=run.callback_secret, callback=normalize_callback({})
        )


def test_bad_secret_is_rejected_before_state_changes(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, store: Any
) -> None:
    run = engine.start_run(make_workflow(EXTERNAL).id, {"orderId": "o-7"})

    with pytest.raises(AuthenticationError):
        engine.ingest_callback(
            run.id, "call", secret="wfsec_wrong", callback=normalize_callback({"ok": 1})
        )
    with pytest.raises(AuthenticationError):
        engine.ingest_callback(run.id, "call", secret=None, callback=normalize_callback({}))

    assert store.get_counters(BatchKey(run.id, "call")) is None
    assert engine.get_run(run.id).status == RunStatus.RUNNING


def test_webhook_without_callback_completes_from_response(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, executor: Any
) -> None:
    steps = [
        {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "notify"}]},
        {
            "id": "notify",
            "stepType": "webhook",
            "config": {"url": "https://hooks.test/x", "body": {"order": "{{ orderId }}"}},
        },
    ]

    run = engine.start_run(make_workflow(steps).id, {"orderId": "o-7"})

    assert executor.requests[0].body == {"order": "o-7"}
    assert "X-Workflow-Secret" not in executor.requests[0].headers
    assert run.status == RunStatus.COMPLETED
    assert run.step_outputs["notify"] == {"echo": {"order": "o-7"}}


def test_webhook_failure_fails_run(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, executor: Any
) -> None:
    executor.results.append(OutboundResult(ok=False, status_code=500, error="HTTP 500"))
    steps = [
        {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "notify"}]},
        {"id": "notify", "stepType": "webhook", "config": {"url": "https://hooks.test/x"}},
    ]

    run = engine.start_run(make_workflow(steps).id)

    assert run.status == RunStatus.FAILED
    assert run.error == 'Step "notify" failed: HTTP 500'


def test_foreach_dispatches_one_call_per_item(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, executor: Any
) -> None:
    steps = _fan_in_steps()
    steps[2] = {
        "id": "work",
        "stepType": "webhook",
        "config": {"url": "https://svc.test/rows/{{ item }}"},
        "connections": [{"targetStepId": "merge"}],
    }

    run = engine.start_run(make_workflow(steps).id, {"rows": ["a", "b"]})

    assert sorted(r.url for r in executor.requests) == [
        "https://svc.test/rows/a",
        "https://svc.test/rows/b",
    ]
    assert run.status == RunStatus.COMPLETED
    assert len(run.step_outputs["merge"]["results"]) == 2


# Lifecycle


def test_cancel_run(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)

    cancelled = engine.cancel_run(run.id)

    assert cancelled.status == RunStatus.CANCELLED
    assert [u.status for u in _units(engine, run, "review")] == [UnitStatus.CANCELLED]
    with pytest.raises(IllegalTransitionError):
        engine.cancel_run(run.id)
    [unit] = _units(engine, run, "review")
    ack = engine.complete_unit(run.id, unit.id, secret=run.callback_secret)
    assert not ack.accepted
    assert ack.reason == "Run is cancelled"


def test_pause_keeps_results_and_resume_fires(
    engine: WorkflowEngine, make_workflow: MakeWorkflow, recorder: Any
) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)
    [unit] = _units(engine, run, "review")

    paused = engine.pause_run(run.id)
    ack = engine.complete_unit(run.id, unit.id, secret=run.callback_secret, output="ok")

    assert paused.status == RunStatus.PAUSED
    assert ack.accepted
    still_paused = engine.get_run(run.id)
    assert still_paused.status == RunStatus.PAUSED
    assert still_paused.current_step_ids == ["review"]

    resumed = engine.resume_run(run.id)

    assert resumed.status == RunStatus.COMPLETED
    assert resumed.step_outputs["review"] == "ok"
    assert RUN_PAUSED in recorder.types()
    assert RUN_RESUMED in recorder.types()


def test_resume_requires_paused_run(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    run = engine.start_run(make_workflow(LINEAR).id)

    with pytest.raises(IllegalTransitionError):
        engine.resume_run(run.id)


# Deadlines


@pytest.mark.parametrize(
    ("fail_on_timeout", "status"),
    [(False, RunStatus.COMPLETED), (True, RunStatus.FAILED)],
)
def test_join_deadline(
    engine: WorkflowEngine,
    make_workflow: MakeWorkflow,
    clock: Any,
    fail_on_timeout: bool,
    status: RunStatus,
) -> None:
    workflow = make_workflow(
        _fan_in_steps({"maxWaitMs": 1000, "failOnTimeout": fail_on_timeout})
    )
    run = engine.start_run(workflow.id, {"rows": [1, 2, 3]})
    _complete_units(engine, run, [True])

    assert engine.check_deadlines() == []

    clock.advance(ms=1500)
    changed = engine.check_deadlines()

    assert changed == [run.id]
    after = engine.get_run(run.id)
    assert after.status == status
    if fail_on_timeout:
        assert after.error is not None and "Timed out" in after.error
    else:
        assert after.step_outputs["merge"]["outcome"] == "partial_success"
        assert after.step_outputs["merge"]["processedCount"] == 1


# Sub-workflows


def test_flow_step_runs_child_workflow(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    child = make_workflow([{"id": "child_start", "stepType": "trigger"}], name="child")
    parent = make_workflow(
        [
            {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "sub"}]},
            {"id": "sub", "stepType": "flow", "config": {"workflowId": child.id}},
        ]
    )

    run = engine.start_run(parent.id, {"x": 1})

    assert run.status == RunStatus.COMPLETED
    assert run.step_outputs["sub"] == {"child_start": {"x": 1}}
    [child_run] = engine.list_runs(workflow_id=child.id)
    assert child_run.parent_run_id == run.id
    assert child_run.parent_step_id == "sub"
    assert child_run.status == RunStatus.COMPLETED


def test_flow_input_mapping(engine: WorkflowEngine, make_workflow: MakeWorkflow) -> None:
    child = make_workflow([{"id": "child_start", "stepType": "trigger"}])
    parent = make_workflow(
        [
            {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "sub"}]},
            {
                "id": "sub",
                "stepType": "flow",
                "config": {"workflowId": child.id, "inputMapping": {"who": "$input.user.name"}},
            },
        ]
    )

    engine.start_run(parent.id, {"user": {"name": "ada"}})

    [child_run] = engine.list_runs(workflow_id=child.id)
    assert child_run.input_payload == {"who": "ada"}


def test_flow_with_unknown_workflow_fails(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    parent = make_workflow(
        [
            {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "sub"}]},
            {"id": "sub", "stepType": "flow", "config": {"workflowId": "missing"}},
        ]
    )

    run = engine.start_run(parent.id)

    assert run.status == RunStatus.FAILED
    assert run.error is not None and "missing" in run.error


def test_cancel_cascades_to_child_runs(
    engine: WorkflowEngine, make_workflow: MakeWorkflow
) -> None:
    child = make_workflow(LINEAR)
    parent = make_workflow(
        [
            {"id": "start", "stepType": "trigger", "connections": [{"targetStepId": "sub"}]},
            {"id": "sub", "stepType": "flow", "config": {"workflowId": child.id}},
        ]
    )
    run = engine.start_run(parent.id)
    [child_run] = engine.list_runs(workflow_id=child.id)
    assert child_run.status == RunStatus.RUNNING

    engine.cancel_run(run.id)

    assert engine.get_run(child_run.id).status == RunStatus.CANCELLED
    assert engine.get_run(run.id).status == RunStatus.CANCELLED
