"""The workflow run engine.

Every mutation of a run happens inside one transaction that holds the run's
lock. Work that leaves the process or touches another run (outbound HTTP
calls, starting a sub-run, notifying a parent run, cascading a cancel) is
queued on the transaction and performed after the lock is released, after a
fresh check that the run is still live.

Steps that wait for something (agent, manual, external, webhook, foreach,
join, flow) only ever complete through their batch counters: results are
recorded with :meth:`RunStateStore.apply_batch_event` and the step fires once,
guarded by :meth:`RunStateStore.try_mark_fired`. Paused runs keep recording
results but never fire.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from workflow_orchestrator.orchestrator.outbound import (
    CallExecutor,
    OutboundRequest,
    OutboundResult,
    build_request,
)

from .batch_jobs import OUTCOME_FOR_REVIEW, ReviewDecision
from .callbacks import CallbackAck, NormalizedCallback, verify_secret
from .counters import (
    BatchCounters,
    BatchEvent,
    BatchItem,
    BatchKey,
    JoinDecision,
    JoinOutcome,
    evaluate_join,
    new_counters,
)
from .diagram import decode_diagram, encode_diagram
from .errors import NotFoundError, RoutingError, WorkflowValidationError
from .events import EngineEvent, EventPublisher
from .expressions import (
    branch_value,
    evaluate_condition,
    get_value_by_path,
    is_default_condition,
)
from .fan_in import joins_awaiting, policy_for_step, resolve_join_source, step_output
from .fan_out import DEFAULT_MAX_ITEMS, plan_fan_out, plan_streamed_units
from .locks import KeyedLocks
from .normalize import normalize_workflow
from .state_machine import (
    IllegalTransitionError,
    RunStatus,
    WorkflowRun,
    transition,
)
from .steps import (
    AWAITING_STEP_TYPES,
    DecisionStep,
    ExternalStep,
    FlowStep,
    ForeachStep,
    JoinStep,
    Step,
    StepType,
    WebhookStep,
    Workflow,
    dump_step,
)
from .units import ExecutionUnit, UnitStatus

if TYPE_CHECKING:
    from workflow_orchestrator.orchestrator.store.base import RunStateStore

logger = logging.getLogger(__name__)

# Step kinds that finish through their batch counters.
BATCHED_STEP_TYPES: frozenset[StepType] = AWAITING_STEP_TYPES | {
    StepType.FOREACH,
    StepType.JOIN,
    StepType.FLOW,
}

RUN_STARTED = "workflow.run.started"
RUN_COMPLETED = "workflow.run.completed"
RUN_FAILED = "workflow.run.failed"
RUN_CANCELLED = "workflow.run.cancelled"
RUN_PAUSED = "workflow.run.paused"
RUN_RESUMED = "workflow.run.resumed"
STEP_STARTED = "workflow.step.started"
STEP_COMPLETED = "workflow.step.completed"
STEP_FAILED = "workflow.step.failed"
STEP_REVIEW_REQUESTED = "workflow.step.review_requested"
STEP_CALLBACK_RECEIVED = "workflow.step.callback_received"
UNITS_CREATED = "workflow.unit.created"
UNIT_COMPLETED = "workflow.unit.completed"

_RUN_STATUS_EVENTS: dict[RunStatus, str] = {
    RunStatus.RUNNING: RUN_STARTED,
    RunStatus.COMPLETED: RUN_COMPLETED,
    RunStatus.FAILED: RUN_FAILED,
    RunStatus.CANCELLED: RUN_CANCELLED,
    RunStatus.PAUSED: RUN_PAUSED,
}


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class _Dispatch:
    run_id: str
    step_id: str
    unit_id: str
    batch_step_id: str
    request: OutboundRequest
    await_callback: bool
    fan_out_child: bool = False


@dataclass(frozen=True, slots=True)
class _StartChild:
    parent_run_id: str
    parent_step_id: str
    workflow_id: str
    input_payload: dict[str, Any]


@dataclass(frozen=True, slots=True)
class _NotifyParent:
    child_run_id: str


@dataclass(frozen=True, slots=True)
class _CancelChild:
    run_id: str


_Followup = _Dispatch | _StartChild | _NotifyParent | _CancelChild


@dataclass
class _Transaction:
    run: WorkflowRun
    workflow: Workflow
    now: datetime | None = None
    followups: list[_Followup] = field(default_factory=list)
    events: list[EngineEvent] = field(default_factory=list)


class WorkflowEngine:
    def __init__(
        self,
        *,
        store: RunStateStore,
        events: EventPublisher | None = None,
        executor: CallExecutor | None = None,
        foreach_max_items: int = DEFAULT_MAX_ITEMS,
        public_base_url: str | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._store = store
        self._events = events
        self._executor = executor
        self._foreach_max_items = foreach_max_items
        self._public_base_url = (public_base_url or "").rstrip("/")
        self._clock = clock
        self._locks = KeyedLocks()

    # Workflow definitions

    def save_workflow(self, raw: Mapping[str, Any] | Workflow) -> tuple[Workflow, list[str]]:
        """Validate, repair and store a workflow; returns it and any generated step ids.

        A payload with a diagram but no steps is decoded from the diagram.
        """

        payload = raw.model_dump(by_alias=True) if isinstance(raw, Workflow) else dict(raw)
        diagram_text = payload.get("mermaidDiagram") or payload.get("mermaid_diagram")
        if not payload.get("steps") and diagram_text:
            decoded = decode_diagram(str(diagram_text))
            payload["steps"] = [dump_step(s) for s in decoded.steps]
            if not payload.get("name") and decoded.name:
                payload["name"] = decoded.name
            if decoded.entry_step_id and not payload.get("entryStepId"):
                payload["entryStepId"] = decoded.entry_step_id

        workflow, generated = normalize_workflow(payload)
        updates: dict[str, Any] = {
            "mermaid_diagram": encode_diagram(
                workflow.steps, name=workflow.name, entry_step_id=workflow.entry_step_id
            )
        }
        if not workflow.id:
            updates["id"] = uuid.uuid4().hex
        stored = self._store.save_workflow(workflow.model_copy(update=updates))
        logger.info(
            "Workflow saved",
            extra={
                "workflow_id": stored.id,
                "steps": len(stored.steps),
                "generated_ids": len(generated),
            },
        )
        return stored, generated

    def get_workflow(self, workflow_id: str) -> Workflow:
        workflow = self._store.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    def list_workflows(self, *, include_inactive: bool = True) -> list[Workflow]:
        workflows = self._store.list_workflows()
        if not include_inactive:
            workflows = [w for w in workflows if w.is_active]
        return workflows

    def delete_workflow(self, workflow_id: str) -> None:
        if not self._store.delete_workflow(workflow_id):
            raise NotFoundError(f"Workflow {workflow_id} not found")

    # Run queries

    def get_run(self, run_id: str) -> WorkflowRun:
        run = self._store.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run {run_id} not found")
        return run

    def list_runs(
        self, *, workflow_id: str | None = None, status: RunStatus | None = None
    ) -> list[WorkflowRun]:
        return self._store.list_runs(workflow_id=workflow_id, status=status)

    def list_units(self, run_id: str, *, step_id: str | None = None) -> list[ExecutionUnit]:
        self.get_run(run_id)
        return self._store.list_units(run_id, step_id=step_id)

    def get_counters(self, run_id: str, step_id: str) -> BatchCounters | None:
        return self._store.get_counters(BatchKey(run_id, step_id))

    # Run lifecycle

    def start_run(
        self,
        workflow_id: str,
        input_payload: Mapping[str, Any] | None = None,
        *,
        parent_run_id: str | None = None,
        parent_step_id: str | None = None,
    ) -> WorkflowRun:
        workflow = self.get_workflow(workflow_id)
        if not workflow.is_active:
            raise WorkflowValidationError(f"Workflow {workflow_id} is not active")
        if not workflow.steps:
            raise WorkflowValidationError(f"Workflow {workflow_id} has no steps")
        if input_payload is not None and not isinstance(input_payload, Mapping):
            raise WorkflowValidationError("Run input must be a JSON object")

        run = self._store.save_run(
            WorkflowRun(
                workflow_id=workflow.id,
                input_payload=dict(input_payload or {}),
                parent_run_id=parent_run_id,
                parent_step_id=parent_step_id,
            )
        )
        logger.info(
            "Starting workflow run",
            extra={"run_id": run.id, "workflow_id": workflow.id, "parent_run_id": parent_run_id},
        )

        def _start(tx: _Transaction) -> None:
            self._set_status(tx, RunStatus.RUNNING)
            for entry in workflow.entry_steps():
                self._activate(tx, entry, tx.run.input_payload)

        self._in_transaction(run.id, _start)
        return self.get_run(run.id)

    def cancel_run(self, run_id: str) -> WorkflowRun:
        def _cancel(tx: _Transaction) -> None:
            self._set_status(tx, RunStatus.CANCELLED)
            cancelled = self._store.cancel_open_units(tx.run.id)
            logger.info(
                "Run cancelled", extra={"run_id": tx.run.id, "cancelled_units": len(cancelled)}
            )
            for child in self._store.list_runs():
                if child.parent_run_id == tx.run.id and not child.is_terminal:
                    tx.followups.append(_CancelChild(child.id))
            if tx.run.parent_run_id:
                tx.followups.append(_NotifyParent(tx.run.id))

        self._in_transaction(run_id, _cancel)
        return self.get_run(run_id)

    def pause_run(self, run_id: str) -> WorkflowRun:
        def _pause(tx: _Transaction) -> None:
            self._set_status(tx, RunStatus.PAUSED)
            logger.info("Run paused", extra={"run_id": tx.run.id})

        self._in_transaction(run_id, _pause)
        return self.get_run(run_id)

    def resume_run(self, run_id: str) -> WorkflowRun:
        def _resume(tx: _Transaction) -> None:
            if tx.run.status != RunStatus.PAUSED:
                raise IllegalTransitionError(
                    f"Illegal run transition: {tx.run.status.value} -> running"
                )
            tx.run = transition(current=tx.run, to=RunStatus.RUNNING)
            self._emit(tx, RUN_RESUMED)
            logger.info("Run resumed", extra={"run_id": tx.run.id})
            # Results recorded while paused may already satisfy waiting steps.
            for step_id in list(tx.run.current_step_ids):
                step = tx.workflow.get_step(step_id)
                if step is not None and step.kind in BATCHED_STEP_TYPES:
                    self._evaluate_step(tx, step)

        self._in_transaction(run_id, _resume)
        return self.get_run(run_id)

    # Result ingestion

    def ingest_callback(
        self,
        run_id: str,
        step_id: str,
        *,
        secret: str | None,
        callback: NormalizedCallback,
    ) -> CallbackAck:
        """Record results an external party posted for ``step_id``.

        Authentication happens before any state is read under the lock. Late
        callbacks (terminal run, step not waiting) are acknowledged as no-ops.
        """

        run = self.get_run(run_id)
        verify_secret(run.callback_secret, secret)
        workflow = self.get_workflow(run.workflow_id)
        step = workflow.get_step(step_id)
        if step is None:
            raise NotFoundError(f"Step {step_id} not found in workflow {workflow.id}")

        def _ingest(tx: _Transaction) -> CallbackAck:
            if tx.run.is_terminal:
                return self._noop_ack(tx, step.id, f"Run is {tx.run.status.value}")
            if step.id not in tx.run.current_step_ids:
                return self._noop_ack(tx, step.id, "Step is not awaiting results")

            key = BatchKey(tx.run.id, step.id)
            unit_ids: list[str] = []
            if isinstance(step, ForeachStep) and step.config.items_path is None:
                counters, applied, unit_ids = self._ingest_streamed(tx, step, callback)
            elif step.kind in AWAITING_STEP_TYPES:
                event = BatchEvent(
                    arrivals=tuple(callback.items),
                    expected_count=callback.expected_count,
                    complete=callback.complete,
                    close_if_undeclared=True,
                    idempotency_key=callback.idempotency_key,
                )
                counters, applied = self._store.apply_batch_event(key, event)
            else:
                return self._noop_ack(tx, step.id, "Step does not accept callbacks")

            if applied:
                logger.info(
                    "Step callback received",
                    extra={
                        "run_id": tx.run.id,
                        "step_id": step.id,
                        "items": len(callback.items),
                        "received_count": counters.received_count,
                    },
                )
                self._emit(
                    tx,
                    STEP_CALLBACK_RECEIVED,
                    step_id=step.id,
                    items=len(callback.items),
                    receivedCount=counters.received_count,
                    expectedCount=counters.expected_count,
                )
                self._evaluate_batch(tx, step.id)

            return CallbackAck(
                accepted=applied,
                duplicate=not applied,
                received_count=counters.received_count,
                expected_count=counters.expected_count,
                is_complete=counters.is_closed,
                unit_ids=unit_ids,
                status=tx.run.status.value,
                warnings=list(counters.warnings),
            )

        return self._in_transaction(run_id, _ingest, allow_terminal=True)

    def complete_unit(
        self,
        run_id: str,
        unit_id: str,
        *,
        secret: str | None,
        success: bool = True,
        output: Any = None,
        error: str | None = None,
    ) -> CallbackAck:
        run = self.get_run(run_id)
        verify_secret(run.callback_secret, secret)
        unit = self._store.get_unit(unit_id)
        if unit is None or unit.run_id != run_id:
            raise NotFoundError(f"Unit {unit_id} not found in run {run_id}")

        def _complete(tx: _Transaction) -> CallbackAck:
            if tx.run.is_terminal:
                return self._noop_ack(tx, unit.batch_step_id, f"Run is {tx.run.status.value}")
            counters, applied = self._settle_unit(
                tx, unit, success=success, output=output, error=error
            )
            if not applied:
                return CallbackAck(
                    accepted=False,
                    duplicate=True,
                    received_count=counters.received_count,
                    expected_count=counters.expected_count,
                    is_complete=counters.is_closed,
                    reason="Unit already finished",
                    status=tx.run.status.value,
                )
            return CallbackAck(
                accepted=True,
                received_count=counters.received_count,
                expected_count=counters.expected_count,
                is_complete=counters.is_closed,
                unit_ids=[unit.id],
                status=tx.run.status.value,
                warnings=list(counters.warnings),
            )

        return self._in_transaction(run_id, _complete, allow_terminal=True)

    def resolve_review(
        self,
        run_id: str,
        step_id: str,
        *,
        decision: ReviewDecision,
        reviewed_by: str | None = None,
    ) -> WorkflowRun:
        def _resolve(tx: _Transaction) -> None:
            if step_id not in tx.run.review_step_ids:
                raise WorkflowValidationError(f"Step {step_id} is not awaiting review")
            step = tx.workflow.get_step(step_id)
            if step is None:
                raise NotFoundError(f"Step {step_id} not found")
            source_id = self._batch_source_id(tx, step)
            counters = self._store.get_counters(BatchKey(tx.run.id, source_id or step.id))
            counters = counters or new_counters(BatchKey(tx.run.id, step.id))
            outcome = OUTCOME_FOR_REVIEW[decision]
            logger.info(
                "Review resolved",
                extra={
                    "run_id": tx.run.id,
                    "step_id": step.id,
                    "decision": decision.value,
                    "reviewed_by": reviewed_by,
                },
            )
            self._fire(
                tx,
                step,
                counters,
                JoinDecision(outcome, f"review_{decision.value}", counters.success_percent),
            )

        self._in_transaction(run_id, _resolve)
        return self.get_run(run_id)

    def check_deadlines(self, now: datetime | None = None) -> list[str]:
        """Re-evaluate steps with a ``maxWaitMs`` in every running run.

        Returns the ids of runs whose status changed.
        """

        changed: list[str] = []
        for run in self._store.list_runs(status=RunStatus.RUNNING):

            def _check(tx: _Transaction) -> None:
                tx.now = now
                for step_id in list(tx.run.current_step_ids):
                    step = tx.workflow.get_step(step_id)
                    if step is None or step.kind not in BATCHED_STEP_TYPES:
                        continue
                    if policy_for_step(step).max_wait_ms is not None:
                        self._evaluate_step(tx, step)

            self._in_transaction(run.id, _check, allow_terminal=True)
            if self.get_run(run.id).status != run.status:
                changed.append(run.id)
        return changed

    # Transactions

    def _in_transaction(
        self,
        run_id: str,
        body: Callable[[_Transaction], Any],
        *,
        allow_terminal: bool = False,
    ) -> Any:
        with self._locks.hold(run_id):
            run = self.get_run(run_id)
            if run.is_terminal and not allow_terminal:
                raise IllegalTransitionError(f"Run {run_id} is already {run.status.value}")
            tx = _Transaction(run=run, workflow=self.get_workflow(run.workflow_id))
            result = body(tx)
            self._finish_if_idle(tx)
            if tx.run is not run:
                self._store.save_run(tx.run.model_copy(update={"updated_at": self._clock()}))
        self._drain(tx)
        return result

    def _drain(self, tx: _Transaction) -> None:
        if self._events is not None:
            for event in tx.events:
                self._events.publish(event)
        for followup in tx.followups:
            if isinstance(followup, _Dispatch):
                self._run_dispatch(followup)
            elif isinstance(followup, _StartChild):
                self._start_child(followup)
            elif isinstance(followup, _NotifyParent):
                self._notify_parent(followup)
            else:
                self._cancel_child(followup)

    def _now(self, tx: _Transaction) -> datetime:
        return tx.now or self._clock()

    def _emit(
        self, tx: _Transaction, event_type: str, *, step_id: str | None = None, **payload: object
    ) -> None:
        body = {"workflowId": tx.run.workflow_id, "status": tx.run.status.value, **payload}
        tx.events.append(
            EngineEvent(type=event_type, payload=body, run_id=tx.run.id, step_id=step_id)
        )

    def _noop_ack(self, tx: _Transaction, step_id: str, reason: str) -> CallbackAck:
        counters = self._store.get_counters(BatchKey(tx.run.id, step_id))
        logger.info(
            "Ignoring late result",
            extra={"run_id": tx.run.id, "step_id": step_id, "reason": reason},
        )
        return CallbackAck(
            accepted=False,
            received_count=counters.received_count if counters else 0,
            expected_count=counters.expected_count if counters else None,
            is_complete=counters.is_closed if counters else False,
            reason=reason,
            status=tx.run.status.value,
        )

    def _set_status(self, tx: _Transaction, to: RunStatus) -> None:
        tx.run = transition(current=tx.run, to=to)
        self._emit(tx, _RUN_STATUS_EVENTS[to])

    def _update(self, tx: _Transaction, **updates: Any) -> None:
        tx.run = tx.run.model_copy(update=updates)

    def _roots(self, tx: _Transaction, previous: Any) -> dict[str, Any]:
        return {
            "input": tx.run.input_payload,
            "steps": tx.run.step_outputs,
            "previous": previous,
            "run": {"id": tx.run.id, "workflowId": tx.run.workflow_id},
        }

    # Activation

    def _activate(self, tx: _Transaction, step: Step, prior: Any) -> None:
        run = tx.run
        if run.status != RunStatus.RUNNING:
            return
        if step.id in run.current_step_ids:
            return
        if step.id in run.completed_step_ids:
            logger.warning(
                "Step already completed in this run; not re-entering",
                extra={"run_id": run.id, "step_id": step.id},
            )
            return

        now = self._clock()
        self._update(
            tx,
            current_step_ids=[*run.current_step_ids, step.id],
            step_started_at={**run.step_started_at, step.id: now},
            step_inputs={**run.step_inputs, step.id: prior},
        )
        logger.info(
            "Step started",
            extra={"run_id": run.id, "step_id": step.id, "step_type": step.kind.value},
        )
        self._emit(tx, STEP_STARTED, step_id=step.id, stepType=step.kind.value)

        if step.kind in {StepType.TRIGGER, StepType.DECISION}:
            self._complete_step(tx, step, prior)
        elif step.kind in {StepType.AGENT, StepType.MANUAL}:
            self._activate_task(tx, step, prior)
        elif isinstance(step, (ExternalStep, WebhookStep)):
            self._activate_call(tx, step, prior)
        elif isinstance(step, ForeachStep):
            self._fan_out(tx, step, prior)
        elif isinstance(step, JoinStep):
            self._evaluate_step(tx, step)
        elif isinstance(step, FlowStep):
            self._activate_flow(tx, step, prior)

    def _new_unit(
        self, tx: _Transaction, step: Step, prior: Any, status: UnitStatus
    ) -> ExecutionUnit:
        unit = ExecutionUnit(
            run_id=tx.run.id,
            step_id=step.id,
            originating_step_id=step.id,
            unit_type=step.kind.value,
            status=status,
            input=prior,
            batch_owner_id=tx.run.id,
            batch_step_id=step.id,
        )
        self._store.save_units([unit])
        self._emit(tx, UNITS_CREATED, step_id=step.id, unitIds=[unit.id])
        return unit

    def _activate_task(self, tx: _Transaction, step: Step, prior: Any) -> None:
        self._new_unit(tx, step, prior, UnitStatus.IN_PROGRESS)
        self._store.apply_batch_event(BatchKey(tx.run.id, step.id), BatchEvent(expected_count=1))

    def callback_url(self, run_id: str, step_id: str) -> str:
        return f"{self._public_base_url}/api/v1/workflow-runs/{run_id}/callback/{step_id}"

    def _request_for(
        self,
        tx: _Transaction,
        step: ExternalStep | WebhookStep,
        data: Any,
        *,
        awaiting: bool,
        unit_id: str,
    ) -> OutboundRequest:
        callback_url = self.callback_url(tx.run.id, step.id)
        headers = {"X-Workflow-Run-Id": tx.run.id, "X-Workflow-Step-Id": step.id}
        if awaiting:
            headers["X-Workflow-Callback-Url"] = callback_url
            headers["X-Workflow-Secret"] = tx.run.callback_secret
        default_body = {"runId": tx.run.id, "stepId": step.id, "unitId": unit_id, "input": data}
        if awaiting:
            default_body["callbackUrl"] = callback_url
        return build_request(
            step,
            data,
            roots=self._roots(tx, data),
            default_body=default_body,
            extra_headers=headers,
        )

    def _awaits_callback(self, step: ExternalStep | WebhookStep) -> bool:
        if isinstance(step, WebhookStep):
            return step.config.await_callback
        return True

    def _activate_call(
        self, tx: _Transaction, step: ExternalStep | WebhookStep, prior: Any
    ) -> None:
        unit = self._new_unit(tx, step, prior, UnitStatus.WAITING)
        awaiting = self._awaits_callback(step)
        if not step.config.url:
            if awaiting:
                return
            self._record_call_result(
                tx, step.id, unit.id, OutboundResult(ok=False, error="Webhook step has no url")
            )
            return
        try:
            request = self._request_for(tx, step, prior, awaiting=awaiting, unit_id=unit.id)
        except ValueError as e:
            self._record_call_result(tx, step.id, unit.id, OutboundResult(ok=False, error=str(e)))
            return
        tx.followups.append(
            _Dispatch(
                run_id=tx.run.id,
                step_id=step.id,
                unit_id=unit.id,
                batch_step_id=step.id,
                request=request,
                await_callback=awaiting,
            )
        )

    def _activate_flow(self, tx: _Transaction, step: FlowStep, prior: Any) -> None:
        workflow_id = step.config.workflow_id
        if not workflow_id:
            self._fail_step(tx, step, "Flow step has no workflowId")
            return
        if step.config.input_mapping:
            roots = self._roots(tx, prior)
            payload = {
                key: get_value_by_path(prior, path, roots=roots)
                for key, path in step.config.input_mapping.items()
            }
        elif isinstance(prior, dict):
            payload = dict(prior)
        else:
            payload = {"input": prior}
        self._store.apply_batch_event(BatchKey(tx.run.id, step.id), BatchEvent(expected_count=1))
        tx.followups.append(
            _StartChild(
                parent_run_id=tx.run.id,
                parent_step_id=step.id,
                workflow_id=workflow_id,
                input_payload=payload,
            )
        )

    def _body_step(self, tx: _Transaction, step: ForeachStep) -> Step | None:
        for connection in step.connections:
            body = tx.workflow.get_step(connection.target_step_id)
            if body is not None and not isinstance(body, JoinStep):
                return body
        return None

    def _fan_out(self, tx: _Transaction, step: ForeachStep, prior: Any) -> None:
        key = BatchKey(tx.run.id, step.id)
        body = self._body_step(tx, step)
        now = self._clock()
        for join in joins_awaiting(tx.workflow, step.id):
            if join.id not in tx.run.current_step_ids:
                self._update(
                    tx,
                    current_step_ids=[*tx.run.current_step_ids, join.id],
                    step_started_at={**tx.run.step_started_at, join.id: now},
                )
                self._emit(tx, STEP_STARTED, step_id=join.id, stepType=join.kind.value)

        roots = self._roots(tx, prior)
        if step.config.items_path is None:
            expected = None
            if step.config.expected_count_path:
                raw = get_value_by_path(prior, step.config.expected_count_path, roots=roots)
                if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
                    expected = raw
            self._store.apply_batch_event(key, BatchEvent(expected_count=expected))
            logger.info(
                "Foreach awaiting streamed items",
                extra={"run_id": tx.run.id, "step_id": step.id, "expected_count": expected},
            )
            self._evaluate_batch(tx, step.id)
            return

        collection = get_value_by_path(prior, step.config.items_path, roots=roots)
        try:
            plan = plan_fan_out(
                step,
                collection,
                run_id=tx.run.id,
                body_step_id=body.id if body else step.id,
                body_step_type=body.kind.value if body else StepType.AGENT.value,
                prior_output=prior,
                default_max_items=self._foreach_max_items,
            )
        except WorkflowValidationError as e:
            self._fail_step(tx, step, str(e))
            return

        self._store.save_units(plan.units)
        self._store.apply_batch_event(key, plan.event)
        logger.info(
            "Fan-out created units",
            extra={"run_id": tx.run.id, "step_id": step.id, "units": len(plan.units)},
        )
        if plan.units:
            self._emit(tx, UNITS_CREATED, step_id=step.id, unitIds=[u.id for u in plan.units])
        if isinstance(body, (ExternalStep, WebhookStep)) and body.config.url:
            self._dispatch_units(tx, body, plan.units, batch_step_id=step.id)
        self._evaluate_batch(tx, step.id)

    def _dispatch_units(
        self,
        tx: _Transaction,
        body: ExternalStep | WebhookStep,
        units: list[ExecutionUnit],
        *,
        batch_step_id: str,
    ) -> None:
        awaiting = self._awaits_callback(body)
        for unit in units:
            request = self._request_for(tx, body, unit.input, awaiting=awaiting, unit_id=unit.id)
            tx.followups.append(
                _Dispatch(
                    run_id=tx.run.id,
                    step_id=body.id,
                    unit_id=unit.id,
                    batch_step_id=batch_step_id,
                    request=request,
                    await_callback=awaiting,
                    fan_out_child=True,
                )
            )

    def _ingest_streamed(
        self, tx: _Transaction, step: ForeachStep, callback: NormalizedCallback
    ) -> tuple[BatchCounters, bool, list[str]]:
        key = BatchKey(tx.run.id, step.id)
        before = self._store.get_counters(key) or new_counters(key)
        seen = set(before.seen_keys)
        if callback.idempotency_key and callback.idempotency_key in seen:
            return before, False, []
        # Redelivered items must not count against the cap or spawn units twice.
        fresh: list[BatchItem] = []
        for item in callback.items:
            if item.key:
                if item.key in seen:
                    continue
                seen.add(item.key)
            fresh.append(item)
        body = self._body_step(tx, step)
        units = plan_streamed_units(
            step,
            fresh,
            run_id=tx.run.id,
            body_step_id=body.id if body else step.id,
            body_step_type=body.kind.value if body else StepType.AGENT.value,
            already_received=before.received_count,
            prior_output=tx.run.step_inputs.get(step.id),
            default_max_items=self._foreach_max_items,
        )
        arrivals = tuple(
            item.model_copy(update={"unit_id": unit.id, "success": None, "error": None})
            for item, unit in zip(fresh, units, strict=True)
        )
        event = BatchEvent(
            arrivals=arrivals,
            expected_count=callback.expected_count,
            complete=callback.complete,
            idempotency_key=callback.idempotency_key,
        )
        counters, applied = self._store.apply_batch_event(key, event)
        if not applied:
            return counters, False, []
        accepted = {item.unit_id for item in counters.items}
        units = [u for u in units if u.id in accepted]
        self._store.save_units(units)
        if units:
            self._emit(tx, UNITS_CREATED, step_id=step.id, unitIds=[u.id for u in units])
            if isinstance(body, (ExternalStep, WebhookStep)) and body.config.url:
                self._dispatch_units(tx, body, units, batch_step_id=step.id)
        return counters, True, [u.id for u in units]

    # Evaluation

    def _settle_unit(
        self,
        tx: _Transaction,
        unit: ExecutionUnit,
        *,
        success: bool,
        output: Any,
        error: str | None,
    ) -> tuple[BatchCounters, bool]:
        key = BatchKey(unit.batch_owner_id, unit.batch_step_id)
        status = UnitStatus.COMPLETED if success else UnitStatus.FAILED
        if not success and not error:
            error = "Unit reported failure"
        updated = self._store.transition_unit(unit.id, status=status, output=output, error=error)
        if updated is None:
            return self._store.get_counters(key) or new_counters(key), False

        item = BatchItem(
            key=f"unit:{unit.id}", unit_id=unit.id, success=success, data=output, error=error
        )
        event = (
            BatchEvent(settlements=(item,))
            if unit.is_fan_out_child
            else BatchEvent(arrivals=(item,), close_if_undeclared=True)
        )
        counters, applied = self._store.apply_batch_event(key, event)
        logger.info(
            "Unit finished",
            extra={
                "run_id": tx.run.id,
                "unit_id": unit.id,
                "step_id": unit.step_id,
                "success": success,
            },
        )
        self._emit(
            tx, UNIT_COMPLETED, step_id=unit.step_id, unitId=unit.id, success=success, error=error
        )
        if applied:
            self._evaluate_batch(tx, key.step_id)
        return counters, True

    def _evaluate_batch(self, tx: _Transaction, source_step_id: str) -> None:
        """Evaluate every active step that watches ``source_step_id``'s batch."""

        joins = joins_awaiting(tx.workflow, source_step_id)
        for join in joins:
            self._evaluate_step(tx, join)
        source = tx.workflow.get_step(source_step_id)
        if source is None or source.kind not in BATCHED_STEP_TYPES:
            return
        if isinstance(source, ForeachStep) and joins:
            return
        self._evaluate_step(tx, source)

    def _batch_source_id(self, tx: _Transaction, step: Step) -> str | None:
        if isinstance(step, JoinStep):
            source = resolve_join_source(tx.workflow, step)
            return source.id if source is not None else None
        return step.id

    def _evaluate_step(self, tx: _Transaction, step: Step) -> None:
        run = tx.run
        if run.status != RunStatus.RUNNING or step.id not in run.current_step_ids:
            return
        if step.id in run.review_step_ids:
            return

        source_id = self._batch_source_id(tx, step)
        if source_id is None:
            self._fail_step(tx, step, "Join has no step to await")
            return
        counters = self._store.get_counters(BatchKey(run.id, source_id))
        if counters is None:
            if source_id not in run.current_step_ids and source_id not in run.completed_step_ids:
                self._fail_step(tx, step, f"Awaited step {source_id} has not run")
                return
            counters = new_counters(BatchKey(run.id, source_id))

        policy = policy_for_step(step)
        decision = evaluate_join(
            counters, policy, started_at=run.step_started_at.get(step.id), now=self._now(tx)
        )
        if decision.outcome == JoinOutcome.WAITING:
            return
        if decision.outcome == JoinOutcome.MANUAL_REVIEW:
            if self._store.try_mark_review_requested(BatchKey(run.id, step.id)):
                self._update(tx, review_step_ids=[*run.review_step_ids, step.id])
                logger.warning(
                    "Step needs manual review",
                    extra={
                        "run_id": run.id,
                        "step_id": step.id,
                        "reason": decision.reason,
                        "success_percent": round(decision.success_percent, 2),
                    },
                )
                self._emit(
                    tx,
                    STEP_REVIEW_REQUESTED,
                    step_id=step.id,
                    reason=decision.reason,
                    successPercent=round(decision.success_percent, 2),
                )
            return
        self._fire(tx, step, counters, decision)

    def _fire(
        self, tx: _Transaction, step: Step, counters: BatchCounters, decision: JoinDecision
    ) -> None:
        if not self._store.try_mark_fired(BatchKey(tx.run.id, step.id), decision.outcome.value):
            return
        output = step_output(step, counters, decision, now=self._now(tx))
        if decision.outcome in {JoinOutcome.SUCCESS, JoinOutcome.PARTIAL_SUCCESS}:
            self._complete_step(tx, step, output)
            return
        self._fail_step(tx, step, _failure_message(step, counters, decision), output)

    # Completion and routing

    def _related_steps(self, tx: _Transaction, step: Step) -> list[str]:
        """Steps that finish together with ``step`` (a foreach and its body)."""

        foreach: Step | None = step if isinstance(step, ForeachStep) else None
        if isinstance(step, JoinStep):
            source = resolve_join_source(tx.workflow, step)
            if isinstance(source, ForeachStep):
                foreach = source
        if not isinstance(foreach, ForeachStep):
            return []
        related = [foreach.id] if foreach.id != step.id else []
        body = self._body_step(tx, foreach)
        if body is not None and body.id != step.id:
            related.append(body.id)
        return related

    def _complete_step(self, tx: _Transaction, step: Step, output: Any) -> None:
        run = tx.run
        finished = [step.id, *self._related_steps(tx, step)]
        outputs = dict(run.step_outputs)
        for step_id in finished:
            if step_id == step.id or step_id not in outputs:
                outputs[step_id] = output
        self._update(
            tx,
            current_step_ids=[s for s in run.current_step_ids if s not in finished],
            completed_step_ids=run.completed_step_ids
            + [s for s in finished if s not in run.completed_step_ids],
            review_step_ids=[s for s in run.review_step_ids if s != step.id],
            step_outputs=outputs,
        )
        for unit in self._store.list_units(run.id, step_id=step.id):
            if not unit.is_terminal and not unit.is_fan_out_child:
                self._store.transition_unit(unit.id, status=UnitStatus.COMPLETED, output=output)
        logger.info("Step completed", extra={"run_id": run.id, "step_id": step.id})
        self._emit(tx, STEP_COMPLETED, step_id=step.id, stepType=step.kind.value)

        routing_step: Step | None = step
        if isinstance(step, ForeachStep):
            routing_step = self._body_step(tx, step)
        try:
            targets = self._next_steps(tx, routing_step, output) if routing_step else []
        except RoutingError as e:
            self._fail_run(tx, step, str(e))
            return
        for target in targets:
            self._activate(tx, target, output)

    def _next_steps(self, tx: _Transaction, step: Step, output: Any) -> list[Step]:
        if isinstance(step, DecisionStep):
            return [self._route_decision(tx, step, output)]

        targets: list[Step] = []
        for connection in step.connections:
            target = tx.workflow.get_step(connection.target_step_id)
            if target is None:
                logger.warning(
                    "Connection to unknown step skipped",
                    extra={"step_id": step.id, "target_step_id": connection.target_step_id},
                )
                continue
            if target not in targets:
                targets.append(target)
        return targets

    def _route_decision(self, tx: _Transaction, step: DecisionStep, output: Any) -> Step:
        roots = self._roots(tx, output)
        verdict: bool | None = None
        if step.config.condition:
            verdict = evaluate_condition(step.config.condition, output, roots=roots)
        chosen: str | None = None
        for connection in step.connections:
            if is_default_condition(connection.condition):
                continue
            branch = branch_value(connection.condition)
            if branch is not None:
                # yes/no labels only match against the decision's own condition.
                if verdict is not None and branch == verdict:
                    chosen = connection.target_step_id
                    break
                continue
            if evaluate_condition(connection.condition, output, roots=roots):
                chosen = connection.target_step_id
                break
        if chosen is None and step.config.default_connection:
            chosen = step.config.default_connection
        if chosen is None:
            for connection in step.connections:
                if is_default_condition(connection.condition):
                    chosen = connection.target_step_id
                    break
        if chosen is None:
            raise RoutingError(
                f'Decision "{step.display_name}" matched no condition and has no default'
            )
        target = tx.workflow.get_step(chosen)
        if target is None:
            raise RoutingError(f'Decision "{step.display_name}" routes to unknown step {chosen!r}')
        logger.info(
            "Decision routed", extra={"run_id": tx.run.id, "step_id": step.id, "target": chosen}
        )
        return target

    def _fail_step(self, tx: _Transaction, step: Step, error: str, output: Any = None) -> None:
        run = tx.run
        outputs = dict(run.step_outputs)
        if output is not None:
            outputs[step.id] = output
        self._update(
            tx,
            current_step_ids=[s for s in run.current_step_ids if s != step.id],
            review_step_ids=[s for s in run.review_step_ids if s != step.id],
            step_outputs=outputs,
        )
        for unit in self._store.list_units(run.id, step_id=step.id):
            if not unit.is_terminal and not unit.is_fan_out_child:
                self._store.transition_unit(unit.id, status=UnitStatus.FAILED, error=error)
        logger.warning(
            "Step failed", extra={"run_id": run.id, "step_id": step.id, "error": error}
        )
        self._emit(tx, STEP_FAILED, step_id=step.id, error=error)
        self._fail_run(tx, step, error)

    def _fail_run(self, tx: _Transaction, step: Step, error: str) -> None:
        if tx.run.status not in {RunStatus.RUNNING, RunStatus.PAUSED}:
            return
        message = f'Step "{step.display_name}" failed: {error}'
        self._update(tx, failed_step_id=step.id, error=message)
        self._set_status(tx, RunStatus.FAILED)
        logger.warning(
            "Run failed", extra={"run_id": tx.run.id, "step_id": step.id, "error": message}
        )
        if tx.run.parent_run_id:
            tx.followups.append(_NotifyParent(tx.run.id))

    def _finish_if_idle(self, tx: _Transaction) -> None:
        if tx.run.status != RunStatus.RUNNING or tx.run.current_step_ids:
            return
        self._update(tx, output_payload=dict(tx.run.step_outputs))
        self._set_status(tx, RunStatus.COMPLETED)
        logger.info("Run completed", extra={"run_id": tx.run.id})
        if tx.run.parent_run_id:
            tx.followups.append(_NotifyParent(tx.run.id))

    # Followups, run without any run lock held

    def _record_call_result(
        self, tx: _Transaction, batch_step_id: str, unit_id: str, result: OutboundResult
    ) -> None:
        item = BatchItem(
            key=f"dispatch:{unit_id}",
            unit_id=unit_id,
            success=result.ok,
            data=result.body,
            error=result.error,
        )
        self._store.apply_batch_event(
            BatchKey(tx.run.id, batch_step_id), BatchEvent(arrivals=(item,), complete=True)
        )
        self._evaluate_batch(tx, batch_step_id)

    def _run_dispatch(self, dispatch: _Dispatch) -> None:
        run = self._store.get_run(dispatch.run_id)
        if run is None or run.is_terminal:
            logger.info(
                "Skipping outbound call for finished run",
                extra={"run_id": dispatch.run_id, "step_id": dispatch.step_id},
            )
            return
        if self._executor is None:
            result = OutboundResult(ok=False, error="No call executor configured")
        else:
            result = self._executor.execute(dispatch.request)

        if result.ok and dispatch.await_callback:
            logger.info(
                "Outbound call accepted; awaiting callback",
                extra={"run_id": dispatch.run_id, "step_id": dispatch.step_id},
            )
            return

        def _record(tx: _Transaction) -> None:
            if tx.run.is_terminal:
                return
            if dispatch.fan_out_child:
                unit = self._store.get_unit(dispatch.unit_id)
                if unit is not None:
                    self._settle_unit(
                        tx, unit, success=result.ok, output=result.body, error=result.error
                    )
                return
            self._record_call_result(tx, dispatch.batch_step_id, dispatch.unit_id, result)

        self._in_transaction(dispatch.run_id, _record, allow_terminal=True)

    def _start_child(self, start: _StartChild) -> None:
        try:
            child = self.start_run(
                start.workflow_id,
                start.input_payload,
                parent_run_id=start.parent_run_id,
                parent_step_id=start.parent_step_id,
            )
        except (NotFoundError, WorkflowValidationError) as e:
            logger.warning(
                "Sub-run could not start",
                extra={"run_id": start.parent_run_id, "workflow_id": start.workflow_id},
            )
            self._deliver_child_result(
                start.parent_run_id,
                start.parent_step_id,
                BatchItem(key=f"child-start:{start.parent_step_id}", success=False, error=str(e)),
            )
            return
        logger.info(
            "Sub-run started",
            extra={"run_id": start.parent_run_id, "child_run_id": child.id},
        )

    def _notify_parent(self, notify: _NotifyParent) -> None:
        child = self._store.get_run(notify.child_run_id)
        if child is None or not child.parent_run_id or not child.parent_step_id:
            return
        succeeded = child.status == RunStatus.COMPLETED
        item = BatchItem(
            key=f"child:{child.id}",
            success=succeeded,
            data=child.output_payload if succeeded else {"runId": child.id, "error": child.error},
            error=None if succeeded else (child.error or f"Sub-run {child.status.value}"),
        )
        self._deliver_child_result(child.parent_run_id, child.parent_step_id, item)

    def _deliver_child_result(
        self, parent_run_id: str, parent_step_id: str, item: BatchItem
    ) -> None:
        def _deliver(tx: _Transaction) -> None:
            if tx.run.is_terminal:
                return
            self._store.apply_batch_event(
                BatchKey(tx.run.id, parent_step_id), BatchEvent(arrivals=(item,), complete=True)
            )
            self._evaluate_batch(tx, parent_step_id)

        self._in_transaction(parent_run_id, _deliver, allow_terminal=True)

    def _cancel_child(self, cancel: _CancelChild) -> None:
        try:
            self.cancel_run(cancel.run_id)
        except IllegalTransitionError:
            logger.info("Sub-run already finished", extra={"run_id": cancel.run_id})


def _failure_message(step: Step, counters: BatchCounters, decision: JoinDecision) -> str:
    if decision.reason == "deadline_passed":
        return f"Timed out after {counters.received_count} result(s)"
    if decision.reason.startswith("review_"):
        return "Rejected in manual review"
    first_error = next((i.error for i in counters.items if i.success is False and i.error), None)
    if counters.received_count == 1 and first_error:
        return first_error
    policy = policy_for_step(step)
    counts = f"{counters.processed_count} succeeded, {counters.failed_count} failed"
    if decision.success_percent >= policy.min_success_percent and policy.min_count:
        summary = f"{counts} (minimum is {policy.min_count})"
    else:
        summary = (
            f"{counts} ({decision.success_percent:.1f}% < {policy.min_success_percent:g}%)"
        )
    return f"{summary}: {first_error}" if first_error else summary
