#!/usr/bin/env python3
"""Programmatic fan-out/fan-in example.

This demonstrates using the engine components directly:

* load settings from `.env`
* compile a workflow from a Mermaid flowchart
* start a run that fans out over its input rows
* report unit results and let the join decide the outcome

Rows whose text contains "fail" are reported as failed units, so the join
threshold can be tried from the command line.
"""

from __future__ import annotations

import argparse
import json
from typing import Sequence

from workflow_orchestrator.orchestrator.config import EngineSettings
from workflow_orchestrator.orchestrator.logging import configure_logging
from workflow_orchestrator.orchestrator.store import open_store
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.workflow.events import EngineEvent, EventBus

DIAGRAM = """flowchart TD
    start[/"Start"/] --> rows[["Each: Row (rows)"]]
    rows --> review["Review row"]
    review --> merge[["Join: Merge @{percent}%"]]
"""


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a fan-out/fan-in workflow in-process.")
    parser.add_argument("rows", nargs="+", help='Row values, e.g. "a" "b" "fail-c"')
    parser.add_argument(
        "--min-success-percent",
        type=float,
        default=50,
        help="Join threshold (default: 50)",
    )
    return parser.parse_args(argv)


def _print_event(event: EngineEvent) -> None:
    print(f"  event {event.type} step={event.step_id or '-'}")


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = EngineSettings()
    configure_logging(settings.log_level)

    events = EventBus()
    events.subscribe(_print_event)
    engine = WorkflowEngine(
        store=open_store(settings.state_path),
        events=events,
        foreach_max_items=settings.foreach_max_items,
    )

    diagram = DIAGRAM.format(percent=f"{args.min_success_percent:g}")
    workflow, _ = engine.save_workflow({"name": "Row review", "mermaidDiagram": diagram})
    run = engine.start_run(workflow.id, {"rows": args.rows})

    for unit in engine.list_units(run.id, step_id="review"):
        failed = "fail" in str(unit.input)
        engine.complete_unit(
            run.id,
            unit.id,
            secret=run.callback_secret,
            success=not failed,
            output=None if failed else {"reviewed": unit.input},
            error="Row rejected" if failed else None,
        )

    run = engine.get_run(run.id)
    print(f"Run {run.id}: {run.status.value}")
    if run.error:
        print(f"Error: {run.error}")
    if run.output_payload is not None:
        print(json.dumps(run.output_payload, indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
