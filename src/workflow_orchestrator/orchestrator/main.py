"""CLI entrypoint for the workflow orchestrator.

Offline tooling for workflow definitions (diagram parsing and rendering,
validation), a deadline sweep over the persisted state, and the API server.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from workflow_orchestrator import __version__
from workflow_orchestrator.orchestrator.config import EngineSettings
from workflow_orchestrator.orchestrator.logging import configure_logging
from workflow_orchestrator.orchestrator.store import open_store
from workflow_orchestrator.orchestrator.workflow.batch_jobs import BatchJobService
from workflow_orchestrator.orchestrator.workflow.diagram import decode_diagram, encode_diagram
from workflow_orchestrator.orchestrator.workflow.engine import WorkflowEngine
from workflow_orchestrator.orchestrator.workflow.errors import WorkflowValidationError
from workflow_orchestrator.orchestrator.workflow.normalize import normalize_workflow
from workflow_orchestrator.orchestrator.workflow.steps import dump_step

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="orchestrator",
        description="Workflow orchestration engine: diagram tooling, maintenance and API server",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-orchestrator {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    parse_diagram = subparsers.add_parser(
        "parse-diagram", help="Parse a Mermaid flowchart into workflow steps (JSON)"
    )
    parse_diagram.add_argument("file", type=Path, help="Path to a Mermaid diagram file")

    render_diagram = subparsers.add_parser(
        "render-diagram", help="Render workflow JSON (or a bare step list) as a Mermaid flowchart"
    )
    render_diagram.add_argument("file", type=Path, help="Path to a workflow JSON file")
    render_diagram.add_argument(
        "--direction",
        default="TD",
        choices=["TD", "TB", "LR", "RL", "BT"],
        help="Flowchart direction",
    )

    validate = subparsers.add_parser(
        "validate", help="Validate workflow JSON and report save-time repairs"
    )
    validate.add_argument("file", type=Path, help="Path to a workflow JSON file")

    subparsers.add_parser(
        "check-deadlines",
        help="Re-evaluate waiting steps and batch jobs in WORKFLOW_STATE_PATH against the clock",
    )

    serve = subparsers.add_parser("serve", help="Run the REST API server (uvicorn)")
    serve.add_argument("--host", default=None, help="Bind address (default: WORKFLOW_SERVER_HOST)")
    serve.add_argument(
        "--port", type=int, default=None, help="Bind port (default: WORKFLOW_SERVER_PORT)"
    )

    return parser


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise WorkflowValidationError(f"{path} is not valid JSON: {e}") from e


def _workflow_payload(raw: Any) -> dict[str, Any]:
    if isinstance(raw, list):
        return {"steps": raw}
    if isinstance(raw, dict):
        return raw
    raise WorkflowValidationError("Expected a workflow object or a list of steps")


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, ensure_ascii=False))


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    try:
        if args.command == "parse-diagram":
            decoded = decode_diagram(args.file.read_text(encoding="utf-8"))
            for warning in decoded.warnings:
                logger.warning(warning, extra={"path": str(args.file)})
            _print_json(
                {
                    "name": decoded.name,
                    "entryStepId": decoded.entry_step_id,
                    "steps": [dump_step(step) for step in decoded.steps],
                    "warnings": decoded.warnings,
                }
            )
            return 0

        if args.command == "render-diagram":
            workflow, _ = normalize_workflow(_workflow_payload(_read_json(args.file)))
            sys.stdout.write(
                encode_diagram(
                    workflow.steps,
                    name=workflow.name or None,
                    entry_step_id=workflow.entry_step_id,
                    direction=args.direction,
                )
            )
            return 0

        if args.command == "validate":
            workflow, generated = normalize_workflow(_workflow_payload(_read_json(args.file)))
            print(f"Workflow {workflow.name or '(unnamed)'} is valid: {len(workflow.steps)} steps")
            for step_id in generated:
                print(f"Generated step id {step_id}")
            return 0

        if args.command == "check-deadlines":
            if settings.state_path is None:
                print("WORKFLOW_STATE_PATH is not set; nothing to check", file=sys.stderr)
                return 2
            store = open_store(settings.state_path)
            engine = WorkflowEngine(
                store=store,
                foreach_max_items=settings.foreach_max_items,
                public_base_url=settings.public_base_url,
            )
            batches = BatchJobService(store=store)
            changed_runs = engine.check_deadlines()
            changed_jobs = batches.check_deadlines()
            logger.info(
                "Deadline check finished",
                extra={"changed_runs": len(changed_runs), "changed_jobs": len(changed_jobs)},
            )
            print(f"Runs changed: {len(changed_runs)}; batch jobs changed: {len(changed_jobs)}")
            return 0

        if args.command == "serve":
            import uvicorn

            from workflow_orchestrator.server.config import ServerSettings

            server_settings = ServerSettings()
            uvicorn.run(
                "workflow_orchestrator.server.app:create_app",
                factory=True,
                host=args.host or server_settings.host,
                port=args.port or server_settings.port,
                log_config=None,
            )
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return 2

    except WorkflowValidationError as e:
        logger.warning("Validation failed", extra={"error": str(e)})
        print(str(e), file=sys.stderr)
        return 1

    except Exception:
        logger.exception("Command failed")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
