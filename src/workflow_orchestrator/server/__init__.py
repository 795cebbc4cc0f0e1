"""FastAPI server adapter for workflow-orchestrator.

This module exposes a REST API over the workflow engine and batch jobs.

Design intent:
- Keep run semantics in `workflow_orchestrator.orchestrator.workflow.*`
- Keep server-specific concerns (routing, CORS, error mapping, deadline polling) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from workflow_orchestrator.server.app import create_app
