"""Workflow Orchestrator.

A workflow engine for graphs of steps that wait on people, agents and external
systems:
- workflows authored as step lists or Mermaid flowcharts
- fan-out over collections and threshold-based fan-in
- authenticated result callbacks with idempotent counting
- standalone batch jobs sharing the same aggregation rules
"""

__version__ = "0.1.0"

from workflow_orchestrator.orchestrator.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
