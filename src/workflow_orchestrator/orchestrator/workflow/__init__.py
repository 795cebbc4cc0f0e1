"""Workflow domain: step model, diagram codec, counters, fan-out/fan-in and the run engine.

Only :class:`~.engine.WorkflowEngine` changes run state; the other modules in
this package are data types and pure rules.
"""

__all__: list[str] = []
