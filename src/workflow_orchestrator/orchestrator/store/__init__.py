"""Run state stores."""

from __future__ import annotations

from pathlib import Path

from .base import RunStateStore
from .json_file import JsonFileRunStateStore
from .memory import InMemoryRunStateStore


def open_store(path: Path | None) -> RunStateStore:
    """A JSON-file store at ``path``, or an in-memory store when no path is set."""

    if path is None:
        return InMemoryRunStateStore()
    return JsonFileRunStateStore(path)


__all__ = ["InMemoryRunStateStore", "JsonFileRunStateStore", "RunStateStore", "open_store"]
