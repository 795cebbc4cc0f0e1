"""Error taxonomy shared by the engine and the HTTP surface.

Routing errors and step failures never escape to callers: the engine turns them
into run failures. The remaining errors are raised synchronously and mapped to
HTTP status codes by the server.
"""

from __future__ import annotations


class WorkflowError(Exception):
    pass


class WorkflowValidationError(WorkflowError, ValueError):
    """Malformed graph, missing required field, or an invalid start request."""


class FanOutLimitError(WorkflowValidationError):
    """A foreach collection exceeded the configured item cap."""


class AuthenticationError(WorkflowError):
    """Missing or wrong callback secret. Raised before any state is touched."""


class NotFoundError(WorkflowError, KeyError):
    def __str__(self) -> str:
        # KeyError quotes its argument; keep plain messages for logs and HTTP details.
        return str(self.args[0]) if self.args else "not found"


class RoutingError(WorkflowError):
    """A decision step matched no connection and has no default."""
