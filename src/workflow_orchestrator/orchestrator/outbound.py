"""Outbound HTTP calls for external and webhook steps.

The engine builds an :class:`OutboundRequest` while it holds the run lock and
hands it to a :class:`CallExecutor` only after the lock is released. Executors
report transport problems in :class:`OutboundResult` rather than raising.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol

import requests

from workflow_orchestrator.orchestrator.workflow.expressions import render_template
from workflow_orchestrator.orchestrator.workflow.steps import ExternalStep, WebhookStep

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_MS = 1_000


@dataclass(frozen=True, slots=True)
class OutboundRequest:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    timeout_ms: int | None = None
    success_status_codes: tuple[int, ...] = (200, 201, 202, 204)


@dataclass(frozen=True, slots=True)
class OutboundResult:
    ok: bool
    status_code: int | None = None
    body: Any = None
    error: str | None = None
    attempts: int = 1

    def to_json(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "statusCode": self.status_code,
            "body": self.body,
            "error": self.error,
            "attempts": self.attempts,
        }


class CallExecutor(Protocol):
    def execute(self, request: OutboundRequest) -> OutboundResult: ...


def build_request(
    step: ExternalStep | WebhookStep,
    data: Any,
    *,
    roots: Mapping[str, Any] | None = None,
    default_body: Any = None,
    extra_headers: Mapping[str, str] | None = None,
) -> OutboundRequest:
    """Render ``step``'s URL, headers and body templates against ``data``."""

    config = step.config
    if not config.url:
        raise ValueError(f'Step "{step.display_name}" has no url')

    url = render_template(config.url, data, roots=roots)
    rendered_headers = render_template(config.headers, data, roots=roots)
    headers = {str(k): str(v) for k, v in rendered_headers.items()}
    for key, value in (extra_headers or {}).items():
        headers.setdefault(key, value)
    body = default_body
    if config.body is not None:
        body = render_template(config.body, data, roots=roots)
    return OutboundRequest(
        url=str(url),
        method=config.method.upper(),
        headers=headers,
        body=body,
        timeout_ms=config.timeout_ms,
        success_status_codes=tuple(config.success_status_codes),
    )


def _response_body(resp: requests.Response) -> Any:
    if not resp.content:
        return None
    try:
        return resp.json()
    except ValueError:
        return resp.text


class RequestsCallExecutor:
    """Synchronous executor with exponential backoff between attempts.

    Only transport errors and 5xx/429 responses are retried; any other status
    outside ``success_status_codes`` fails immediately.
    """

    def __init__(
        self,
        *,
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_ms: int = DEFAULT_RETRY_DELAY_MS,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._timeout_ms = timeout_ms
        self._max_retries = max(0, max_retries)
        self._retry_delay_ms = max(0, retry_delay_ms)
        self._session = session or requests.Session()
        self._sleep = sleep

    def _timeout_for(self, request: OutboundRequest) -> int:
        return request.timeout_ms or self._timeout_ms

    def _send(self, request: OutboundRequest) -> requests.Response:
        kwargs: dict[str, Any] = {
            "headers": request.headers,
            "timeout": self._timeout_for(request) / 1000,
        }
        if request.body is not None and request.method not in {"GET", "HEAD"}:
            if isinstance(request.body, (str, bytes)):
                kwargs["data"] = request.body
            else:
                kwargs["json"] = request.body
        return self._session.request(request.method, request.url, **kwargs)

    def execute(self, request: OutboundRequest) -> OutboundResult:
        attempts = 0
        last_error: str | None = None
        last_status: int | None = None
        last_body: Any = None

        while attempts <= self._max_retries:
            if attempts:
                delay_ms = self._retry_delay_ms * (2 ** (attempts - 1))
                logger.info(
                    "Retrying outbound call",
                    extra={"url": request.url, "attempt": attempts + 1, "delay_ms": delay_ms},
                )
                self._sleep(delay_ms / 1000)
            attempts += 1

            try:
                resp = self._send(request)
            except requests.Timeout:
                last_error = f"Request timeout after {self._timeout_for(request)}ms"
                last_status = None
                continue
            except requests.RequestException as e:
                last_error = f"Request failed: {e}"
                last_status = None
                continue

            last_status = resp.status_code
            last_body = _response_body(resp)
            if resp.status_code in request.success_status_codes:
                logger.info(
                    "Outbound call succeeded",
                    extra={"url": request.url, "status_code": resp.status_code},
                )
                return OutboundResult(
                    ok=True, status_code=resp.status_code, body=last_body, attempts=attempts
                )

            last_error = f"HTTP {resp.status_code}"
            if resp.status_code < 500 and resp.status_code != 429:
                break

        logger.warning(
            "Outbound call failed",
            extra={"url": request.url, "status_code": last_status, "error": last_error},
        )
        return OutboundResult(
            ok=False, status_code=last_status, body=last_body, error=last_error, attempts=attempts
        )
