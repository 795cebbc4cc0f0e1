from __future__ import annotations

import pytest

from workflow_orchestrator.orchestrator.workflow.callbacks import (
    CallbackAck,
    normalize_callback,
    secret_from_headers,
    verify_secret,
)
from workflow_orchestrator.orchestrator.workflow.errors import (
    AuthenticationError,
    WorkflowValidationError,
)


def test_single_item_shape() -> None:
    callback = normalize_callback({"item": {"id": 1, "itemKey": "row-1"}})

    assert len(callback.items) == 1
    assert callback.items[0].key == "row-1"
    assert callback.items[0].success is True
    assert callback.items[0].data == {"id": 1, "itemKey": "row-1"}


def test_items_array_and_bare_list() -> None:
    assert len(normalize_callback({"items": [{"a": 1}, {"a": 2}]}).items) == 2
    assert len(normalize_callback([1, 2, 3]).items) == 3
    assert normalize_callback({"items": []}).items == []


def test_plain_object_is_one_item_without_control_keys() -> None:
    callback = normalize_callback(
        {"result": "done", "workflowUpdate": {"total": 4, "complete": True}}
    )

    assert [item.data for item in callback.items] == [{"result": "done"}]
    assert callback.expected_count == 4
    assert callback.complete is True


def test_control_only_body_has_no_items() -> None:
    callback = normalize_callback({"batchUpdate": {"complete": "true"}})

    assert callback.items == []
    assert callback.complete is True


def test_failed_items_are_detected() -> None:
    callback = normalize_callback(
        {
            "items": [
                {"success": False},
                {"error": "timeout"},
                {"status": "FAILED"},
                {"status": "ok"},
            ]
        }
    )

    assert [item.success for item in callback.items] == [False, False, False, True]
    assert callback.items[1].error == "timeout"
    assert callback.items[0].error == "Item reported failure"


def test_headers_win_over_body() -> None:
    callback = normalize_callback(
        {"items": [], "workflowUpdate": {"total": 9, "complete": False}, "idempotencyKey": "b"},
        expected_count_header="3",
        complete_header="1",
        idempotency_key_header="h",
    )

    assert callback.expected_count == 3
    assert callback.complete is True
    assert callback.idempotency_key == "h"


@pytest.mark.parametrize("header", ["-1", "many", "2.5"])
def test_invalid_expected_count_is_rejected(header: str) -> None:
    with pytest.raises(WorkflowValidationError):
        normalize_callback({}, expected_count_header=header)


def test_invalid_completion_flag_is_rejected() -> None:
    with pytest.raises(WorkflowValidationError):
        normalize_callback({}, complete_header="maybe")


def test_secret_from_headers() -> None:
    assert secret_from_headers({"X-Workflow-Secret": " s1 "}) == "s1"
    assert secret_from_headers({"Authorization": "Bearer s2"}) == "s2"
    assert secret_from_headers({"Authorization": "Basic abc"}) is None
    assert secret_from_headers({}) is None


def test_verify_secret() -> None:
    verify_secret("wfsec_abc", "wfsec_abc")

    with pytest.raises(AuthenticationError, match="Missing"):
        verify_secret("wfsec_abc", None)
    with pytest.raises(AuthenticationError, match="Invalid"):
        verify_secret("wfsec_abc", "wfsec_abd")


def test_ack_json_shape() -> None:
    ack = CallbackAck(accepted=True, received_count=2, expected_count=3, unit_ids=["u1"])

    assert ack.to_json() == {
        "acknowledged": True,
        "accepted": True,
        "duplicate": False,
        "receivedCount": 2,
        "expectedCount": 3,
        "isComplete": False,
        "unitIds": ["u1"],
        "reason": None,
        "status": None,
        "warnings": [],
    }
