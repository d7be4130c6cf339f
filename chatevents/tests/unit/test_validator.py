"""Unit tests for event/patch classification and schema validation."""

from __future__ import annotations

from typing import Any

import pytest

from chatevents.protocol.errors import ROOT_PATH, ValidationError
from chatevents.protocol.events import EventPatch, MessageEvent, UnknownEvent, to_wire
from chatevents.protocol.validator import ValidationResult, is_event, is_patch, validate


def _message(**overrides: Any) -> dict[str, Any]:
    candidate: dict[str, Any] = {
        "id": "e1",
        "sessionId": "s1",
        "kind": "message",
        "createdAt": 1_700_000_000_000,
        "streaming": True,
        "payload": {"text": "hi", "role": "assistant"},
    }
    candidate.update(overrides)
    return candidate


def test_valid_event_round_trips_through_wire_form() -> None:
    candidate = _message()
    result = validate(candidate)

    assert result.ok
    assert isinstance(result.value, MessageEvent)
    assert is_event(result.value)
    assert to_wire(result.value) == candidate


def test_tool_call_event_keeps_camel_case_payload() -> None:
    candidate = _message(
        id="c1",
        kind="tool-call",
        streaming=False,
        payload={"toolName": "search", "toolUseId": "t1", "args": {"q": "x"}},
    )
    event = validate(candidate).unwrap()

    assert event.payload.tool_name == "search"
    assert to_wire(event) == candidate


def test_missing_payload_field_reports_dotted_path() -> None:
    result = validate(_message(kind="tool-call", payload={"toolUseId": "t1"}))

    assert not result.ok
    assert result.error.path == "payload.toolName"
    assert result.error.expected == "required field"


@pytest.mark.parametrize(
    ("field", "value", "expected"),
    [
        ("createdAt", "2026-02-20", "integer"),
        ("streaming", "yes", "boolean"),
        ("id", "", "non-empty string"),
        ("sessionId", 42, "string"),
    ],
)
def test_wrong_field_types_are_rejected(field: str, value: Any, expected: str) -> None:
    result = validate(_message(**{field: value}))

    assert not result.ok
    assert result.error.path == field
    assert result.error.expected == expected
    assert result.error.actual == value


def test_message_text_must_be_a_string() -> None:
    result = validate(_message(payload={"text": 5}))

    assert result.error is not None
    assert result.error.path == "payload.text"


def test_missing_created_at_defaults_to_ingestion_time() -> None:
    candidate = _message()
    candidate.pop("createdAt")

    event = validate(candidate).unwrap()

    assert isinstance(event.created_at, int)
    assert event.created_at > 1_700_000_000_000


def test_patch_is_classified_by_target_id() -> None:
    result = validate({"targetId": "e1", "payload": {"text": "lo"}})

    assert result.ok
    assert isinstance(result.value, EventPatch)
    assert is_patch(result.value)
    assert result.value.op == "append"
    assert result.value.streaming is None
    assert not result.value.finalizes


def test_finalizing_patch() -> None:
    patch = validate({"targetId": "e1", "sessionId": "s1", "streaming": False}).unwrap()

    assert patch.finalizes
    assert patch.payload == {}


def test_patch_with_bad_op_is_rejected() -> None:
    result = validate({"targetId": "e1", "op": "merge"})

    assert result.error is not None
    assert result.error.path == "op"


def test_candidate_with_event_and_patch_fields_is_rejected() -> None:
    result = validate({"targetId": "e1", "kind": "message", "payload": {"text": "x"}})

    assert result.error is not None
    assert result.error.path == ROOT_PATH


def test_candidate_with_neither_shape_is_rejected() -> None:
    result = validate({"id": "e1", "payload": {}})

    assert result.error is not None
    assert result.error.path == ROOT_PATH
    assert result.error.actual == ["id", "payload"]


@pytest.mark.parametrize("candidate", [None, 1, "text", [], {"kind": None}, {"kind": 7}])
def test_garbage_input_never_raises(candidate: Any) -> None:
    result = validate(candidate)

    assert not result.ok
    assert result.value is None
    with pytest.raises(ValidationError):
        result.unwrap()


def test_unknown_kind_is_preserved_in_unknown_variant() -> None:
    candidate = _message(kind="reaction", payload={"emoji": "+1"})

    event = validate(candidate).unwrap()

    assert isinstance(event, UnknownEvent)
    assert event.kind == "unknown"
    assert event.payload.raw_kind == "reaction"
    assert event.payload.data == {"emoji": "+1"}
    assert to_wire(event)["payload"] == {"rawKind": "reaction", "data": {"emoji": "+1"}}


def test_unknown_event_revalidates_from_its_wire_form() -> None:
    event = validate(_message(kind="reaction", payload={"emoji": "+1"})).unwrap()

    again = validate(to_wire(event)).unwrap()

    assert again == event


def test_completion_payload_is_optional() -> None:
    candidate = _message(kind="completion", streaming=False)
    candidate.pop("payload")

    event = validate(candidate).unwrap()

    assert event.kind == "completion"
    assert event.payload.reason is None


def test_error_to_dict_lists_all_issues() -> None:
    result = validate({"kind": "message", "createdAt": 1, "payload": {}})

    assert result.error is not None
    body = result.error.to_dict()
    paths = {issue["path"] for issue in body["issues"]}
    assert {"id", "sessionId", "payload.text"} <= paths


def test_unwrap_of_empty_result_raises_validation_error() -> None:
    with pytest.raises(ValidationError) as excinfo:
        ValidationResult().unwrap()

    assert excinfo.value.path == ROOT_PATH
