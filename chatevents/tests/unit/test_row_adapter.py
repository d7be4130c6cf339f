"""Unit tests for mapping persisted chat rows into canonical events."""

from __future__ import annotations

from pathlib import Path

import pytest

from chatevents.adapters.row_adapter import RowAdapter, load_column_overlay, parse_legacy_result
from chatevents.protocol.errors import RowMappingError
from chatevents.protocol.events import to_wire, utc_now_ms


def test_plain_message_row() -> None:
    event = RowAdapter().map_one(
        {
            "id": "r1",
            "session_id": "s1",
            "role": "user",
            "content": "hello",
            "created_at": "2026-02-20T00:00:00Z",
        }
    )

    assert event.kind == "message"
    assert event.id == "r1"
    assert event.session_id == "s1"
    assert event.payload.text == "hello"
    assert event.payload.role == "user"
    assert event.created_at == 1_771_545_600_000
    assert event.streaming is False


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (1_700_000_000, 1_700_000_000_000),
        (1_700_000_000_123, 1_700_000_000_123),
        ("1700000000", 1_700_000_000_000),
        ("2023-11-14T22:13:20+00:00", 1_700_000_000_000),
    ],
)
def test_timestamp_forms_are_normalized_to_millis(raw: object, expected: int) -> None:
    event = RowAdapter().map_one({"id": "r1", "session_id": "s1", "content": "x", "created_at": raw})

    assert event.created_at == expected


def test_missing_timestamp_defaults_to_now() -> None:
    before = utc_now_ms()
    event = RowAdapter().map_one({"id": "r1", "session_id": "s1", "content": "x", "created_at": None})
    after = utc_now_ms()

    assert before <= event.created_at <= after


def test_unparseable_timestamp_is_a_mapping_error() -> None:
    with pytest.raises(RowMappingError) as excinfo:
        RowAdapter().map_one({"id": "r1", "session_id": "s1", "content": "x", "created_at": "yesterday"})

    assert excinfo.value.path == "created_at"


def test_integer_ids_are_stringified_and_unknown_roles_fall_back() -> None:
    event = RowAdapter().map_one({"id": 42, "sessionId": "s1", "role": "bot", "body": "hey"})

    assert event.id == "42"
    assert event.payload.role == "assistant"
    assert event.payload.text == "hey"


def test_nested_text_parts_are_joined() -> None:
    event = RowAdapter().map_one(
        {
            "id": "r1",
            "session_id": "s1",
            "role": "assistant",
            "content": [{"type": "text", "text": "first"}, {"type": "text", "text": "second"}],
        }
    )

    assert event.payload.text == "first\nsecond"


def test_tool_use_part_becomes_tool_call() -> None:
    event = RowAdapter().map_one(
        {
            "id": "r2",
            "session_id": "s1",
            "role": "assistant",
            "content": [{"type": "tool_use", "id": "t1", "name": "search", "input": {"q": "cats"}}],
        }
    )

    assert event.kind == "tool-call"
    assert event.payload.tool_name == "search"
    assert event.payload.tool_use_id == "t1"
    assert event.payload.args == {"q": "cats"}


def test_tool_role_row_becomes_tool_result_with_legacy_literal() -> None:
    event = RowAdapter().map_one(
        {
            "id": "r3",
            "session_id": "s1",
            "role": "tool",
            "tool_call_id": "t9",
            "content": "{'ok': True}",
        }
    )

    assert event.kind == "tool-result"
    assert event.payload.tool_use_id == "t9"
    assert event.payload.result == {"ok": True}
    assert event.payload.is_error is False


def test_metadata_event_type_selects_kind() -> None:
    event = RowAdapter().map_one(
        {
            "id": "r4",
            "session_id": "s1",
            "content": ["line one", "line two"],
            "tool_use_id": "t2",
            "metadata": {"event_type": "tool_result"},
        }
    )

    assert event.kind == "tool-result"
    assert event.payload.tool_use_id == "t2"
    assert event.payload.result["type"] == "legacy_array"
    assert event.payload.result["content"] == "line one\nline two"


def test_error_and_completion_rows() -> None:
    adapter = RowAdapter()
    error = adapter.map_one(
        {"id": "r5", "session_id": "s1", "kind": "error", "content": "boom", "metadata": {"code": "E1"}}
    )
    done = adapter.map_one(
        {"id": "r6", "session_id": "s1", "kind": "done", "metadata": {"stop_reason": "end_turn"}}
    )

    assert error.payload.message == "boom"
    assert error.payload.code == "E1"
    assert done.kind == "completion"
    assert done.payload.reason == "end_turn"


def test_unrecognized_kind_maps_to_unknown_event() -> None:
    event = RowAdapter().map_one({"id": "r7", "session_id": "s1", "kind": "reaction", "content": "+1"})

    assert event.kind == "unknown"
    assert event.payload.raw_kind == "reaction"
    assert event.payload.data == {"content": "+1"}


def test_missing_identity_is_a_mapping_error() -> None:
    adapter = RowAdapter()
    with pytest.raises(RowMappingError) as missing_id:
        adapter.map_one({"session_id": "s1", "content": "x"})
    with pytest.raises(RowMappingError) as missing_session:
        adapter.map_one({"id": "r1", "content": "x"})

    assert missing_id.value.path == "id"
    assert missing_session.value.path == "session_id"
    assert not adapter.can_map({"id": "r1"})
    assert adapter.can_map({"id": "r1", "session_id": "s1"})
    assert not adapter.can_map("not a row")


def test_batch_keeps_input_order_and_reports_bad_rows() -> None:
    rows = [
        {"id": "r1", "session_id": "s1", "role": "user", "content": "hi", "created_at": 3},
        {
            "id": "r2",
            "session_id": "s1",
            "kind": "tool_call",
            "content": [{"type": "tool_use", "id": "t1", "input": {}}],
        },
        {"id": "r3", "session_id": "s1", "role": "assistant", "content": "yo", "created_at": 1},
        "garbage",
    ]

    batch = RowAdapter().map_batch(rows)

    assert [event.id for event in batch.events] == ["r1", "r3"]
    assert not batch.ok
    assert [(error.index, error.row_id) for error in batch.errors] == [(1, "r2"), (3, None)]
    assert batch.errors[0].error.path == "payload.toolName"
    assert batch.errors[0].to_dict()["row_id"] == "r2"


def test_overlay_file_adds_source_columns(tmp_path: Path) -> None:
    overlay = tmp_path / "row_mapping.yaml"
    overlay.write_text(
        "columns:\n"
        "  session_id: [chat_id]\n"
        "  content: message_content\n"
        "  not_a_field: [whatever]\n",
        encoding="utf-8",
    )

    adapter = RowAdapter.from_overlay_file(overlay)
    event = adapter.map_one({"id": "r1", "chat_id": "c9", "message_content": "hello"})

    assert event.session_id == "c9"
    assert event.payload.text == "hello"
    assert adapter.column_map["session_id"][0] == "session_id"
    assert "not_a_field" not in adapter.column_map


def test_missing_or_broken_overlay_is_ignored(tmp_path: Path) -> None:
    broken = tmp_path / "broken.yaml"
    broken.write_text("columns: [unclosed", encoding="utf-8")

    assert load_column_overlay(tmp_path / "absent.yaml") == {}
    assert load_column_overlay(broken) == {}
    assert load_column_overlay(None) == {}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('{"a": 1}', {"a": 1}),
        ("['x', 2]", ["x", 2]),
        ("plain words", {"type": "text", "content": "plain words"}),
        (None, None),
    ],
)
def test_parse_legacy_result_strings(raw: object, expected: object) -> None:
    assert parse_legacy_result(raw) == expected


def test_parse_legacy_result_content_array() -> None:
    parsed = parse_legacy_result([{"type": "text", "text": "a"}, {"type": "text", "text": "b"}])

    assert parsed["type"] == "content_array"
    assert parsed["content"] == "a\nb"


@pytest.mark.parametrize("raw", ["{[1]: 2}", "{" * 200 + "}" * 200])
def test_unevaluable_legacy_literal_falls_back_to_text(raw: str) -> None:
    assert parse_legacy_result(raw) == {"type": "text", "content": raw}


def test_bad_legacy_result_does_not_abort_batch() -> None:
    rows = [
        {"id": "r1", "session_id": "s1", "content": "before"},
        {"id": "r2", "session_id": "s1", "role": "tool", "tool_call_id": "t1", "content": "{[1]: 2}"},
        {"id": "r3", "session_id": "s1", "content": "after"},
    ]

    batch = RowAdapter().map_batch(rows)

    assert batch.ok
    assert [event.id for event in batch.events] == ["r1", "r2", "r3"]
    assert batch.events[1].payload.result == {"type": "text", "content": "{[1]: 2}"}


@pytest.mark.parametrize("raw", ["b'\\xff'", "{1, 2}", "(1, 2)", "{1: 'a'}"])
def test_non_json_literals_stay_text(raw: str) -> None:
    event = RowAdapter().map_one(
        {"id": "r1", "session_id": "s1", "role": "tool", "tool_call_id": "t1", "content": raw}
    )

    assert event.payload.result == {"type": "text", "content": raw}
    assert to_wire(event)["payload"]["result"]["content"] == raw


def _mixed_row() -> dict:
    return {
        "id": "r1",
        "session_id": "s1",
        "role": "assistant",
        "created_at": 1_700_000_000,
        "content": [
            {"type": "text", "text": "Let me check two files."},
            {"type": "tool_use", "id": "t1", "name": "read", "input": {"path": "a"}},
            {"type": "tool_use", "id": "t2", "name": "read", "input": {"path": "b"}},
        ],
    }


def test_mixed_content_row_splits_into_one_event_per_segment() -> None:
    events = RowAdapter().map_row(_mixed_row())

    assert [(event.id, event.kind) for event in events] == [
        ("r1", "message"),
        ("r1:tool:t1", "tool-call"),
        ("r1:tool:t2", "tool-call"),
    ]
    assert events[0].payload.text == "Let me check two files."
    assert events[2].payload.args == {"path": "b"}
    assert {event.created_at for event in events} == {1_700_000_000_000}


def test_tool_parts_without_ids_get_positional_ids() -> None:
    row = {
        "id": "r1",
        "session_id": "s1",
        "content": [
            {"type": "tool_use", "name": "read"},
            {"type": "tool_result", "content": "done"},
            {"type": "text", "text": "ok"},
        ],
    }

    events = RowAdapter().map_row(row)

    assert [event.id for event in events] == ["r1", "r1:result:1", "r1:text:2"]


def test_map_one_refuses_rows_that_split() -> None:
    with pytest.raises(RowMappingError) as excinfo:
        RowAdapter().map_one(_mixed_row())

    assert excinfo.value.path == "content"


def test_batch_flattens_mixed_rows_in_order() -> None:
    rows = [_mixed_row(), {"id": "r2", "session_id": "s1", "content": "next"}]

    batch = RowAdapter().map_batch(rows)

    assert [event.id for event in batch.events] == ["r1", "r1:tool:t1", "r1:tool:t2", "r2"]


def test_mixed_row_with_invalid_segment_fails_whole_row() -> None:
    row = _mixed_row()
    row["content"][2] = {"type": "tool_use", "id": "t2", "input": {}}

    batch = RowAdapter().map_batch([row])

    assert batch.events == []
    assert batch.errors[0].error.path == "payload.toolName"
