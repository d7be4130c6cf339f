"""Adapter layer: map persisted chat-message rows into canonical events."""

from __future__ import annotations

import ast
import json
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from chatevents.infra.observability.logger import get_logger
from chatevents.protocol.errors import ROOT_PATH, RowMappingError
from chatevents.protocol.events import BaseCanonicalEvent, coerce_epoch_ms, utc_now_ms
from chatevents.protocol.validator import validate_event

logger = get_logger(__name__)

# canonical field -> accepted source columns, first non-null wins
DEFAULT_COLUMN_MAP: dict[str, tuple[str, ...]] = {
    "id": ("id", "event_id", "message_id", "messageId"),
    "session_id": ("session_id", "sessionId", "conversation_id"),
    "kind": ("kind", "event_kind"),
    "created_at": ("created_at", "createdAt", "timestamp", "inserted_at"),
    "role": ("role",),
    "content": ("content", "body", "text"),
    "tool_use_id": ("tool_call_id", "tool_use_id", "responding_to_tool_use_id"),
    "tool_name": ("tool_name",),
    "streaming": ("streaming", "is_streaming", "partial"),
    "metadata": ("metadata", "meta"),
}

_KIND_ALIASES = {
    "tool_call": "tool-call",
    "tool_use": "tool-call",
    "tool_result": "tool-result",
    "tool_output": "tool-result",
    "done": "completion",
}
_PART_KINDS = {
    "tool_use": "tool-call",
    "tool_result": "tool-result",
    "tool_output": "tool-result",
    "thinking": "thinking",
}
_ROLES = {"user", "assistant", "system"}


@dataclass(frozen=True)
class RowError:
    """One row of a batch that failed to map."""

    index: int
    row_id: str | None
    error: RowMappingError

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "row_id": self.row_id, **self.error.to_dict()}


@dataclass
class BatchResult:
    """Mapped events in input order plus per-row failures."""

    events: list[BaseCanonicalEvent] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


def load_column_overlay(path: Path | None) -> dict[str, tuple[str, ...]]:
    """Read extra source columns from YAML; unreadable files yield no overlay."""
    if path is None or not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        logger.warning("row_adapter.overlay.unreadable path=%s error=%s", path, exc)
        return {}
    columns = raw.get("columns") if isinstance(raw, dict) else None
    if not isinstance(columns, dict):
        return {}
    overlay: dict[str, tuple[str, ...]] = {}
    for canonical, sources in columns.items():
        if canonical not in DEFAULT_COLUMN_MAP:
            logger.warning("row_adapter.overlay.unknown_field field=%s", canonical)
            continue
        if isinstance(sources, str):
            sources = [sources]
        if not isinstance(sources, list):
            continue
        overlay[canonical] = tuple(str(item) for item in sources if item)
    return overlay


def merge_column_maps(
    base: Mapping[str, tuple[str, ...]],
    overlay: Mapping[str, tuple[str, ...]],
) -> dict[str, tuple[str, ...]]:
    merged = {name: tuple(columns) for name, columns in base.items()}
    for name, extra in overlay.items():
        existing = merged.get(name, ())
        merged[name] = existing + tuple(column for column in extra if column not in existing)
    return merged


# literal_eval also raises these on unhashable keys and deeply nested input
_LITERAL_ERRORS = (ValueError, SyntaxError, TypeError, MemoryError, RecursionError)


def _is_json_value(value: Any) -> bool:
    if value is None or isinstance(value, (str, bool, int, float)):
        return True
    if isinstance(value, list):
        return all(_is_json_value(item) for item in value)
    if isinstance(value, dict):
        return all(isinstance(key, str) and _is_json_value(item) for key, item in value.items())
    return False


def parse_legacy_result(value: Any) -> Any:
    """Decode tool results stored by older clients.

    Handles JSON strings, Python-literal strings, arrays of text parts and
    arrays of plain strings; anything else is wrapped as text. Literals that
    JSON cannot carry (bytes, sets, tuples, non-string keys) stay as text.
    """
    if value is None:
        return None
    if isinstance(value, list):
        if value and isinstance(value[0], dict) and "text" in value[0]:
            text = "\n".join(
                str(item["text"]) for item in value if isinstance(item, dict) and item.get("text")
            )
            return {"type": "content_array", "content": text, "raw": value}
        return {"type": "legacy_array", "content": "\n".join(str(item) for item in value), "raw": value}
    if isinstance(value, dict):
        return value
    if isinstance(value, str):
        try:
            return json.loads(value)
        except (json.JSONDecodeError, RecursionError):
            pass
        try:
            literal = ast.literal_eval(value)
        except _LITERAL_ERRORS:
            return {"type": "text", "content": value}
        if _is_json_value(literal):
            return literal
        return {"type": "text", "content": value}
    unknown: dict[str, Any] = {"type": "unknown", "content": str(value)}
    if _is_json_value(value):
        unknown["raw"] = value
    return unknown


def _normalize_kind(value: Any) -> str | None:
    if not isinstance(value, str) or not value.strip():
        return None
    kind = value.strip().lower()
    return _KIND_ALIASES.get(kind, kind)


def _map_role(value: Any) -> str:
    role = str(value or "").strip().lower()
    return role if role in _ROLES else "assistant"


def _content_parts(content: Any) -> list[dict[str, Any]]:
    if content is None:
        return []
    if isinstance(content, str):
        return [{"type": "text", "text": content}]
    if isinstance(content, list):
        parts: list[dict[str, Any]] = []
        for item in content:
            if isinstance(item, dict):
                parts.append(item)
            elif isinstance(item, str):
                parts.append({"type": "text", "text": item})
        return parts
    if isinstance(content, dict):
        nested = content.get("content")
        if isinstance(nested, list):
            return _content_parts(nested)
        if "type" in content:
            return [content]
    return []


def _text_of(part: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = part.get(key)
        if value is None:
            continue
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, indent=2)
    return None


def _joined_text(parts: list[dict[str, Any]], part_type: str, *keys: str) -> str:
    chunks = [_text_of(part, *keys) for part in parts if part.get("type", "text") == part_type]
    return "\n".join(chunk for chunk in chunks if chunk)


def _first_part(parts: list[dict[str, Any]], *types: str) -> dict[str, Any]:
    for part in parts:
        if part.get("type") in types:
            return part
    return {}


_SEGMENT_KINDS = {"text": "message", **_PART_KINDS}
_SEGMENT_TAGS = {"message": "text", "thinking": "thinking", "tool-call": "tool", "tool-result": "result"}


def _segments(parts: list[dict[str, Any]]) -> list[tuple[str, list[dict[str, Any]]]]:
    """Group content parts into event-sized segments; adjacent text or thinking parts merge."""
    segments: list[tuple[str, list[dict[str, Any]]]] = []
    for part in parts:
        kind = _SEGMENT_KINDS.get(str(part.get("type", "text")))
        if kind is None:
            continue
        if segments and kind in {"message", "thinking"} and segments[-1][0] == kind:
            segments[-1][1].append(part)
        else:
            segments.append((kind, [part]))
    return segments


def _derived_id(row_id: str, kind: str, payload: dict[str, Any], position: int) -> str:
    key = payload.get("toolUseId") or position
    return f"{row_id}:{_SEGMENT_TAGS[kind]}:{key}"


class RowAdapter:
    """Convert raw storage rows into validated canonical events."""

    def __init__(self, column_map: Mapping[str, tuple[str, ...]] | None = None) -> None:
        self._columns = merge_column_maps(DEFAULT_COLUMN_MAP, column_map or {})

    @classmethod
    def from_overlay_file(cls, path: Path | None) -> "RowAdapter":
        return cls(load_column_overlay(path))

    @property
    def column_map(self) -> dict[str, tuple[str, ...]]:
        return dict(self._columns)

    def can_map(self, row: Any) -> bool:
        if not isinstance(row, Mapping):
            return False
        fields = self._extract(row)
        return isinstance(fields["id"], (str, int)) and isinstance(fields["session_id"], str)

    def map_one(self, row: Any) -> BaseCanonicalEvent:
        """Map a row that yields exactly one event; raises RowMappingError otherwise."""
        events = self.map_row(row)
        if len(events) != 1:
            raise RowMappingError.single(
                "content",
                "a single content segment (use map_row for mixed rows)",
                [event.kind for event in events],
            )
        return events[0]

    def map_row(self, row: Any) -> list[BaseCanonicalEvent]:
        """Map one row to its events, in content order.

        Rows without an explicit kind whose content mixes text, thinking and
        tool parts split into one event per segment. The first event keeps the
        row id; later ones get ``<row id>:<text|thinking|tool|result>:<key>``
        where key is the tool use id or the segment position. The row maps
        atomically: one invalid segment fails the whole row.
        """
        fields, event_id, session_id, created_at = self._identity(row)
        segments = [] if self._explicit_kind(fields) else _segments(_content_parts(fields["content"]))
        if len(segments) <= 1:
            kind, payload = self._resolve_payload(fields)
            return [self._build(fields, event_id, session_id, created_at, kind, payload)]

        events: list[BaseCanonicalEvent] = []
        used: set[str] = set()
        for position, (kind, parts) in enumerate(segments):
            kind, payload = self._resolve_payload(fields, parts=parts, kind=kind)
            derived = event_id if position == 0 else _derived_id(event_id, kind, payload, position)
            if derived in used:
                derived = f"{derived}:{position}"
            used.add(derived)
            events.append(self._build(fields, derived, session_id, created_at, kind, payload))
        return events

    def map_batch(self, rows: Iterable[Any]) -> BatchResult:
        """Map rows in input order; failed rows are reported, not raised."""
        batch = BatchResult()
        for index, row in enumerate(rows):
            try:
                batch.events.extend(self.map_row(row))
            except RowMappingError as exc:
                row_id = self._extract(row)["id"] if isinstance(row, Mapping) else None
                logger.warning("row_adapter.row.skipped index=%s row_id=%s error=%s", index, row_id, exc)
                batch.errors.append(
                    RowError(index=index, row_id=None if row_id is None else str(row_id), error=exc)
                )
        logger.debug(
            "row_adapter.batch.mapped events=%s errors=%s", len(batch.events), len(batch.errors)
        )
        return batch

    def _identity(self, row: Any) -> tuple[dict[str, Any], str, str, int]:
        if not isinstance(row, Mapping):
            raise RowMappingError.single(ROOT_PATH, "mapping with string keys", row)
        fields = self._extract(row)

        event_id = fields["id"]
        if isinstance(event_id, int) and not isinstance(event_id, bool):
            event_id = str(event_id)
        if not isinstance(event_id, str) or not event_id:
            raise RowMappingError.single("id", "non-empty string", event_id)
        session_id = fields["session_id"]
        if not isinstance(session_id, str) or not session_id:
            raise RowMappingError.single("session_id", "non-empty string", session_id)

        try:
            created_at = coerce_epoch_ms(fields["created_at"])
        except ValueError:
            raise RowMappingError.single(
                "created_at", "ISO-8601 string or epoch number", fields["created_at"]
            ) from None
        if created_at is None:
            created_at = utc_now_ms()
        return fields, event_id, session_id, created_at

    def _build(
        self,
        fields: dict[str, Any],
        event_id: str,
        session_id: str,
        created_at: int,
        kind: str,
        payload: dict[str, Any],
    ) -> BaseCanonicalEvent:
        candidate = {
            "id": event_id,
            "sessionId": session_id,
            "kind": kind,
            "createdAt": created_at,
            "streaming": bool(fields["streaming"]),
            "payload": payload,
        }
        result = validate_event(candidate)
        if result.error is not None:
            raise RowMappingError(result.error.issues)
        return result.value  # type: ignore[return-value]

    def _extract(self, row: Mapping[str, Any]) -> dict[str, Any]:
        fields: dict[str, Any] = {}
        for canonical, columns in self._columns.items():
            fields[canonical] = next(
                (row[column] for column in columns if row.get(column) is not None),
                None,
            )
        return fields

    def _explicit_kind(self, fields: dict[str, Any]) -> str | None:
        metadata = fields["metadata"] if isinstance(fields["metadata"], dict) else {}
        return _normalize_kind(fields["kind"]) or _normalize_kind(metadata.get("event_type"))

    def _resolve_kind(self, fields: dict[str, Any], parts: list[dict[str, Any]]) -> str:
        explicit = self._explicit_kind(fields)
        if explicit:
            return explicit
        for part in parts:
            part_kind = _PART_KINDS.get(str(part.get("type")))
            if part_kind:
                return part_kind
        if str(fields["role"] or "").lower() == "tool" and fields["tool_use_id"]:
            return "tool-result"
        return "message"

    def _resolve_payload(
        self,
        fields: dict[str, Any],
        *,
        parts: list[dict[str, Any]] | None = None,
        kind: str | None = None,
    ) -> tuple[str, dict[str, Any]]:
        content = fields["content"]
        if parts is None:
            parts = _content_parts(content)
        kind = kind or self._resolve_kind(fields, parts)
        metadata = fields["metadata"] if isinstance(fields["metadata"], dict) else {}

        if kind == "message":
            return kind, {
                "text": _joined_text(parts, "text", "text"),
                "role": _map_role(fields["role"]),
            }
        if kind == "thinking":
            text = _joined_text(parts, "thinking", "thinking", "text") or _joined_text(parts, "text", "text")
            return kind, {"text": text}
        if kind == "tool-call":
            part = _first_part(parts, "tool_use")
            args = part.get("input", part.get("tool_input", part.get("arguments")))
            if isinstance(args, str):
                args = parse_legacy_result(args)
            return kind, {
                "toolName": part.get("name") or part.get("tool_name") or fields["tool_name"],
                "toolUseId": part.get("id") or part.get("tool_use_id") or fields["tool_use_id"],
                "args": args if args is not None else {},
            }
        if kind == "tool-result":
            part = _first_part(parts, "tool_result", "tool_output")
            if part:
                raw_result = part.get("content", part.get("output"))
            else:
                raw_result = content
            return kind, {
                "toolUseId": part.get("tool_use_id")
                or part.get("id")
                or part.get("tool_use_id_for_output")
                or fields["tool_use_id"],
                "result": parse_legacy_result(raw_result),
                "isError": bool(part.get("is_error")) or part.get("status") == "error",
            }
        if kind == "error":
            return kind, {
                "message": _joined_text(parts, "text", "text") or str(metadata.get("message") or ""),
                "code": metadata.get("code"),
            }
        if kind == "completion":
            return kind, {
                "reason": metadata.get("stop_reason") or metadata.get("reason"),
                "usage": metadata.get("usage"),
            }
        if isinstance(content, dict):
            return kind, content
        return kind, {"content": content}
