"""Stream layer: translate raw agent stream payloads into canonical candidates.

Agent runtimes emit their own event vocabulary over SSE (``chunk``,
``token``, ``tool_call``, ``done`` ...), either flat or wrapped in an
``agent_event`` envelope. The translator turns each payload into a dict that
the validator understands: a canonical event, or a patch when the payload
continues a message that is already open.
"""

from __future__ import annotations

from collections.abc import Container, Mapping
from typing import Any
from uuid import uuid4

from chatevents.protocol.errors import ValidationError
from chatevents.protocol.events import coerce_epoch_ms

AGENT_EVENT_TYPES = frozenset(
    {"chunk", "token", "thinking", "tool_call", "tool_result", "done", "error"}
)
ENVELOPE_TYPE = "agent_event"


def _new_event_id() -> str:
    return f"sse_{uuid4().hex[:12]}"


def _event_id(event: Mapping[str, Any], prefix: str, key: Any = None) -> str:
    """Stable id for a non-delta agent event so replays of the same payload dedupe.

    Prefers the message id, then the runtime event id, then ``<prefix>:<key>``
    (the tool use id for tool events); a random id is the last resort.
    """
    for candidate in (event.get("messageId"), event.get("eventId"), event.get("event_id")):
        if isinstance(candidate, str) and candidate:
            return candidate
    if isinstance(key, str) and key:
        return f"{prefix}:{key}"
    return _new_event_id()


def unwrap_envelope(raw: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten ``{"type": "agent_event", "payload": {...}}`` into one agent event."""
    if raw.get("type") != ENVELOPE_TYPE or not isinstance(raw.get("payload"), Mapping):
        return dict(raw)
    payload = raw["payload"]
    flat: dict[str, Any] = {
        "type": payload.get("event_type"),
        "sessionId": payload.get("session_id"),
        "messageId": payload.get("message_id"),
        "eventId": payload.get("event_id"),
        "timestamp": payload.get("timestamp"),
    }
    data = payload.get("data")
    if isinstance(data, Mapping):
        flat.update(data)
    return {key: value for key, value in flat.items() if value is not None}


def can_parse(raw: Any) -> bool:
    """True when the payload is an agent event of a supported type."""
    if not isinstance(raw, Mapping):
        return False
    if raw.get("type") == ENVELOPE_TYPE:
        payload = raw.get("payload")
        return isinstance(payload, Mapping) and payload.get("event_type") in AGENT_EVENT_TYPES
    return raw.get("type") in AGENT_EVENT_TYPES


def looks_like_agent_event(raw: Any) -> bool:
    """Agent payloads carry ``type`` and none of the canonical discriminators."""
    if not isinstance(raw, Mapping) or not isinstance(raw.get("type"), str):
        return False
    return "kind" not in raw and "targetId" not in raw


def _created_at(raw: Mapping[str, Any]) -> int | None:
    try:
        return coerce_epoch_ms(raw.get("timestamp"))
    except ValueError:
        raise ValidationError.single("timestamp", "epoch number or ISO-8601 string", raw.get("timestamp")) from None


def _with_common(raw: Mapping[str, Any], candidate: dict[str, Any]) -> dict[str, Any]:
    session_id = raw.get("sessionId", raw.get("session_id"))
    if session_id is not None:
        candidate["sessionId"] = session_id
    created_at = _created_at(raw)
    if created_at is not None and "targetId" not in candidate:
        candidate["createdAt"] = created_at
    return candidate


class AgentEventTranslator:
    """Stateless mapping from agent payloads to event/patch candidates.

    Whether a delta opens a new message or continues one is decided by the
    caller-supplied ``open_ids``; the reassembler owns that state.
    """

    def __init__(self, *, strict: bool = True) -> None:
        self._strict = strict

    def translate(self, raw: Mapping[str, Any], *, open_ids: Container[str] = ()) -> dict[str, Any]:
        event = unwrap_envelope(raw)
        event_type = event.get("type")
        if event_type in {"chunk", "token"}:
            return self._delta(event, kind="message", open_ids=open_ids)
        if event_type == "thinking":
            return self._delta(event, kind="thinking", open_ids=open_ids)
        if event_type == "tool_call":
            return self._tool_call(event)
        if event_type == "tool_result":
            return self._tool_result(event)
        if event_type == "done":
            return self._done(event)
        if event_type == "error":
            return self._error(event)
        if self._strict:
            raise ValidationError.single("type", f"one of {sorted(AGENT_EVENT_TYPES)}", event_type)
        extra = {key: value for key, value in event.items() if key not in {"type", "messageId", "sessionId", "eventId"}}
        return _with_common(
            event,
            {"id": _event_id(event, str(event_type)), "kind": str(event_type), "payload": extra},
        )

    def _message_id(self, event: Mapping[str, Any]) -> str:
        message_id = event.get("messageId", event.get("message_id"))
        if not isinstance(message_id, str) or not message_id:
            raise ValidationError.single("messageId", "non-empty string", message_id)
        return message_id

    def _delta(self, event: Mapping[str, Any], *, kind: str, open_ids: Container[str]) -> dict[str, Any]:
        message_id = self._message_id(event)
        delta = event.get("delta")
        if delta is None:
            delta = ""
        if not isinstance(delta, str):
            raise ValidationError.single("delta", "string", delta)
        if message_id in open_ids:
            return _with_common(
                event,
                {
                    "targetId": message_id,
                    "op": "append",
                    "payload": {"text": delta},
                    "seq": event.get("seq"),
                },
            )
        payload: dict[str, Any] = {"text": delta}
        if kind == "message":
            payload["role"] = "assistant"
        return _with_common(
            event,
            {"id": message_id, "kind": kind, "streaming": True, "payload": payload},
        )

    def _tool_call(self, event: Mapping[str, Any]) -> dict[str, Any]:
        tool = event.get("toolCall", event.get("tool_call"))
        if not isinstance(tool, Mapping):
            raise ValidationError.single("toolCall", "object", tool)
        tool_use_id = tool.get("id")
        if not isinstance(tool_use_id, str) or not tool_use_id:
            raise ValidationError.single("toolCall.id", "non-empty string", tool_use_id)
        args = tool.get("input", tool.get("arguments"))
        return _with_common(
            event,
            {
                "id": _event_id(event, "tool_call", tool_use_id),
                "kind": "tool-call",
                "payload": {
                    "toolName": tool.get("name") or "unknown",
                    "toolUseId": tool_use_id,
                    "args": args if args is not None else {},
                },
            },
        )

    def _tool_result(self, event: Mapping[str, Any]) -> dict[str, Any]:
        result = event.get("result")
        if result is None:
            raise ValidationError.single("result", "present", None)
        tool_use_id = event.get("toolCallId", event.get("tool_call_id"))
        if tool_use_id is None and isinstance(result, Mapping):
            tool_use_id = result.get("tool_use_id")
        is_error = bool(event.get("isError")) or (
            isinstance(result, Mapping) and result.get("status") == "error"
        )
        return _with_common(
            event,
            {
                "id": _event_id(event, "tool_result", tool_use_id),
                "kind": "tool-result",
                "payload": {"toolUseId": tool_use_id, "result": result, "isError": is_error},
            },
        )

    def _done(self, event: Mapping[str, Any]) -> dict[str, Any]:
        return _with_common(
            event,
            {"targetId": self._message_id(event), "op": "append", "payload": {}, "streaming": False},
        )

    def _error(self, event: Mapping[str, Any]) -> dict[str, Any]:
        error = event.get("error")
        if isinstance(error, Mapping):
            message = error.get("message") or "Unknown error"
            code = error.get("code")
        else:
            message = str(error) if error else "Unknown error"
            code = None
        return _with_common(
            event,
            {
                "id": _event_id(event, "error"),
                "kind": "error",
                "payload": {"message": str(message), "code": None if code is None else str(code)},
            },
        )
