"""Protocol layer: canonical chat events and patches shared by adapters, stream and store."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Discriminator, Field, Tag, model_validator


EventKind = Literal[
    "message",
    "tool-call",
    "tool-result",
    "thinking",
    "error",
    "completion",
    "unknown",
]
PatchOp = Literal["append", "replace"]
MessageRole = Literal["user", "assistant", "system"]

KNOWN_KINDS: frozenset[str] = frozenset(
    {"message", "tool-call", "tool-result", "thinking", "error", "completion"}
)

# Epoch values below this bound are treated as seconds, not milliseconds.
_SECONDS_CUTOFF = 100_000_000_000


def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def coerce_epoch_ms(value: Any) -> int | None:
    """Normalize ISO strings, epoch seconds and epoch millis to integer millis.

    Returns None for None/blank input and raises ValueError for anything that
    cannot be read as a point in time.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"boolean is not a timestamp: {value!r}")
    if isinstance(value, datetime):
        moment = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return int(moment.timestamp() * 1000)
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"non-finite timestamp: {value!r}")
        if abs(value) < _SECONDS_CUTOFF:
            return int(value * 1000)
        return int(value)
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return coerce_epoch_ms(float(raw))
        except ValueError:
            pass
        moment = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return coerce_epoch_ms(moment)
    raise ValueError(f"unsupported timestamp type: {type(value).__name__}")


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class MessagePayload(WireModel):
    text: str = Field(strict=True)
    role: MessageRole = "assistant"


class ToolCallPayload(WireModel):
    tool_name: str = Field(alias="toolName", min_length=1, strict=True)
    tool_use_id: str | None = Field(default=None, alias="toolUseId")
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResultPayload(WireModel):
    tool_use_id: str | None = Field(default=None, alias="toolUseId")
    result: Any = None
    is_error: bool = Field(default=False, alias="isError")


class ThinkingPayload(WireModel):
    text: str = Field(strict=True)


class ErrorPayload(WireModel):
    message: str = Field(strict=True)
    code: str | None = None


class CompletionPayload(WireModel):
    reason: str | None = None
    usage: dict[str, Any] | None = None


class UnknownPayload(WireModel):
    """Original kind and payload of an event whose kind is outside the closed set."""

    raw_kind: str = Field(alias="rawKind")
    data: dict[str, Any] = Field(default_factory=dict)


class BaseCanonicalEvent(WireModel):
    """Fields shared by every canonical event variant."""

    id: str = Field(min_length=1, strict=True)
    session_id: str = Field(alias="sessionId", min_length=1, strict=True)
    created_at: int = Field(default_factory=utc_now_ms, alias="createdAt", strict=True)
    streaming: bool = Field(default=False, strict=True)


class MessageEvent(BaseCanonicalEvent):
    kind: Literal["message"] = "message"
    payload: MessagePayload


class ToolCallEvent(BaseCanonicalEvent):
    kind: Literal["tool-call"] = "tool-call"
    payload: ToolCallPayload


class ToolResultEvent(BaseCanonicalEvent):
    kind: Literal["tool-result"] = "tool-result"
    payload: ToolResultPayload


class ThinkingEvent(BaseCanonicalEvent):
    kind: Literal["thinking"] = "thinking"
    payload: ThinkingPayload


class ErrorEvent(BaseCanonicalEvent):
    kind: Literal["error"] = "error"
    payload: ErrorPayload


class CompletionEvent(BaseCanonicalEvent):
    kind: Literal["completion"] = "completion"
    payload: CompletionPayload = Field(default_factory=CompletionPayload)


class UnknownEvent(BaseCanonicalEvent):
    kind: Literal["unknown"] = "unknown"
    payload: UnknownPayload

    @model_validator(mode="before")
    @classmethod
    def _wrap_unrecognized_kind(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        raw_kind = data.get("kind")
        if raw_kind == "unknown":
            return data
        wrapped = dict(data)
        wrapped["kind"] = "unknown"
        wrapped["payload"] = {"rawKind": raw_kind, "data": data.get("payload", {})}
        return wrapped


def kind_tag(value: Any) -> str | None:
    kind = value.get("kind") if isinstance(value, dict) else getattr(value, "kind", None)
    if not isinstance(kind, str):
        return None
    return kind if kind in KNOWN_KINDS else "unknown"


CanonicalEvent = Annotated[
    Union[
        Annotated[MessageEvent, Tag("message")],
        Annotated[ToolCallEvent, Tag("tool-call")],
        Annotated[ToolResultEvent, Tag("tool-result")],
        Annotated[ThinkingEvent, Tag("thinking")],
        Annotated[ErrorEvent, Tag("error")],
        Annotated[CompletionEvent, Tag("completion")],
        Annotated[UnknownEvent, Tag("unknown")],
    ],
    Discriminator(kind_tag),
]

PAYLOAD_MODELS: dict[str, type[WireModel]] = {
    "message": MessagePayload,
    "tool-call": ToolCallPayload,
    "tool-result": ToolResultPayload,
    "thinking": ThinkingPayload,
    "error": ErrorPayload,
    "completion": CompletionPayload,
    "unknown": UnknownPayload,
}


class EventPatch(WireModel):
    """Partial update of an existing event, addressed by targetId."""

    target_id: str = Field(alias="targetId", min_length=1, strict=True)
    session_id: str | None = Field(default=None, alias="sessionId")
    payload: dict[str, Any] = Field(default_factory=dict)
    op: PatchOp = "append"
    streaming: bool | None = Field(default=None, strict=True)
    seq: int | None = None

    @property
    def finalizes(self) -> bool:
        return self.streaming is False


def to_wire(item: BaseCanonicalEvent | EventPatch) -> dict[str, Any]:
    """Serialize an event or patch with its camelCase wire names."""
    return item.model_dump(by_alias=True, mode="json")
