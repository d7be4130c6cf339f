"""Store layer: session-indexed, insertion-ordered canonical event store with patching."""

from __future__ import annotations

from dataclasses import dataclass, field
from threading import Lock
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from chatevents.infra.observability.logger import get_logger
from chatevents.protocol.errors import (
    DuplicateIdError,
    PatchRejectedError,
    StoreDisposedError,
    UnknownTargetError,
    ValidationError,
)
from chatevents.protocol.events import (
    BaseCanonicalEvent,
    EventPatch,
    ToolCallEvent,
    ToolResultEvent,
    UnknownEvent,
)
from chatevents.protocol.validator import issues_from_pydantic

logger = get_logger(__name__)


@dataclass
class ToolLink:
    """Event ids of the call and result sharing one toolUseId."""

    call: str | None = None
    result: str | None = None


@dataclass(frozen=True)
class ToolPair:
    call: BaseCanonicalEvent | None = None
    result: BaseCanonicalEvent | None = None


@dataclass
class _SessionIndex:
    events: dict[str, BaseCanonicalEvent] = field(default_factory=dict)
    tools: dict[str, ToolLink] = field(default_factory=dict)


def _tool_use_id(event: BaseCanonicalEvent) -> str | None:
    if isinstance(event, (ToolCallEvent, ToolResultEvent)):
        return event.payload.tool_use_id or None
    return None


def _merge(current: dict[str, Any], fragment: dict[str, Any], op: str) -> dict[str, Any]:
    merged = dict(current)
    for key, value in fragment.items():
        existing = merged.get(key)
        if op == "append" and isinstance(existing, str) and isinstance(value, str):
            merged[key] = existing + value
        elif op == "append" and isinstance(existing, list) and isinstance(value, list):
            merged[key] = existing + value
        else:
            # Non-text fields cannot grow incrementally; append falls back to replace.
            merged[key] = value
    return merged


class EventStore:
    """Single source of truth for canonical events, keyed by session.

    Writes are serialized by one lock, so patches for an event apply in the
    order they arrive. Readers receive copies; the store keeps the only
    mutable instances.
    """

    def __init__(self) -> None:
        self._lock = Lock()
        self._sessions: dict[str, _SessionIndex] = {}
        self._order: list[tuple[str, str]] = []
        self._last_event_id = ""
        self._disposed = False

    def append(self, event: BaseCanonicalEvent) -> None:
        """Append a new event; raises DuplicateIdError when the id exists in its session."""
        if not isinstance(event, BaseCanonicalEvent):
            raise TypeError(f"expected a canonical event, got {type(event).__name__}")
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(event.session_id)
            if index is not None and event.id in index.events:
                raise DuplicateIdError(event.session_id, event.id)
            if index is None:
                index = self._sessions[event.session_id] = _SessionIndex()
            stored = event.model_copy(deep=True)
            index.events[stored.id] = stored
            self._order.append((stored.session_id, stored.id))
            self._link_tool(index, stored)
            self._last_event_id = stored.id

    def apply_patch(self, patch: EventPatch) -> BaseCanonicalEvent:
        """Merge a patch into its target and return a copy of the updated event.

        Raises UnknownTargetError or PatchRejectedError; on failure the store
        is left exactly as it was.
        """
        with self._lock:
            self._ensure_open()
            index, target = self._resolve_target(patch)
            payload = self._merged_payload(target, patch)
            streaming = target.streaming if patch.streaming is None else patch.streaming
            updated = target.model_copy(update={"payload": payload, "streaming": streaming})
            index.events[target.id] = updated
            if _tool_use_id(updated) != _tool_use_id(target):
                self._unlink_tool(index, target)
                self._link_tool(index, updated)
            if not streaming and target.streaming:
                logger.debug("store.event.finalized session_id=%s event_id=%s", target.session_id, target.id)
            return updated.model_copy(deep=True)

    def has_streaming_message(self, session_id: str) -> bool:
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None:
                return False
            return any(event.streaming for event in index.events.values())

    def open_streaming_events(self, session_id: str) -> list[BaseCanonicalEvent]:
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None:
                return []
            return [event.model_copy(deep=True) for event in index.events.values() if event.streaming]

    def session_events(self, session_id: str) -> list[BaseCanonicalEvent]:
        """Events of one session in insertion order."""
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None:
                return []
            return [event.model_copy(deep=True) for event in index.events.values()]

    def all_events(self) -> list[BaseCanonicalEvent]:
        """Events of every session in global insertion order."""
        with self._lock:
            self._ensure_open()
            return [
                self._sessions[session_id].events[event_id].model_copy(deep=True)
                for session_id, event_id in self._order
            ]

    def get_event(self, session_id: str, event_id: str) -> BaseCanonicalEvent | None:
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None or event_id not in index.events:
                return None
            return index.events[event_id].model_copy(deep=True)

    def session_ids(self) -> list[str]:
        with self._lock:
            self._ensure_open()
            return list(self._sessions)

    def event_count(self, session_id: str | None = None) -> int:
        with self._lock:
            self._ensure_open()
            if session_id is None:
                return len(self._order)
            index = self._sessions.get(session_id)
            return 0 if index is None else len(index.events)

    @property
    def last_event_id(self) -> str:
        """Id of the most recently appended event; resume cursor for replays."""
        with self._lock:
            return self._last_event_id

    def tool_pair(self, session_id: str, tool_use_id: str) -> ToolPair:
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None or tool_use_id not in index.tools:
                return ToolPair()
            link = index.tools[tool_use_id]
            call = index.events.get(link.call) if link.call else None
            result = index.events.get(link.result) if link.result else None
            return ToolPair(
                call=call.model_copy(deep=True) if call else None,
                result=result.model_copy(deep=True) if result else None,
            )

    def orphaned_tool_calls(self, session_id: str) -> list[BaseCanonicalEvent]:
        """Tool calls that have not received a result yet."""
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None:
                return []
            return [
                index.events[link.call].model_copy(deep=True)
                for link in index.tools.values()
                if link.call and not link.result and link.call in index.events
            ]

    def remove_event(self, session_id: str, event_id: str) -> bool:
        """Delete one event; return True when it existed."""
        with self._lock:
            self._ensure_open()
            index = self._sessions.get(session_id)
            if index is None or event_id not in index.events:
                return False
            event = index.events.pop(event_id)
            was_last = self._order[-1] == (session_id, event_id)
            self._order.remove((session_id, event_id))
            if was_last:
                self._last_event_id = self._order[-1][1] if self._order else ""
            self._unlink_tool(index, event)
            if not index.events:
                del self._sessions[session_id]
            return True

    def clear(self, session_id: str | None = None) -> int:
        """Drop one session, or every session when session_id is None; returns events removed."""
        with self._lock:
            self._ensure_open()
            if session_id is None:
                removed = len(self._order)
                self._sessions.clear()
                self._order.clear()
                self._last_event_id = ""
            else:
                index = self._sessions.pop(session_id, None)
                if index is None:
                    return 0
                removed = len(index.events)
                self._order = [item for item in self._order if item[0] != session_id]
                if self._last_event_id in index.events:
                    self._last_event_id = self._order[-1][1] if self._order else ""
            logger.info("store.cleared session_id=%s events=%s", session_id or "*", removed)
            return removed

    def dispose(self) -> None:
        """Release all events; any further use raises StoreDisposedError."""
        with self._lock:
            self._sessions.clear()
            self._order.clear()
            self._last_event_id = ""
            self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed

    def debug_info(self) -> dict[str, Any]:
        with self._lock:
            self._ensure_open()
            return {
                "sessions": len(self._sessions),
                "events": len(self._order),
                "streaming": sum(
                    1
                    for index in self._sessions.values()
                    for event in index.events.values()
                    if event.streaming
                ),
                "tool_links": sum(len(index.tools) for index in self._sessions.values()),
                "last_event_id": self._last_event_id,
            }

    def _ensure_open(self) -> None:
        if self._disposed:
            raise StoreDisposedError("event store used after dispose()")

    def _resolve_target(self, patch: EventPatch) -> tuple[_SessionIndex, BaseCanonicalEvent]:
        if patch.session_id is not None:
            index = self._sessions.get(patch.session_id)
            if index is None or patch.target_id not in index.events:
                raise UnknownTargetError(patch.target_id, patch.session_id)
            return index, index.events[patch.target_id]
        matches = [index for index in self._sessions.values() if patch.target_id in index.events]
        if len(matches) != 1:
            raise UnknownTargetError(patch.target_id, None, ambiguous=len(matches) > 1)
        return matches[0], matches[0].events[patch.target_id]

    def _merged_payload(self, target: BaseCanonicalEvent, patch: EventPatch) -> Any:
        model = type(target.payload)
        current = target.payload.model_dump(by_alias=True)
        if isinstance(target, UnknownEvent):
            current["data"] = _merge(current["data"], patch.payload, patch.op)
        else:
            current = _merge(current, patch.payload, patch.op)
        try:
            return model.model_validate(current)
        except PydanticValidationError as exc:
            raise PatchRejectedError(target.id, ValidationError(issues_from_pydantic(exc))) from None

    def _link_tool(self, index: _SessionIndex, event: BaseCanonicalEvent) -> None:
        tool_use_id = _tool_use_id(event)
        if tool_use_id is None:
            return
        link = index.tools.setdefault(tool_use_id, ToolLink())
        if isinstance(event, ToolCallEvent):
            link.call = event.id
        else:
            link.result = event.id

    def _unlink_tool(self, index: _SessionIndex, event: BaseCanonicalEvent) -> None:
        tool_use_id = _tool_use_id(event)
        if tool_use_id is None or tool_use_id not in index.tools:
            return
        link = index.tools[tool_use_id]
        if isinstance(event, ToolCallEvent) and link.call == event.id:
            link.call = None
        if isinstance(event, ToolResultEvent) and link.result == event.id:
            link.result = None
        if not link.call and not link.result:
            del index.tools[tool_use_id]
