"""Stream layer: stateful SSE frame reassembly into canonical events and patches.

One ``SseReassembler`` belongs to exactly one SSE connection. Chunks are
pushed in arrival order through ``feed``; frames may straddle any number of
chunks and are decoded only once their blank-line delimiter has arrived.
Malformed frames are recorded and skipped so that one bad frame never stops
the rest of the stream.
"""

from __future__ import annotations

import json
from collections import deque
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Literal, Union

from chatevents.infra.observability.logger import get_logger
from chatevents.protocol.errors import DecodeError, ValidationError
from chatevents.protocol.events import BaseCanonicalEvent, EventPatch
from chatevents.protocol.validator import validate
from chatevents.stream.agent_events import AgentEventTranslator, looks_like_agent_event
from chatevents.stream.frames import LINE_BREAK, split_field

logger = get_logger(__name__)

StreamItem = Union[BaseCanonicalEvent, EventPatch]


class FrameState(str, Enum):
    AWAITING_FRAME_START = "awaiting_frame_start"
    ACCUMULATING = "accumulating"
    FRAME_COMPLETE = "frame_complete"


@dataclass
class PartialMessage:
    """In-flight entry: an undecoded frame or a message still receiving deltas."""

    id: str
    session_id: str | None
    text: str = ""
    streaming: bool = True
    source: Literal["frame", "message"] = "message"
    frames: int = 0
    kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "text": self.text,
            "streaming": self.streaming,
            "source": self.source,
            "frames": self.frames,
            "kind": self.kind,
        }


@dataclass
class ReassemblerStats:
    frames_completed: int = 0
    frames_failed: int = 0
    items_rejected: int = 0
    items_emitted: int = 0


class SseReassembler:
    """Push-based SSE parser emitting validated events and patches."""

    def __init__(
        self,
        session_id: str | None = None,
        *,
        strict_agent_events: bool = True,
        max_error_history: int = 100,
    ) -> None:
        self.session_id = session_id
        self._strict_agent_events = strict_agent_events
        self._max_error_history = max(1, max_error_history)
        self._translator = AgentEventTranslator(strict=strict_agent_events)
        self._reset()

    def _reset(self) -> None:
        self._state = FrameState.AWAITING_FRAME_START
        self._carry = ""
        self._frame_field_id: str | None = None
        self._frame_event: str | None = None
        self._data_lines: list[str] = []
        self._frame_seq = 0
        self._messages: dict[str, PartialMessage] = {}
        self.decode_errors: deque[DecodeError] = deque(maxlen=self._max_error_history)
        self.validation_errors: deque[ValidationError] = deque(maxlen=self._max_error_history)
        self.stats = ReassemblerStats()

    @property
    def state(self) -> FrameState:
        return self._state

    def feed(self, chunk: str) -> list[StreamItem]:
        """Consume one network chunk and return the items it completed."""
        if not chunk:
            return []
        buffer = self._carry + chunk
        held = ""
        # A trailing CR may be the first half of CRLF; wait for the next chunk.
        if buffer.endswith("\r"):
            buffer, held = buffer[:-1], "\r"
        lines = LINE_BREAK.split(buffer)
        self._carry = lines.pop() + held
        emitted: list[StreamItem] = []
        for line in lines:
            emitted.extend(self._process_line(line))
        return emitted

    def flush(self) -> list[StreamItem]:
        """Terminate the stream: decode a trailing frame that lacks its blank line."""
        emitted: list[StreamItem] = []
        if self._carry:
            carry, self._carry = self._carry, ""
            for line in LINE_BREAK.split(carry):
                emitted.extend(self._process_line(line))
        if self._state is FrameState.ACCUMULATING:
            emitted.extend(self._complete_frame())
        return emitted

    def get_partial_messages(self) -> dict[str, PartialMessage]:
        """Copy of the in-flight table; reading it never changes parser state."""
        snapshot = {key: replace(entry) for key, entry in self._messages.items()}
        pending = self._pending_frame_text()
        if self._state is FrameState.ACCUMULATING or pending:
            if self._state is FrameState.ACCUMULATING:
                key = self._frame_key()
            else:
                key = self._frame_field_id or f"frame-{self._frame_seq + 1}"
            snapshot[key] = PartialMessage(
                id=key,
                session_id=self.session_id,
                text=pending,
                streaming=True,
                source="frame",
                frames=0,
            )
        return snapshot

    def clear_completed(self) -> int:
        """Drop message entries that were finalized; returns how many were removed."""
        finished = [key for key, entry in self._messages.items() if not entry.streaming]
        for key in finished:
            del self._messages[key]
        return len(finished)

    def clear_all(self) -> None:
        """Reset to the initial empty state, discarding any partial frame."""
        self._reset()

    def parse_sse_input(self, text: str) -> list[BaseCanonicalEvent]:
        """Replay a fully received body and return its canonical events in frame order.

        Accepts SSE text, a JSON array of recorded payloads or a single JSON
        object. Parsing runs on a scratch parser so the live stream state of
        this instance is untouched; decode and validation errors are recorded
        here. Patches are not events and are left out of the result.
        """
        scratch = SseReassembler(
            self.session_id,
            strict_agent_events=self._strict_agent_events,
            max_error_history=self._max_error_history,
        )
        items = scratch._replay(text)
        self.decode_errors.extend(scratch.decode_errors)
        self.validation_errors.extend(scratch.validation_errors)
        events = [item for item in items if isinstance(item, BaseCanonicalEvent)]
        logger.debug(
            "sse.replay.done events=%s patches=%s decode_errors=%s",
            len(events),
            len(items) - len(events),
            len(scratch.decode_errors),
        )
        return events

    def _replay(self, text: str) -> list[StreamItem]:
        stripped = text.strip()
        if stripped.startswith(("[", "{")):
            try:
                decoded = json.loads(stripped)
            except json.JSONDecodeError as exc:
                self._record_decode_error("replay", stripped, exc.msg)
                return []
            payloads = decoded if isinstance(decoded, list) else [decoded]
            items: list[StreamItem] = []
            for index, payload in enumerate(payloads):
                items.extend(self._accept(payload, f"replay-{index}"))
            return items
        items = self.feed(text)
        items.extend(self.flush())
        return items

    def _process_line(self, line: str) -> list[StreamItem]:
        if line == "":
            return self._complete_frame()
        if line.startswith(":"):
            return []
        name, value = split_field(line)
        if name == "data":
            if self._state is FrameState.AWAITING_FRAME_START:
                self._state = FrameState.ACCUMULATING
                self._frame_seq += 1
            self._data_lines.append(value)
        elif name == "id":
            if "\0" not in value:
                self._frame_field_id = value or None
        elif name == "event":
            self._frame_event = value or None
        return []

    def _complete_frame(self) -> list[StreamItem]:
        if self._state is not FrameState.ACCUMULATING:
            # blank line with no data: nothing to dispatch
            self._frame_field_id = None
            self._frame_event = None
            return []
        self._state = FrameState.FRAME_COMPLETE
        frame_id = self._frame_key()
        text = "\n".join(self._data_lines)
        self._data_lines = []
        self._frame_field_id = None
        self._frame_event = None
        self.stats.frames_completed += 1
        try:
            return self._decode_frame(frame_id, text)
        finally:
            self._state = FrameState.AWAITING_FRAME_START

    def _decode_frame(self, frame_id: str, text: str) -> list[StreamItem]:
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            self._record_decode_error(frame_id, text, exc.msg)
            return []
        logger.debug("sse.frame.decoded frame_id=%s", frame_id)
        if isinstance(decoded, list):
            emitted: list[StreamItem] = []
            for index, payload in enumerate(decoded):
                emitted.extend(self._accept(payload, f"{frame_id}[{index}]"))
            return emitted
        return self._accept(decoded, frame_id)

    def _accept(self, payload: Any, frame_id: str) -> list[StreamItem]:
        candidate = payload
        if looks_like_agent_event(payload):
            try:
                candidate = self._translator.translate(payload, open_ids=self._messages)
            except ValidationError as exc:
                self._record_rejection(frame_id, exc)
                return []
        if self.session_id and isinstance(candidate, dict) and "sessionId" not in candidate:
            candidate = {**candidate, "sessionId": self.session_id}
        try:
            item = validate(candidate).unwrap()
        except ValidationError as exc:
            self._record_rejection(frame_id, exc)
            return []
        self._track(item)
        self.stats.items_emitted += 1
        return [item]

    def _track(self, item: StreamItem) -> None:
        if isinstance(item, EventPatch):
            entry = self._messages.get(item.target_id)
            if entry is None:
                return
            text = item.payload.get("text")
            if isinstance(text, str):
                entry.text = entry.text + text if item.op == "append" else text
            entry.frames += 1
            if item.streaming is not None:
                entry.streaming = item.streaming
            return
        if item.streaming:
            text = getattr(item.payload, "text", "")
            self._messages[item.id] = PartialMessage(
                id=item.id,
                session_id=item.session_id,
                text=text if isinstance(text, str) else "",
                streaming=True,
                source="message",
                frames=1,
                kind=item.kind,
            )

    def _frame_key(self) -> str:
        return self._frame_field_id or f"frame-{self._frame_seq}"

    def _pending_frame_text(self) -> str:
        text = "\n".join(self._data_lines)
        carry = self._carry.rstrip("\r")
        if carry:
            text = f"{text}\n{carry}" if self._data_lines else carry
        return text

    def _record_decode_error(self, frame_id: str, text: str, reason: str) -> None:
        self.stats.frames_failed += 1
        self.decode_errors.append(DecodeError(frame_id=frame_id, text=text, reason=reason))
        logger.warning(
            "sse.frame.decode_failed frame_id=%s reason=%s text=%s",
            frame_id,
            reason,
            text[:200],
        )

    def _record_rejection(self, frame_id: str, error: ValidationError) -> None:
        self.stats.items_rejected += 1
        self.validation_errors.append(error)
        logger.warning("sse.frame.rejected frame_id=%s error=%s", frame_id, error)


def parse_sse_input(text: str, *, session_id: str | None = None) -> list[BaseCanonicalEvent]:
    """Decode a recorded SSE body with a throwaway reassembler.

    Decode and validation errors are only logged (WARNING, ``sse.frame.*``).
    Callers that need them call ``parse_sse_input`` on their own
    ``SseReassembler`` and read its ``decode_errors``/``validation_errors``.
    """
    return SseReassembler(session_id).parse_sse_input(text)
