"""Test fixtures shared by unit/integration tests."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from chatevents.protocol.events import BaseCanonicalEvent
from chatevents.protocol.validator import validate_event
from chatevents.store.event_store import EventStore
from chatevents.stream.sse_reassembler import SseReassembler


@pytest.fixture
def store() -> EventStore:
    return EventStore()


@pytest.fixture
def reassembler() -> SseReassembler:
    return SseReassembler()


@pytest.fixture
def make_event() -> Callable[..., BaseCanonicalEvent]:
    """Build a validated canonical event from keyword overrides."""

    def _make(
        event_id: str = "e1",
        *,
        session_id: str = "s1",
        kind: str = "message",
        payload: dict[str, Any] | None = None,
        created_at: int = 1_700_000_000_000,
        streaming: bool = False,
    ) -> BaseCanonicalEvent:
        candidate = {
            "id": event_id,
            "sessionId": session_id,
            "kind": kind,
            "createdAt": created_at,
            "streaming": streaming,
            "payload": payload if payload is not None else {"text": "hi"},
        }
        return validate_event(candidate).unwrap()  # type: ignore[return-value]

    return _make
