"""Runtime layer: feed reassembled stream items and mapped rows into the event store.

Store failures for individual items (duplicates, unknown targets, rejected
patches) are logged and counted here; they never stop ingestion.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from threading import Lock
from typing import Any

from chatevents.adapters.row_adapter import RowAdapter
from chatevents.infra.observability.logger import get_logger
from chatevents.protocol.errors import DuplicateIdError, PatchRejectedError, UnknownTargetError
from chatevents.protocol.events import BaseCanonicalEvent, EventPatch
from chatevents.store.event_store import EventStore
from chatevents.stream.sse_reassembler import PartialMessage, SseReassembler, StreamItem

logger = get_logger(__name__)


@dataclass
class IngestReport:
    """Outcome counters for one ingestion call."""

    appended: int = 0
    patched: int = 0
    duplicates: int = 0
    unknown_targets: int = 0
    rejected_patches: int = 0
    invalid: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def apply_items(store: EventStore, items: Iterable[StreamItem], report: IngestReport) -> IngestReport:
    """Append events and apply patches in order, recording per-item failures."""
    for item in items:
        if isinstance(item, EventPatch):
            try:
                store.apply_patch(item)
            except UnknownTargetError as exc:
                report.unknown_targets += 1
                report.errors.append(str(exc))
                logger.warning("ingest.patch.dropped target_id=%s error=%s", item.target_id, exc)
            except PatchRejectedError as exc:
                report.rejected_patches += 1
                report.errors.append(str(exc))
                logger.warning("ingest.patch.rejected target_id=%s error=%s", item.target_id, exc)
            else:
                report.patched += 1
            continue
        try:
            store.append(item)
        except DuplicateIdError as exc:
            # Replays of already-stored events are expected; treat as no-op.
            report.duplicates += 1
            logger.info("ingest.event.duplicate session_id=%s event_id=%s", exc.session_id, exc.event_id)
        else:
            report.appended += 1
    return report


def ingest_rows(store: EventStore, rows: Iterable[Any], adapter: RowAdapter) -> IngestReport:
    """Map a batch of persisted rows and append the events that mapped cleanly."""
    batch = adapter.map_batch(rows)
    report = IngestReport(invalid=len(batch.errors))
    report.errors.extend(f"row[{error.index}]: {error.error}" for error in batch.errors)
    return apply_items(store, batch.events, report)


class StreamIngestor:
    """Owns the reassembler of one SSE connection and writes its output to the store."""

    def __init__(
        self,
        store: EventStore,
        session_id: str,
        *,
        strict_agent_events: bool = True,
        max_error_history: int = 100,
    ) -> None:
        self.session_id = session_id
        self._store = store
        self.reassembler = SseReassembler(
            session_id,
            strict_agent_events=strict_agent_events,
            max_error_history=max_error_history,
        )

    def ingest_chunk(self, chunk: str) -> IngestReport:
        stats = self.reassembler.stats
        failed_before = stats.frames_failed + stats.items_rejected
        items = self.reassembler.feed(chunk)
        report = IngestReport(invalid=stats.frames_failed + stats.items_rejected - failed_before)
        apply_items(self._store, items, report)
        self.reassembler.clear_completed()
        return report

    def finish(self) -> IngestReport:
        """Flush a trailing unterminated frame at end of stream."""
        stats = self.reassembler.stats
        failed_before = stats.frames_failed + stats.items_rejected
        items = self.reassembler.flush()
        report = IngestReport(invalid=stats.frames_failed + stats.items_rejected - failed_before)
        apply_items(self._store, items, report)
        self.reassembler.clear_completed()
        return report

    def partial_messages(self) -> dict[str, PartialMessage]:
        return self.reassembler.get_partial_messages()

    def replay(self, text: str) -> list[BaseCanonicalEvent]:
        return self.reassembler.parse_sse_input(text)


class IngestorRegistry:
    """Thread-safe registry holding one StreamIngestor per active session."""

    def __init__(
        self,
        store: EventStore,
        *,
        strict_agent_events: bool = True,
        max_error_history: int = 100,
    ) -> None:
        self._store = store
        self._strict_agent_events = strict_agent_events
        self._max_error_history = max_error_history
        self._lock = Lock()
        self._ingestors: dict[str, StreamIngestor] = {}

    def get_or_create(self, session_id: str) -> StreamIngestor:
        with self._lock:
            ingestor = self._ingestors.get(session_id)
            if ingestor is None:
                ingestor = StreamIngestor(
                    self._store,
                    session_id,
                    strict_agent_events=self._strict_agent_events,
                    max_error_history=self._max_error_history,
                )
                self._ingestors[session_id] = ingestor
            return ingestor

    def get(self, session_id: str) -> StreamIngestor | None:
        with self._lock:
            return self._ingestors.get(session_id)

    def close(self, session_id: str) -> bool:
        """Discard the session's reassembler, partial frames included."""
        with self._lock:
            ingestor = self._ingestors.pop(session_id, None)
        if ingestor is None:
            return False
        dropped = len(ingestor.reassembler.get_partial_messages())
        ingestor.reassembler.clear_all()
        logger.info("ingest.session.closed session_id=%s dropped_partials=%s", session_id, dropped)
        return True

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._ingestors)
