"""Composition layer: build and hold long-lived service objects for dependency injection."""

from __future__ import annotations

from dataclasses import dataclass

from chatevents.adapters.row_adapter import RowAdapter
from chatevents.core.config import Settings
from chatevents.runtime.ingestor import IngestorRegistry
from chatevents.store.event_store import EventStore


@dataclass
class AppContainer:
    """Container object attached to FastAPI app state."""

    settings: Settings
    store: EventStore
    ingestors: IngestorRegistry
    row_adapter: RowAdapter


def build_container(settings: Settings) -> AppContainer:
    """Construct runtime dependencies in one place."""
    store = EventStore()
    ingestors = IngestorRegistry(
        store,
        strict_agent_events=settings.strict_agent_events,
        max_error_history=settings.decode_error_history,
    )
    return AppContainer(
        settings=settings,
        store=store,
        ingestors=ingestors,
        row_adapter=RowAdapter.from_overlay_file(settings.row_mapping_file),
    )
