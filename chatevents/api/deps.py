"""API layer: request-scoped access to the shared container, store and session ingestors."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from chatevents.core.container import AppContainer
from chatevents.runtime.ingestor import StreamIngestor
from chatevents.store.event_store import EventStore


def get_container(request: Request) -> AppContainer:
    return request.app.state.container  # type: ignore[return-value]


def get_store(container: AppContainer = Depends(get_container)) -> EventStore:
    return container.store


def get_active_ingestor(
    session_id: str,
    container: AppContainer = Depends(get_container),
) -> StreamIngestor:
    """Ingestor of a session with an open stream; 404 when none was started."""
    ingestor = container.ingestors.get(session_id)
    if ingestor is None:
        raise HTTPException(status_code=404, detail=f"no active stream for session '{session_id}'")
    return ingestor
