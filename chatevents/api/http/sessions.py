"""HTTP API layer: feed chunks and rows into a session and read its canonical events."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Response, status

from chatevents.api.deps import get_container, get_store
from chatevents.core.container import AppContainer
from chatevents.infra.observability.logger import get_logger
from chatevents.protocol.events import to_wire
from chatevents.protocol.messages import (
    ChunkIngestRequest,
    IngestReportDto,
    RowsIngestRequest,
    SessionStatusDto,
)
from chatevents.runtime.ingestor import IngestReport, ingest_rows
from chatevents.store.event_store import EventStore

router = APIRouter(prefix="/api/v1/sessions", tags=["sessions"])
logger = get_logger(__name__)


def _to_report(session_id: str, report: IngestReport, container: AppContainer) -> IngestReportDto:
    return IngestReportDto(
        session_id=session_id,
        streaming=container.store.has_streaming_message(session_id),
        **report.to_dict(),
    )


@router.post("/{session_id}/chunks", response_model=IngestReportDto)
def ingest_chunk(
    session_id: str,
    request: ChunkIngestRequest,
    container: AppContainer = Depends(get_container),
) -> IngestReportDto:
    ingestor = container.ingestors.get_or_create(session_id)
    report = ingestor.ingest_chunk(request.chunk)
    if request.final:
        tail = ingestor.finish()
        report.appended += tail.appended
        report.patched += tail.patched
        report.duplicates += tail.duplicates
        report.unknown_targets += tail.unknown_targets
        report.rejected_patches += tail.rejected_patches
        report.invalid += tail.invalid
        report.errors.extend(tail.errors)
    logger.debug(
        "api.chunks.ingested session_id=%s size=%s appended=%s patched=%s invalid=%s",
        session_id,
        len(request.chunk),
        report.appended,
        report.patched,
        report.invalid,
    )
    return _to_report(session_id, report, container)


@router.post("/{session_id}/rows", response_model=IngestReportDto)
def ingest_session_rows(
    session_id: str,
    request: RowsIngestRequest,
    container: AppContainer = Depends(get_container),
) -> IngestReportDto:
    session_columns = container.row_adapter.column_map["session_id"]
    rows = [
        {**row, "session_id": session_id}
        if isinstance(row, dict) and all(row.get(column) is None for column in session_columns)
        else row
        for row in request.rows
    ]
    report = ingest_rows(container.store, rows, container.row_adapter)
    logger.info(
        "api.rows.ingested session_id=%s rows=%s appended=%s invalid=%s",
        session_id,
        len(rows),
        report.appended,
        report.invalid,
    )
    return _to_report(session_id, report, container)


@router.get("/{session_id}/events")
def list_session_events(
    session_id: str,
    store: EventStore = Depends(get_store),
) -> list[dict]:
    return [to_wire(event) for event in store.session_events(session_id)]


@router.get("/{session_id}/status", response_model=SessionStatusDto)
def session_status(
    session_id: str,
    store: EventStore = Depends(get_store),
) -> SessionStatusDto:
    return SessionStatusDto(
        session_id=session_id,
        streaming=store.has_streaming_message(session_id),
        open_event_ids=[event.id for event in store.open_streaming_events(session_id)],
        event_count=store.event_count(session_id),
        orphaned_tool_calls=[event.id for event in store.orphaned_tool_calls(session_id)],
    )


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
def close_session(
    session_id: str,
    container: AppContainer = Depends(get_container),
) -> Response:
    closed = container.ingestors.close(session_id)
    removed = container.store.clear(session_id)
    if not closed and not removed:
        raise HTTPException(status_code=404, detail=f"session '{session_id}' not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
