"""Stream API layer: SSE tap of stored canonical events with resume and keep-alive."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from chatevents.api.deps import get_container
from chatevents.core.container import AppContainer
from chatevents.protocol.events import to_wire
from chatevents.stream.frames import KEEP_ALIVE, format_sse_frame

router = APIRouter(tags=["stream"])


@router.get("/api/stream/{session_id}")
async def stream(
    session_id: str,
    last_event_id: str | None = Query(default=None),
    container: AppContainer = Depends(get_container),
) -> StreamingResponse:
    async def iterator() -> AsyncIterator[str]:
        sent = 0
        resume_from = last_event_id
        waited = 0
        while waited < container.settings.sse_max_wait_seconds:
            events = container.store.session_events(session_id)
            if resume_from is not None:
                ids = [event.id for event in events]
                sent = ids.index(resume_from) + 1 if resume_from in ids else 0
                resume_from = None
            fresh = events[sent:]
            if fresh:
                for event in fresh:
                    sent += 1
                    yield format_sse_frame(to_wire(event), event=event.kind, event_id=event.id)
            else:
                yield KEEP_ALIVE
            waited += 1
            await asyncio.sleep(container.settings.sse_keepalive_seconds)

    return StreamingResponse(iterator(), media_type="text/event-stream")
