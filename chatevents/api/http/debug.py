"""HTTP API layer: read-only reassembly introspection and offline replay for dev tooling."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from chatevents.api.deps import get_active_ingestor, get_container
from chatevents.core.container import AppContainer
from chatevents.protocol.events import to_wire
from chatevents.protocol.messages import (
    PartialMessageDto,
    PartialsResponse,
    ReplayRequest,
    ReplayResponse,
)
from chatevents.runtime.ingestor import StreamIngestor
from chatevents.stream.sse_reassembler import SseReassembler

router = APIRouter(prefix="/api/v1", tags=["debug"])


@router.get("/debug/sessions/{session_id}/partials", response_model=PartialsResponse)
def list_partials(
    session_id: str,
    ingestor: StreamIngestor = Depends(get_active_ingestor),
) -> PartialsResponse:
    reassembler = ingestor.reassembler
    return PartialsResponse(
        session_id=session_id,
        state=reassembler.state.value,
        partials=[
            PartialMessageDto(**entry.to_dict())
            for entry in reassembler.get_partial_messages().values()
        ],
        decode_errors=[error.to_dict() for error in reassembler.decode_errors],
        validation_errors=[error.to_dict() for error in reassembler.validation_errors],
    )


@router.post("/replay", response_model=ReplayResponse)
def replay(
    request: ReplayRequest,
    container: AppContainer = Depends(get_container),
) -> ReplayResponse:
    reassembler = SseReassembler(
        strict_agent_events=container.settings.strict_agent_events,
        max_error_history=container.settings.decode_error_history,
    )
    events = reassembler.parse_sse_input(request.text)
    return ReplayResponse(
        events=[to_wire(event) for event in events],
        decode_errors=[error.to_dict() for error in reassembler.decode_errors],
        validation_errors=[error.to_dict() for error in reassembler.validation_errors],
    )
