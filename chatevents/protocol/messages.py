"""Protocol layer: request/response DTOs for the HTTP debug surface."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ChunkIngestRequest(BaseModel):
    """One raw SSE chunk as received from the transport."""

    chunk: str = Field(..., description="Raw SSE text; may end mid-frame.")
    final: bool = Field(default=False, description="Flush a trailing unterminated frame.")


class RowsIngestRequest(BaseModel):
    rows: list[Any] = Field(default_factory=list)


class ReplayRequest(BaseModel):
    text: str = Field(..., description="Full SSE body, JSON array or single JSON object.")


class IngestReportDto(BaseModel):
    session_id: str
    appended: int = 0
    patched: int = 0
    duplicates: int = 0
    unknown_targets: int = 0
    rejected_patches: int = 0
    invalid: int = 0
    errors: list[str] = Field(default_factory=list)
    streaming: bool = False


class SessionStatusDto(BaseModel):
    session_id: str
    streaming: bool
    open_event_ids: list[str] = Field(default_factory=list)
    event_count: int = 0
    orphaned_tool_calls: list[str] = Field(default_factory=list)


class PartialMessageDto(BaseModel):
    id: str
    session_id: str | None = None
    text: str = ""
    streaming: bool = True
    source: str = "message"
    frames: int = 0
    kind: str | None = None


class PartialsResponse(BaseModel):
    session_id: str
    state: str
    partials: list[PartialMessageDto] = Field(default_factory=list)
    decode_errors: list[dict[str, Any]] = Field(default_factory=list)
    validation_errors: list[dict[str, Any]] = Field(default_factory=list)


class ReplayResponse(BaseModel):
    events: list[dict[str, Any]] = Field(default_factory=list)
    decode_errors: list[dict[str, Any]] = Field(default_factory=list)
    validation_errors: list[dict[str, Any]] = Field(default_factory=list)
