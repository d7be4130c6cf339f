"""Stream layer: SSE wire helpers shared by the reassembler and the tap endpoint."""

from __future__ import annotations

import json
import re
from typing import Any

LINE_BREAK = re.compile(r"\r\n|\r|\n")
KEEP_ALIVE = ": keep-alive\n\n"


def format_sse_frame(data: Any, *, event: str | None = None, event_id: str | int | None = None) -> str:
    """Encode one SSE frame; multi-line bodies become several data lines."""
    body = data if isinstance(data, str) else json.dumps(data, ensure_ascii=False)
    lines: list[str] = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    if event:
        lines.append(f"event: {event}")
    lines.extend(f"data: {line}" for line in LINE_BREAK.split(body))
    return "\n".join(lines) + "\n\n"


def split_field(line: str) -> tuple[str, str]:
    """Split an SSE line into (field, value), dropping one space after the colon."""
    name, sep, value = line.partition(":")
    if not sep:
        return line, ""
    if value.startswith(" "):
        value = value[1:]
    return name, value
