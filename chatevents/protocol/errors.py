"""Protocol layer: recoverable error taxonomy for validation, decoding and store writes."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

ROOT_PATH = "<root>"


def _describe(value: Any, limit: int = 80) -> str:
    text = repr(value)
    if len(text) <= limit:
        return text
    return f"{text[: limit - 3]}..."


class ChatEventsError(RuntimeError):
    """Base class for every error raised or reported by chatevents."""


@dataclass(frozen=True)
class ValidationIssue:
    """One schema violation: dotted field path, expected type, actual value."""

    path: str
    expected: str
    actual: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {"path": self.path, "expected": self.expected, "actual": _describe(self.actual)}


class ValidationError(ChatEventsError):
    """A candidate does not conform to the canonical event/patch schema."""

    def __init__(self, issues: list[ValidationIssue]) -> None:
        if not issues:
            issues = [ValidationIssue(path=ROOT_PATH, expected="valid value")]
        self.issues = list(issues)
        head = self.issues[0]
        self.path = head.path
        self.expected = head.expected
        self.actual = head.actual
        suffix = f" (+{len(self.issues) - 1} more)" if len(self.issues) > 1 else ""
        super().__init__(f"{head.path}: expected {head.expected}, got {_describe(head.actual)}{suffix}")

    @classmethod
    def single(cls, path: str, expected: str, actual: Any = None) -> "ValidationError":
        return cls([ValidationIssue(path=path, expected=expected, actual=actual)])

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "expected": self.expected,
            "actual": _describe(self.actual),
            "issues": [issue.to_dict() for issue in self.issues],
        }


class RowMappingError(ValidationError):
    """A persisted row could not be mapped to a canonical event."""


class DecodeError(ChatEventsError):
    """A completed SSE frame is not valid JSON; the frame text is kept for debugging."""

    def __init__(self, frame_id: str, text: str, reason: str) -> None:
        self.frame_id = frame_id
        self.text = text
        self.reason = reason
        super().__init__(f"frame {frame_id}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        return {"frame_id": self.frame_id, "reason": self.reason, "text": self.text}


class StoreError(ChatEventsError):
    """Base class for event store write failures."""


class DuplicateIdError(StoreError):
    def __init__(self, session_id: str, event_id: str) -> None:
        self.session_id = session_id
        self.event_id = event_id
        super().__init__(f"duplicate_id:{session_id}/{event_id}")


class UnknownTargetError(StoreError):
    def __init__(self, target_id: str, session_id: str | None = None, *, ambiguous: bool = False) -> None:
        self.target_id = target_id
        self.session_id = session_id
        self.ambiguous = ambiguous
        reason = "ambiguous_target" if ambiguous else "unknown_target"
        super().__init__(f"{reason}:{session_id or '*'}/{target_id}")


class PatchRejectedError(StoreError):
    """Merging the patch would leave the target payload outside its schema."""

    def __init__(self, target_id: str, error: ValidationError) -> None:
        self.target_id = target_id
        self.error = error
        super().__init__(f"patch_rejected:{target_id}: {error}")


class StoreDisposedError(StoreError):
    """The store was used after dispose(); this is a programming error."""
