"""Protocol layer: classify and validate untyped candidates into events or patches."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Union

from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from chatevents.protocol.errors import ROOT_PATH, ValidationError, ValidationIssue
from chatevents.protocol.events import BaseCanonicalEvent, CanonicalEvent, EventPatch, kind_tag

_EVENT_ADAPTER: TypeAdapter[Any] = TypeAdapter(CanonicalEvent)

_EXPECTED_BY_ERROR_TYPE = {
    "missing": "required field",
    "string_type": "string",
    "string_too_short": "non-empty string",
    "int_type": "integer",
    "int_parsing": "integer",
    "bool_type": "boolean",
    "bool_parsing": "boolean",
    "dict_type": "object",
    "model_type": "object",
    "model_attributes_type": "object",
    "list_type": "array",
}

Validated = Union[BaseCanonicalEvent, EventPatch]


@dataclass(frozen=True)
class ValidationResult:
    """Either a typed value or a structured error, never both."""

    value: Validated | None = None
    error: ValidationError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Validated:
        if self.error is not None:
            raise self.error
        if self.value is None:
            raise ValidationError.single(ROOT_PATH, "validated value", None)
        return self.value


def issues_from_pydantic(exc: PydanticValidationError, *, tag: str | None = None) -> list[ValidationIssue]:
    """Convert pydantic errors into path/expected/actual issues."""
    issues: list[ValidationIssue] = []
    for item in exc.errors():
        loc = list(item.get("loc", ()))
        if tag is not None and loc and loc[0] == tag:
            loc = loc[1:]
        path = ".".join(str(part) for part in loc) or ROOT_PATH
        error_type = str(item.get("type", ""))
        expected = _EXPECTED_BY_ERROR_TYPE.get(error_type)
        if expected is None:
            expected = str(item.get("msg", "valid value")).removeprefix("Input should be ")
        actual = None if error_type == "missing" else item.get("input")
        issues.append(ValidationIssue(path=path, expected=expected, actual=actual))
    return issues


def validate_event(candidate: Any) -> ValidationResult:
    """Validate a candidate as a CanonicalEvent, including its kind-specific payload."""
    if not isinstance(candidate, Mapping):
        return ValidationResult(error=ValidationError.single(ROOT_PATH, "object", candidate))
    data = dict(candidate)
    kind = data.get("kind")
    if not isinstance(kind, str) or not kind:
        return ValidationResult(error=ValidationError.single("kind", "non-empty string", kind))
    tag = kind_tag(data)
    try:
        event = _EVENT_ADAPTER.validate_python(data)
    except PydanticValidationError as exc:
        return ValidationResult(error=ValidationError(issues_from_pydantic(exc, tag=tag)))
    return ValidationResult(value=event)


def validate_patch(candidate: Any) -> ValidationResult:
    """Validate a candidate as an EventPatch."""
    if not isinstance(candidate, Mapping):
        return ValidationResult(error=ValidationError.single(ROOT_PATH, "object", candidate))
    try:
        patch = EventPatch.model_validate(dict(candidate))
    except PydanticValidationError as exc:
        return ValidationResult(error=ValidationError(issues_from_pydantic(exc)))
    return ValidationResult(value=patch)


def validate(candidate: Any) -> ValidationResult:
    """Classify a decoded JSON value as event or patch and validate it.

    Event-only fields are ``kind`` and ``createdAt``; the patch-only field is
    ``targetId``. A candidate carrying both sets, or neither, is rejected.
    Malformed input is reported through the result, never raised.
    """
    if not isinstance(candidate, Mapping):
        return ValidationResult(error=ValidationError.single(ROOT_PATH, "object", candidate))
    looks_like_event = "kind" in candidate or "createdAt" in candidate
    looks_like_patch = "targetId" in candidate
    if looks_like_event and looks_like_patch:
        return ValidationResult(
            error=ValidationError.single(
                ROOT_PATH,
                "either event fields (kind/createdAt) or patch fields (targetId), not both",
                sorted(map(str, candidate)),
            )
        )
    if looks_like_patch:
        return validate_patch(candidate)
    if looks_like_event:
        return validate_event(candidate)
    return ValidationResult(
        error=ValidationError.single(
            ROOT_PATH,
            "event (kind/createdAt) or patch (targetId)",
            sorted(map(str, candidate)),
        )
    )


def is_event(value: Any) -> bool:
    return isinstance(value, BaseCanonicalEvent)


def is_patch(value: Any) -> bool:
    return isinstance(value, EventPatch)
