"""Checks applied to a score update before it reaches the store.

Every step is a plain function returning a :class:`StepResult` instead of
raising, so the request handler decides how a failure is reported.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .score import coerce_score

UPDATABLE_FIELDS = ("name", "score")


class Failure(str, Enum):
    VALIDATION = "validation"
    OWNERSHIP = "ownership"


@dataclass(frozen=True)
class StepResult:
    value: Any = None
    failure: Optional[Failure] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.failure is None

    @classmethod
    def success(cls, value: Any = None) -> "StepResult":
        return cls(value=value)

    @classmethod
    def fail(cls, failure: Failure, detail: str) -> "StepResult":
        return cls(failure=failure, detail=detail)


def remove_blank_fields(fields: Dict[str, Any]) -> StepResult:
    """Drop ``None`` values and blank strings, e.g. ``{"name": "", "score": 4}`` -> ``{"score": 4}``."""

    if not isinstance(fields, dict):
        return StepResult.fail(Failure.VALIDATION, "Top score payload must be an object")

    cleaned = {}
    for key, value in fields.items():
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        cleaned[key] = value
    return StepResult.success(cleaned)


def validate_update(fields: Dict[str, Any]) -> StepResult:
    changes: Dict[str, Any] = {}

    if "name" in fields:
        name = fields["name"]
        if not isinstance(name, str) or not name.strip():
            return StepResult.fail(Failure.VALIDATION, "Name must be a non-empty string")
        changes["name"] = name.strip()

    if "score" in fields:
        try:
            changes["score"] = coerce_score(fields["score"])
        except ValueError as exc:
            return StepResult.fail(Failure.VALIDATION, str(exc))

    return StepResult.success(changes)


def require_ownership(requester_id: Optional[str], record: Any) -> StepResult:
    """Fail when ``record`` has an owner other than ``requester_id``.

    Score records carry no owner, so for them this always passes.
    """

    owner = record.get("owner") if isinstance(record, dict) else getattr(record, "owner", None)
    if owner is None:
        return StepResult.success(record)
    if requester_id is None or str(owner) != str(requester_id):
        return StepResult.fail(Failure.OWNERSHIP, "The requested resource is not owned by the caller")
    return StepResult.success(record)


def run_update_pipeline(fields: Dict[str, Any], requester_id: Optional[str], record: Any) -> StepResult:
    """Strip blanks, validate, then check ownership. Stops at the first failure."""

    steps: list[Callable[[Any], StepResult]] = [
        remove_blank_fields,
        validate_update,
    ]

    result = StepResult.success(fields)
    for step in steps:
        result = step(result.value)
        if not result.ok:
            return result

    ownership = require_ownership(requester_id, record)
    if not ownership.ok:
        return ownership
    return result
