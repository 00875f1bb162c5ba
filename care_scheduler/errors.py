"""
Typed business errors.

Engine operations return an `EngineError` instead of raising; callers branch
on `kind`. Only `conflict` is safe to retry automatically (re-read and
reapply), every other kind is a real rule rejection to show to the user.
"""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    INVALID_FORMAT = "invalid_format"
    DEADLINE_EXPIRED = "deadline_expired"
    CANCELLATION_WINDOW_CLOSED = "cancellation_window_closed"
    NOT_SERVICE_DATE = "not_service_date"
    INCOMPLETE_REQUIRED_TASKS = "incomplete_required_tasks"
    INVALID_TRANSITION = "invalid_transition"
    OVERLAPS_BOOKING = "overlaps_booking"
    OVERLAPS_EXISTING_RANGE = "overlaps_existing_range"
    ACTIVE_JOB_CONFLICT = "active_job_conflict"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"


class EngineError(BaseModel):
    kind: ErrorKind
    message: str
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def retryable(self) -> bool:
        return self.kind == ErrorKind.CONFLICT


def invalid_format(value: str, expected: str) -> EngineError:
    return EngineError(
        kind=ErrorKind.INVALID_FORMAT,
        message=f"'{value}' is not a valid {expected}",
        details={"value": value, "expected": expected},
    )


def not_found(what: str, key: str) -> EngineError:
    return EngineError(
        kind=ErrorKind.NOT_FOUND,
        message=f"{what.capitalize()} not found",
        details={what: key},
    )


def conflict(key: str) -> EngineError:
    return EngineError(
        kind=ErrorKind.CONFLICT,
        message="Record changed while the operation was in flight, retry",
        details={"key": key},
    )


def invalid_transition(source: str, target: str) -> EngineError:
    return EngineError(
        kind=ErrorKind.INVALID_TRANSITION,
        message=f"Cannot move appointment from {source} to {target}",
        details={"from": source, "to": target},
    )


def forbidden(actor_id: str, action: str) -> EngineError:
    return EngineError(
        kind=ErrorKind.FORBIDDEN,
        message=f"Actor {actor_id} may not {action} this appointment",
        details={"actor_id": actor_id, "action": action},
    )
