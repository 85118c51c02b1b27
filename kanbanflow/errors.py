"""
Error taxonomy for card moves.

Every failure the engine reports is a WorkflowError subclass tagged with an
ErrorKind, so callers can map kinds to their own response scheme
(bad request / forbidden / conflict / server error).

Gates never raise: they return a Verdict. Only the command boundary turns a
rejected Verdict into the matching exception via Verdict.raise_if_rejected().
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Abstract failure kinds."""
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    INVALID_TRANSITION = "invalid_transition"
    INVALID_ENTITY_TYPE = "invalid_entity_type"
    NO_HISTORY = "no_history"
    CONFLICT = "conflict"
    UNEXPECTED = "unexpected"


class WorkflowError(Exception):
    """Base class for all engine errors."""
    kind: ErrorKind = ErrorKind.UNEXPECTED

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidInputError(WorkflowError):
    """Missing/unknown identifiers, same source and destination."""
    kind = ErrorKind.INVALID_INPUT


class UnauthorizedError(WorkflowError):
    """Actor lacks the role required by a column or pipeline."""
    kind = ErrorKind.UNAUTHORIZED


class InvalidTransitionError(WorkflowError):
    """Transition not configured, not permitted, or rules are malformed."""
    kind = ErrorKind.INVALID_TRANSITION


class InvalidEntityTypeError(WorkflowError):
    """Card entity type not accepted by the destination column."""
    kind = ErrorKind.INVALID_ENTITY_TYPE


class NoHistoryError(WorkflowError):
    """Undo requested with an empty history."""
    kind = ErrorKind.NO_HISTORY


class ConflictError(WorkflowError):
    """Card was moved by someone else between read and write."""
    kind = ErrorKind.CONFLICT


class UnexpectedError(WorkflowError):
    """Anything else (storage failure, bug)."""
    kind = ErrorKind.UNEXPECTED


_ERROR_CLASSES = {
    ErrorKind.INVALID_INPUT: InvalidInputError,
    ErrorKind.UNAUTHORIZED: UnauthorizedError,
    ErrorKind.INVALID_TRANSITION: InvalidTransitionError,
    ErrorKind.INVALID_ENTITY_TYPE: InvalidEntityTypeError,
    ErrorKind.NO_HISTORY: NoHistoryError,
    ErrorKind.CONFLICT: ConflictError,
    ErrorKind.UNEXPECTED: UnexpectedError,
}

_VALIDATION_KINDS = {
    ErrorKind.INVALID_INPUT,
    ErrorKind.UNAUTHORIZED,
    ErrorKind.INVALID_TRANSITION,
    ErrorKind.INVALID_ENTITY_TYPE,
}

_HTTP_STATUS = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.UNAUTHORIZED: 403,
    ErrorKind.INVALID_TRANSITION: 422,
    ErrorKind.INVALID_ENTITY_TYPE: 422,
    ErrorKind.NO_HISTORY: 409,
    ErrorKind.CONFLICT: 409,
    ErrorKind.UNEXPECTED: 500,
}


def error_for(kind: ErrorKind, message: str) -> WorkflowError:
    """Build the exception instance matching an ErrorKind."""
    return _ERROR_CLASSES[kind](message)


def is_validation_error(exc: BaseException) -> bool:
    """True for expected, caller-recoverable validation failures."""
    return isinstance(exc, WorkflowError) and exc.kind in _VALIDATION_KINDS


def http_status_for(kind: ErrorKind) -> int:
    """Conventional HTTP status for a kind (for callers that speak HTTP)."""
    return _HTTP_STATUS.get(kind, 500)


@dataclass(frozen=True)
class Verdict:
    """Outcome of a single validation gate."""
    ok: bool
    kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "Verdict":
        return cls(ok=True)

    @classmethod
    def reject(cls, kind: ErrorKind, message: str) -> "Verdict":
        return cls(ok=False, kind=kind, message=message)

    def raise_if_rejected(self) -> None:
        """Raise the typed error for a rejection; no-op when ok."""
        if not self.ok:
            raise error_for(self.kind or ErrorKind.UNEXPECTED, self.message)
