"""Typed errors raised and returned by the workflow core.

Every error carries a machine-readable ``code`` so API handlers and clients
can branch on type instead of message text::

    LabTrackError
    +-- TransitionRejected          (returned by the state machine, never retried)
    |   +-- NotAuthorized
    |   +-- ScopeMismatch
    |   +-- InvalidStateTransition
    |   +-- AlreadyInTargetState
    +-- EntityNotFound
    +-- StoreUnavailable            (transient, caller may retry the request)
    +-- PartialFanoutFailure        (logged only, never fatal to a transition)
"""

from __future__ import annotations

from typing import Any, Iterable
from uuid import UUID


class LabTrackError(Exception):
    """Base class for all domain errors."""

    code: str = "LABTRACK_ERROR"

    def __init__(self, message: str = "", **details: Any):
        self.message = message or self.__class__.__name__
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = {key: _jsonable(value) for key, value in self.details.items()}
        return payload


class TransitionRejected(LabTrackError):
    """A requested transition was refused without mutating any state."""

    code = "TRANSITION_REJECTED"


class NotAuthorized(TransitionRejected):
    code = "NOT_AUTHORIZED"


class ScopeMismatch(TransitionRejected):
    """The actor's lab does not match the entity's lab."""

    code = "SCOPE_MISMATCH"


class InvalidStateTransition(TransitionRejected):
    """The entity is not in a state compatible with the transition."""

    code = "INVALID_STATE_TRANSITION"


class AlreadyInTargetState(TransitionRejected):
    code = "ALREADY_IN_TARGET_STATE"


class EntityNotFound(LabTrackError):
    code = "ENTITY_NOT_FOUND"

    def __init__(self, table: str, entity_id: UUID | str | None):
        super().__init__(f"{table} {entity_id} not found", table=table, entity_id=entity_id)
        self.table = table
        self.entity_id = entity_id


class StoreUnavailable(LabTrackError):
    """Transient infrastructure failure talking to the persistence engine."""

    code = "STORE_UNAVAILABLE"
    retryable = True


class PartialFanoutFailure(LabTrackError):
    """Some notification recipients were not reached for one event."""

    code = "PARTIAL_FANOUT_FAILURE"

    def __init__(self, event_id: UUID, failed_recipients: Iterable[UUID]):
        failed = list(failed_recipients)
        super().__init__(
            f"notification event {event_id} not delivered to {len(failed)} recipient(s)",
            event_id=event_id,
            failed_recipients=failed,
        )
        self.event_id = event_id
        self.failed_recipients = failed


def _jsonable(value: Any) -> Any:
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (list, tuple, set)):
        return [_jsonable(item) for item in value]
    return value
