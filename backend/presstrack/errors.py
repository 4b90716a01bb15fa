# Overview: Typed domain errors shared by the workflow, ledger and reservation services.

"""
Every error raised by a service carries enough context for the calling layer
to render an actionable message:

- entity / entity_id: what was being operated on
- operation: what was attempted
- current / requested: the state found vs. the state asked for

Routes translate these into JSON bodies via to_dict() and the class-level
http_status. Nothing here is swallowed by the services; ConsistencyError is
the only fatal one and is always logged before it is raised.
"""

from __future__ import annotations

from typing import Any


class PressTrackError(Exception):
    """Base class for recoverable domain errors."""

    http_status = 400
    code = "error"

    def __init__(
        self,
        message: str,
        *,
        entity: str | None = None,
        entity_id: Any = None,
        operation: str | None = None,
        current: Any = None,
        requested: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.entity = entity
        self.entity_id = entity_id
        self.operation = operation
        self.current = current
        self.requested = requested

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "current": self.current,
            "requested": self.requested,
        }


class InvalidTransition(PressTrackError):
    """Requested stage/substage change is not reachable from the current state."""

    http_status = 409
    code = "invalid_transition"


class Unauthorized(PressTrackError):
    """Actor's role cannot act on this item's current department."""

    http_status = 403
    code = "unauthorized"


class UserNotInDepartment(PressTrackError):
    http_status = 400
    code = "user_not_in_department"


class InsufficientStock(PressTrackError):
    http_status = 409
    code = "insufficient_stock"


class InvalidQuantity(PressTrackError):
    http_status = 400
    code = "invalid_quantity"


class OverRelease(PressTrackError):
    http_status = 409
    code = "over_release"


class DoubleConsume(PressTrackError):
    http_status = 409
    code = "double_consume"


class StaleState(PressTrackError):
    """Optimistic-concurrency check failed; re-read and retry."""

    http_status = 409
    code = "stale_state"


class NotFound(PressTrackError):
    http_status = 404
    code = "not_found"


class ConsistencyError(PressTrackError):
    """
    Stored state and the ledger may disagree.

    Raised when a compensating rollback fails, or when a ledger replay does
    not match the materialized counters. Requires operator intervention.
    """

    http_status = 500
    code = "consistency_error"


class ValidationError(PressTrackError):
    """400-level input problem (missing field, wrong type, bad date)."""

    http_status = 400
    code = "validation_error"
