from __future__ import annotations

from typing import Any


class ReservationError(Exception):
    code = "reservation_error"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class ValidationError(ReservationError):
    """Malformed input, rejected before any write."""

    code = "validation"


class ConflictError(ReservationError):
    """Capacity exhausted or overlapping assignment. Retrying the same request will not help."""

    code = "conflict"


class NotFoundError(ReservationError):
    code = "not_found"


class AuthorizationError(ReservationError):
    code = "forbidden"


class AuthenticationRequired(AuthorizationError):
    code = "unauthenticated"


class TransientError(ReservationError):
    """Infrastructure failure; safe to retry once with the same idempotency key."""

    code = "transient"


class StateError(ReservationError):
    code = "invalid_state"
