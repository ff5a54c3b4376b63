from __future__ import annotations

from datetime import datetime, timezone

from rental_management.models.rental_models import Reservation
from rental_management.services.errors import StateError


HOLD = "hold"
CONFIRMED = "confirmed"
ACTIVE = "active"
COMPLETED = "completed"
CANCELLED = "cancelled"
EXPIRED = "expired"

RESERVATION_STATES = {HOLD, CONFIRMED, ACTIVE, COMPLETED, CANCELLED, EXPIRED}
TERMINAL_STATES = {COMPLETED, CANCELLED, EXPIRED}
# Rows in these states consume unit-type capacity.
CAPACITY_STATES = {HOLD, CONFIRMED, ACTIVE}
# Rows in these states own their assigned asset for the booked window.
ASSIGNMENT_BLOCKING_STATES = {CONFIRMED, ACTIVE}
SWEEPER_ONLY_TARGETS = {EXPIRED}
STATE_TRANSITIONS = {
    HOLD: {CONFIRMED, EXPIRED, CANCELLED},
    CONFIRMED: {ACTIVE, CANCELLED},
    ACTIVE: {COMPLETED},
    COMPLETED: set(),
    CANCELLED: set(),
    EXPIRED: set(),
}


def utc_now() -> datetime:
    """Naive UTC timestamp, the form every ledger DateTime column is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_ledger_time(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def normalize_state(raw: str | None) -> str:
    return (raw or "").strip().lower()


def is_terminal(status: str | None) -> bool:
    return normalize_state(status) in TERMINAL_STATES


def assert_transition(current: str | None, target: str, *, by_sweeper: bool = False) -> None:
    current_state = normalize_state(current)
    target_state = normalize_state(target)
    if current_state in TERMINAL_STATES:
        raise StateError(
            f"Reservation is {current_state} and can no longer change.",
            code="terminal",
        )
    if target_state in SWEEPER_ONLY_TARGETS and not by_sweeper:
        raise StateError(
            f"Only the hold sweeper may move a reservation to {target_state}.",
            code="invalid_transition",
        )
    if target_state not in STATE_TRANSITIONS.get(current_state, set()):
        raise StateError(
            f"Invalid state transition: {current_state} -> {target_state}",
            code="invalid_transition",
        )


def transition_state(reservation: Reservation, target: str, now: datetime) -> None:
    assert_transition(reservation.Status, target)
    reservation.Status = normalize_state(target)
    if reservation.Status != HOLD:
        reservation.ExpiresAt = None
    reservation.UpdatedDate = now


HOLD_EXPIRED_MESSAGE = "Reservation hold has expired. Please start the booking again."


def ensure_hold_active(reservation: Reservation, now: datetime) -> None:
    status = normalize_state(reservation.Status)
    # Swept holds report the same error as lapsed ones that are not swept yet.
    if status == EXPIRED:
        raise StateError(HOLD_EXPIRED_MESSAGE, code="hold_expired")
    if status != HOLD:
        raise StateError("Reservation is not in hold state.", code="not_hold")
    if reservation.ExpiresAt is None or reservation.ExpiresAt <= now:
        raise StateError(HOLD_EXPIRED_MESSAGE, code="hold_expired")
