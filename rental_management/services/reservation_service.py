from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from rental_management.db.engine import session_scope
from rental_management.models.rental_models import Asset, Reservation, ReservationAssignment
from rental_management.schemas.reservations import MAX_QUANTITY, MIN_QUANTITY, CreateHoldRequest
from rental_management.services.asset_conflict_service import (
    ASSET_ACTIVE,
    ASSET_AVAILABLE,
    ASSET_MAINTENANCE,
    assign_asset,
    find_candidate_assets,
    get_current_assignment,
    has_asset_overlap,
    lock_asset,
    serialize_candidate,
    set_asset_status,
)
from rental_management.services.audit_service import log_audit
from rental_management.services.availability_service import (
    AvailabilityResult,
    committed_quantity,
    get_availability,
    get_live_unit_type,
)
from rental_management.services.errors import (
    ConflictError,
    NotFoundError,
    StateError,
    TransientError,
    ValidationError,
)
from rental_management.services.hold_sweeper import SweepResult, sweep_expired_holds
from rental_management.services.reservation_state import (
    ACTIVE,
    CANCELLED,
    COMPLETED,
    CONFIRMED,
    HOLD,
    assert_transition,
    ensure_hold_active,
    to_ledger_time,
    transition_state,
    utc_now,
)
from rental_management.services.user_access_service import require_provider_access, session_user_id


RESERVATION_LOGGER = logging.getLogger("rental_management.reservations")

HOLD_DURATION = timedelta(minutes=15)
MAX_TRANSIENT_RETRIES = 1
PAST_START_TOLERANCE = timedelta(minutes=1)


@dataclass
class HoldResult:
    reservation_id: str
    status: str
    expires_at: datetime | None
    idempotent: bool

    @classmethod
    def from_reservation(cls, reservation: Reservation, idempotent: bool) -> "HoldResult":
        return cls(
            reservation_id=reservation.ReservationID,
            status=reservation.Status,
            expires_at=reservation.ExpiresAt,
            idempotent=idempotent,
        )

    def to_dict(self) -> dict:
        return {
            "reservationId": self.reservation_id,
            "status": self.status,
            "expiresAt": _as_utc(self.expires_at),
            "idempotent": self.idempotent,
        }


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc)


def _append_note(existing: str | None, line: str | None) -> str | None:
    text = (line or "").strip()
    if not text:
        return existing
    return (existing + "\n" if existing else "") + text


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError)):
        return True
    return bool(getattr(exc, "connection_invalidated", False))


def parse_hold_request(payload: Any) -> CreateHoldRequest:
    try:
        return CreateHoldRequest.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise ValidationError(
            "Validation failed",
            details=exc.errors(include_url=False, include_context=False, include_input=False),
        ) from exc


def validate_hold_window(start_date: datetime, end_date: datetime, quantity: int, now: datetime) -> None:
    if not start_date < end_date:
        raise ValidationError("endDate must be after startDate.")
    if start_date < now - PAST_START_TOLERANCE:
        raise ValidationError("Cannot reserve in the past.")
    if quantity < MIN_QUANTITY or quantity > MAX_QUANTITY:
        raise ValidationError(f"quantity must be between {MIN_QUANTITY} and {MAX_QUANTITY}.")


def serialize_reservation(reservation: Reservation, assignment: ReservationAssignment | None = None) -> dict:
    return {
        "reservationId": reservation.ReservationID,
        "providerId": reservation.ProviderID,
        "unitTypeId": reservation.UnitTypeID,
        "quantity": reservation.Quantity,
        "startDate": _as_utc(reservation.StartDate),
        "endDate": _as_utc(reservation.EndDate),
        "status": reservation.Status,
        "expiresAt": _as_utc(reservation.ExpiresAt),
        "expiredAt": _as_utc(reservation.ExpiredAt),
        "customer": {
            "name": reservation.CustomerName,
            "email": reservation.CustomerEmail,
            "phone": reservation.CustomerPhone,
        },
        "totalPrice": float(reservation.TotalPrice) if reservation.TotalPrice is not None else None,
        "depositPaid": bool(reservation.DepositPaid),
        "paymentReference": reservation.PaymentReference,
        "paidAt": _as_utc(reservation.PaidAt),
        "notes": reservation.Notes,
        "createdDate": _as_utc(reservation.CreatedDate),
        "updatedDate": _as_utc(reservation.UpdatedDate),
        "assignment": {
            "assetId": assignment.AssetID,
            "assignedAt": _as_utc(assignment.AssignedAt),
        } if assignment else None,
    }


class ReservationService:
    """Hold/booking core over the reservation ledger.

    Every operation opens its own session and releases it on all exit paths;
    no state is shared between calls apart from the database.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as db:
                yield db
        except IntegrityError:
            raise
        except DBAPIError as exc:
            if _is_transient(exc):
                raise TransientError("Reservation ledger is temporarily unavailable.") from exc
            raise

    def _with_transient_retry(self, label: str, attempt: Callable[[], Any]) -> Any:
        retries = 0
        while True:
            try:
                return attempt()
            except TransientError:
                if retries >= MAX_TRANSIENT_RETRIES:
                    RESERVATION_LOGGER.error("%s failed after %s retry", label, retries)
                    raise
                retries += 1
                RESERVATION_LOGGER.warning("%s hit a transient failure, retrying", label)

    def _load(self, db: Session, reservation_id: str, *, lock: bool = False) -> Reservation:
        stmt = select(Reservation).where(Reservation.ReservationID == reservation_id)
        if lock:
            stmt = stmt.with_for_update()
        reservation = db.execute(stmt).scalars().first()
        if not reservation:
            raise NotFoundError("Reservation not found.")
        return reservation

    @staticmethod
    def _authorize(actor: dict | None, provider_id: str) -> None:
        if actor is not None:
            require_provider_access(actor, provider_id)

    # Availability

    def get_availability(
        self,
        unit_type_id: str,
        start_date: datetime,
        end_date: datetime,
        quantity: int = 1,
        exclude_reservation_id: str | None = None,
        actor: dict | None = None,
    ) -> AvailabilityResult:
        start = to_ledger_time(start_date)
        end = to_ledger_time(end_date)
        if not start < end:
            raise ValidationError("endDate must be after startDate.")
        if quantity < MIN_QUANTITY:
            raise ValidationError(f"quantity must be at least {MIN_QUANTITY}.")
        with self._unit_of_work() as db:
            if actor is not None:
                self._authorize(actor, get_live_unit_type(db, unit_type_id).ProviderID)
            return get_availability(db, unit_type_id, start, end, quantity, exclude_reservation_id)

    def check_availability(
        self,
        unit_type_id: str,
        start_date: datetime,
        end_date: datetime,
        exclude_reservation_id: str | None = None,
        quantity: int = 1,
    ) -> bool:
        return self.get_availability(
            unit_type_id, start_date, end_date, quantity, exclude_reservation_id
        ).is_available

    # Hold protocol

    def create_hold(self, request: CreateHoldRequest, actor: dict | None = None) -> HoldResult:
        self._authorize(actor, request.providerId)
        idempotency_key = request.idempotencyKey or uuid.uuid4().hex
        return self._with_transient_retry(
            "create_hold",
            lambda: self._create_hold_once(request, idempotency_key, session_user_id(actor)),
        )

    def _find_by_idempotency_key(self, db: Session, idempotency_key: str) -> Reservation | None:
        return db.execute(
            select(Reservation).where(Reservation.IdempotencyKey == idempotency_key)
        ).scalars().first()

    def _create_hold_once(self, request: CreateHoldRequest, idempotency_key: str, actor_id: str | None) -> HoldResult:
        now = self._clock()
        try:
            with self._unit_of_work() as db:
                existing = self._find_by_idempotency_key(db, idempotency_key)
                if existing:
                    RESERVATION_LOGGER.info("Idempotent replay for key %s", idempotency_key)
                    return HoldResult.from_reservation(existing, idempotent=True)

                start = to_ledger_time(request.startDate)
                end = to_ledger_time(request.endDate)
                validate_hold_window(start, end, request.quantity, now)

                unit_type = get_live_unit_type(db, request.unitTypeId, lock=True)
                # A twin request may have committed while this one waited on the lock.
                existing = self._find_by_idempotency_key(db, idempotency_key)
                if existing:
                    RESERVATION_LOGGER.info("Idempotent replay for key %s after lock wait", idempotency_key)
                    return HoldResult.from_reservation(existing, idempotent=True)
                if unit_type.ProviderID != request.providerId:
                    raise ValidationError("Unit type does not belong to this provider.")

                availability = AvailabilityResult(
                    unit_type_id=unit_type.UnitTypeID,
                    total=int(unit_type.QuantityTotal or 0),
                    committed=committed_quantity(db, unit_type.UnitTypeID, start, end),
                    requested=request.quantity,
                )
                if not availability.is_available:
                    raise ConflictError(
                        "Insufficient availability for the requested dates.",
                        code="insufficient_quantity",
                        details=availability.to_dict(),
                    )

                customer = request.customer
                reservation = Reservation(
                    ReservationID=str(uuid.uuid4()),
                    ProviderID=request.providerId,
                    UnitTypeID=unit_type.UnitTypeID,
                    Quantity=request.quantity,
                    StartDate=start,
                    EndDate=end,
                    Status=HOLD,
                    ExpiresAt=now + HOLD_DURATION,
                    CustomerName=customer.name,
                    CustomerEmail=customer.email or None,
                    CustomerPhone=customer.phone or None,
                    TotalPrice=request.totalPrice,
                    DepositPaid=bool(request.depositPaid),
                    IdempotencyKey=idempotency_key,
                    Notes=(request.notes or "").strip() or None,
                    CreatedBy=actor_id,
                    CreatedDate=now,
                    UpdatedDate=now,
                )
                db.add(reservation)
                db.flush()
                log_audit(
                    db,
                    "Reservation",
                    reservation.ReservationID,
                    "CreateHold",
                    f"quantity={request.quantity} window={start.isoformat()}..{end.isoformat()}",
                    user_id=actor_id,
                    now=now,
                )
                result = HoldResult.from_reservation(reservation, idempotent=False)
        except IntegrityError:
            # A twin request with the same key committed first; hand back its row.
            with self._unit_of_work() as db:
                winner = self._find_by_idempotency_key(db, idempotency_key)
                if winner:
                    return HoldResult.from_reservation(winner, idempotent=True)
            raise

        RESERVATION_LOGGER.info(
            "Hold %s created for unit type %s (quantity=%s)",
            result.reservation_id,
            request.unitTypeId,
            request.quantity,
        )
        return result

    # Lifecycle transitions

    def _mutate(self, reservation_id: str, actor: dict | None, action: Callable[[Session, Reservation, datetime], dict]) -> dict:
        now = self._clock()
        with self._unit_of_work() as db:
            reservation = self._load(db, reservation_id, lock=True)
            self._authorize(actor, reservation.ProviderID)
            return action(db, reservation, now)

    def confirm(self, reservation_id: str, payment_reference: str | None = None, actor: dict | None = None) -> dict:
        actor_id = session_user_id(actor)

        def _confirm(db: Session, reservation: Reservation, now: datetime) -> dict:
            ensure_hold_active(reservation, now)
            assignment = get_current_assignment(db, reservation.ReservationID)
            if assignment:
                lock_asset(db, assignment.AssetID)
                if has_asset_overlap(
                    db, assignment.AssetID, reservation.StartDate, reservation.EndDate, reservation.ReservationID
                ):
                    raise ConflictError("Reservation overlaps an active booking on its assigned asset.")
            transition_state(reservation, CONFIRMED, now)
            if payment_reference:
                reservation.PaymentReference = payment_reference
                reservation.PaidAt = reservation.PaidAt or now
            log_audit(db, "Reservation", reservation.ReservationID, "Confirm", payment_reference, user_id=actor_id, now=now)
            return serialize_reservation(reservation, assignment)

        return self._mutate(reservation_id, actor, _confirm)

    def cancel(self, reservation_id: str, reason: str | None = None, actor: dict | None = None) -> dict:
        actor_id = session_user_id(actor)

        def _cancel(db: Session, reservation: Reservation, now: datetime) -> dict:
            transition_state(reservation, CANCELLED, now)
            if reason:
                reservation.Notes = _append_note(reservation.Notes, f"Cancelled: {reason}")
            log_audit(db, "Reservation", reservation.ReservationID, "Cancel", reason, user_id=actor_id, now=now)
            return serialize_reservation(reservation, get_current_assignment(db, reservation.ReservationID))

        return self._mutate(reservation_id, actor, _cancel)

    def issue(
        self,
        reservation_id: str,
        override: bool = False,
        override_reason: str | None = None,
        actor: dict | None = None,
    ) -> dict:
        actor_id = session_user_id(actor)

        def _issue(db: Session, reservation: Reservation, now: datetime) -> dict:
            assert_transition(reservation.Status, ACTIVE)
            paid = reservation.PaidAt is not None or bool(reservation.DepositPaid)
            if not paid:
                if not override:
                    raise StateError("Payment or deposit is missing.", code="payment_required")
                if not (override_reason or "").strip():
                    raise ValidationError("Override reason is required.")

            assignment = get_current_assignment(db, reservation.ReservationID)
            if assignment is None:
                candidates = [
                    asset for asset in find_candidate_assets(db, reservation)
                    if asset.Status != ASSET_MAINTENANCE
                ]
                if not candidates:
                    raise ConflictError("No available assets for this reservation.", code="no_assets")
                assignment = assign_asset(db, reservation, candidates[0].AssetID, now, actor_id)
            elif (db.get(Asset, assignment.AssetID).Status or "") == ASSET_MAINTENANCE:
                raise ConflictError("Assigned asset is under maintenance.", code="asset_unavailable")

            transition_state(reservation, ACTIVE, now)
            set_asset_status(db, assignment.AssetID, ASSET_ACTIVE, now)
            details = f"asset={assignment.AssetID}"
            if not paid:
                details = f"{details} override={override_reason.strip()}"
            log_audit(db, "Reservation", reservation.ReservationID, "Issue", details, user_id=actor_id, now=now)
            return serialize_reservation(reservation, assignment)

        return self._mutate(reservation_id, actor, _issue)

    def complete(
        self,
        reservation_id: str,
        damaged: bool = False,
        notes: str | None = None,
        actor: dict | None = None,
    ) -> dict:
        actor_id = session_user_id(actor)

        def _complete(db: Session, reservation: Reservation, now: datetime) -> dict:
            transition_state(reservation, COMPLETED, now)
            reservation.Notes = _append_note(reservation.Notes, notes)
            assignment = get_current_assignment(db, reservation.ReservationID)
            if assignment:
                set_asset_status(db, assignment.AssetID, ASSET_MAINTENANCE if damaged else ASSET_AVAILABLE, now)
            log_audit(
                db,
                "Reservation",
                reservation.ReservationID,
                "Return",
                "damaged" if damaged else "ok",
                user_id=actor_id,
                now=now,
            )
            return serialize_reservation(reservation, assignment)

        return self._mutate(reservation_id, actor, _complete)

    def get_reservation(self, reservation_id: str, actor: dict | None = None) -> dict:
        with self._unit_of_work() as db:
            reservation = self._load(db, reservation_id)
            self._authorize(actor, reservation.ProviderID)
            return serialize_reservation(reservation, get_current_assignment(db, reservation_id))

    # Asset conflict resolution

    def find_candidates(self, reservation_id: str, actor: dict | None = None) -> list[dict]:
        with self._unit_of_work() as db:
            reservation = self._load(db, reservation_id)
            self._authorize(actor, reservation.ProviderID)
            candidates = [serialize_candidate(asset) for asset in find_candidate_assets(db, reservation)]
        if not candidates:
            RESERVATION_LOGGER.warning("No available assets for reservation %s", reservation_id)
        return candidates

    def assign(self, reservation_id: str, asset_id: str, actor: dict | None = None) -> dict:
        actor_id = session_user_id(actor)

        def _assign(db: Session, reservation: Reservation, now: datetime) -> dict:
            assignment = assign_asset(db, reservation, asset_id, now, actor_id)
            log_audit(db, "Reservation", reservation.ReservationID, "AssignAsset", f"asset={asset_id}", user_id=actor_id, now=now)
            return serialize_reservation(reservation, assignment)

        return self._mutate(reservation_id, actor, _assign)

    # Expiry

    def sweep(self) -> SweepResult:
        return sweep_expired_holds(self._session_factory, self._clock)
