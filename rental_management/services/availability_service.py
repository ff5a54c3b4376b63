from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from rental_management.models.rental_models import Reservation, UnitType
from rental_management.services.errors import NotFoundError
from rental_management.services.reservation_state import CAPACITY_STATES


@dataclass
class AvailabilityResult:
    unit_type_id: str
    total: int
    committed: int
    requested: int

    @property
    def available(self) -> int:
        return max(0, self.total - self.committed)

    @property
    def is_available(self) -> bool:
        return self.requested <= self.available

    def to_dict(self) -> dict:
        return {
            "unitTypeId": self.unit_type_id,
            "total": self.total,
            "committed": self.committed,
            "available": self.available,
            "requestedQuantity": self.requested,
            "isAvailable": self.is_available,
        }


def windows_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval test: [a) and [b) share at least one instant."""
    return start_a < end_b and end_a > start_b


def get_live_unit_type(db: Session, unit_type_id: str, *, lock: bool = False) -> UnitType:
    stmt = select(UnitType).where(UnitType.UnitTypeID == unit_type_id)
    if lock:
        stmt = stmt.with_for_update()
    unit_type = db.execute(stmt).scalars().first()
    if not unit_type or unit_type.DeletedAt is not None:
        raise NotFoundError("Unit type not found.")
    return unit_type


def committed_quantity(
    db: Session,
    unit_type_id: str,
    start_date: datetime,
    end_date: datetime,
    exclude_reservation_id: str | None = None,
) -> int:
    stmt = (
        select(func.coalesce(func.sum(Reservation.Quantity), 0))
        .where(Reservation.UnitTypeID == unit_type_id)
        .where(Reservation.Status.in_(sorted(CAPACITY_STATES)))
        .where(Reservation.StartDate < end_date)
        .where(Reservation.EndDate > start_date)
    )
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return int(db.execute(stmt).scalar() or 0)


def get_availability(
    db: Session,
    unit_type_id: str,
    start_date: datetime,
    end_date: datetime,
    quantity: int = 1,
    exclude_reservation_id: str | None = None,
) -> AvailabilityResult:
    unit_type = get_live_unit_type(db, unit_type_id)
    return AvailabilityResult(
        unit_type_id=unit_type_id,
        total=int(unit_type.QuantityTotal or 0),
        committed=committed_quantity(db, unit_type_id, start_date, end_date, exclude_reservation_id),
        requested=int(quantity),
    )
