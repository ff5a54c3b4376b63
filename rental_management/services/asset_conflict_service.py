from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from rental_management.models.rental_models import Asset, Reservation, ReservationAssignment
from rental_management.services.errors import ConflictError, NotFoundError, StateError, ValidationError
from rental_management.services.reservation_state import ASSIGNMENT_BLOCKING_STATES, is_terminal


ASSET_LOGGER = logging.getLogger("rental_management.assets")

ASSET_AVAILABLE = "available"
ASSET_ACTIVE = "active"
ASSET_MAINTENANCE = "maintenance"


def _busy_asset_ids(
    db: Session,
    asset_ids: list[str] | None,
    start_date: datetime,
    end_date: datetime,
    exclude_reservation_id: str | None = None,
) -> set[str]:
    stmt = (
        select(ReservationAssignment.AssetID)
        .join(Reservation, Reservation.ReservationID == ReservationAssignment.ReservationID)
        .where(Reservation.Status.in_(sorted(ASSIGNMENT_BLOCKING_STATES)))
        .where(Reservation.StartDate < end_date)
        .where(Reservation.EndDate > start_date)
    )
    if asset_ids is not None:
        stmt = stmt.where(ReservationAssignment.AssetID.in_(asset_ids))
    if exclude_reservation_id:
        stmt = stmt.where(Reservation.ReservationID != exclude_reservation_id)
    return {asset_id for asset_id in db.execute(stmt).scalars().all() if asset_id}


def has_asset_overlap(
    db: Session,
    asset_id: str,
    start_date: datetime,
    end_date: datetime,
    exclude_reservation_id: str | None = None,
) -> bool:
    return bool(_busy_asset_ids(db, [asset_id], start_date, end_date, exclude_reservation_id))


def find_candidate_assets(db: Session, reservation: Reservation) -> list[Asset]:
    """Assets of the reservation's unit type that are free for its window, best condition first."""
    assets = db.execute(
        select(Asset).where(Asset.UnitTypeID == reservation.UnitTypeID)
    ).scalars().all()
    if not assets:
        return []

    busy_ids = _busy_asset_ids(
        db,
        [asset.AssetID for asset in assets],
        reservation.StartDate,
        reservation.EndDate,
        exclude_reservation_id=reservation.ReservationID,
    )
    available = [asset for asset in assets if asset.AssetID not in busy_ids]
    available.sort(key=lambda asset: (-int(asset.ConditionScore or 0), asset.AssetTag or "", asset.AssetID))
    return available


def serialize_candidate(asset: Asset) -> dict:
    return {
        "assetId": asset.AssetID,
        "assetTag": asset.AssetTag,
        "status": asset.Status or ASSET_AVAILABLE,
        "conditionScore": int(asset.ConditionScore or 0),
    }


def lock_asset(db: Session, asset_id: str) -> Asset:
    """Row-lock the asset so overlap checks against it are serialized."""
    asset = db.execute(
        select(Asset).where(Asset.AssetID == asset_id).with_for_update()
    ).scalars().first()
    if not asset:
        raise NotFoundError("Asset not found.")
    return asset


def get_current_assignment(db: Session, reservation_id: str) -> ReservationAssignment | None:
    return db.execute(
        select(ReservationAssignment).where(ReservationAssignment.ReservationID == reservation_id)
    ).scalars().first()


def assign_asset(
    db: Session,
    reservation: Reservation,
    asset_id: str,
    now: datetime,
    assigned_by: str | None = None,
) -> ReservationAssignment:
    if is_terminal(reservation.Status):
        raise StateError(
            f"Reservation is {reservation.Status} and can no longer be assigned.",
            code="terminal",
        )

    asset = lock_asset(db, asset_id)
    if asset.UnitTypeID != reservation.UnitTypeID:
        raise ValidationError("Asset does not belong to the reservation's unit type.")
    if has_asset_overlap(db, asset_id, reservation.StartDate, reservation.EndDate, reservation.ReservationID):
        raise ConflictError("Asset overlaps an existing booking for this window.")

    # Rebind is delete-then-insert so the reservation never points at two assets.
    db.execute(
        delete(ReservationAssignment).where(ReservationAssignment.ReservationID == reservation.ReservationID)
    )
    db.flush()
    assignment = ReservationAssignment(
        ReservationID=reservation.ReservationID,
        AssetID=asset_id,
        AssignedAt=now,
        AssignedBy=assigned_by,
    )
    db.add(assignment)
    db.flush()
    ASSET_LOGGER.info("Asset %s assigned to reservation %s", asset_id, reservation.ReservationID)
    return assignment


def set_asset_status(db: Session, asset_id: str, status: str, now: datetime) -> Asset | None:
    asset = db.get(Asset, asset_id)
    if asset:
        asset.Status = status
        asset.UpdatedDate = now
    return asset
