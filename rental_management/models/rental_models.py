from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from rental_management.db.base import Base


class UnitType(Base):
    __tablename__ = "UnitTypes"

    UnitTypeID = Column(String(36), primary_key=True)
    ProviderID = Column(String(36), nullable=False, index=True)
    Name = Column(String(255), nullable=False)
    QuantityTotal = Column(Integer, nullable=False, default=0)
    DeletedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="UnitType")
    Assets = relationship("Asset", back_populates="UnitType")


class Reservation(Base):
    __tablename__ = "Reservations"
    __table_args__ = (
        CheckConstraint("Quantity >= 1", name="ck_reservations_quantity_positive"),
        CheckConstraint("StartDate < EndDate", name="ck_reservations_window"),
    )

    ReservationID = Column(String(36), primary_key=True)
    ProviderID = Column(String(36), nullable=False, index=True)
    UnitTypeID = Column(String(36), ForeignKey("UnitTypes.UnitTypeID"), nullable=False, index=True)
    Quantity = Column(Integer, nullable=False, default=1)
    StartDate = Column(DateTime, nullable=False)
    EndDate = Column(DateTime, nullable=False)
    Status = Column(String(20), nullable=False, default="hold", index=True)
    ExpiresAt = Column(DateTime)
    ExpiredAt = Column(DateTime)
    CustomerName = Column(String(200), nullable=False)
    CustomerEmail = Column(String(255))
    CustomerPhone = Column(String(30))
    TotalPrice = Column(Numeric(10, 2))
    DepositPaid = Column(Boolean, nullable=False, default=False)
    PaymentReference = Column(String(255))
    PaidAt = Column(DateTime)
    IdempotencyKey = Column(String(255), nullable=False, unique=True)
    Notes = Column(Text)
    CreatedBy = Column(String(64))
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    UnitType = relationship("UnitType", back_populates="Reservations")
    Assignment = relationship("ReservationAssignment", back_populates="Reservation", uselist=False)


class Asset(Base):
    __tablename__ = "Assets"
    __table_args__ = (
        CheckConstraint("ConditionScore BETWEEN 0 AND 100", name="ck_assets_condition_score"),
    )

    AssetID = Column(String(36), primary_key=True)
    UnitTypeID = Column(String(36), ForeignKey("UnitTypes.UnitTypeID"), nullable=False, index=True)
    AssetTag = Column(String(100))
    Status = Column(String(20), nullable=False, default="available")
    ConditionScore = Column(Integer, nullable=False, default=100)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    UnitType = relationship("UnitType", back_populates="Assets")
    Assignments = relationship("ReservationAssignment", back_populates="Asset")


class ReservationAssignment(Base):
    __tablename__ = "ReservationAssignments"

    AssignmentID = Column(Integer, primary_key=True, autoincrement=True)
    ReservationID = Column(String(36), ForeignKey("Reservations.ReservationID"), nullable=False, unique=True)
    AssetID = Column(String(36), ForeignKey("Assets.AssetID"), nullable=False, index=True)
    AssignedAt = Column(DateTime, nullable=False)
    AssignedBy = Column(String(64))

    Reservation = relationship("Reservation", back_populates="Assignment")
    Asset = relationship("Asset", back_populates="Assignments")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True, autoincrement=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(String(36), nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    UserID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())


class CronRun(Base):
    __tablename__ = "CronRuns"

    CronRunID = Column(Integer, primary_key=True, autoincrement=True)
    CronName = Column(String(100), nullable=False, index=True)
    Status = Column(String(20), nullable=False)
    RowsAffected = Column(Integer, nullable=False, default=0)
    ErrorMessage = Column(String(2000))
    StartedAt = Column(DateTime, nullable=False)
    FinishedAt = Column(DateTime)
