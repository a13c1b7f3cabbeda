import enum

from sqlalchemy import Boolean, Column, DateTime, Enum, ForeignKey, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from db.base import Base


class RentalStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    DECLINED = "declined"
    CANCELLED = "cancelled"


OPEN_RENTAL_STATUSES = frozenset({RentalStatus.PENDING, RentalStatus.ACTIVE})
TERMINAL_RENTAL_STATUSES = frozenset({RentalStatus.COMPLETED, RentalStatus.DECLINED, RentalStatus.CANCELLED})


class ProtectionType(str, enum.Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


class ReturnStatus(str, enum.Enum):
    SCHEDULED = "scheduled"
    MEETING_CONFIRMED = "meeting_confirmed"
    TIME_CHANGE_REQUESTED = "time_change_requested"
    READY_FOR_PICKUP = "ready_for_pickup"
    COMPLETED = "completed"
    DAMAGE_REPORTED = "damage_reported"
    DISPUTE_OPEN = "dispute_open"
    RESOLVED = "resolved"


class DepositStatus(str, enum.Enum):
    NOT_REQUIRED = "not_required"
    PENDING = "pending"
    HELD = "held"
    RELEASED = "released"
    PARTIALLY_CHARGED = "partially_charged"
    FULLY_CHARGED = "fully_charged"


class DepositTransactionType(str, enum.Enum):
    HOLD = "hold"
    RELEASE = "release"
    PARTIAL_CHARGE = "partial_charge"
    FULL_CHARGE = "full_charge"


class ExtensionStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"


class DisputeOutcome(str, enum.Enum):
    CLEARED = "cleared"
    PARTIAL_CHARGE = "partial_charge"
    FULL_CHARGE = "full_charge"


def _enum_type(enum_cls: type[enum.Enum], length: int = 30) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        validate_strings=True,
        values_callable=lambda members: [member.value for member in members],
    )


class GearListing(Base):
    __tablename__ = "GearListings"

    GearID = Column(Integer, primary_key=True)
    OwnerID = Column(String(64), nullable=False, index=True)
    Title = Column(String(255))
    DailyRate = Column(Numeric(10, 2), nullable=False, default=0)
    DepositAmount = Column(Numeric(10, 2), nullable=False, default=0)
    IsAvailable = Column(Boolean, nullable=False, default=True)
    ReservationVersion = Column(Integer, nullable=False, default=0)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())

    Reservations = relationship("Reservation", back_populates="Gear")


class RentalRequest(Base):
    __tablename__ = "RentalRequests"

    RentalID = Column(Integer, primary_key=True)
    RenterID = Column(String(64), nullable=False, index=True)
    GearID = Column(Integer, ForeignKey("GearListings.GearID"), nullable=False, index=True)
    OwnerID = Column(String(64), nullable=False, index=True)
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    Location = Column(String(500))
    ProtectionType = Column(_enum_type(ProtectionType), nullable=False, default=ProtectionType.STANDARD)
    InsuranceCost = Column(Numeric(10, 2), nullable=False, default=0)
    DailyRate = Column(Numeric(10, 2), nullable=False)
    Status = Column(_enum_type(RentalStatus), nullable=False, default=RentalStatus.PENDING, index=True)
    ReturnStatus = Column(_enum_type(ReturnStatus))
    MeetingTime = Column(DateTime)
    MeetingProposedBy = Column(String(64))
    InspectionNotes = Column(String(2000))
    DamageDescription = Column(String(2000))
    DamagePhotos = Column(String(4000))
    DisputeNotes = Column(String(2000))
    DisputeOutcome = Column(_enum_type(DisputeOutcome))
    DepositAmount = Column(Numeric(10, 2), nullable=False, default=0)
    DepositStatus = Column(_enum_type(DepositStatus), nullable=False, default=DepositStatus.NOT_REQUIRED)
    DepositChargedAmount = Column(Numeric(10, 2), nullable=False, default=0)
    DepositHeldAt = Column(DateTime)
    DepositReleasedAt = Column(DateTime)
    PayoutID = Column(Integer, ForeignKey("Payouts.PayoutID"), index=True)
    CompletedAt = Column(DateTime)
    CreatedDate = Column(DateTime, server_default=func.now())
    UpdatedDate = Column(DateTime, server_default=func.now())
    Version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": Version}

    Gear = relationship("GearListing")
    Reservation = relationship("Reservation", back_populates="Rental", uselist=False)
    DepositTransactions = relationship(
        "DepositTransaction",
        back_populates="Rental",
        order_by="DepositTransaction.TransactionID",
    )
    ExtensionRequests = relationship(
        "ExtensionRequest",
        back_populates="Rental",
        order_by="ExtensionRequest.ExtensionID",
    )
    Ratings = relationship("Rating", back_populates="Rental", order_by="Rating.RatingID")
    Payout = relationship("Payout", back_populates="Rentals")


class Reservation(Base):
    __tablename__ = "Reservations"

    ReservationID = Column(Integer, primary_key=True)
    GearID = Column(Integer, ForeignKey("GearListings.GearID"), nullable=False, index=True)
    RentalID = Column(Integer, ForeignKey("RentalRequests.RentalID"), nullable=False, unique=True)
    StartTime = Column(DateTime, nullable=False)
    EndTime = Column(DateTime, nullable=False)
    IsActive = Column(Boolean, nullable=False, default=True)
    CreatedDate = Column(DateTime, server_default=func.now())
    ReleasedAt = Column(DateTime)

    Gear = relationship("GearListing", back_populates="Reservations")
    Rental = relationship("RentalRequest", back_populates="Reservation")


class DepositTransaction(Base):
    __tablename__ = "DepositTransactions"

    TransactionID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("RentalRequests.RentalID"), nullable=False, index=True)
    TransactionType = Column(_enum_type(DepositTransactionType), nullable=False)
    Amount = Column(Numeric(10, 2), nullable=False)
    Reason = Column(String(500))
    Notes = Column(String(1000))
    ActorID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())

    Rental = relationship("RentalRequest", back_populates="DepositTransactions")


class ExtensionRequest(Base):
    __tablename__ = "ExtensionRequests"

    ExtensionID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("RentalRequests.RentalID"), nullable=False, index=True)
    RequesterID = Column(String(64), nullable=False)
    AdditionalDays = Column(Integer, nullable=False)
    NewEndTime = Column(DateTime, nullable=False)
    ExtensionCost = Column(Numeric(10, 2), nullable=False)
    Status = Column(_enum_type(ExtensionStatus), nullable=False, default=ExtensionStatus.PENDING)
    Notes = Column(String(1000))
    RequestedAt = Column(DateTime, server_default=func.now())
    ResolvedAt = Column(DateTime)
    Version = Column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": Version}

    Rental = relationship("RentalRequest", back_populates="ExtensionRequests")


class Payout(Base):
    __tablename__ = "Payouts"

    PayoutID = Column(Integer, primary_key=True)
    OwnerID = Column(String(64), nullable=False, index=True)
    PeriodStart = Column(DateTime, nullable=False)
    PeriodEnd = Column(DateTime, nullable=False)
    TotalAmount = Column(Numeric(10, 2), nullable=False)
    FeeAmount = Column(Numeric(10, 2), nullable=False)
    NetAmount = Column(Numeric(10, 2), nullable=False)
    Status = Column(_enum_type(PayoutStatus), nullable=False, default=PayoutStatus.PENDING)
    Notes = Column(String(1000))
    CreatedAt = Column(DateTime, server_default=func.now())
    InitiatedAt = Column(DateTime)
    CompletedAt = Column(DateTime)

    Rentals = relationship("RentalRequest", back_populates="Payout")


class Rating(Base):
    __tablename__ = "Ratings"
    __table_args__ = (UniqueConstraint("RentalID", "RaterID", name="UQ_Ratings_Rental_Rater"),)

    RatingID = Column(Integer, primary_key=True)
    RentalID = Column(Integer, ForeignKey("RentalRequests.RentalID"), nullable=False)
    RaterID = Column(String(64), nullable=False)
    Rating = Column(Integer, nullable=False)
    Review = Column(String(2000))
    CreatedAt = Column(DateTime, server_default=func.now())

    Rental = relationship("RentalRequest", back_populates="Ratings")


class AuditLog(Base):
    __tablename__ = "AuditLogs"

    AuditID = Column(Integer, primary_key=True)
    EntityType = Column(String(50), nullable=False)
    EntityID = Column(Integer, nullable=False)
    Action = Column(String(100), nullable=False)
    Details = Column(String(2000))
    ActorID = Column(String(64))
    CreatedAt = Column(DateTime, server_default=func.now())


class NotificationQueue(Base):
    __tablename__ = "NotificationQueue"

    NotificationID = Column(Integer, primary_key=True)
    RentalID = Column(Integer)
    NotificationType = Column(String(50), nullable=False)
    Payload = Column(String(2000))
    Attempts = Column(Integer, nullable=False, default=0)
    LastError = Column(String(500))
    CreatedAt = Column(DateTime, server_default=func.now())
    SentAt = Column(DateTime)
