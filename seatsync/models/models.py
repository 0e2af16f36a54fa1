from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Numeric,
    JSON,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from seatsync.db.base import Base


class SeatStatus:
    """Status of a per-departure-date seat record. No record means available."""

    SELECTED = "SELECTED"
    BOOKED = "BOOKED"


class BookingStatus:
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class TransactionStatus:
    INITIATED = "initiated"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class Vehicle(Base):
    __tablename__ = "vehicles"
    id = Column(Integer, primary_key=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    description = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    seats = relationship("Seat", back_populates="vehicle", order_by="Seat.index")
    routes = relationship("Route", back_populates="vehicle")


class Seat(Base):
    __tablename__ = "seats"
    id = Column(Integer, primary_key=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    label = Column(String(16), nullable=False)
    index = Column(Integer, nullable=False, default=0)
    seat_class = Column(String(32), nullable=False, default="regular")

    vehicle = relationship("Vehicle", back_populates="seats")
    departure_bookings = relationship("SeatDepartureBooking", back_populates="seat")

    __table_args__ = (UniqueConstraint("vehicle_id", "label", name="uq_vehicle_seat_label"),)


class Route(Base):
    __tablename__ = "routes"
    id = Column(Integer, primary_key=True)
    name = Column(String(255), nullable=False)
    origin = Column(String(128), nullable=True)
    destination = Column(String(128), nullable=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="CASCADE"), nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    vehicle = relationship("Vehicle", back_populates="routes")


class SeatDepartureBooking(Base):
    """One seat's state for one departure date (SELECTED hold or BOOKED)."""

    __tablename__ = "seat_departure_bookings"
    id = Column(Integer, primary_key=True)
    seat_id = Column(Integer, ForeignKey("seats.id", ondelete="CASCADE"), nullable=False, index=True)
    departure_date = Column(Date, nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    booking_id = Column(Integer, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(String(16), nullable=False, default=SeatStatus.SELECTED)
    held_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    seat = relationship("Seat", back_populates="departure_bookings")
    booking = relationship("Booking")

    __table_args__ = (
        UniqueConstraint("seat_id", "departure_date", name="uq_seat_departure_date"),
        Index("ix_seat_departure_status_expiry", "status", "expires_at"),
    )


class Booking(Base):
    __tablename__ = "bookings"
    id = Column(Integer, primary_key=True)
    booking_ref = Column(String(32), nullable=False, unique=True, index=True)
    group_ref = Column(String(64), nullable=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    route_id = Column(Integer, ForeignKey("routes.id", ondelete="SET NULL"), nullable=True, index=True)
    vehicle_id = Column(Integer, ForeignKey("vehicles.id", ondelete="SET NULL"), nullable=True)
    departure_date = Column(Date, nullable=False)
    seat_labels = Column(JSON, nullable=False, default=list)
    passengers = Column(JSON, nullable=True)
    payment_ref = Column(String(255), nullable=True, index=True)
    status = Column(String(32), nullable=False, default=BookingStatus.CONFIRMED, index=True)
    booked_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"
    id = Column(Integer, primary_key=True)
    provider = Column(String(64), nullable=False)
    intent_id = Column(String(255), nullable=False, unique=True)
    reference = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(8), nullable=False, default="USD")
    status = Column(String(32), nullable=False, default=TransactionStatus.INITIATED, index=True)
    meta = Column(JSON, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    settled_at = Column(DateTime, nullable=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"
    id = Column(Integer, primary_key=True)
    actor_id = Column(String(64), nullable=True, index=True)
    action = Column(String(255), nullable=False)
    object_type = Column(String(128), nullable=True)
    object_id = Column(String(128), nullable=True)
    detail = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
