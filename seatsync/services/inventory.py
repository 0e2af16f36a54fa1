"""Durable seat inventory: vehicles, seats and per-departure-date seat records.

Functions take the caller's session; transaction boundaries belong to the
services that call them.
"""
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, select as sa_select
from sqlalchemy.ext.asyncio import AsyncSession

from seatsync.models.models import (
    Booking,
    BookingStatus,
    Route,
    Seat,
    SeatDepartureBooking,
    SeatStatus,
    Vehicle,
)


def is_live(record: Optional[SeatDepartureBooking], now: datetime) -> bool:
    """A record blocks the seat if it is booked, or a hold that has not expired yet."""
    if record is None:
        return False
    if record.status == SeatStatus.BOOKED:
        return True
    return record.expires_at is not None and record.expires_at > now


async def provision_vehicle(
    db: AsyncSession,
    code: str,
    seat_labels: Sequence[str],
    seat_class: str = "regular",
    description: Optional[str] = None,
) -> Vehicle:
    vehicle = Vehicle(code=code, description=description, capacity=len(seat_labels))
    db.add(vehicle)
    await db.flush()
    for index, label in enumerate(seat_labels):
        db.add(Seat(vehicle_id=vehicle.id, label=str(label), index=index, seat_class=seat_class))
    await db.flush()
    return vehicle


async def get_route(db: AsyncSession, route_id: int) -> Optional[Route]:
    res = await db.execute(sa_select(Route).where(Route.id == route_id))
    return res.scalars().first()


async def route_ids_for_vehicle(db: AsyncSession, vehicle_id: int) -> List[int]:
    res = await db.execute(sa_select(Route.id).where(Route.vehicle_id == vehicle_id).order_by(Route.id))
    return list(res.scalars().all())


async def list_seats(db: AsyncSession, vehicle_id: int) -> List[Seat]:
    res = await db.execute(sa_select(Seat).where(Seat.vehicle_id == vehicle_id).order_by(Seat.index))
    return list(res.scalars().all())


async def get_seat(db: AsyncSession, vehicle_id: int, seat_label: str) -> Optional[Seat]:
    stmt = sa_select(Seat).where(Seat.vehicle_id == vehicle_id, Seat.label == seat_label)
    res = await db.execute(stmt)
    return res.scalars().first()


async def get_departure_record(db: AsyncSession, seat_id: int, departure_date: date) -> Optional[SeatDepartureBooking]:
    stmt = sa_select(SeatDepartureBooking).where(
        SeatDepartureBooking.seat_id == seat_id,
        SeatDepartureBooking.departure_date == departure_date,
    )
    res = await db.execute(stmt)
    return res.scalars().first()


async def list_departure_records(db: AsyncSession, vehicle_id: int, departure_date: date) -> Dict[str, SeatDepartureBooking]:
    stmt = (
        sa_select(Seat.label, SeatDepartureBooking)
        .join(SeatDepartureBooking, SeatDepartureBooking.seat_id == Seat.id)
        .where(Seat.vehicle_id == vehicle_id, SeatDepartureBooking.departure_date == departure_date)
    )
    res = await db.execute(stmt)
    return {label: record for label, record in res.all()}


async def upsert_hold(
    db: AsyncSession,
    seat: Seat,
    departure_date: date,
    user_id: str,
    held_at: datetime,
    expires_at: datetime,
    existing: Optional[SeatDepartureBooking] = None,
) -> SeatDepartureBooking:
    """Write a SELECTED record, reusing the (seat, date) row when one is present.

    Callers must already have established that ``existing`` is absent, expired,
    or owned by ``user_id``; the unique (seat, date) constraint rejects any
    concurrent second insert.
    """
    record = existing
    if record is None:
        record = SeatDepartureBooking(seat_id=seat.id, departure_date=departure_date)
        db.add(record)
    record.user_id = user_id
    record.status = SeatStatus.SELECTED
    record.booking_id = None
    record.held_at = held_at
    record.expires_at = expires_at
    await db.flush()
    return record


async def promote_to_booked(db: AsyncSession, record: SeatDepartureBooking, booking: Booking, now: datetime) -> None:
    record.status = SeatStatus.BOOKED
    record.booking_id = booking.id
    record.held_at = record.held_at or now
    record.expires_at = None


async def delete_record(db: AsyncSession, record: SeatDepartureBooking) -> None:
    await db.delete(record)
    await db.flush()


def _scope_filters(vehicle_ids: Optional[Iterable[int]], departure_date: Optional[date]):
    filters = []
    if vehicle_ids is not None:
        filters.append(Seat.vehicle_id.in_(list(vehicle_ids)))
    if departure_date is not None:
        filters.append(SeatDepartureBooking.departure_date == departure_date)
    return filters


async def find_expired_holds(
    db: AsyncSession,
    now: datetime,
    vehicle_ids: Optional[Iterable[int]] = None,
    departure_date: Optional[date] = None,
    limit: int = 500,
) -> List[Tuple[int, date, str]]:
    """(vehicle_id, departure_date, seat_label) of SELECTED records past their expiry."""
    stmt = (
        sa_select(Seat.vehicle_id, SeatDepartureBooking.departure_date, Seat.label)
        .join(Seat, Seat.id == SeatDepartureBooking.seat_id)
        .where(
            SeatDepartureBooking.status == SeatStatus.SELECTED,
            SeatDepartureBooking.expires_at.is_not(None),
            SeatDepartureBooking.expires_at <= now,
            *_scope_filters(vehicle_ids, departure_date),
        )
        .order_by(SeatDepartureBooking.expires_at)
        .limit(limit)
    )
    res = await db.execute(stmt)
    return [(vehicle_id, day, label) for vehicle_id, day, label in res.all()]


async def find_orphaned_records(
    db: AsyncSession,
    vehicle_ids: Optional[Iterable[int]] = None,
    departure_date: Optional[date] = None,
    limit: int = 500,
) -> List[Tuple[SeatDepartureBooking, Seat]]:
    """Records marking a seat unavailable with nothing to back them.

    That is a hold with no expiry, or a booked seat whose booking is missing
    or cancelled.
    """
    stmt = (
        sa_select(SeatDepartureBooking, Seat)
        .join(Seat, Seat.id == SeatDepartureBooking.seat_id)
        .outerjoin(Booking, Booking.id == SeatDepartureBooking.booking_id)
        .where(
            or_(
                and_(
                    SeatDepartureBooking.status == SeatStatus.SELECTED,
                    SeatDepartureBooking.expires_at.is_(None),
                ),
                and_(
                    SeatDepartureBooking.status == SeatStatus.BOOKED,
                    or_(Booking.id.is_(None), Booking.status == BookingStatus.CANCELLED),
                ),
                SeatDepartureBooking.status.not_in([SeatStatus.SELECTED, SeatStatus.BOOKED]),
            ),
            *_scope_filters(vehicle_ids, departure_date),
        )
        .limit(limit)
    )
    res = await db.execute(stmt)
    return [(record, seat) for record, seat in res.all()]


async def find_bookings_by_payment_ref(
    db: AsyncSession, payment_ref: str, route_id: int, departure_date: date
) -> List[Booking]:
    stmt = sa_select(Booking).where(
        Booking.payment_ref == payment_ref,
        Booking.route_id == route_id,
        Booking.departure_date == departure_date,
        Booking.status == BookingStatus.CONFIRMED,
    )
    res = await db.execute(stmt)
    return list(res.scalars().all())
