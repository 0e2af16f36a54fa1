import re
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select as sa_select

from seatsync.errors import HoldExpired, InvalidInput, NoHold, PartialConfirmation, SeatBooked, SeatHeld, StorageError
from seatsync.models import Booking, PaymentTransaction, SeatDepartureBooking, SeatStatus, TransactionStatus
from seatsync.services.finalizer import LegRequest, generate_booking_ref
from seatsync.services.hold_cache import HoldRef

from conftest import RETURN_DATE, TRAVEL_DATE


def leg(route_id, labels, day=TRAVEL_DATE):
    return LegRequest(route_id, day, list(labels), [{"name": f"P{i}"} for i, _ in enumerate(labels)])


async def records(services, **filters):
    async with services.session_factory() as db:
        res = await db.execute(sa_select(SeatDepartureBooking).filter_by(**filters))
        return list(res.scalars().all())


async def booking_count(services):
    async with services.session_factory() as db:
        return (await db.execute(sa_select(func.count()).select_from(Booking))).scalar_one()


def test_booking_ref_format(clock):
    ref = generate_booking_ref("BK", clock.now)
    assert re.fullmatch(r"BK-260301-[A-Z0-9]{6}", ref)


@pytest.mark.asyncio
async def test_finalize_promotes_holds_and_clears_mirror(services, seeded):
    await services.holds.hold_many("alice", seeded.route_id, ["3", "4"], TRAVEL_DATE)

    result = await services.finalizer.finalize("alice", leg(seeded.route_id, ["3", "4"]))

    assert result.confirmed_seats == ["3", "4"]
    booked = await records(services, status=SeatStatus.BOOKED)
    assert len(booked) == 2
    assert all(r.expires_at is None and r.booking_id is not None for r in booked)
    assert await services.cache.get_hold(HoldRef(seeded.vehicle_id, TRAVEL_DATE, "3")) is None
    booked_events = [e for e in services.broadcaster.events if e.status == "booked"]
    assert {e.seat_label for e in booked_events} == {"3", "4"}
    assert all(e.booking_ref == result.booking_ref for e in booked_events)


@pytest.mark.asyncio
async def test_finalize_is_all_or_nothing_per_leg(services, seeded):
    await services.holds.hold("alice", seeded.route_id, "3", TRAVEL_DATE)
    await services.holds.hold("bob", seeded.route_id, "4", TRAVEL_DATE)

    with pytest.raises(SeatHeld):
        await services.finalizer.finalize("alice", leg(seeded.route_id, ["3", "4"]))

    assert await records(services, status=SeatStatus.BOOKED) == []
    assert await booking_count(services) == 0


@pytest.mark.asyncio
async def test_finalize_failure_codes(services, seeded, clock):
    with pytest.raises(NoHold):
        await services.finalizer.finalize("alice", leg(seeded.route_id, ["9"]))

    await services.holds.hold("alice", seeded.route_id, "10", TRAVEL_DATE)
    clock.advance(minutes=16)
    with pytest.raises(HoldExpired):
        await services.finalizer.finalize("alice", leg(seeded.route_id, ["10"]))

    await services.holds.hold("bob", seeded.route_id, "11", TRAVEL_DATE)
    await services.finalizer.finalize("bob", leg(seeded.route_id, ["11"]))
    with pytest.raises(SeatBooked):
        await services.finalizer.finalize("alice", leg(seeded.route_id, ["11"]))


@pytest.mark.asyncio
async def test_finalize_validates_request(services, seeded):
    with pytest.raises(InvalidInput):
        await services.finalizer.finalize("alice", LegRequest(seeded.route_id, TRAVEL_DATE, [], []))
    with pytest.raises(InvalidInput):
        await services.finalizer.finalize("alice", leg(seeded.route_id, ["1", "1"]))
    with pytest.raises(InvalidInput):
        await services.finalizer.finalize("alice", LegRequest(seeded.route_id, TRAVEL_DATE, ["1", "2"], [{}]))


@pytest.mark.asyncio
async def test_replayed_payment_ref_returns_same_booking(services, seeded):
    await services.holds.hold("alice", seeded.route_id, "12", TRAVEL_DATE)
    first = await services.finalizer.finalize("alice", leg(seeded.route_id, ["12"]), payment_ref="pay-1")
    events_after_first = len(services.broadcaster.events)

    again = await services.finalizer.finalize("alice", leg(seeded.route_id, ["12"]), payment_ref="pay-1")

    assert again.replayed is True
    assert again.booking_ref == first.booking_ref
    assert await booking_count(services) == 1
    assert len(await records(services, status=SeatStatus.BOOKED)) == 1
    assert len(services.broadcaster.events) == events_after_first


@pytest.mark.asyncio
async def test_round_trip_failure_releases_only_seats_it_took(services, seeded):
    await services.holds.hold("alice", seeded.route_id, "1", TRAVEL_DATE)
    services.finalizer.finalize = AsyncMock(side_effect=StorageError("db down"))

    with pytest.raises(StorageError):
        await services.finalizer.finalize_round_trip(
            "alice",
            leg(seeded.route_id, ["1", "2"], TRAVEL_DATE),
            leg(seeded.return_route_id, ["1"], RETURN_DATE),
        )

    snapshot = await services.projector.snapshot(seeded.vehicle_id, TRAVEL_DATE, "alice")
    assert snapshot["1"] == "selected"
    assert snapshot["2"] == "available"
    assert len(await records(services, status=SeatStatus.SELECTED)) == 1


@pytest.mark.asyncio
async def test_round_trip_books_two_independent_legs(services, seeded):
    results = await services.finalizer.finalize_round_trip(
        "alice",
        leg(seeded.route_id, ["5"], TRAVEL_DATE),
        leg(seeded.return_route_id, ["5"], RETURN_DATE),
    )

    assert len(results) == 2
    assert results[0].group_ref == results[1].group_ref is not None
    assert results[0].booking_ref != results[1].booking_ref
    booked = await records(services, status=SeatStatus.BOOKED)
    assert sorted(r.departure_date for r in booked) == [TRAVEL_DATE, RETURN_DATE]

    # seat "5" on an unrelated date is untouched
    snapshot = await services.projector.snapshot(seeded.vehicle_id, RETURN_DATE, "bob")
    assert snapshot["5"] == "available"


@pytest.mark.asyncio
async def test_round_trip_reports_partial_confirmation(services, seeded):
    await services.holds.hold("bob", seeded.return_route_id, "5", RETURN_DATE)

    with pytest.raises(PartialConfirmation) as info:
        await services.finalizer.finalize_round_trip(
            "alice",
            leg(seeded.route_id, ["5"], TRAVEL_DATE),
            leg(seeded.return_route_id, ["5"], RETURN_DATE),
        )

    body = info.value.to_dict()
    assert body["code"] == "seat_held"
    assert body["partiallyConfirmed"] == ["5"]
    assert body["bookingRef"].startswith("BK-")
    # the outbound leg stays booked
    assert len(await records(services, status=SeatStatus.BOOKED)) == 1


@pytest.mark.asyncio
async def test_payment_success_finalizes_once(services, seeded):
    await services.holds.hold("alice", seeded.route_id, "12", TRAVEL_DATE)
    started = await services.finalizer.start_payment(
        "alice", [leg(seeded.route_id, ["12"])], amount=50000, currency="UGX", provider="sandbox"
    )
    assert started["intentId"].startswith("sbx_")

    result = await services.finalizer.confirm_payment("sandbox", started["intentId"], succeeded=True)
    replay = await services.finalizer.confirm_payment("sandbox", started["intentId"], succeeded=True)

    assert result["status"] == TransactionStatus.SUCCEEDED
    assert replay["replayed"] is True
    assert replay["bookings"] == result["bookings"]
    assert await booking_count(services) == 1
    async with services.session_factory() as db:
        booking = (await db.execute(sa_select(Booking))).scalars().one()
    assert booking.payment_ref == started["reference"]


@pytest.mark.asyncio
async def test_start_payment_extends_holds(services, seeded, clock):
    await services.holds.hold("alice", seeded.route_id, "12", TRAVEL_DATE)
    await services.finalizer.start_payment(
        "alice", [leg(seeded.route_id, ["12"])], amount=100, currency="USD", provider="sandbox"
    )
    [record] = await records(services, user_id="alice")
    assert (record.expires_at - clock.now).total_seconds() == 20 * 60


@pytest.mark.asyncio
async def test_payment_failure_releases_holds(services, seeded):
    await services.holds.hold("alice", seeded.route_id, "12", TRAVEL_DATE)
    started = await services.finalizer.start_payment(
        "alice", [leg(seeded.route_id, ["12"])], amount=100, currency="USD", provider="sandbox"
    )

    result = await services.finalizer.confirm_payment("sandbox", started["intentId"], succeeded=False)

    assert result == {"status": "failed", "released": ["12"]}
    assert await records(services) == []


@pytest.mark.asyncio
async def test_payment_after_lost_holds_needs_review(services, seeded, clock):
    await services.holds.hold("alice", seeded.route_id, "12", TRAVEL_DATE)
    started = await services.finalizer.start_payment(
        "alice", [leg(seeded.route_id, ["12"])], amount=100, currency="USD", provider="sandbox"
    )
    clock.advance(minutes=21)

    result = await services.finalizer.confirm_payment("sandbox", started["intentId"], succeeded=True)

    assert result["status"] == TransactionStatus.NEEDS_REVIEW
    assert result["code"] == "expired"
    async with services.session_factory() as db:
        tx = (await db.execute(sa_select(PaymentTransaction))).scalars().one()
    assert tx.status == TransactionStatus.NEEDS_REVIEW
