"""Turn live holds into bookings, directly or once a payment settles."""
import logging
import secrets
import string
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select as sa_select
from sqlalchemy.exc import SQLAlchemyError

from seatsync.clock import isoformat, utcnow
from seatsync.errors import (
    InvalidInput,
    NotFound,
    PartialConfirmation,
    SeatSyncError,
    StorageError,
)
from seatsync.metrics import BOOKINGS_FINALIZED, PAYMENT_FAILURE, PAYMENT_SUCCESS, SEATS_BOOKED
from seatsync.models.models import Booking, BookingStatus, PaymentTransaction, TransactionStatus
from seatsync.realtime.protocol import SeatEvent
from seatsync.services import inventory
from seatsync.services.availability import BOOKED
from seatsync.services.hold_cache import HoldRef
from seatsync.services.holds import HoldService, require_live_hold
from seatsync.services.payment_gateway import BaseGateway, get_gateway

logger = logging.getLogger(__name__)

_REF_ALPHABET = string.ascii_uppercase + string.digits


def generate_booking_ref(prefix: str, now: datetime) -> str:
    suffix = "".join(secrets.choice(_REF_ALPHABET) for _ in range(6))
    return f"{prefix}-{now:%y%m%d}-{suffix}"


@dataclass
class LegRequest:
    route_id: int
    departure_date: date
    seat_labels: List[str]
    passengers: List[dict] = field(default_factory=list)

    def to_meta(self) -> dict:
        return {
            "routeId": self.route_id,
            "date": self.departure_date.isoformat(),
            "seatLabels": list(self.seat_labels),
            "passengers": list(self.passengers),
        }

    @classmethod
    def from_meta(cls, meta: dict) -> "LegRequest":
        return cls(
            route_id=int(meta["routeId"]),
            departure_date=date.fromisoformat(meta["date"]),
            seat_labels=list(meta["seatLabels"]),
            passengers=list(meta.get("passengers") or []),
        )


@dataclass
class FinalizeResult:
    booking_ref: str
    confirmed_seats: List[str]
    route_id: int
    departure_date: date
    group_ref: Optional[str] = None
    replayed: bool = False

    def to_dict(self) -> dict:
        return {
            "bookingRef": self.booking_ref,
            "confirmedSeats": list(self.confirmed_seats),
            "groupRef": self.group_ref,
            "scopeId": self.route_id,
            "date": self.departure_date.isoformat(),
        }


def validate_leg(leg: LegRequest) -> None:
    labels = [str(label) for label in leg.seat_labels]
    if not labels:
        raise InvalidInput("no seats to confirm")
    if len(set(labels)) != len(labels):
        raise InvalidInput("duplicate seats in request")
    if len(leg.passengers) != len(labels):
        raise InvalidInput("passenger count must match seat count")


class BookingFinalizer:
    def __init__(
        self,
        session_factory,
        holds: HoldService,
        gateways: Optional[Dict[str, BaseGateway]] = None,
        ref_prefix: str = "BK",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.holds = holds
        self.gateways = gateways or {}
        self.ref_prefix = ref_prefix
        self.clock = clock

    async def _replay(self, payment_ref: str, leg: LegRequest) -> Optional[FinalizeResult]:
        try:
            async with self.session_factory() as db:
                existing = await inventory.find_bookings_by_payment_ref(
                    db, payment_ref, leg.route_id, leg.departure_date
                )
        except SQLAlchemyError as exc:
            raise StorageError("could not look up existing bookings") from exc
        if not existing:
            return None
        booking = existing[0]
        return FinalizeResult(
            booking_ref=booking.booking_ref,
            confirmed_seats=list(booking.seat_labels),
            route_id=booking.route_id,
            departure_date=booking.departure_date,
            group_ref=booking.group_ref,
            replayed=True,
        )

    async def finalize(
        self,
        user_id: str,
        leg: LegRequest,
        payment_ref: Optional[str] = None,
        group_ref: Optional[str] = None,
    ) -> FinalizeResult:
        """Book every seat of one leg in a single transaction, or none of them.

        A ``payment_ref`` that already produced a booking for this route and
        date returns that booking instead of booking again.
        """
        validate_leg(leg)
        if payment_ref:
            replayed = await self._replay(payment_ref, leg)
            if replayed is not None:
                BOOKINGS_FINALIZED.labels(result="replayed").inc()
                return replayed

        scope = await self.holds.resolve_scope(leg.route_id)
        labels = [str(label) for label in leg.seat_labels]
        try:
            async with self.holds.locks.locked_many(scope.vehicle_id, labels):
                now = self.clock()
                try:
                    async with self.session_factory() as db:
                        records = []
                        for label in labels:
                            seat = await inventory.get_seat(db, scope.vehicle_id, label)
                            if seat is None:
                                raise NotFound(f"seat {label} not found")
                            record = await inventory.get_departure_record(db, seat.id, leg.departure_date)
                            records.append(require_live_hold(record, user_id, now))

                        booking = Booking(
                            booking_ref=generate_booking_ref(self.ref_prefix, now),
                            group_ref=group_ref,
                            user_id=user_id,
                            route_id=scope.route_id,
                            vehicle_id=scope.vehicle_id,
                            departure_date=leg.departure_date,
                            seat_labels=labels,
                            passengers=list(leg.passengers),
                            payment_ref=payment_ref,
                            status=BookingStatus.CONFIRMED,
                        )
                        db.add(booking)
                        await db.flush()
                        for record in records:
                            await inventory.promote_to_booked(db, record, booking, now)
                        await db.commit()
                        booking_ref = booking.booking_ref
                except SQLAlchemyError as exc:
                    raise StorageError("could not record booking") from exc

                for label in labels:
                    await self.holds.cache.remove_hold(HoldRef(scope.vehicle_id, leg.departure_date, label), user_id)
                await self.holds.projector.invalidate(scope.vehicle_id, [leg.departure_date])
        except SeatSyncError as exc:
            BOOKINGS_FINALIZED.labels(result=exc.code.value).inc()
            raise

        BOOKINGS_FINALIZED.labels(result="success").inc()
        SEATS_BOOKED.inc(len(labels))
        logger.info("booked %s seats on route %s for %s as %s", len(labels), scope.route_id, user_id, booking_ref)
        for label in labels:
            await self.holds.announce(
                scope.route_ids,
                SeatEvent(
                    scope_id=scope.route_id,
                    seat_label=label,
                    status=BOOKED,
                    departure_date=leg.departure_date,
                    user_id=user_id,
                    booking_ref=booking_ref,
                ),
            )
        return FinalizeResult(
            booking_ref=booking_ref,
            confirmed_seats=labels,
            route_id=scope.route_id,
            departure_date=leg.departure_date,
            group_ref=group_ref,
        )

    async def _hold_leg(self, user_id: str, leg: LegRequest) -> List[str]:
        """Hold (or extend) every seat of a leg; new holds are undone if any seat fails.

        Returns the labels this call newly took, so a caller can undo them.
        """
        taken = []
        try:
            for label in leg.seat_labels:
                outcome = await self.holds.hold(user_id, leg.route_id, str(label), leg.departure_date)
                if not outcome.extended:
                    taken.append(outcome.seat_label)
        except SeatSyncError:
            await self._release_taken(user_id, leg, taken)
            raise
        return taken

    async def _release_taken(self, user_id: str, leg: LegRequest, taken: List[str]) -> None:
        if taken:
            await self.holds.release_all(user_id, [(leg.route_id, leg.departure_date, label) for label in taken])

    async def _book_leg(
        self, user_id: str, leg: LegRequest, hold_first: bool, **kwargs
    ) -> FinalizeResult:
        taken = await self._hold_leg(user_id, leg) if hold_first else []
        try:
            return await self.finalize(user_id, leg, **kwargs)
        except SeatSyncError:
            await self._release_taken(user_id, leg, taken)
            raise

    async def finalize_round_trip(
        self,
        user_id: str,
        outbound: LegRequest,
        inbound: LegRequest,
        payment_ref: Optional[str] = None,
        hold_first: bool = True,
    ) -> List[FinalizeResult]:
        """Book two legs under one group reference.

        The legs commit separately. If the return leg fails after the outbound
        leg is booked, the outbound booking stays and ``PartialConfirmation``
        says so.
        """
        validate_leg(outbound)
        validate_leg(inbound)
        group_ref = f"GRP-{uuid4().hex[:12].upper()}"

        first = await self._book_leg(user_id, outbound, hold_first, payment_ref=payment_ref, group_ref=group_ref)
        group_ref = first.group_ref or group_ref
        try:
            second = await self._book_leg(user_id, inbound, hold_first, payment_ref=payment_ref, group_ref=group_ref)
        except SeatSyncError as exc:
            logger.warning("round trip %s partially confirmed: %s", group_ref, exc.code.value)
            raise PartialConfirmation(exc, first.confirmed_seats, first.booking_ref, group_ref) from exc
        return [first, second]

    # -- deferred payment --------------------------------------------------

    async def start_payment(
        self,
        user_id: str,
        legs: Sequence[LegRequest],
        amount: Decimal,
        currency: str,
        provider: str,
    ) -> dict:
        if not 1 <= len(legs) <= 2:
            raise InvalidInput("a payment covers one leg or a round trip")
        for leg in legs:
            validate_leg(leg)
        gateway = get_gateway(self.gateways, provider)

        expiries = []
        for leg in legs:
            outcomes = await self.holds.extend(user_id, leg.route_id, leg.seat_labels, leg.departure_date)
            expiries.extend(o.expires_at for o in outcomes)

        reference = uuid4().hex
        meta = {"reference": reference, "userId": user_id, "legs": [leg.to_meta() for leg in legs]}
        # gateway call happens with no seat lock held
        provider_resp = await gateway.initiate(float(amount), currency, meta)
        intent_id = provider_resp.get("provider_ref")

        try:
            async with self.session_factory() as db:
                db.add(
                    PaymentTransaction(
                        provider=gateway.provider_name,
                        intent_id=intent_id,
                        reference=reference,
                        user_id=user_id,
                        amount=amount,
                        currency=currency,
                        status=TransactionStatus.INITIATED,
                        meta=meta,
                    )
                )
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageError("Unable to create payment record") from exc

        return {
            "provider": gateway.provider_name,
            "intentId": intent_id,
            "reference": reference,
            "checkoutUrl": provider_resp.get("checkout_url"),
            "holdsExpireAt": isoformat(min(expiries)) if expiries else None,
        }

    async def confirm_payment(self, provider: str, intent_id: str, succeeded: bool) -> dict:
        """Settle a payment intent. Settling it again returns the stored outcome."""
        try:
            async with self.session_factory() as db:
                res = await db.execute(
                    sa_select(PaymentTransaction).where(
                        PaymentTransaction.provider == provider,
                        PaymentTransaction.intent_id == intent_id,
                    )
                )
                tx = res.scalars().first()
        except SQLAlchemyError as exc:
            raise StorageError("could not read payment") from exc
        if tx is None:
            raise NotFound(f"payment {intent_id} not found")
        if tx.status != TransactionStatus.INITIATED:
            return dict(tx.result or {"status": tx.status}, replayed=True)

        user_id = tx.meta["userId"]
        legs = [LegRequest.from_meta(m) for m in tx.meta["legs"]]

        if not succeeded:
            PAYMENT_FAILURE.labels(provider=provider).inc()
            released = []
            for leg in legs:
                done = await self.holds.release_all(
                    user_id, [(leg.route_id, leg.departure_date, label) for label in leg.seat_labels]
                )
                released.extend(label for _, _, label in done)
            status, result = TransactionStatus.FAILED, {"status": TransactionStatus.FAILED, "released": released}
        else:
            PAYMENT_SUCCESS.labels(provider=provider).inc()
            try:
                if len(legs) == 2:
                    results = await self.finalize_round_trip(
                        user_id, legs[0], legs[1], payment_ref=tx.reference, hold_first=False
                    )
                else:
                    results = [await self.finalize(user_id, legs[0], payment_ref=tx.reference)]
                status = TransactionStatus.SUCCEEDED
                result = {"status": status, "bookings": [r.to_dict() for r in results]}
            except SeatSyncError as exc:
                if exc.retryable or isinstance(exc, StorageError):
                    # leave it initiated so the provider's retry settles it
                    raise
                logger.error("payment %s succeeded but booking failed: %s", intent_id, exc.message)
                status = TransactionStatus.NEEDS_REVIEW
                result = dict(exc.to_dict(), status=status)

        try:
            async with self.session_factory() as db:
                tx = await db.get(PaymentTransaction, tx.id)
                tx.status = status
                tx.result = result
                tx.settled_at = self.clock()
                await db.commit()
        except SQLAlchemyError as exc:
            raise StorageError("could not record payment outcome") from exc
        return result
