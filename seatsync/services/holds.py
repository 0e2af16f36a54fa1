"""Seat holds: acquire, extend, release and expire.

Every write follows the same order inside the seat lock: re-read the durable
record, decide, write and commit, then mirror into Redis and drop the cached
projection. The broadcast happens after the lock is released.
"""
import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from seatsync.clock import utcnow
from seatsync.errors import (
    HoldExpired,
    InvalidInput,
    NoHold,
    NotFound,
    NotOwner,
    SeatBooked,
    SeatHeld,
    SeatSyncError,
    StorageError,
)
from seatsync.metrics import HOLD_OPERATIONS
from seatsync.models.models import SeatDepartureBooking, SeatStatus
from seatsync.realtime.protocol import SeatEvent
from seatsync.services import inventory
from seatsync.services.availability import AVAILABLE, HELD, AvailabilityProjector
from seatsync.services.hold_cache import CachedHold, HoldCache, HoldRef
from seatsync.services.seat_lock import SeatLockManager

logger = logging.getLogger(__name__)


@dataclass
class ScopeInfo:
    route_id: int
    vehicle_id: int
    # every route sharing the vehicle; seat events go to all of them
    route_ids: List[int]


@dataclass
class HoldOutcome:
    seat_label: str
    expires_at: datetime
    extended: bool = False
    status: str = "selected"


@dataclass
class GroupHoldResult:
    held: List[HoldOutcome] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    rolled_back: List[str] = field(default_factory=list)


def require_live_hold(record: Optional[SeatDepartureBooking], user_id: str, now: datetime) -> SeatDepartureBooking:
    """Return ``record`` if it is a live hold owned by ``user_id``, else raise the matching error."""
    if record is None:
        raise NoHold("no hold on this seat")
    if record.status == SeatStatus.BOOKED:
        raise SeatBooked("seat is already booked")
    live = inventory.is_live(record, now)
    if record.user_id != user_id:
        if live:
            raise SeatHeld("seat is held by another user")
        raise NoHold("no hold on this seat")
    if not live:
        raise HoldExpired("hold has expired")
    return record


class HoldService:
    def __init__(
        self,
        session_factory,
        locks: SeatLockManager,
        cache: HoldCache,
        projector: AvailabilityProjector,
        broadcaster,
        hold_minutes: int = 15,
        payment_hold_minutes: int = 20,
        max_hold_minutes: int = 20,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.locks = locks
        self.cache = cache
        self.projector = projector
        self.broadcaster = broadcaster
        self.hold_minutes = hold_minutes
        self.payment_hold_minutes = payment_hold_minutes
        self.max_hold_minutes = max_hold_minutes
        self.clock = clock

    async def resolve_scope(self, route_id: int) -> ScopeInfo:
        try:
            async with self.session_factory() as db:
                route = await inventory.get_route(db, route_id)
                if route is None or not route.active:
                    raise NotFound(f"route {route_id} not found")
                route_ids = await inventory.route_ids_for_vehicle(db, route.vehicle_id)
        except SQLAlchemyError as exc:
            raise StorageError("could not resolve route") from exc
        return ScopeInfo(route_id=route.id, vehicle_id=route.vehicle_id, route_ids=route_ids)

    def _duration(self, minutes: Optional[int]) -> int:
        if minutes is None:
            return self.hold_minutes
        if not isinstance(minutes, int) or isinstance(minutes, bool) or not 1 <= minutes <= self.max_hold_minutes:
            raise InvalidInput(f"hold duration must be between 1 and {self.max_hold_minutes} minutes")
        return minutes

    # -- acquire -----------------------------------------------------------

    async def hold(
        self,
        user_id: str,
        route_id: int,
        seat_label: str,
        departure_date: date,
        duration_minutes: Optional[int] = None,
    ) -> HoldOutcome:
        try:
            outcome, scope = await self._hold(user_id, route_id, seat_label, departure_date, duration_minutes)
        except SeatSyncError as exc:
            HOLD_OPERATIONS.labels(operation="hold", result=exc.code.value).inc()
            raise
        HOLD_OPERATIONS.labels(operation="hold", result=("extended" if outcome.extended else "success")).inc()
        await self.announce(
            scope.route_ids,
            SeatEvent(
                scope_id=route_id,
                seat_label=seat_label,
                status=HELD,
                departure_date=departure_date,
                expires_at=outcome.expires_at,
                user_id=user_id,
            ),
        )
        return outcome

    async def _hold(self, user_id, route_id, seat_label, departure_date, duration_minutes):
        minutes = self._duration(duration_minutes)
        scope = await self.resolve_scope(route_id)
        ref = HoldRef(scope.vehicle_id, departure_date, seat_label)

        async with self.locks.locked(scope.vehicle_id, seat_label):
            now = self.clock()
            expires_at = now + timedelta(minutes=minutes)
            try:
                async with self.session_factory() as db:
                    seat = await inventory.get_seat(db, scope.vehicle_id, seat_label)
                    if seat is None:
                        raise NotFound(f"seat {seat_label} not found")
                    record = await inventory.get_departure_record(db, seat.id, departure_date)
                    extended = False
                    if record is not None:
                        if record.status == SeatStatus.BOOKED:
                            raise SeatBooked("seat is already booked")
                        if inventory.is_live(record, now):
                            if record.user_id != user_id:
                                raise SeatHeld("seat is held by another user")
                            extended = True
                    held_at = record.held_at if extended and record.held_at else now
                    await inventory.upsert_hold(
                        db, seat, departure_date, user_id, held_at, expires_at, existing=record
                    )
                    await db.commit()
            except IntegrityError as exc:
                # a concurrent insert for the same (seat, date) won
                raise SeatHeld("seat is held by another user") from exc
            except SQLAlchemyError as exc:
                raise StorageError("could not write hold") from exc

            await self.cache.put_hold(ref, user_id, held_at, expires_at, now)
            await self.projector.invalidate(scope.vehicle_id, [departure_date])

        return HoldOutcome(seat_label=seat_label, expires_at=expires_at, extended=extended), scope

    async def hold_many(
        self,
        user_id: str,
        route_id: int,
        seat_labels: Sequence[str],
        departure_date: date,
        duration_minutes: Optional[int] = None,
        all_or_nothing: bool = False,
    ) -> GroupHoldResult:
        """Hold seats one at a time, reporting per-seat failures.

        With ``all_or_nothing`` any failure releases the seats newly held by
        this call; seats the user already held before are left alone.
        """
        labels = [str(label) for label in seat_labels]
        if not labels:
            raise InvalidInput("no seats requested")
        if len(set(labels)) != len(labels):
            raise InvalidInput("duplicate seats in request")
        self._duration(duration_minutes)

        result = GroupHoldResult()
        for label in labels:
            try:
                result.held.append(await self.hold(user_id, route_id, label, departure_date, duration_minutes))
            except SeatSyncError as exc:
                result.failed[label] = exc.code.value

        if all_or_nothing and result.failed:
            for outcome in list(result.held):
                if outcome.extended:
                    continue
                try:
                    await self.release(user_id, route_id, outcome.seat_label, departure_date)
                    result.rolled_back.append(outcome.seat_label)
                except SeatSyncError:
                    logger.warning("could not roll back hold on seat %s", outcome.seat_label, exc_info=True)
            result.held = [o for o in result.held if o.seat_label not in result.rolled_back]
        return result

    async def extend(
        self,
        user_id: str,
        route_id: int,
        seat_labels: Sequence[str],
        departure_date: date,
        minutes: Optional[int] = None,
    ) -> List[HoldOutcome]:
        """Push live holds out to the payment window before a deferred payment starts."""
        minutes = minutes or self.payment_hold_minutes
        scope = await self.resolve_scope(route_id)
        outcomes = []
        for label in sorted(set(seat_labels)):
            ref = HoldRef(scope.vehicle_id, departure_date, label)
            async with self.locks.locked(scope.vehicle_id, label):
                now = self.clock()
                try:
                    async with self.session_factory() as db:
                        seat = await inventory.get_seat(db, scope.vehicle_id, label)
                        if seat is None:
                            raise NotFound(f"seat {label} not found")
                        record = require_live_hold(
                            await inventory.get_departure_record(db, seat.id, departure_date), user_id, now
                        )
                        expires_at = max(record.expires_at, now + timedelta(minutes=minutes))
                        record.expires_at = expires_at
                        held_at = record.held_at or now
                        await db.commit()
                except SQLAlchemyError as exc:
                    raise StorageError("could not extend hold") from exc
                await self.cache.put_hold(ref, user_id, held_at, expires_at, now)
                await self.projector.invalidate(scope.vehicle_id, [departure_date])
            HOLD_OPERATIONS.labels(operation="extend", result="success").inc()
            outcomes.append(HoldOutcome(seat_label=label, expires_at=expires_at, extended=True))
            await self.announce(
                scope.route_ids,
                SeatEvent(
                    scope_id=route_id,
                    seat_label=label,
                    status=HELD,
                    departure_date=departure_date,
                    expires_at=expires_at,
                    user_id=user_id,
                ),
            )
        return outcomes

    # -- release -----------------------------------------------------------

    async def release(self, user_id: str, route_id: int, seat_label: str, departure_date: date) -> dict:
        scope = await self.resolve_scope(route_id)
        ref = HoldRef(scope.vehicle_id, departure_date, seat_label)
        try:
            async with self.locks.locked(scope.vehicle_id, seat_label):
                try:
                    async with self.session_factory() as db:
                        seat = await inventory.get_seat(db, scope.vehicle_id, seat_label)
                        if seat is None:
                            raise NotFound(f"seat {seat_label} not found")
                        record = await inventory.get_departure_record(db, seat.id, departure_date)
                        if record is None:
                            raise NoHold("no hold on this seat")
                        if record.status == SeatStatus.BOOKED:
                            raise SeatBooked("seat is already booked")
                        if record.user_id != user_id:
                            raise NotOwner("hold belongs to another user")
                        await inventory.delete_record(db, record)
                        await db.commit()
                except SQLAlchemyError as exc:
                    raise StorageError("could not release hold") from exc
                await self.cache.remove_hold(ref, user_id)
                await self.projector.invalidate(scope.vehicle_id, [departure_date])
        except SeatSyncError as exc:
            HOLD_OPERATIONS.labels(operation="release", result=exc.code.value).inc()
            raise

        HOLD_OPERATIONS.labels(operation="release", result="success").inc()
        await self.announce(
            scope.route_ids,
            SeatEvent(
                scope_id=route_id,
                seat_label=seat_label,
                status=AVAILABLE,
                departure_date=departure_date,
                reason="released",
            ),
        )
        return {"seatLabel": seat_label, "status": AVAILABLE}

    async def release_all(self, user_id: str, holds: Iterable[Tuple[int, date, str]]) -> List[Tuple[int, date, str]]:
        """Best-effort release of many holds, e.g. when a connection goes away."""
        released = []
        for route_id, departure_date, seat_label in sorted(set(holds)):
            try:
                await self.release(user_id, route_id, seat_label, departure_date)
            except (NoHold, NotOwner, SeatBooked, NotFound):
                # already gone, taken over after expiry, or booked
                continue
            except SeatSyncError:
                logger.warning(
                    "could not release seat %s on route %s for user %s", seat_label, route_id, user_id, exc_info=True
                )
                continue
            released.append((route_id, departure_date, seat_label))
        return released

    async def expire_hold(self, vehicle_id: int, departure_date: date, seat_label: str) -> bool:
        """Remove a hold whose expiry has passed, whoever owns it.

        Returns False if the seat is locked by a concurrent operation (the next
        sweep retries) or if the hold turns out to be live, in which case the
        mirror is rewritten from the durable record.
        """
        token = await self.locks.acquire(vehicle_id, seat_label)
        if token is None:
            HOLD_OPERATIONS.labels(operation="expire", result="skipped_locked").inc()
            return False
        ref = HoldRef(vehicle_id, departure_date, seat_label)
        removed = False
        live = None
        owner = None
        try:
            now = self.clock()
            try:
                async with self.session_factory() as db:
                    seat = await inventory.get_seat(db, vehicle_id, seat_label)
                    record = None
                    if seat is not None:
                        record = await inventory.get_departure_record(db, seat.id, departure_date)
                    if record is not None and record.status == SeatStatus.SELECTED:
                        owner = record.user_id
                        if inventory.is_live(record, now):
                            # re-held or extended since it was scheduled
                            live = record
                        else:
                            await inventory.delete_record(db, record)
                            await db.commit()
                            removed = True
            except SQLAlchemyError as exc:
                raise StorageError("could not expire hold") from exc

            if live is not None:
                await self.cache.put_hold(ref, live.user_id, live.held_at or now, live.expires_at, now)
                return False
            if owner is None:
                cached = await self.cache.get_hold(ref)
                owner = cached.user_id if cached else None
            await self.cache.remove_hold(ref, owner)
            if removed:
                await self.projector.invalidate(vehicle_id, [departure_date])
        finally:
            await self.locks.release(vehicle_id, seat_label, token)

        if removed:
            HOLD_OPERATIONS.labels(operation="expire", result="success").inc()
            await self.announce(
                await self._routes_for(vehicle_id),
                SeatEvent(
                    scope_id=0,
                    seat_label=seat_label,
                    status=AVAILABLE,
                    departure_date=departure_date,
                    reason="expired",
                ),
            )
        return removed

    # -- queries -----------------------------------------------------------

    async def user_holds(self, user_id: str) -> List[Tuple[HoldRef, CachedHold]]:
        """Live holds of ``user_id`` as mirrored in the cache."""
        now = self.clock()
        refs = await self.cache.user_hold_refs(user_id)
        holds = await self.cache.get_holds(refs)
        return [
            (ref, hold)
            for ref, hold in sorted(holds.items(), key=lambda item: item[0].member)
            if hold.user_id == user_id and hold.expires_at > now
        ]

    # -- fan-out -----------------------------------------------------------

    async def _routes_for(self, vehicle_id: int) -> List[int]:
        try:
            async with self.session_factory() as db:
                return await inventory.route_ids_for_vehicle(db, vehicle_id)
        except SQLAlchemyError:
            logger.warning("could not look up routes for vehicle %s", vehicle_id, exc_info=True)
            return []

    async def announce(self, route_ids: Iterable[int], event: SeatEvent) -> None:
        """Send ``event`` once per route using the vehicle. Failures are logged, never raised."""
        for route_id in route_ids:
            try:
                await self.broadcaster.seat_changed(replace(event, scope_id=route_id))
            except Exception:
                logger.exception("broadcast to route %s failed", route_id)
