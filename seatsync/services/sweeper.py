"""Periodic reconciliation of holds, seat records and the Redis mirror.

A pass has two steps:

* expire: every hold past its expiry, found either in the durable store or in
  the Redis expiry schedule, is removed through ``HoldService.expire_hold``
  and announced as available again;
* consistency: for every watched scope, seat records that mark a seat
  unavailable with nothing behind them are deleted (and audited), and cached
  holds with no durable hold behind them are dropped.

Nothing here raises into a client request; failures are logged, counted and
retried on the next tick.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Iterable, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError

from seatsync.clock import utcnow
from seatsync.errors import NotFound, SeatSyncError, StorageError
from seatsync.metrics import SWEEP_DURATION, SWEEP_EXPIRED, SWEEP_REPAIRED, SWEEP_RUNS
from seatsync.models.models import Booking, BookingStatus, SeatDepartureBooking, SeatStatus
from seatsync.realtime.protocol import SeatEvent
from seatsync.services import inventory
from seatsync.services.audit import SYSTEM_ACTOR, log_audit
from seatsync.services.availability import AVAILABLE
from seatsync.services.hold_cache import HoldRef
from seatsync.services.holds import HoldService
from seatsync.services.scope_registry import Scope, ScopeRegistry

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0
    repaired: int = 0
    cache_dropped: int = 0
    errors: int = 0

    def merge(self, other: "SweepReport") -> "SweepReport":
        self.expired += other.expired
        self.skipped += other.skipped
        self.repaired += other.repaired
        self.cache_dropped += other.cache_dropped
        self.errors += other.errors
        return self


async def orphan_kind(db, record: SeatDepartureBooking) -> Optional[str]:
    """Why ``record`` should not exist, or None if it is backed by a hold or booking."""
    if record.status == SeatStatus.SELECTED:
        return "hold_without_expiry" if record.expires_at is None else None
    if record.status == SeatStatus.BOOKED:
        booking = await db.get(Booking, record.booking_id) if record.booking_id else None
        if booking is None or booking.status == BookingStatus.CANCELLED:
            return "booked_without_booking"
        return None
    return "unknown_status"


class ReconciliationSweeper:
    def __init__(
        self,
        session_factory,
        holds: HoldService,
        scopes: ScopeRegistry,
        connections=None,
        batch_size: int = 500,
        interval: int = 10,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.holds = holds
        self.scopes = scopes
        self.connections = connections
        self.batch_size = batch_size
        self.interval = interval
        self.clock = clock

    # -- passes ------------------------------------------------------------

    async def sweep(self, scopes: Optional[Iterable[Scope]] = None) -> SweepReport:
        """Full pass: expire everything due, then check every watched scope."""
        report = await self._expire()
        watched = set(await self.scopes.active(self.clock()))
        watched.update(scopes or [])
        for scope in sorted(watched, key=lambda s: s.member):
            report.merge(await self._check_scope(scope))
        return report

    async def sweep_scope(self, scope: Scope) -> SweepReport:
        """Pass restricted to one scope, run when a viewer joins it."""
        try:
            info = await self.holds.resolve_scope(scope.route_id)
            report = await self._expire(vehicle_id=info.vehicle_id, departure_date=scope.departure_date)
        except SeatSyncError:
            logger.warning("scoped sweep of %s failed", scope.member, exc_info=True)
            SWEEP_RUNS.labels(result="error").inc()
            return SweepReport(errors=1)
        return report.merge(await self._check_scope(scope))

    async def _expire(self, vehicle_id: Optional[int] = None, departure_date: Optional[date] = None) -> SweepReport:
        report = SweepReport()
        now = self.clock()
        vehicle_ids = [vehicle_id] if vehicle_id is not None else None
        try:
            async with self.session_factory() as db:
                due = await inventory.find_expired_holds(db, now, vehicle_ids, departure_date, self.batch_size)
        except SQLAlchemyError as exc:
            raise StorageError("could not scan for expired holds") from exc

        candidates: Set[Tuple[int, date, str]] = set(due)
        for ref in await self.holds.cache.due_holds(now, self.batch_size):
            if vehicle_id is not None and ref.vehicle_id != vehicle_id:
                continue
            if departure_date is not None and ref.departure_date != departure_date:
                continue
            candidates.add((ref.vehicle_id, ref.departure_date, ref.seat_label))

        for vid, day, label in sorted(candidates):
            try:
                removed = await self.holds.expire_hold(vid, day, label)
            except SeatSyncError:
                logger.warning("could not expire seat %s of vehicle %s on %s", label, vid, day, exc_info=True)
                report.errors += 1
                continue
            if removed:
                report.expired += 1
            else:
                report.skipped += 1
        if report.expired:
            SWEEP_EXPIRED.inc(report.expired)
        return report

    async def _check_scope(self, scope: Scope) -> SweepReport:
        report = SweepReport()
        try:
            info = await self.holds.resolve_scope(scope.route_id)
        except NotFound:
            logger.info("watched scope %s no longer exists", scope.member)
            return report
        except SeatSyncError:
            logger.warning("could not resolve scope %s", scope.member, exc_info=True)
            report.errors += 1
            return report

        try:
            report.repaired = await self._repair_records(info, scope)
            if scope.departure_date is not None:
                report.cache_dropped = await self._drop_stale_cache(info.vehicle_id, scope.departure_date)
        except SeatSyncError:
            logger.warning("consistency pass for %s failed", scope.member, exc_info=True)
            report.errors += 1
        return report

    async def _repair_records(self, info, scope: Scope) -> int:
        try:
            async with self.session_factory() as db:
                orphans = await inventory.find_orphaned_records(
                    db, [info.vehicle_id], scope.departure_date, self.batch_size
                )
                candidates = [(record.id, seat.label, record.departure_date) for record, seat in orphans]
        except SQLAlchemyError as exc:
            raise StorageError("could not scan for orphaned seat records") from exc

        repaired: List[Tuple[str, date]] = []
        for record_id, label, day in candidates:
            token = await self.holds.locks.acquire(info.vehicle_id, label)
            if token is None:
                continue
            try:
                async with self.session_factory() as db:
                    record = await db.get(SeatDepartureBooking, record_id)
                    kind = await orphan_kind(db, record) if record is not None else None
                    if kind is None:
                        continue
                    await log_audit(
                        db,
                        SYSTEM_ACTOR,
                        "seat.repaired",
                        object_type="seat_departure_booking",
                        object_id=record_id,
                        detail={
                            "kind": kind,
                            "vehicleId": info.vehicle_id,
                            "seatLabel": label,
                            "date": day.isoformat(),
                            "status": record.status,
                            "userId": record.user_id,
                            "bookingId": record.booking_id,
                        },
                    )
                    await db.delete(record)
                    await db.commit()
            except SQLAlchemyError as exc:
                raise StorageError("could not repair seat record") from exc
            finally:
                await self.holds.locks.release(info.vehicle_id, label, token)

            SWEEP_REPAIRED.labels(kind=kind).inc()
            logger.warning("repaired seat %s of vehicle %s on %s (%s)", label, info.vehicle_id, day, kind)
            await self.holds.cache.remove_hold(HoldRef(info.vehicle_id, day, label))
            repaired.append((label, day))

        if repaired:
            await self.holds.projector.invalidate(info.vehicle_id, [day for _, day in repaired])
            for label, day in repaired:
                await self.holds.announce(
                    info.route_ids,
                    SeatEvent(
                        scope_id=info.route_id,
                        seat_label=label,
                        status=AVAILABLE,
                        departure_date=day,
                        reason="repaired",
                    ),
                )
        return len(repaired)

    async def _drop_stale_cache(self, vehicle_id: int, departure_date: date) -> int:
        """Remove mirrored holds that have no SELECTED record behind them."""
        try:
            async with self.session_factory() as db:
                seats = await inventory.list_seats(db, vehicle_id)
        except SQLAlchemyError as exc:
            raise StorageError("could not read seats") from exc
        refs = [HoldRef(vehicle_id, departure_date, seat.label) for seat in seats]
        # cache first: a hold commits its record before mirroring it
        cached = await self.holds.cache.get_holds(refs)
        if not cached:
            return 0
        try:
            async with self.session_factory() as db:
                records = await inventory.list_departure_records(db, vehicle_id, departure_date)
        except SQLAlchemyError as exc:
            raise StorageError("could not read seat records") from exc

        dropped = 0
        for ref, hold in cached.items():
            record = records.get(ref.seat_label)
            if record is not None and record.status == SeatStatus.SELECTED and record.user_id == hold.user_id:
                continue
            await self.holds.cache.remove_hold(ref, hold.user_id)
            SWEEP_REPAIRED.labels(kind="stale_cache").inc()
            dropped += 1
        if dropped:
            await self.holds.projector.invalidate(vehicle_id, [departure_date])
        return dropped

    # -- scheduling --------------------------------------------------------

    async def touch_watched(self) -> None:
        """Record this process's watched scopes so sweeps anywhere can see them."""
        if self.connections is not None:
            await self.scopes.touch(self.connections.watched_scopes(), self.clock())

    async def tick(self) -> Optional[SweepReport]:
        start = time.perf_counter()
        try:
            await self.touch_watched()
            report = await self.sweep()
        except Exception:
            SWEEP_RUNS.labels(result="error").inc()
            logger.exception("sweep failed, retrying next tick")
            return None
        SWEEP_DURATION.observe(time.perf_counter() - start)
        SWEEP_RUNS.labels(result=("partial" if report.errors else "success")).inc()
        if report.expired or report.repaired or report.cache_dropped:
            logger.info(
                "sweep expired=%s repaired=%s cache_dropped=%s skipped=%s",
                report.expired,
                report.repaired,
                report.cache_dropped,
                report.skipped,
            )
        return report

    async def run_forever(self, stop_event: asyncio.Event, sweep: bool = True) -> None:
        """Tick every ``interval`` seconds until ``stop_event`` is set.

        With ``sweep=False`` only the watched scopes are refreshed, for
        processes whose sweeping is done by the Celery beat task.
        """
        while not stop_event.is_set():
            if sweep:
                await self.tick()
            else:
                try:
                    await self.touch_watched()
                except Exception:
                    logger.exception("could not refresh watched scopes")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
