import logging
from datetime import date, datetime
from typing import Callable, Dict, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError

from seatsync.clock import to_epoch, utcnow
from seatsync.errors import StorageError
from seatsync.models.models import SeatStatus
from seatsync.services import inventory
from seatsync.services.hold_cache import HoldCache

logger = logging.getLogger(__name__)

# projected statuses, as seen by a viewer
AVAILABLE = "available"
HELD = "held"
SELECTED = "selected"
BOOKED = "booked"


class AvailabilityProjector:
    """Per-seat status map for one (vehicle, departure date).

    The viewer-independent map is cached briefly in Redis and dropped on every
    write. Reads personalize it: a live hold is ``selected`` for its owner and
    ``held`` for everybody else.
    """

    def __init__(self, session_factory, cache: HoldCache, clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.cache = cache
        self.clock = clock

    async def raw(self, vehicle_id: int, departure_date: date) -> Dict[str, dict]:
        cached = await self.cache.get_projection(vehicle_id, departure_date)
        if cached is not None:
            return cached
        generation = await self.cache.projection_generation(vehicle_id, departure_date)
        projection = await self.recompute(vehicle_id, departure_date)
        if generation is not None:
            # dropped if a write landed while we were reading
            await self.cache.put_projection(vehicle_id, departure_date, projection, generation)
        return projection

    async def recompute(self, vehicle_id: int, departure_date: date) -> Dict[str, dict]:
        try:
            async with self.session_factory() as db:
                seats = await inventory.list_seats(db, vehicle_id)
                records = await inventory.list_departure_records(db, vehicle_id, departure_date)
        except SQLAlchemyError as exc:
            raise StorageError("could not read seat inventory") from exc

        projection = {}
        for seat in seats:
            record = records.get(seat.label)
            entry = {"status": AVAILABLE}
            if record is not None and record.status == SeatStatus.BOOKED:
                entry = {"status": BOOKED}
            elif record is not None and record.status == SeatStatus.SELECTED and record.expires_at is not None:
                # expired holds are still projected; personalize() checks the clock on read
                entry = {"status": HELD, "userId": record.user_id, "expiresAt": to_epoch(record.expires_at)}
            projection[seat.label] = entry
        return projection

    def personalize(self, projection: Dict[str, dict], viewer_id: Optional[str] = None) -> Dict[str, str]:
        now = to_epoch(self.clock())
        out = {}
        for label, entry in projection.items():
            status = entry["status"]
            if status == HELD:
                if entry["expiresAt"] <= now:
                    status = AVAILABLE
                elif viewer_id is not None and entry.get("userId") == viewer_id:
                    status = SELECTED
            out[label] = status
        return out

    async def snapshot(self, vehicle_id: int, departure_date: date, viewer_id: Optional[str] = None) -> Dict[str, str]:
        return self.personalize(await self.raw(vehicle_id, departure_date), viewer_id)

    async def invalidate(self, vehicle_id: int, departure_dates: Iterable[date]) -> None:
        await self.cache.invalidate_projection(vehicle_id, departure_dates)
