import logging
import time
from contextlib import asynccontextmanager
from typing import Iterable, List, Optional, Tuple
from uuid import uuid4

from redis.exceptions import RedisError

from seatsync.errors import SeatLocked, StorageError
from seatsync.metrics import SEAT_LOCK_ATTEMPTS, SEAT_LOCK_LATENCY

logger = logging.getLogger(__name__)

LOCK_KEY_TPL = "seat_lock:{vehicle_id}:{seat_label}"


_CAS_DEL_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
  return redis.call('del', KEYS[1])
else
  return 0
end
"""


class SeatLockManager:
    """Short-TTL mutual exclusion around a single seat's read-check-write.

    Acquisition never blocks: a held lock means ``seat_locked`` and the caller
    decides whether to retry.
    """

    def __init__(self, redis, ttl: int = 2):
        self.redis = redis
        self.ttl = ttl

    async def acquire(self, vehicle_id: int, seat_label: str) -> Optional[str]:
        """Try to take the lock. Returns the owner token, or None if someone else holds it."""
        key = LOCK_KEY_TPL.format(vehicle_id=vehicle_id, seat_label=seat_label)
        start = time.perf_counter()
        token = str(uuid4())
        try:
            ok = await self.redis.set(key, token, ex=self.ttl, nx=True)
        except RedisError as exc:
            SEAT_LOCK_ATTEMPTS.labels(result="error").inc()
            raise StorageError("lock store unavailable") from exc
        SEAT_LOCK_LATENCY.observe(time.perf_counter() - start)
        if not ok:
            SEAT_LOCK_ATTEMPTS.labels(result="failed").inc()
            return None
        SEAT_LOCK_ATTEMPTS.labels(result="success").inc()
        return token

    async def release(self, vehicle_id: int, seat_label: str, token: str) -> bool:
        """Compare-and-delete so an expired lock re-taken by another caller is left alone."""
        key = LOCK_KEY_TPL.format(vehicle_id=vehicle_id, seat_label=seat_label)
        try:
            res = await self.redis.eval(_CAS_DEL_SCRIPT, 1, key, token)
        except RedisError:
            # the TTL frees it anyway
            logger.warning("failed to release seat lock %s", key, exc_info=True)
            SEAT_LOCK_ATTEMPTS.labels(result="release_error").inc()
            return False
        ok = bool(res)
        SEAT_LOCK_ATTEMPTS.labels(result=("released" if ok else "stale")).inc()
        return ok

    @asynccontextmanager
    async def locked(self, vehicle_id: int, seat_label: str):
        token = await self.acquire(vehicle_id, seat_label)
        if token is None:
            raise SeatLocked(f"seat {seat_label} is being modified, retry")
        try:
            yield token
        finally:
            await self.release(vehicle_id, seat_label, token)

    @asynccontextmanager
    async def locked_many(self, vehicle_id: int, seat_labels: Iterable[str]):
        """Lock several seats of one vehicle, all or none, in label order."""
        acquired: List[Tuple[str, str]] = []
        try:
            for label in sorted(set(seat_labels)):
                token = await self.acquire(vehicle_id, label)
                if token is None:
                    raise SeatLocked(f"seat {label} is being modified, retry")
                acquired.append((label, token))
            yield [label for label, _ in acquired]
        finally:
            for label, token in acquired:
                await self.release(vehicle_id, label, token)
