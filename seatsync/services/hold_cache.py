"""Redis mirror of live holds, the expiry schedule, and the projection cache.

Everything here is best-effort: the durable store is authoritative and all of
this can be rebuilt from it, so Redis failures are logged and reported as a
cache miss rather than raised.
"""
import json
import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from seatsync.clock import from_epoch, to_epoch

logger = logging.getLogger(__name__)

HOLD_KEY_TPL = "hold:{vehicle_id}:{date}:{seat_label}"
USER_HOLDS_KEY_TPL = "user_holds:{user_id}"
PROJECTION_KEY_TPL = "availability:{vehicle_id}:{date}"
SCHEDULE_KEY = "hold_expiry"
PROJECTION_GEN_KEY_TPL = "availability_gen:{vehicle_id}:{date}"
PROJECTION_GEN_TTL = 24 * 60 * 60

# add to the user index without ever shortening its ttl
_INDEX_ADD_SCRIPT = """
redis.call('sadd', KEYS[1], ARGV[1])
if redis.call('ttl', KEYS[1]) < tonumber(ARGV[2]) then
  redis.call('expire', KEYS[1], ARGV[2])
end
return 1
"""

# store a rebuilt map only if no write invalidated it while it was being built
_PUT_IF_GENERATION_SCRIPT = """
local current = redis.call('get', KEYS[1]) or '0'
if current == ARGV[1] then
  redis.call('set', KEYS[2], ARGV[2], 'EX', ARGV[3])
  return 1
end
return 0
"""


@dataclass(frozen=True)
class HoldRef:
    vehicle_id: int
    departure_date: date
    seat_label: str

    @property
    def member(self) -> str:
        return f"{self.vehicle_id}|{self.departure_date.isoformat()}|{self.seat_label}"

    @classmethod
    def parse(cls, member: str) -> "HoldRef":
        vehicle_id, day, seat_label = member.split("|", 2)
        return cls(int(vehicle_id), date.fromisoformat(day), seat_label)


@dataclass
class CachedHold:
    user_id: str
    held_at: datetime
    expires_at: datetime


class HoldCache:
    def __init__(self, redis, projection_ttl: int = 300):
        self.redis = redis
        self.projection_ttl = projection_ttl

    @staticmethod
    def _hold_key(ref: HoldRef) -> str:
        return HOLD_KEY_TPL.format(
            vehicle_id=ref.vehicle_id, date=ref.departure_date.isoformat(), seat_label=ref.seat_label
        )

    async def put_hold(self, ref: HoldRef, user_id: str, held_at: datetime, expires_at: datetime, now: datetime) -> bool:
        ttl = max(1, math.ceil((expires_at - now).total_seconds()))
        payload = json.dumps(
            {"userId": user_id, "heldAt": to_epoch(held_at), "expiresAt": to_epoch(expires_at)}
        )
        user_key = USER_HOLDS_KEY_TPL.format(user_id=user_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(self._hold_key(ref), payload, ex=ttl)
                pipe.zadd(SCHEDULE_KEY, {ref.member: to_epoch(expires_at)})
                pipe.eval(_INDEX_ADD_SCRIPT, 1, user_key, ref.member, ttl)
                await pipe.execute()
            return True
        except RedisError:
            logger.warning("hold mirror write failed for %s", ref.member, exc_info=True)
            return False

    async def get_hold(self, ref: HoldRef) -> Optional[CachedHold]:
        try:
            raw = await self.redis.get(self._hold_key(ref))
        except RedisError:
            logger.warning("hold mirror read failed for %s", ref.member, exc_info=True)
            return None
        return self._decode(raw)

    async def get_holds(self, refs: List[HoldRef]) -> Dict[HoldRef, CachedHold]:
        if not refs:
            return {}
        try:
            raws = await self.redis.mget([self._hold_key(ref) for ref in refs])
        except RedisError:
            logger.warning("hold mirror bulk read failed", exc_info=True)
            return {}
        out = {}
        for ref, raw in zip(refs, raws):
            hold = self._decode(raw)
            if hold is not None:
                out[ref] = hold
        return out

    async def remove_hold(self, ref: HoldRef, user_id: Optional[str] = None) -> bool:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._hold_key(ref))
                pipe.zrem(SCHEDULE_KEY, ref.member)
                if user_id:
                    pipe.srem(USER_HOLDS_KEY_TPL.format(user_id=user_id), ref.member)
                await pipe.execute()
            return True
        except RedisError:
            logger.warning("hold mirror delete failed for %s", ref.member, exc_info=True)
            return False

    async def due_holds(self, now: datetime, limit: int = 500) -> List[HoldRef]:
        """Entries of the expiry schedule whose expiry is at or before ``now``."""
        try:
            members = await self.redis.zrangebyscore(SCHEDULE_KEY, "-inf", to_epoch(now), start=0, num=limit)
        except RedisError:
            logger.warning("could not read hold expiry schedule", exc_info=True)
            return []
        refs = []
        for member in members:
            try:
                refs.append(HoldRef.parse(member))
            except ValueError:
                logger.error("dropping malformed schedule entry %r", member)
                await self.redis.zrem(SCHEDULE_KEY, member)
        return refs

    async def user_hold_refs(self, user_id: str) -> List[HoldRef]:
        try:
            members = await self.redis.smembers(USER_HOLDS_KEY_TPL.format(user_id=user_id))
        except RedisError:
            logger.warning("could not read holds for user %s", user_id, exc_info=True)
            return []
        return sorted((HoldRef.parse(m) for m in members), key=lambda r: r.member)

    # -- projection cache ---------------------------------------------------

    @staticmethod
    def _projection_keys(vehicle_id: int, departure_date: date):
        day = departure_date.isoformat()
        return (
            PROJECTION_KEY_TPL.format(vehicle_id=vehicle_id, date=day),
            PROJECTION_GEN_KEY_TPL.format(vehicle_id=vehicle_id, date=day),
        )

    async def get_projection(self, vehicle_id: int, departure_date: date) -> Optional[dict]:
        key, _ = self._projection_keys(vehicle_id, departure_date)
        try:
            raw = await self.redis.get(key)
        except RedisError:
            logger.warning("projection cache unreachable", exc_info=True)
            return None
        return json.loads(raw) if raw else None

    async def projection_generation(self, vehicle_id: int, departure_date: date) -> Optional[str]:
        """Current invalidation count of a scope; read it before rebuilding the map."""
        _, gen_key = self._projection_keys(vehicle_id, departure_date)
        try:
            return await self.redis.get(gen_key) or "0"
        except RedisError:
            logger.warning("projection generation unreachable", exc_info=True)
            return None

    async def put_projection(self, vehicle_id: int, departure_date: date, projection: dict, generation: str) -> bool:
        """Cache ``projection`` unless the scope was invalidated after ``generation`` was read."""
        key, gen_key = self._projection_keys(vehicle_id, departure_date)
        try:
            stored = await self.redis.eval(
                _PUT_IF_GENERATION_SCRIPT, 2, gen_key, key, str(generation), json.dumps(projection), self.projection_ttl
            )
        except RedisError:
            logger.warning("projection cache write failed", exc_info=True)
            return False
        return bool(stored)

    async def invalidate_projection(self, vehicle_id: int, departure_dates: Iterable[date]) -> None:
        pairs = [self._projection_keys(vehicle_id, d) for d in set(departure_dates)]
        if not pairs:
            return
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key, gen_key in pairs:
                    pipe.delete(key)
                    pipe.incr(gen_key)
                    pipe.expire(gen_key, PROJECTION_GEN_TTL)
                await pipe.execute()
        except RedisError:
            logger.warning("projection cache invalidation failed", exc_info=True)

    @staticmethod
    def _decode(raw: Optional[str]) -> Optional[CachedHold]:
        if not raw:
            return None
        data = json.loads(raw)
        return CachedHold(
            user_id=data["userId"],
            held_at=from_epoch(data["heldAt"]),
            expires_at=from_epoch(data["expiresAt"]),
        )
