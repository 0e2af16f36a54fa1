import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Iterable, List, Optional

from redis.exceptions import RedisError

from seatsync.clock import to_epoch

logger = logging.getLogger(__name__)

WATCHED_SCOPES_KEY = "watched_scopes"


@dataclass(frozen=True)
class Scope:
    route_id: int
    departure_date: Optional[date] = None

    @property
    def member(self) -> str:
        day = self.departure_date.isoformat() if self.departure_date else "*"
        return f"{self.route_id}|{day}"

    @classmethod
    def parse(cls, member: str) -> "Scope":
        route_id, day = member.split("|", 1)
        return cls(int(route_id), None if day == "*" else date.fromisoformat(day))


class ScopeRegistry:
    """Scopes that currently have viewers, shared by every process through Redis.

    Each process touches the scopes its own sockets watch; a scope nobody has
    touched within ``ttl`` seconds is no longer considered watched.
    """

    def __init__(self, redis, ttl: int = 60):
        self.redis = redis
        self.ttl = ttl

    async def touch(self, scopes: Iterable[Scope], now: datetime) -> None:
        mapping = {scope.member: to_epoch(now) for scope in scopes}
        if not mapping:
            return
        try:
            await self.redis.zadd(WATCHED_SCOPES_KEY, mapping)
        except RedisError:
            logger.warning("could not record watched scopes", exc_info=True)

    async def active(self, now: datetime) -> List[Scope]:
        cutoff = to_epoch(now - timedelta(seconds=self.ttl))
        try:
            await self.redis.zremrangebyscore(WATCHED_SCOPES_KEY, "-inf", cutoff)
            members = await self.redis.zrange(WATCHED_SCOPES_KEY, 0, -1)
        except RedisError:
            logger.warning("could not read watched scopes", exc_info=True)
            return []
        scopes = []
        for member in members:
            try:
                scopes.append(Scope.parse(member))
            except ValueError:
                logger.error("ignoring malformed watched scope %r", member)
        return scopes
