import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from seatsync.clock import utcnow
from seatsync.config import Settings, settings as default_settings
from seatsync.db.session import build_engine, build_session_factory
from seatsync.realtime.broadcaster import LocalBroadcaster, RedisBroadcaster
from seatsync.realtime.connection_manager import ConnectionManager
from seatsync.redis_client import create_redis
from seatsync.services.availability import AvailabilityProjector
from seatsync.services.finalizer import BookingFinalizer
from seatsync.services.hold_cache import HoldCache
from seatsync.services.holds import HoldService
from seatsync.services.payment_gateway import BaseGateway, build_gateways
from seatsync.services.scope_registry import ScopeRegistry
from seatsync.services.seat_lock import SeatLockManager
from seatsync.services.sweeper import ReconciliationSweeper

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker
    redis: object
    locks: SeatLockManager
    cache: HoldCache
    projector: AvailabilityProjector
    connections: ConnectionManager
    broadcaster: LocalBroadcaster
    holds: HoldService
    finalizer: BookingFinalizer
    scopes: ScopeRegistry
    sweeper: ReconciliationSweeper
    gateways: Dict[str, BaseGateway]

    async def close(self):
        await self.redis.aclose()
        await self.engine.dispose()


def build_services(
    settings: Optional[Settings] = None,
    redis=None,
    engine: Optional[AsyncEngine] = None,
    redis_factory: Optional[Callable[[], object]] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Services:
    """Wire every component from settings. ``redis``/``engine`` override the URLs."""
    settings = settings or default_settings
    if redis is None:
        redis = redis_factory() if redis_factory else create_redis(settings.REDIS_URL)
    engine = engine or build_engine(settings.DATABASE_URL, echo=settings.DEBUG)
    session_factory = build_session_factory(engine)

    locks = SeatLockManager(redis, ttl=settings.SEAT_LOCK_TTL_SECONDS)
    cache = HoldCache(redis, projection_ttl=settings.AVAILABILITY_CACHE_SECONDS)
    projector = AvailabilityProjector(session_factory, cache, clock=clock)
    connections = ConnectionManager()
    if settings.BROADCAST_BACKEND == "redis":
        broadcaster = RedisBroadcaster(redis, settings.BROADCAST_CHANNEL, connections)
    else:
        broadcaster = LocalBroadcaster(connections)

    holds = HoldService(
        session_factory,
        locks,
        cache,
        projector,
        broadcaster,
        hold_minutes=settings.SEAT_HOLD_MINUTES,
        payment_hold_minutes=settings.PAYMENT_HOLD_MINUTES,
        max_hold_minutes=settings.MAX_HOLD_MINUTES,
        clock=clock,
    )
    gateways = build_gateways(settings)
    finalizer = BookingFinalizer(
        session_factory, holds, gateways=gateways, ref_prefix=settings.BOOKING_REF_PREFIX, clock=clock
    )
    scopes = ScopeRegistry(redis, ttl=settings.WATCHED_SCOPE_TTL_SECONDS)
    sweeper = ReconciliationSweeper(
        session_factory,
        holds,
        scopes,
        connections=connections,
        batch_size=settings.SWEEP_BATCH_SIZE,
        interval=settings.SWEEP_INTERVAL_SECONDS,
        clock=clock,
    )
    logger.debug("services built (broadcast=%s, sweeper=%s)", settings.BROADCAST_BACKEND, settings.SWEEPER_MODE)
    return Services(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=redis,
        locks=locks,
        cache=cache,
        projector=projector,
        connections=connections,
        broadcaster=broadcaster,
        holds=holds,
        finalizer=finalizer,
        scopes=scopes,
        sweeper=sweeper,
        gateways=gateways,
    )
