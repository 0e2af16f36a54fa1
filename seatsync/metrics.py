from prometheus_client import Counter, Gauge, Histogram
import logging

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

# Seat lock metrics
SEAT_LOCK_LATENCY = Histogram("seatsync_seat_lock_latency_seconds", "Latency for seat lock operations")
SEAT_LOCK_ATTEMPTS = Counter("seatsync_seat_lock_attempts_total", "Total seat lock attempts", ["result"])

# Hold lifecycle
HOLD_OPERATIONS = Counter("seatsync_hold_operations_total", "Hold operations by outcome", ["operation", "result"])
ACTIVE_HOLDS = Gauge("seatsync_active_holds", "Holds currently present in the expiry schedule")

# Booking / payment metrics
BOOKINGS_FINALIZED = Counter("seatsync_bookings_finalized_total", "Finalized bookings", ["result"])
SEATS_BOOKED = Counter("seatsync_seats_booked_total", "Seats promoted to booked")
PAYMENT_SUCCESS = Counter("seatsync_payments_success_total", "Successful payments processed", ["provider"])
PAYMENT_FAILURE = Counter("seatsync_payments_failure_total", "Failed payments", ["provider"])

# Reconciliation sweeper
SWEEP_RUNS = Counter("seatsync_sweep_runs_total", "Sweeper passes", ["result"])
SWEEP_DURATION = Histogram("seatsync_sweep_duration_seconds", "Duration of a sweeper pass")
SWEEP_EXPIRED = Counter("seatsync_sweep_expired_total", "Holds expired by the sweeper")
SWEEP_REPAIRED = Counter("seatsync_sweep_repaired_total", "Inconsistent seat records repaired", ["kind"])

# Real-time layer
WS_CONNECTIONS = Gauge("seatsync_ws_connections", "Open WebSocket connections in this process")
BROADCASTS = Counter("seatsync_broadcasts_total", "Broadcast messages by type", ["type"])


async def update_hold_gauges(redis, schedule_key: str = "hold_expiry"):
    """Refresh gauges that are read from Redis rather than counted in-process."""
    try:
        ACTIVE_HOLDS.set(await redis.zcard(schedule_key))
    except RedisError:
        logger.warning("could not read hold schedule size", exc_info=True)
