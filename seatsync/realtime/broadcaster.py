"""Fan-out of seat events to channel members.

``LocalBroadcaster`` delivers straight to this process's sockets.
``RedisBroadcaster`` publishes to a Redis channel and every process relays
what it receives to its own sockets, so a hold taken through one server (or
expired by a Celery worker) reaches viewers connected to any other.
"""
import asyncio
import json
import logging
from datetime import date
from typing import Optional

from redis.exceptions import RedisError

from seatsync.metrics import BROADCASTS
from seatsync.realtime.connection_manager import ConnectionManager, ConnectionSession
from seatsync.realtime.protocol import MessageType, SeatEvent, encode

logger = logging.getLogger(__name__)


class LocalBroadcaster:
    def __init__(self, connections: Optional[ConnectionManager] = None):
        self.connections = connections or ConnectionManager()

    async def seat_changed(self, event: SeatEvent) -> None:
        await self.publish(event.to_message())

    async def publish(self, message: dict) -> None:
        await self.deliver(message)

    async def deliver(self, message: dict) -> None:
        data = message.get("data", {})
        route_id = data.get("scopeId")
        if route_id is None:
            logger.error("dropping broadcast without scope: %s", message.get("type"))
            return
        day = data.get("date")
        try:
            await self.connections.broadcast(int(route_id), date.fromisoformat(day) if day else None, encode(message))
        except Exception:
            # broadcasts are fire-and-forget
            logger.exception("broadcast of %s failed", message.get("type"))
            return
        BROADCASTS.labels(type=message.get("type", "unknown")).inc()

    async def member_count(
        self, route_id: int, departure_date: Optional[date], exclude: Optional[ConnectionSession] = None
    ) -> int:
        """Tell the channel how many viewers it has. Counts are per process."""
        count = self.connections.member_count(route_id, departure_date)
        message = {
            "type": MessageType.MEMBER_COUNT,
            "data": {
                "scopeId": route_id,
                "date": departure_date.isoformat() if departure_date else None,
                "memberCount": count,
            },
        }
        await self.connections.broadcast(route_id, departure_date, encode(message), exclude=exclude)
        BROADCASTS.labels(type=MessageType.MEMBER_COUNT).inc()
        return count


class RedisBroadcaster(LocalBroadcaster):
    def __init__(self, redis, channel: str, connections: Optional[ConnectionManager] = None):
        super().__init__(connections)
        self.redis = redis
        self.channel = channel

    async def publish(self, message: dict) -> None:
        try:
            await self.redis.publish(self.channel, encode(message))
        except RedisError:
            logger.warning("publish failed, delivering locally only", exc_info=True)
            await self.deliver(message)

    async def relay(self) -> None:
        """Forward everything published on the channel to local sockets until cancelled."""
        while True:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.subscribe(self.channel)
                logger.info("relaying seat events from %s", self.channel)
                async for raw in pubsub.listen():
                    if raw.get("type") != "message":
                        continue
                    try:
                        message = json.loads(raw["data"])
                    except (TypeError, ValueError):
                        logger.error("ignoring malformed broadcast payload")
                        continue
                    await self.deliver(message)
            except asyncio.CancelledError:
                raise
            except RedisError:
                logger.warning("broadcast relay lost its subscription, reconnecting", exc_info=True)
                await asyncio.sleep(1)
            finally:
                await pubsub.aclose()
