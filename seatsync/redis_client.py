from redis import asyncio as aioredis

from seatsync.config import settings


def create_redis(url: str = None) -> aioredis.Redis:
    return aioredis.from_url(url or settings.REDIS_URL, decode_responses=True)
