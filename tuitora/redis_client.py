import redis.asyncio as redis
from .config import settings

# Use environment/config URL
REDIS_URL = settings.redis_url
r = redis.from_url(REDIS_URL, encoding="utf-8", decode_responses=True)


async def get_redis():
    return r
