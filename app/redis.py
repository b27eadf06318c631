from collections.abc import AsyncGenerator

import redis.asyncio as aioredis

from app.config import settings

# Shared by the rate limiter; closed by the application lifespan
redis_pool = aioredis.ConnectionPool.from_url(settings.redis_url, decode_responses=False)


async def get_redis() -> AsyncGenerator[aioredis.Redis, None]:
    client = aioredis.Redis(connection_pool=redis_pool)
    try:
        yield client
    finally:
        await client.aclose()


async def close_redis_pool() -> None:
    await redis_pool.aclose()
