"""Token bucket rate limiter backed by Redis."""

import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from app.auth.identity import USER_ID_HEADER
from app.config import settings
from app.redis import get_redis

# Lua script for atomic token bucket check-and-consume
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = capacity
    last_refill = now
end

local elapsed = now - last_refill
local new_tokens = math.min(capacity, tokens + elapsed * (refill_rate / 60.0))
local ttl = 3600
if refill_rate > 0 then
    ttl = math.ceil(capacity * 60 / refill_rate)
end

if new_tokens >= 1 then
    new_tokens = new_tokens - 1
    redis.call('HSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, ttl)
    return {1, math.floor(new_tokens), 0}
else
    local retry_after = 60
    if refill_rate > 0 then
        retry_after = math.ceil((1 - new_tokens) * 60 / refill_rate)
    end
    redis.call('HSET', key, 'tokens', new_tokens, 'last_refill', now)
    redis.call('EXPIRE', key, ttl)
    return {0, 0, retry_after}
end
"""


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) based on endpoint."""
    if method == "POST" and path.rstrip("/").endswith("/wallet/withdraw"):
        return (
            settings.rate_limit_withdrawal_capacity,
            settings.rate_limit_withdrawal_refill_per_min,
            "withdrawal",
        )
    if method in ("POST", "PATCH", "DELETE"):
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For for reverse proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Rate limit dependency, keyed by caller id (or IP when anonymous)."""
    method = request.method.upper()
    capacity, refill_rate, category = _get_rate_config(method, request.url.path)

    user_id = request.headers.get(USER_ID_HEADER)
    if user_id:
        bucket_key = f"ratelimit:{user_id}:{category}"
    else:
        bucket_key = f"ratelimit:ip:{_get_client_ip(request)}:{category}"

    result = await redis.eval(
        _TOKEN_BUCKET_SCRIPT, 1, bucket_key, capacity, refill_rate, time.time()
    )
    allowed, remaining, retry_after = int(result[0]), int(result[1]), int(result[2])

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
