"""
config/redis_client.py
Shared async Redis connection plus the few key patterns SlotBook uses:
cached calendar months, the access-token deny-list and per-IP request
counters. Slot reservation itself never touches Redis; the database row
is the single source of truth for who holds a slot.
"""

import json
import time
from typing import Any, Optional

import redis.asyncio as aioredis

from config.settings import settings

redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    await redis_client.ping()


async def close_redis() -> None:
    global redis_client
    if redis_client is not None:
        await redis_client.aclose()
        redis_client = None


def get_redis() -> aioredis.Redis:
    """FastAPI dependency."""
    if redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


class RedisCache:
    """Key conventions over a raw client. Values are stored as JSON."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def get(self, key: str) -> Optional[Any]:
        raw = await self.client.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, value: Any, ttl: int = settings.REDIS_CACHE_TTL) -> None:
        await self.client.set(key, json.dumps(value, default=str), ex=ttl)

    async def delete_pattern(self, pattern: str) -> int:
        # SCAN rather than KEYS so a large keyspace does not block the server
        keys = [key async for key in self.client.scan_iter(match=pattern)]
        return await self.client.delete(*keys) if keys else 0

    # ── Calendar months ──────────────────────────────────────
    @staticmethod
    def calendar_key(provider_id: str, year: int, month: int) -> str:
        return f"calendar:{provider_id}:{year:04d}-{month:02d}"

    async def invalidate_calendar(self, provider_id: str) -> int:
        """Forget every cached month of one provider."""
        return await self.delete_pattern(f"calendar:{provider_id}:*")

    # ── Token deny-list ──────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Entries expire with the token they block."""
        await self.client.set(f"jwt_revoked:{jti}", "1", ex=max(ttl_seconds, 1))

    async def is_token_revoked(self, jti: str) -> bool:
        return bool(await self.client.exists(f"jwt_revoked:{jti}"))

    # ── Request counters ─────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """Fixed window counter. True while the caller is under `limit`."""
        bucket = f"{key}:{int(time.time()) // window_seconds}"
        pipe = self.client.pipeline()
        pipe.incr(bucket)
        pipe.expire(bucket, window_seconds)
        count, _ = await pipe.execute()
        return count <= limit
