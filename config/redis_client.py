"""
config/redis_client.py
Async Redis client for slot claiming, JWT deny-list,
rate limiting, and pub/sub (realtime notification fan-out).
"""

import json
from typing import Optional
import redis.asyncio as aioredis
from redis.exceptions import WatchError

from config.settings import settings


# ── Global client (initialized on startup) ───────────────────
redis_client: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    """Initialize the Redis connection pool."""
    global redis_client
    redis_client = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
    )
    # Test connection
    await redis_client.ping()


async def close_redis() -> None:
    """Close Redis connection pool."""
    global redis_client
    if redis_client:
        await redis_client.aclose()


def get_redis() -> aioredis.Redis:
    """FastAPI dependency to get Redis client."""
    if not redis_client:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return redis_client


def notification_channel(recipient_id: str) -> str:
    return f"notifications:{recipient_id}"


# ── Cache Helpers ─────────────────────────────────────────────
class RedisCache:
    """Slot claims, token deny-list, realtime fan-out and rate limits."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    # ── Slot Claiming ────────────────────────────────────────
    async def lock_slot(self, slot_id: str, owner: str) -> bool:
        """
        Atomic slot claim using SET NX (set if not exists).
        Returns True if the claim was acquired, False if another request holds it.
        """
        result = await self.client.set(
            f"slot_lock:{slot_id}",
            owner,
            ex=settings.REDIS_SLOT_LOCK_TTL,
            nx=True,  # Only set if key doesn't exist
        )
        return result is True

    async def release_slot(self, slot_id: str, owner: str) -> bool:
        """
        Drop the claim only while `owner` still holds it. A claim that expired
        and was taken by another request is left alone.
        """
        key = f"slot_lock:{slot_id}"
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(key)
                if await pipe.get(key) != owner:
                    await pipe.unwatch()
                    return False
                pipe.multi()
                pipe.delete(key)
                await pipe.execute()
                return True
            except WatchError:
                # Key changed between GET and DELETE: someone else owns it now
                return False

    # ── JWT Deny List ─────────────────────────────────────────
    async def revoke_token(self, jti: str, ttl_seconds: int) -> None:
        """Add JWT ID to deny list until it expires."""
        await self.client.setex(f"jwt_revoked:{jti}", ttl_seconds, "1")

    async def is_token_revoked(self, jti: str) -> bool:
        return await self.client.exists(f"jwt_revoked:{jti}") == 1

    # ── Realtime ──────────────────────────────────────────────
    async def publish(self, recipient_id: str, event: dict) -> int:
        """Fan a change event out to websocket subscribers of one recipient."""
        return await self.client.publish(
            notification_channel(recipient_id), json.dumps(event, default=str)
        )

    # ── Rate Limiting ─────────────────────────────────────────
    async def check_rate_limit(self, key: str, limit: int, window_seconds: int = 60) -> bool:
        """
        Fixed window rate limiter.
        Returns True if request is allowed, False if rate limited.
        """
        pipe = self.client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window_seconds)
        results = await pipe.execute()
        current_count = results[0]
        return current_count <= limit
