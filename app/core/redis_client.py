"""
Redis Client — async singleton.

משמש כמטמון משותף לכל ה-workers (מפתח אימות החתימה של ספק התשלומים),
כך ש-refresh אחד מרענן את המפתח לכולם.
"""
import asyncio
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()

PSP_PUBKEY_CACHE_KEY = "psp:webhook_pubkey"


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    parsed = urlparse(url)
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(settings.REDIS_URL, decode_responses=True)
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis — ב-app shutdown ובסיום כל Celery task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def cache_get(key: str) -> str | None:
    """קריאה ממטמון Redis. כשל Redis מוחזר כ-miss ולא מפיל את הקורא."""
    try:
        client = await get_redis()
        return await client.get(key)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("Redis cache read failed", extra_data={"key": key, "error": str(exc)})
        return None


async def cache_set(key: str, value: str, ttl_seconds: int) -> None:
    """כתיבה למטמון Redis עם TTL. כשל נרשם בלוג — המטמון אינו מקור אמת."""
    try:
        client = await get_redis()
        await client.setex(key, ttl_seconds, value)
    except (aioredis.RedisError, OSError) as exc:
        logger.warning("Redis cache write failed", extra_data={"key": key, "error": str(exc)})

