"""
Redis Client - async singleton, used for the display broadcast pub/sub channel.

משתמש ב-REDIS_URL מהקונפיגורציה (ברירת מחדל: redis://localhost:6379/0).
"""
import asyncio
import json
from typing import Any
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
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

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def publish_json(channel: str, payload: dict[str, Any]) -> int:
    """
    Publish a JSON document on a pub/sub channel.

    Returns:
        Number of subscribers that received the message (0 when no
        display is listening).
    """
    client = await get_redis()
    return await client.publish(channel, json.dumps(payload, default=str))


async def close_redis() -> None:
    """סגירת חיבור Redis - לקרוא ב-app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
