"""Redis client used for notification fan-out (pub/sub).

Usage:
    from meetup_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await publish_json("escrow.events", {"event_type": "TRANSACTION_COMPLETED"})
"""

from __future__ import annotations

import json

import redis.asyncio as aioredis

from meetup_escrow.config import get_settings
from meetup_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    _redis_client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await _redis_client.ping()
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis:
    """Return the Redis client singleton. Must call init_redis() first."""
    if _redis_client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis_client


def is_redis_initialized() -> bool:
    return _redis_client is not None


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


async def publish_json(channel: str, message: dict, client: aioredis.Redis | None = None) -> int:
    """Publish a JSON-encoded message and return the number of subscribers reached."""
    redis = client or get_redis()
    return await redis.publish(channel, json.dumps(message, default=str))
