from __future__ import annotations

import logging

from redis.asyncio import Redis

from gallery.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

_client: Redis | None = None


def redis_from_settings(config: Settings) -> Redis | None:
    url = (config.redis_url or "").strip()
    if not url:
        return None
    return Redis.from_url(url, encoding="utf-8", decode_responses=True)


def get_redis(config: Settings | None = None) -> Redis | None:
    """Process-wide Redis client, or ``None`` when REDIS_URL is unset (leases then live in the database)."""
    global _client
    if _client is None:
        _client = redis_from_settings(config or default_settings)
        if _client is not None:
            logger.info("redis_client_created")
    return _client


async def close_redis() -> None:
    global _client
    client, _client = _client, None
    if client is None:
        return
    try:
        await client.aclose()
    except Exception:
        logger.exception("redis_close_failed")
