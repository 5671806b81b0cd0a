from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol
from uuid import UUID, uuid4

from redis.asyncio import Redis

from gallery.core.config import Settings, settings as default_settings
from gallery.services.asset_status import AssetStatusStore
from gallery.services.media_errors import AlreadyInProgress
from gallery.services.retry import RetryPolicy

logger = logging.getLogger(__name__)

# Delete the key only while it still holds our token.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RotationLock(Protocol):
    async def acquire(self, asset_id: UUID) -> str | None: ...

    async def release(self, asset_id: UUID, token: str) -> None: ...


class DatabaseRotationLock:
    """Per-asset lease stored as a row in ``rotation_leases``."""

    def __init__(self, store: AssetStatusStore, *, ttl_seconds: int) -> None:
        self.store = store
        self.ttl_seconds = max(1, int(ttl_seconds))

    async def acquire(self, asset_id: UUID) -> str | None:
        token = uuid4().hex
        if await self.store.acquire_lease(asset_id, token, ttl_seconds=self.ttl_seconds):
            return token
        return None

    async def release(self, asset_id: UUID, token: str) -> None:
        await self.store.release_lease(asset_id, token)


class RedisRotationLock:
    """Per-asset lease stored as a Redis key with a TTL (``SET NX EX``)."""

    def __init__(self, redis: Redis, *, ttl_seconds: int, prefix: str, policy: RetryPolicy) -> None:
        self.redis = redis
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.prefix = prefix
        self.policy = policy

    def _key(self, asset_id: UUID) -> str:
        return f"{self.prefix}:{asset_id}"

    async def acquire(self, asset_id: UUID) -> str | None:
        token = uuid4().hex
        acquired = await self.policy.run(
            lambda: self.redis.set(self._key(asset_id), token, nx=True, ex=self.ttl_seconds)
        )
        return token if acquired else None

    async def release(self, asset_id: UUID, token: str) -> None:
        await self.policy.run(lambda: self.redis.eval(_RELEASE_SCRIPT, 1, self._key(asset_id), token))


@asynccontextmanager
async def hold_lock(lock: RotationLock, asset_id: UUID) -> AsyncIterator[str]:
    """Hold the lock for ``asset_id`` or fail fast with :class:`AlreadyInProgress`."""
    token = await lock.acquire(asset_id)
    if token is None:
        raise AlreadyInProgress(f"Rotation already in progress for image {asset_id}")
    try:
        yield token
    finally:
        try:
            await lock.release(asset_id, token)
        except Exception as exc:
            # Unreleased leases are reclaimed once they expire.
            logger.warning("rotation_lock_release_failed", extra={"asset_id": str(asset_id), "error": str(exc)})


def build_rotation_lock(
    store: AssetStatusStore,
    redis: Redis | None,
    config: Settings | None = None,
) -> RotationLock:
    cfg = config or default_settings
    ttl = max(1, int(cfg.media_rotation_lease_seconds or 120))
    if redis is None:
        return DatabaseRotationLock(store, ttl_seconds=ttl)
    return RedisRotationLock(
        redis,
        ttl_seconds=ttl,
        prefix=cfg.media_rotation_lock_prefix,
        policy=RetryPolicy.from_settings("rotation_lock", config=cfg),
    )
