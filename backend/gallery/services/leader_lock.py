from __future__ import annotations

import hashlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)


def _is_postgres(engine: AsyncEngine) -> bool:
    return (engine.url.get_backend_name() or "").lower() == "postgresql"


def _lock_id(name: str) -> int:
    digest = hashlib.blake2b(str(name or "").encode("utf-8"), digest_size=8).digest()
    # Fit within signed BIGINT range.
    return int.from_bytes(digest, "big", signed=False) % (2**63 - 1)


@asynccontextmanager
async def leadership(engine: AsyncEngine, name: str) -> AsyncIterator[bool]:
    """Yield True on the single replica that holds the advisory lock ``name``.

    Advisory locks are session-scoped, so the lock lives on a dedicated
    connection for the duration of the block and is released on exit. On
    non-Postgres backends (sqlite) there is no election and every caller leads.
    """
    if not _is_postgres(engine):
        yield True
        return

    lock_id = _lock_id(name)
    async with engine.connect() as conn:
        acquired = bool((await conn.execute(text("SELECT pg_try_advisory_lock(:id)"), {"id": lock_id})).scalar())
        if not acquired:
            logger.info("leader_lock_busy", extra={"lock_name": name, "lock_id": lock_id})
            yield False
            return
        logger.info("leader_lock_acquired", extra={"lock_name": name, "lock_id": lock_id})
        try:
            yield True
        finally:
            with suppress(Exception):
                await conn.execute(text("SELECT pg_advisory_unlock(:id)"), {"id": lock_id})
