from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from gallery.models.image import Image, RotationLease, VariantStatus
from gallery.services.media_errors import AssetNotFound
from gallery.services.retry import RetryPolicy, database_retry_policy

logger = logging.getLogger(__name__)

UNFINISHED_STATUSES = (VariantStatus.pending, VariantStatus.processing)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class AssetStatusStore:
    """Durable per-asset state in the relational store.

    Each call opens its own session so a retried attempt never reuses a
    connection that failed mid-transaction.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], policy: RetryPolicy | None = None) -> None:
        self.session_factory = session_factory
        self.policy = policy or database_retry_policy()

    async def get_asset(self, asset_id: UUID) -> Image:
        async def _load() -> Image | None:
            async with self.session_factory() as session:
                return await session.scalar(select(Image).where(Image.id == asset_id))

        image = await self.policy.run(_load)
        if image is None:
            raise AssetNotFound(f"Image {asset_id} not found")
        return image

    async def set_status(self, asset_id: UUID, status: VariantStatus) -> None:
        async def _write() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Image).where(Image.id == asset_id).values(variant_status=status)
                )
                await session.commit()
                return int(result.rowcount or 0)

        if await self.policy.run(_write) == 0:
            raise AssetNotFound(f"Image {asset_id} not found")

    async def transition(self, asset_id: UUID, status: VariantStatus, *, allowed_from: Iterable[VariantStatus]) -> bool:
        """Set ``status`` only when the current status is one of ``allowed_from``."""
        sources = tuple(allowed_from)

        async def _write() -> int:
            async with self.session_factory() as session:
                result = await session.execute(
                    update(Image)
                    .where(Image.id == asset_id, Image.variant_status.in_(sources))
                    .values(variant_status=status)
                )
                await session.commit()
                return int(result.rowcount or 0)

        return await self.policy.run(_write) > 0

    async def touch(self, asset_id: UUID, *, size_bytes: int | None = None) -> datetime:
        """Bump the asset's last-modified marker so clients drop cached copies."""
        stamp = _now()
        values: dict[str, object] = {"updated_at": stamp}
        if size_bytes is not None:
            values["size_bytes"] = int(size_bytes)

        async def _write() -> int:
            async with self.session_factory() as session:
                result = await session.execute(update(Image).where(Image.id == asset_id).values(**values))
                await session.commit()
                return int(result.rowcount or 0)

        if await self.policy.run(_write) == 0:
            raise AssetNotFound(f"Image {asset_id} not found")
        return stamp

    async def list_by_status(self, statuses: Iterable[VariantStatus], *, limit: int = 500) -> list[Image]:
        wanted = tuple(statuses)

        async def _load() -> list[Image]:
            async with self.session_factory() as session:
                rows = await session.execute(
                    select(Image)
                    .where(Image.variant_status.in_(wanted))
                    .order_by(Image.created_at.asc())
                    .limit(max(1, min(int(limit or 1), 5000)))
                )
                return list(rows.scalars().all())

        return await self.policy.run(_load)

    async def list_unfinished(self, *, limit: int = 500) -> list[Image]:
        return await self.list_by_status(UNFINISHED_STATUSES, limit=limit)

    async def list_unfinished_page(self, *, after: UUID | None = None, limit: int = 500) -> list[Image]:
        """One page of unfinished assets ordered by id, starting strictly after ``after``."""
        page_size = max(1, min(int(limit or 1), 5000))

        async def _load() -> list[Image]:
            stmt = select(Image).where(Image.variant_status.in_(UNFINISHED_STATUSES))
            if after is not None:
                stmt = stmt.where(Image.id > after)
            async with self.session_factory() as session:
                rows = await session.execute(stmt.order_by(Image.id.asc()).limit(page_size))
                return list(rows.scalars().all())

        return await self.policy.run(_load)

    async def acquire_lease(self, asset_id: UUID, holder: str, *, ttl_seconds: int) -> bool:
        """Take the rotation lease for ``asset_id``; False when another holder owns a live lease."""

        async def _acquire() -> bool:
            now = _now()
            expires_at = now + timedelta(seconds=max(1, int(ttl_seconds)))
            async with self.session_factory() as session:
                taken_over = await session.execute(
                    update(RotationLease)
                    .where(RotationLease.asset_id == asset_id, RotationLease.expires_at <= now)
                    .values(holder=holder, expires_at=expires_at)
                )
                if int(taken_over.rowcount or 0) > 0:
                    await session.commit()
                    logger.info("rotation_lease_taken_over", extra={"asset_id": str(asset_id)})
                    return True
                session.add(RotationLease(asset_id=asset_id, holder=holder, expires_at=expires_at))
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    return False
                return True

        return await self.policy.run(_acquire)

    async def release_lease(self, asset_id: UUID, holder: str) -> None:
        async def _release() -> None:
            async with self.session_factory() as session:
                await session.execute(
                    delete(RotationLease).where(RotationLease.asset_id == asset_id, RotationLease.holder == holder)
                )
                await session.commit()

        await self.policy.run(_release)
