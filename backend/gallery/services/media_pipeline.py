from __future__ import annotations

import logging
from dataclasses import dataclass
from uuid import UUID

from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from gallery.core.config import Settings, settings as default_settings
from gallery.models.image import VariantStatus
from gallery.services.asset_status import AssetStatusStore
from gallery.services.derivative_queue import DerivativeQueue
from gallery.services.image_transform import ImageTransformer, PillowImageTransformer
from gallery.services.leader_lock import leadership
from gallery.services.media_errors import InvalidArgument
from gallery.services.object_store import ObjectStore, build_object_store
from gallery.services.retry import database_retry_policy
from gallery.services.rotation import RotationCoordinator
from gallery.services.rotation_lock import build_rotation_lock
from gallery.services.variant_keys import VariantDescriptor

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class MediaPipeline:
    store: ObjectStore
    status_store: AssetStatusStore
    variants: VariantDescriptor
    queue: DerivativeQueue
    rotation: RotationCoordinator


def build_media_pipeline(
    *,
    session_factory: async_sessionmaker[AsyncSession],
    redis: Redis | None = None,
    config: Settings | None = None,
    store: ObjectStore | None = None,
    transformer: ImageTransformer | None = None,
) -> MediaPipeline:
    """Construct the scheduler and coordinator once per process; callers share this handle."""
    cfg = config or default_settings
    variants = VariantDescriptor(cfg.media_variant_widths)
    object_store = store or build_object_store(cfg)
    status_store = AssetStatusStore(session_factory, database_retry_policy(cfg))
    image_transformer = transformer or PillowImageTransformer()
    queue = DerivativeQueue(
        store=object_store,
        status_store=status_store,
        transformer=image_transformer,
        variants=variants,
        max_concurrent=max(1, int(cfg.media_derivative_max_concurrent or 1)),
    )
    rotation = RotationCoordinator(
        store=object_store,
        status_store=status_store,
        transformer=image_transformer,
        variants=variants,
        lock=build_rotation_lock(status_store, redis, cfg),
        require_settled_variants=bool(cfg.media_rotation_requires_settled_variants),
    )
    return MediaPipeline(
        store=object_store,
        status_store=status_store,
        variants=variants,
        queue=queue,
        rotation=rotation,
    )


RECONCILE_LOCK_NAME = "media-derivative-reconcile"


async def reconcile_unfinished(
    pipeline: MediaPipeline,
    *,
    leader_engine: AsyncEngine | None = None,
    page_size: int = 500,
) -> int:
    """Re-enqueue assets left ``pending`` or ``processing`` by a previous process.

    With ``leader_engine`` on Postgres only the replica holding the reconcile
    advisory lock sweeps; the others return 0. Pages are keyed on the asset id.
    """
    if leader_engine is None:
        return await _reconcile_pages(pipeline, page_size)
    async with leadership(leader_engine, RECONCILE_LOCK_NAME) as leader:
        if not leader:
            logger.info("derivative_reconcile_skipped", extra={"reason": "not_leader"})
            return 0
        return await _reconcile_pages(pipeline, page_size)


async def _reconcile_pages(pipeline: MediaPipeline, page_size: int) -> int:
    size = max(1, int(page_size or 1))
    enqueued = 0
    after: UUID | None = None
    while True:
        images = await pipeline.status_store.list_unfinished_page(after=after, limit=size)
        for image in images:
            try:
                pipeline.queue.enqueue(image.id, image.key, image.mime_type)
            except InvalidArgument as exc:
                logger.warning(
                    "derivative_reconcile_rejected",
                    extra={"asset_id": str(image.id), "original_key": image.key, "error": str(exc)},
                )
                await pipeline.status_store.set_status(image.id, VariantStatus.failed)
                continue
            enqueued += 1
        if len(images) < size:
            break
        after = images[-1].id
    if enqueued:
        logger.info("derivative_reconcile_enqueued", extra={"count": enqueued})
    return enqueued
