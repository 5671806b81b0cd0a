"""Bounded-concurrency scheduler that derives resized variants of uploaded originals.

At most ``max_concurrent`` derivation jobs run at once, however many uploads
arrive together. Jobs are admitted in FIFO order; when a running job finishes,
its task's done-callback frees the slot and admits the next queued job, so there
is no polling loop.

Per asset the queue drives ``variant_status``::

    pending --(admitted)--> processing --(all variants written)--> completed
                            processing --(any step raised)-------> failed

A failed asset stays failed until :meth:`DerivativeQueue.retry` or
:meth:`DerivativeQueue.rederive` puts it back to ``pending``. Deriving an asset
again simply overwrites its variant keys.

The FIFO and the running counter are only touched from the event loop thread.
Queued jobs live in memory; after a restart, assets left ``pending`` or
``processing`` are picked up by :func:`gallery.services.media_pipeline.reconcile_unfinished`.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from uuid import UUID

import anyio

from gallery.core.logging_config import asset_context
from gallery.models.image import Image, VariantStatus
from gallery.services.asset_status import AssetStatusStore
from gallery.services.image_transform import ImageTransformer, normalize_mime
from gallery.services.media_errors import AlreadyInProgress, InvalidArgument
from gallery.services.object_store import ObjectStore
from gallery.services.variant_keys import VariantDescriptor, derive_key, supports_variants

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 2


@dataclass(frozen=True, slots=True)
class DerivationJob:
    asset_id: UUID
    original_key: str
    mime_type: str


@dataclass(frozen=True, slots=True)
class QueueStatus:
    queue_length: int
    running_count: int
    max_concurrent: int


def coerce_asset_id(raw: UUID | str | None) -> UUID:
    if isinstance(raw, UUID):
        return raw
    candidate = str(raw or "").strip()
    if not candidate:
        raise InvalidArgument("Asset id is required")
    try:
        return UUID(candidate)
    except ValueError:
        raise InvalidArgument(f"Invalid asset id: {candidate}") from None


def _root_cause(exc: BaseException) -> BaseException:
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


class DerivativeQueue:
    def __init__(
        self,
        *,
        store: ObjectStore,
        status_store: AssetStatusStore,
        transformer: ImageTransformer,
        variants: VariantDescriptor,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
    ) -> None:
        if int(max_concurrent) < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.store = store
        self.status_store = status_store
        self.transformer = transformer
        self.variants = variants
        self.max_concurrent = int(max_concurrent)
        self._pending: deque[DerivationJob] = deque()
        self._running = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._idle = asyncio.Event()
        self._idle.set()

    def enqueue(self, asset_id: UUID | str, original_key: str, mime_type: str) -> DerivationJob:
        """Queue derivation for one asset and admit it right away if a slot is free."""
        key = str(original_key or "").strip()
        if not key:
            raise InvalidArgument("Original key is required")
        if not supports_variants(key):
            raise InvalidArgument(f"Original key has no file extension to derive variant keys from: {key}")
        job = DerivationJob(asset_id=coerce_asset_id(asset_id), original_key=key, mime_type=normalize_mime(mime_type))
        self._pending.append(job)
        logger.info(
            "derivative_job_enqueued",
            extra={"asset_id": str(job.asset_id), "original_key": key, "queue_length": len(self._pending)},
        )
        self._admit()
        return job

    async def retry(self, asset_id: UUID | str) -> DerivationJob:
        """Move a failed asset back to ``pending`` and queue it again."""
        image_id = coerce_asset_id(asset_id)
        image = await self.status_store.get_asset(image_id)
        if not await self._requeue(image, allowed_from=(VariantStatus.failed,)):
            raise InvalidArgument(
                f"Only failed images can be retried (image {image_id} is {image.variant_status.value})"
            )
        return self.enqueue(image.id, image.key, image.mime_type)

    async def rederive(self, asset_id: UUID | str) -> DerivationJob:
        """Regenerate every variant of a settled (``completed`` or ``failed``) asset.

        Assets that are still ``pending`` or ``processing`` already have a job and
        are rejected with :class:`AlreadyInProgress`.
        """
        image_id = coerce_asset_id(asset_id)
        image = await self.status_store.get_asset(image_id)
        if not await self._requeue(image, allowed_from=(VariantStatus.completed, VariantStatus.failed)):
            raise AlreadyInProgress(f"Variants of image {image_id} are already {image.variant_status.value}")
        return self.enqueue(image.id, image.key, image.mime_type)

    async def _requeue(self, image: Image, *, allowed_from: tuple[VariantStatus, ...]) -> bool:
        if not supports_variants(image.key):
            raise InvalidArgument(f"Original key has no file extension to derive variant keys from: {image.key}")
        return await self.status_store.transition(image.id, VariantStatus.pending, allowed_from=allowed_from)

    def get_status(self) -> QueueStatus:
        return QueueStatus(
            queue_length=len(self._pending),
            running_count=self._running,
            max_concurrent=self.max_concurrent,
        )

    async def wait_idle(self) -> None:
        """Wait until nothing is queued or running."""
        await self._idle.wait()

    def _admit(self) -> None:
        while self._running < self.max_concurrent and self._pending:
            job = self._pending.popleft()
            self._running += 1
            self._idle.clear()
            task = asyncio.create_task(self._run(job), name=f"derive-{job.asset_id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_job_done)
        if self._running == 0 and not self._pending:
            self._idle.set()

    def _on_job_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        self._running -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error("derivative_job_crashed", exc_info=task.exception())
        self._admit()

    async def _run(self, job: DerivationJob) -> None:
        with asset_context(job.asset_id):
            try:
                written = await self.derive(job)
            except Exception as exc:
                cause = _root_cause(exc)
                logger.warning(
                    "derivative_job_failed",
                    extra={"original_key": job.original_key, "error": str(cause), "error_type": type(cause).__name__},
                )
                try:
                    await self.status_store.set_status(job.asset_id, VariantStatus.failed)
                except Exception:
                    logger.exception("derivative_status_update_failed", extra={"status": VariantStatus.failed.value})
            else:
                logger.info("derivative_job_completed", extra={"original_key": job.original_key, "variants": written})

    async def derive(self, job: DerivationJob) -> dict[str, str]:
        """Write every configured variant of ``job``; returns variant name -> derived key."""
        if not supports_variants(job.original_key):
            raise InvalidArgument(f"Variants of {job.original_key} would overwrite the original")
        await self.status_store.set_status(job.asset_id, VariantStatus.processing)
        original = await self.store.get(job.original_key)
        written: dict[str, str] = {}

        async def _derive_variant(name: str, width: int) -> None:
            key = derive_key(job.original_key, width)
            data = await self.transformer.transform(original, target_width=width, mime_type=job.mime_type)
            await self.store.put(key, data, job.mime_type or "application/octet-stream")
            written[name] = key

        async with anyio.create_task_group() as tg:
            for name, width in self.variants:
                tg.start_soon(_derive_variant, name, width)

        await self.status_store.set_status(job.asset_id, VariantStatus.completed)
        return written
