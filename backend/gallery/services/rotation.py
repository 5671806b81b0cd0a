from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

import anyio

from gallery.core.logging_config import asset_context
from gallery.models.image import Image
from gallery.services.asset_status import UNFINISHED_STATUSES, AssetStatusStore
from gallery.services.derivative_queue import coerce_asset_id
from gallery.services.image_transform import ALLOWED_ROTATIONS, ImageTransformer, normalize_mime
from gallery.services.media_errors import AlreadyInProgress, InvalidArgument, ObjectNotFound
from gallery.services.object_store import ObjectStore
from gallery.services.rotation_lock import RotationLock, hold_lock
from gallery.services.variant_keys import VariantDescriptor

logger = logging.getLogger(__name__)

ORIGINAL = "original"


class RepresentationOutcome(str, enum.Enum):
    success = "success"
    skipped = "skipped"
    failed = "failed"


@dataclass(slots=True)
class RotationResult:
    asset_id: UUID
    degrees: int
    outcomes: dict[str, RepresentationOutcome] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    updated_at: datetime | None = None

    @property
    def succeeded(self) -> list[str]:
        return [name for name, outcome in self.outcomes.items() if outcome == RepresentationOutcome.success]


def validate_degrees(raw: object) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int) or raw not in ALLOWED_ROTATIONS:
        raise InvalidArgument("Invalid rotation. Only 90, 180, 270 degrees allowed.")
    return raw


class RotationCoordinator:
    """Rotates an original and its existing variants in place, one rotation per asset at a time.

    Exclusivity comes from a per-asset lease that is visible across processes; a
    second request for the same asset fails with :class:`AlreadyInProgress`
    instead of waiting. Rotations of different assets never block each other, and
    derivation jobs are not blocked either.
    """

    def __init__(
        self,
        *,
        store: ObjectStore,
        status_store: AssetStatusStore,
        transformer: ImageTransformer,
        variants: VariantDescriptor,
        lock: RotationLock,
        require_settled_variants: bool = False,
    ) -> None:
        self.store = store
        self.status_store = status_store
        self.transformer = transformer
        self.variants = variants
        self.lock = lock
        self.require_settled_variants = require_settled_variants

    async def rotate(self, asset_id: UUID | str, degrees: int) -> RotationResult:
        degrees = validate_degrees(degrees)
        image_id = coerce_asset_id(asset_id)
        with asset_context(image_id):
            async with hold_lock(self.lock, image_id):
                image = await self._load_rotatable(image_id)
                result = RotationResult(asset_id=image_id, degrees=degrees)
                size_bytes = await self._rotate_original(image, degrees)
                result.outcomes[ORIGINAL] = RepresentationOutcome.success

                async with anyio.create_task_group() as tg:
                    for name, width in self.variants:
                        tg.start_soon(self._rotate_variant, image, name, width, degrees, result)
                result.outcomes = {name: result.outcomes[name] for name in (ORIGINAL, *self.variants.names())}

                result.updated_at = await self.status_store.touch(image_id, size_bytes=size_bytes)
                logger.info(
                    "image_rotated",
                    extra={"degrees": degrees, "outcomes": {k: v.value for k, v in result.outcomes.items()}},
                )
                return result

    async def rotate_representation(self, asset_id: UUID | str, degrees: int, name: str) -> RotationResult:
        """Rotate a single representation (the original or one named variant) in place.

        Takes the same per-asset lease as :meth:`rotate`. A variant that does not
        exist yet is reported as ``skipped``.
        """
        degrees = validate_degrees(degrees)
        image_id = coerce_asset_id(asset_id)
        representation = str(name or "").strip()
        if representation != ORIGINAL and representation not in self.variants.names():
            allowed = ", ".join((ORIGINAL, *self.variants.names()))
            raise InvalidArgument(f"Unknown representation {name!r}; expected one of: {allowed}")
        with asset_context(image_id):
            async with hold_lock(self.lock, image_id):
                image = await self._load_rotatable(image_id)
                result = RotationResult(asset_id=image_id, degrees=degrees)
                size_bytes = None
                if representation == ORIGINAL:
                    size_bytes = await self._rotate_original(image, degrees)
                    result.outcomes[ORIGINAL] = RepresentationOutcome.success
                else:
                    width = self.variants.width_for(representation)
                    await self._rotate_variant(image, representation, width, degrees, result)

                result.updated_at = await self.status_store.touch(image_id, size_bytes=size_bytes)
                logger.info(
                    "image_representation_rotated",
                    extra={
                        "degrees": degrees,
                        "representation": representation,
                        "outcome": result.outcomes[representation].value,
                    },
                )
                return result

    async def _load_rotatable(self, image_id: UUID) -> Image:
        image = await self.status_store.get_asset(image_id)
        if self.require_settled_variants and image.variant_status in UNFINISHED_STATUSES:
            raise AlreadyInProgress(
                f"Variants of image {image_id} are still {image.variant_status.value}; try again later"
            )
        return image

    async def _rotate_original(self, image: Image, degrees: int) -> int:
        mime_type = normalize_mime(image.mime_type)
        original = await self.store.get(image.key)
        rotated = await self.transformer.transform(
            original, target_width=None, mime_type=mime_type, rotation_degrees=degrees
        )
        await self.store.put(image.key, rotated, mime_type or "application/octet-stream")
        return len(rotated)

    async def _rotate_variant(self, image: Image, name: str, width: int, degrees: int, result: RotationResult) -> None:
        key = self.variants.key_for(image.key, name)
        mime_type = normalize_mime(image.mime_type)
        if key == image.key:
            collision = InvalidArgument(f"Variant {name} would overwrite the original {key}")
            self._record_failure(result, name, key, collision)
            return
        try:
            data = await self.store.get(key)
        except ObjectNotFound:
            result.outcomes[name] = RepresentationOutcome.skipped
            logger.info("rotation_variant_skipped", extra={"variant": name, "key": key})
            return
        except Exception as exc:
            self._record_failure(result, name, key, exc)
            return
        try:
            rotated = await self.transformer.transform(
                data, target_width=width, mime_type=mime_type, rotation_degrees=degrees
            )
            await self.store.put(key, rotated, mime_type or "application/octet-stream")
        except Exception as exc:
            self._record_failure(result, name, key, exc)
            return
        result.outcomes[name] = RepresentationOutcome.success

    @staticmethod
    def _record_failure(result: RotationResult, name: str, key: str, exc: Exception) -> None:
        result.outcomes[name] = RepresentationOutcome.failed
        result.errors[name] = str(exc)
        logger.warning(
            "rotation_variant_failed",
            extra={"variant": name, "key": key, "error": str(exc), "error_type": type(exc).__name__},
        )
