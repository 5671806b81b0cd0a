from __future__ import annotations

import logging
from dataclasses import dataclass, field
from io import BytesIO
from typing import Any, Protocol

import anyio
from PIL import Image, ImageOps, UnidentifiedImageError

from gallery.services.media_errors import InvalidArgument, TransformError

logger = logging.getLogger(__name__)

ALLOWED_ROTATIONS = (90, 180, 270)

# Clockwise rotation expressed as lossless transposes.
_ROTATE_CW = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


@dataclass(frozen=True, slots=True)
class EncodeProfile:
    format: str
    original: dict[str, Any] = field(default_factory=dict)
    variant: dict[str, Any] = field(default_factory=dict)
    needs_rgb: bool = False


ENCODE_PROFILES: dict[str, EncodeProfile] = {
    "image/jpeg": EncodeProfile("JPEG", {"quality": 95, "optimize": True}, {"quality": 86, "optimize": True}, True),
    "image/png": EncodeProfile("PNG", {"optimize": True, "compress_level": 9}, {"optimize": True}),
    "image/webp": EncodeProfile("WEBP", {"quality": 90}, {"quality": 82}),
    "image/avif": EncodeProfile("AVIF", {"quality": 80}, {"quality": 80}),
}
_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


def normalize_mime(mime_type: str | None) -> str:
    value = str(mime_type or "").strip().lower()
    return _MIME_ALIASES.get(value, value)


class ImageTransformer(Protocol):
    async def transform(
        self,
        data: bytes,
        *,
        target_width: int | None,
        mime_type: str,
        rotation_degrees: int = 0,
    ) -> bytes: ...


def _resize_to_width(img: Image.Image, target_width: int) -> Image.Image:
    width, height = img.size
    if width <= target_width:
        return img
    new_height = max(1, round(height * target_width / width))
    return img.resize((target_width, new_height), Image.Resampling.LANCZOS)


def _encode(img: Image.Image, mime_type: str, *, for_variant: bool, source_format: str | None) -> bytes:
    profile = ENCODE_PROFILES.get(normalize_mime(mime_type))
    out = BytesIO()
    if profile is None:
        # Unknown MIME: re-encode in the decoded format with library defaults.
        fmt = source_format or "PNG"
        img.save(out, format=fmt)
        return out.getvalue()
    if profile.needs_rgb and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    options = profile.variant if for_variant else profile.original
    img.save(out, format=profile.format, **options)
    return out.getvalue()


def render(data: bytes, *, target_width: int | None, mime_type: str, rotation_degrees: int = 0) -> bytes:
    """Rotate clockwise, bound to ``target_width`` and re-encode for ``mime_type``.

    ``target_width=None`` keeps the original dimensions. Images are never enlarged.
    """
    if rotation_degrees and rotation_degrees not in ALLOWED_ROTATIONS:
        raise InvalidArgument(f"Unsupported rotation: {rotation_degrees}")
    if target_width is not None and int(target_width) <= 0:
        raise InvalidArgument(f"Target width must be positive: {target_width}")
    if not data:
        raise TransformError("Image is empty")
    try:
        with Image.open(BytesIO(data)) as src:
            source_format = src.format
            img = ImageOps.exif_transpose(src)
            if rotation_degrees:
                img = img.transpose(_ROTATE_CW[rotation_degrees])
            if target_width is not None:
                img = _resize_to_width(img, int(target_width))
            return _encode(img, mime_type, for_variant=target_width is not None, source_format=source_format)
    except (UnidentifiedImageError, OSError, ValueError, KeyError) as exc:
        raise TransformError(f"Image transform failed: {exc}") from exc


class PillowImageTransformer:
    """Pillow-backed transformer; decoding and encoding run in a worker thread."""

    async def transform(
        self,
        data: bytes,
        *,
        target_width: int | None,
        mime_type: str,
        rotation_degrees: int = 0,
    ) -> bytes:
        return await anyio.to_thread.run_sync(
            lambda: render(data, target_width=target_width, mime_type=mime_type, rotation_degrees=rotation_degrees)
        )
