from gallery.db.base import Base  # noqa: F401
from gallery.models.image import Image, RotationLease, VariantStatus  # noqa: F401

__all__ = [
    "Base",
    "Image",
    "RotationLease",
    "VariantStatus",
]
