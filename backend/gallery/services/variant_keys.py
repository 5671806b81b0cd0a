"""Storage keys for resized variants of an original.

A derived key is the original key with ``@<width>`` inserted immediately before
the file extension::

    users/42/photo.jpg  ->  users/42/photo@300.jpg

Derived keys are never stored; they are recomputed from the original key so they
cannot drift from it. ``parse`` accepts exactly what ``derive_key`` produces, so
``parse(derive_key(k, w)) == (k, w)`` holds for every key ``k`` with an extension
and every positive width ``w``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping

WIDTH_MARKER = "@{width}"
EXTENSION_RE = re.compile(r"\.([^./@]+)$")
DERIVED_KEY_RE = re.compile(r"^(?P<stem>.+?)@(?P<width>[1-9][0-9]*)\.(?P<ext>[^./@]+)$")


def derive_key(original_key: str, width: int) -> str:
    """Return the variant key for ``original_key`` at ``width`` pixels.

    Keys without an extension are returned unchanged.
    """
    match = EXTENSION_RE.search(original_key or "")
    if match is None or match.start() == 0 or original_key[match.start() - 1] == "/":
        return original_key
    marker = WIDTH_MARKER.format(width=int(width))
    return f"{original_key[: match.start()]}{marker}.{match.group(1)}"


def supports_variants(original_key: str) -> bool:
    """False for keys whose variants would collide with the original (no extension)."""
    return derive_key(original_key, 1) != original_key


def parse(derived_key: str) -> tuple[str, int] | None:
    """Split a derived key into ``(original_key, width)``; ``None`` for anything else."""
    match = DERIVED_KEY_RE.match(derived_key or "")
    if match is None:
        return None
    stem = match.group("stem")
    if stem.endswith("/"):
        return None
    return f"{stem}.{match.group('ext')}", int(match.group("width"))


class VariantDescriptor:
    """Fixed ``{variant name: width}`` table shared by derivation and rotation."""

    __slots__ = ("_widths",)

    def __init__(self, widths: Mapping[str, int]) -> None:
        cleaned: dict[str, int] = {}
        for name, width in widths.items():
            key = str(name or "").strip()
            if not key or key == "original":
                raise ValueError(f"Invalid variant name: {name!r}")
            value = int(width)
            if value <= 0:
                raise ValueError(f"Variant width must be positive: {name}={width}")
            cleaned[key] = value
        if len(set(cleaned.values())) != len(cleaned):
            raise ValueError("Variant widths must be unique")
        self._widths = cleaned

    def __iter__(self):
        return iter(self._widths.items())

    def __len__(self) -> int:
        return len(self._widths)

    def names(self) -> list[str]:
        return list(self._widths)

    def width_for(self, name: str) -> int:
        try:
            return self._widths[name]
        except KeyError:
            raise KeyError(f"Unknown variant: {name}") from None

    def key_for(self, original_key: str, name: str) -> str:
        return derive_key(original_key, self.width_for(name))

    def keys_for(self, original_key: str) -> dict[str, str]:
        return {name: derive_key(original_key, width) for name, width in self._widths.items()}
