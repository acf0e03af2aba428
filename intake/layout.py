"""
Layout Normalizer
=================
Rotation correction and spread splitting for page images (Pillow).

A spread is one scan holding two logical pages side by side. The normalizer
never decides on its own whether an image is a spread: it only splits when
the caller passes a side, which comes from the inference service's layout
hint.
"""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

from .exceptions import NormalizationError
from .models import SpreadSide

logger = logging.getLogger(__name__)

# Clockwise correction -> Pillow transpose operation
_TRANSPOSE = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


@dataclass
class NormalizedImage:
    """Result of a normalization: new blob plus a fresh preview."""
    data: bytes
    preview: str
    width: int
    height: int
    mime_type: str = "image/jpeg"


def derived_page_id(
    parent_id: str,
    side: Optional[SpreadSide] = None,
    index: Optional[int] = None,
) -> str:
    """
    Id of a page derived from ``parent_id``.

    Rotation keeps the parent id. A spread side appends ``_L``/``_R``; a
    second interpretation of the same image appends ``_<index>``.
    """
    if side is not None:
        return f"{parent_id}{side.suffix}"
    if index is not None:
        return f"{parent_id}_{index}"
    return parent_id


class LayoutNormalizer:
    """Applies rotation and/or spread splitting to an encoded image."""

    def __init__(self, jpeg_quality: int = 85, preview_size: int = 400):
        self.jpeg_quality = jpeg_quality
        self.preview_size = preview_size

    def normalize(
        self,
        image_bytes: bytes,
        rotation: int = 0,
        side: Optional[SpreadSide] = None,
    ) -> NormalizedImage:
        """
        Produce the corrected (and optionally split) image.

        Args:
            image_bytes: Encoded source image.
            rotation: Clockwise correction in degrees, multiple of 90.
            side: Half of a spread to keep; None keeps the whole image.

        Returns:
            NormalizedImage with JPEG data and a preview data URI.

        Raises:
            NormalizationError: If the image cannot be decoded or the
                rotation is not a multiple of 90.
        """
        image = self._open(image_bytes)
        image = self.rotate(image, rotation)
        if side is not None:
            image = self.split(image, side)
        return self._encode(image)

    def rotate(self, image: Image.Image, rotation: int) -> Image.Image:
        if rotation % 90 != 0:
            raise NormalizationError(
                f"Rotation must be a multiple of 90, got {rotation}"
            )
        op = _TRANSPOSE.get(rotation % 360)
        if op is None:
            return image
        return image.transpose(op)

    def split(self, image: Image.Image, side: SpreadSide) -> Image.Image:
        width, height = image.size
        if width < 2:
            raise NormalizationError("Image too narrow to split")
        half = width // 2
        if side is SpreadSide.LEFT:
            box = (0, 0, half, height)
        else:
            box = (half, 0, width, height)
        return image.crop(box)

    def preview(self, image_bytes: bytes) -> str:
        """Build a preview data URI without changing the image."""
        return self._preview(self._open(image_bytes))

    # ─── Helpers ──────────────────────────────────────────────────────────

    def _open(self, image_bytes: bytes) -> Image.Image:
        if not image_bytes:
            raise NormalizationError("Empty image data")
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise NormalizationError(f"Cannot decode image: {e}") from e
        if image.mode not in ("RGB", "L"):
            image = image.convert("RGB")
        return image

    def _encode(self, image: Image.Image) -> NormalizedImage:
        buf = io.BytesIO()
        image.save(buf, format="JPEG", quality=self.jpeg_quality)
        return NormalizedImage(
            data=buf.getvalue(),
            preview=self._preview(image),
            width=image.width,
            height=image.height,
        )

    def _preview(self, image: Image.Image) -> str:
        thumb = image.copy()
        thumb.thumbnail((self.preview_size, self.preview_size))
        buf = io.BytesIO()
        thumb.save(buf, format="JPEG", quality=60)
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/jpeg;base64,{encoded}"
