"""
Image Processor - Crop-to-Fit with Fixed Border

Every image embedded in the report goes through ``crop_to_fit`` so that
each grid slot receives an image of exactly the same pixel size:

    output size == (width + 2 * border, height + 2 * border)

Algorithm:
1. Compare source aspect ratio with the target ratio.
2. Source relatively wider -> scale to the target height,
   otherwise -> scale to the target width. The other side overshoots.
3. Centre-crop the overshoot: offset = floor((resized - target) / 2), >= 0.
4. Pad with a solid border on all four sides.

Unreadable input is not an error here: the original bytes are returned
unchanged and flagged ``degraded`` so the caller decides what to do.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from typing import Final

from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_BORDER_PX: Final[int] = 4
DEFAULT_BORDER_COLOR: Final[tuple[int, int, int]] = (255, 255, 255)
JPEG_QUALITY: Final[int] = 90


# =============================================================================
# Result Type
# =============================================================================


@dataclass
class ProcessedImage:
    """Image ready for embedding. Discarded once placed."""

    width: int
    height: int
    border_width: int
    data: bytes
    image_format: str = "JPEG"
    degraded: bool = False


# =============================================================================
# Geometry
# =============================================================================


def scaled_size(source: tuple[int, int], target: tuple[int, int]) -> tuple[int, int]:
    """
    Size the source is resized to before cropping.

    The result covers the target box on both axes.
    """
    src_w, src_h = source
    dst_w, dst_h = target
    if src_w <= 0 or src_h <= 0:
        raise ValueError(f"Degenerate source size {source}")

    # Cross-multiplied ratio comparison avoids float rounding at equal ratios
    if src_w * dst_h > dst_w * src_h:
        new_h = dst_h
        new_w = max(dst_w, round(src_w * dst_h / src_h))
    else:
        new_w = dst_w
        new_h = max(dst_h, round(src_h * dst_w / src_w))
    return new_w, new_h


def crop_box(resized: tuple[int, int], target: tuple[int, int]) -> tuple[int, int, int, int]:
    """Centre-crop box (left, top, right, bottom) of the target size."""
    left = max(0, (resized[0] - target[0]) // 2)
    top = max(0, (resized[1] - target[1]) // 2)
    return left, top, left + target[0], top + target[1]


# =============================================================================
# Processing
# =============================================================================


def _encode(image: Image.Image, image_format: str) -> bytes:
    buffer = BytesIO()
    if image_format.upper() in ("JPEG", "JPG"):
        image.convert("RGB").save(buffer, format="JPEG", quality=JPEG_QUALITY, optimize=True)
    else:
        image.save(buffer, format=image_format)
    return buffer.getvalue()


def crop_to_fit(
    raw: bytes,
    width: int,
    height: int,
    border: int = DEFAULT_BORDER_PX,
    *,
    border_color: tuple[int, int, int] = DEFAULT_BORDER_COLOR,
    image_format: str = "JPEG",
) -> ProcessedImage:
    """
    Resize, centre-crop and border an image to an exact box.

    Args:
        raw: Encoded source image
        width: Target width before border
        height: Target height before border
        border: Border width on every side
        border_color: RGB border fill
        image_format: Output encoding (JPEG for photos, PNG for maps)

    Returns:
        ProcessedImage of (width + 2*border) x (height + 2*border),
        or the untouched input flagged ``degraded`` if it cannot be read
    """
    if width <= 0 or height <= 0 or border < 0:
        raise ValueError(f"Invalid target box {width}x{height} border {border}")

    outer_w, outer_h = width + 2 * border, height + 2 * border

    try:
        with Image.open(BytesIO(raw)) as source:
            source.load()
            oriented = ImageOps.exif_transpose(source)
            resized_size = scaled_size(oriented.size, (width, height))
            resized = oriented.convert("RGB").resize(resized_size, Image.LANCZOS)
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
        logger.warning(f"Image metadata unreadable, keeping original bytes: {e}")
        return ProcessedImage(
            width=outer_w,
            height=outer_h,
            border_width=border,
            data=raw,
            image_format=image_format,
            degraded=True,
        )

    cropped = resized.crop(crop_box(resized.size, (width, height)))
    framed = ImageOps.expand(cropped, border=border, fill=border_color) if border else cropped

    return ProcessedImage(
        width=framed.width,
        height=framed.height,
        border_width=border,
        data=_encode(framed, image_format),
        image_format=image_format,
    )
