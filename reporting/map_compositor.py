"""
Map Image Compositor - Static Map with Address Label

Fetches a provider static map centred on the property with a marker,
draws the address label just above the marker (never over it), flattens
to a raster image and sizes it through the Image Processor.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from io import BytesIO
from typing import Final, Optional

import requests
from PIL import Image, ImageDraw, ImageFont

from reporting.image_processor import ProcessedImage, crop_to_fit

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

STATIC_MAP_URL: Final[str] = "https://maps.googleapis.com/maps/api/staticmap"
MAP_SIZE: Final[tuple[int, int]] = (600, 400)
DEFAULT_ZOOM: Final[int] = 14

# Marker pin is ~40px tall with its tip at the centre; label sits above it
LABEL_OFFSET_Y: Final[int] = 60
LABEL_FONT_SIZE: Final[int] = 18
LABEL_FILL: Final[str] = "#141414"
LABEL_STROKE: Final[str] = "#ffffff"
LABEL_MARGIN_X: Final[int] = 12

FONT_CANDIDATES: Final[tuple[str, ...]] = (
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "arialbd.ttf",
    "Arial Bold.ttf",
)

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# Label
# =============================================================================


def escape_label(text: str) -> str:
    """
    Make an address safe to render.

    Control characters are dropped, whitespace collapsed and the text
    normalised to NFC so combining marks render as single glyphs.
    """
    text = unicodedata.normalize("NFC", text or "")
    text = _CONTROL_CHARS.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def _load_font(size: int) -> ImageFont.ImageFont:
    for candidate in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _fit_label(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> str:
    """Trim with an ellipsis until the label fits the map width."""
    if draw.textlength(text, font=font) <= max_width:
        return text
    trimmed = text
    while trimmed and draw.textlength(trimmed + "...", font=font) > max_width:
        trimmed = trimmed[:-1]
    return trimmed.rstrip() + "..."


def overlay_label(map_png: bytes, label: str) -> bytes:
    """
    Draw the address label above the map centre.

    Returns:
        PNG bytes of the flattened image
    """
    with Image.open(BytesIO(map_png)) as source:
        base = source.convert("RGBA")

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    font = _load_font(LABEL_FONT_SIZE)

    text = _fit_label(draw, escape_label(label), font, base.width - 2 * LABEL_MARGIN_X)
    if text:
        centre_x = base.width // 2
        label_y = max(LABEL_FONT_SIZE, base.height // 2 - LABEL_OFFSET_Y)
        draw.text(
            (centre_x, label_y),
            text,
            font=font,
            fill=LABEL_FILL,
            anchor="mm",
            stroke_width=1,
            stroke_fill=LABEL_STROKE,
        )

    flattened = Image.alpha_composite(base, overlay).convert("RGB")
    buffer = BytesIO()
    flattened.save(buffer, format="PNG")
    return buffer.getvalue()


# =============================================================================
# Compositor
# =============================================================================


class MapImageCompositor:
    """Builds the location map image for a property address."""

    def __init__(
        self,
        api_key: str,
        session: Optional[requests.Session] = None,
        zoom: int = DEFAULT_ZOOM,
        timeout: int = 30,
    ):
        self._api_key = api_key
        self._session = session or requests.Session()
        self._zoom = zoom
        self._timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def map_params(self, address: str) -> dict:
        """Query parameters of the static map request."""
        return {
            "center": address,
            "zoom": self._zoom,
            "size": f"{MAP_SIZE[0]}x{MAP_SIZE[1]}",
            "maptype": "roadmap",
            "markers": f"color:red|{address}",
            "key": self._api_key,
        }

    def fetch_map(self, address: str) -> bytes:
        """
        Fetch the raw static map.

        Raises:
            requests.RequestException: On network or HTTP errors
            ValueError: If the provider returned something other than an image
        """
        response = self._session.get(STATIC_MAP_URL, params=self.map_params(address), timeout=self._timeout)
        response.raise_for_status()
        content_type = response.headers.get("Content-Type", "")
        if not content_type.startswith("image/"):
            raise ValueError(f"Map provider returned {content_type or 'no content type'}")
        return response.content

    def compose(
        self,
        address: str,
        width: int,
        height: int,
        border: int,
        label: Optional[str] = None,
    ) -> ProcessedImage:
        """
        Fetch, label and size the map for one address.

        Raises:
            ValueError: If the compositor has no API key or the address is blank
            requests.RequestException: On provider failures
        """
        if not self.enabled:
            raise ValueError("Map provider API key not configured")
        if not address.strip():
            raise ValueError("Address is required for the location map")

        logger.info(f"Generating location map for: {address}")
        raw = self.fetch_map(address)
        labelled = overlay_label(raw, label if label is not None else address)
        return crop_to_fit(labelled, width, height, border, image_format="PNG")
