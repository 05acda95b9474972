"""
Core data models for the valuation report pipeline.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final, Optional


# =============================================================================
# Enums
# =============================================================================


class PhotoCategory(Enum):
    """Photo collections held on a property record."""

    EXTERIOR = "exterior"
    INTERIOR = "interior"
    ADDITIONAL = "additional"
    COVER = "cover"
    GRANNY_FLAT = "grannyFlat"

    @property
    def record_key(self) -> str:
        """Key of this collection inside the record's photos section."""
        return PHOTO_RECORD_KEYS[self]


PHOTO_RECORD_KEYS: Final[dict[PhotoCategory, str]] = {
    PhotoCategory.EXTERIOR: "exteriorPhotos",
    PhotoCategory.INTERIOR: "interiorPhotos",
    PhotoCategory.ADDITIONAL: "additionalPhotos",
    PhotoCategory.COVER: "reportCoverPhoto",
    PhotoCategory.GRANNY_FLAT: "grannyFlatPhotos",
}

# Grid order is fixed regardless of fetch completion order
PRIMARY_PHOTO_ORDER: Final[tuple[PhotoCategory, ...]] = (
    PhotoCategory.EXTERIOR,
    PhotoCategory.INTERIOR,
    PhotoCategory.ADDITIONAL,
)


# =============================================================================
# Property Record
# =============================================================================


@dataclass(frozen=True)
class PhotoAsset:
    """A single photo reference on a record."""

    category: PhotoCategory
    remote_url: str


@dataclass
class PropertyRecord:
    """
    Normalized property valuation record.

    Sections are plain mappings (overview, valuationDetails, photos, ...).
    The report pipeline treats the record as read-only.
    """

    record_id: str
    sections: dict[str, Any] = field(default_factory=dict)

    def get(self, path: str, default: Any = None) -> Any:
        """
        Safe-navigate a dotted path such as ``overview.addressStreet``.

        Any missing or non-mapping step yields ``default``.
        """
        current: Any = self.sections
        for part in path.split("."):
            if not isinstance(current, dict):
                return default
            current = current.get(part)
            if current is None:
                return default
        return current

    def photos(self, category: PhotoCategory) -> list[PhotoAsset]:
        """Photos of one category in stored order. Blank URLs are skipped."""
        raw = self.get(f"photos.{category.record_key}")
        if raw is None:
            return []
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, (list, tuple)):
            return []
        return [
            PhotoAsset(category=category, remote_url=url.strip())
            for url in raw
            if isinstance(url, str) and url.strip()
        ]

    def primary_photos(self) -> list[PhotoAsset]:
        """Exterior, then interior, then additional photos."""
        assets: list[PhotoAsset] = []
        for category in PRIMARY_PHOTO_ORDER:
            assets.extend(self.photos(category))
        return assets

    def cover_photo(self) -> Optional[PhotoAsset]:
        """The single report cover photo, if any."""
        covers = self.photos(PhotoCategory.COVER)
        return covers[0] if covers else None

    @property
    def full_address(self) -> str:
        """Street, suburb, state and postcode joined for display and map lookup."""
        parts = [
            self.get("overview.addressStreet", ""),
            self.get("overview.addressSuburb", ""),
            self.get("overview.addressState", ""),
            self.get("overview.addressPostcode", ""),
        ]
        return ", ".join(str(p).strip() for p in parts if str(p).strip())

    def to_dict(self) -> dict:
        """Convert to dictionary for persistence."""
        return {"record_id": self.record_id, "sections": self.sections}

    @classmethod
    def from_dict(cls, data: dict) -> "PropertyRecord":
        """Create from dictionary."""
        return cls(record_id=str(data["record_id"]), sections=dict(data.get("sections") or {}))


# =============================================================================
# Output
# =============================================================================


@dataclass
class ReportArtifacts:
    """Output of one report generation request."""

    workbook_url: str
    base64_workbook: str
    filename: str
    pdf_generated: bool = False
    pdf_url: str = ""
    pdf_error: Optional[str] = None
    pdf_message: Optional[str] = None

    @property
    def message(self) -> str:
        if self.pdf_generated:
            return "Excel and PDF reports generated successfully"
        return self.pdf_message or "Excel report generated; PDF conversion failed"

    def to_response(self) -> dict:
        """Convert to the JSON success body."""
        body = {
            "success": True,
            "reportUrl": self.workbook_url,
            "pdfUrl": self.pdf_url,
            "download": self.base64_workbook,
            "filename": self.filename,
            "pdfGenerated": self.pdf_generated,
            "excelGenerated": True,
            "message": self.message,
        }
        if not self.pdf_generated and self.pdf_error:
            body["pdfError"] = self.pdf_error
        return body
