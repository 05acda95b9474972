"""
Image Placement Engine - Deterministic Photo Grids

Lays processed images into fixed grids on the report sheets.

Layout rules:
- Each grid has a column count, a spacing (in sheet cells) between anchors
  and a hard cap. Index i lands at row-major position (i // columns, i % columns).
- Primary photos are ordered exterior, interior, additional. Fetches run in
  parallel but results are placed by collection index, never arrival order.
- Photos beyond the cap are dropped without error. Every slot that ends up
  without an image (overflow, failure, empty collection) has its anchor cell
  cleared so template placeholders never leak into the report.
- The cover photo has its own anchor outside any grid.
- The secondary (granny flat) grid starts at the primary grid's last column
  plus one spacing, and its heading is written only when it has photos.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from io import BytesIO
from typing import Callable, Final, Optional, Sequence, Union

import requests
from openpyxl.drawing.image import Image as XLImage
from openpyxl.utils import get_column_letter
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
from PIL import Image

from core.errors import ReportError
from core.models import PhotoAsset, PhotoCategory, PropertyRecord
from core.storage import is_shared_drive_link
from reporting.image_processor import DEFAULT_BORDER_PX, ProcessedImage, crop_to_fit

logger = logging.getLogger(__name__)

# Decode and embed failures that skip a single photo
_EMBED_ERRORS = (ValueError, OSError, Image.DecompressionBombError)


# =============================================================================
# Geometry
# =============================================================================


@dataclass(frozen=True)
class ImagePlacement:
    """Top-left anchor and pixel size of one embedded image."""

    sheet: str
    anchor_column: int
    anchor_row: int
    width_px: int
    height_px: int

    @property
    def cell(self) -> str:
        return f"{get_column_letter(self.anchor_column)}{self.anchor_row}"


@dataclass(frozen=True)
class GridConfig:
    """Fixed image grid on one sheet. Columns and rows are 1-based."""

    sheet: str
    first_column: int
    first_row: int
    columns: int
    column_spacing: int
    row_spacing: int
    cap: int
    width_px: int
    height_px: int
    border: int = DEFAULT_BORDER_PX
    heading: str = ""

    def __post_init__(self):
        if self.columns < 1 or self.cap < 1:
            raise ValueError(f"Grid on {self.sheet} needs at least one column and a positive cap")
        if self.column_spacing < 1 or self.row_spacing < 1:
            raise ValueError(f"Grid on {self.sheet} needs positive spacing")
        if self.first_column < 1 or self.first_row < 1:
            raise ValueError(f"Grid on {self.sheet} must start inside the sheet")

    @property
    def max_column(self) -> int:
        """Column of the right-most anchor."""
        return self.first_column + (min(self.columns, self.cap) - 1) * self.column_spacing

    @property
    def heading_cell(self) -> str:
        """Cell directly above the first anchor."""
        return f"{get_column_letter(self.first_column)}{max(1, self.first_row - 1)}"

    def placement(self, index: int) -> ImagePlacement:
        if not 0 <= index < self.cap:
            raise IndexError(f"Slot {index} outside grid cap {self.cap} on {self.sheet}")
        row, column = divmod(index, self.columns)
        return ImagePlacement(
            sheet=self.sheet,
            anchor_column=self.first_column + column * self.column_spacing,
            anchor_row=self.first_row + row * self.row_spacing,
            width_px=self.width_px + 2 * self.border,
            height_px=self.height_px + 2 * self.border,
        )

    def placements(self) -> list[ImagePlacement]:
        return [self.placement(i) for i in range(self.cap)]

    def beside(self, primary: "GridConfig") -> "GridConfig":
        """Copy of this grid moved clear of ``primary``'s columns."""
        return replace(self, first_column=primary.max_column + primary.column_spacing)


@dataclass(frozen=True)
class PlacementLayout:
    """All image positions of the report template."""

    photo_grid: GridConfig
    summary_grid: GridConfig
    secondary_grid: GridConfig
    cover: ImagePlacement
    location_map: ImagePlacement
    cover_border: int = DEFAULT_BORDER_PX
    map_border: int = DEFAULT_BORDER_PX

    def __post_init__(self):
        if self.secondary_grid.sheet == self.photo_grid.sheet:
            minimum = self.photo_grid.max_column + self.photo_grid.column_spacing
            if self.secondary_grid.first_column < minimum:
                raise ValueError(
                    f"Secondary grid column {self.secondary_grid.first_column} overlaps "
                    f"primary grid (needs >= {minimum})"
                )


def default_layout(
    photo_sheet: str = "Photos",
    summary_sheet: str = "Summary",
    cover_sheet: str = "Cover",
) -> PlacementLayout:
    """Layout of the standard valuation report template."""
    photo_grid = GridConfig(
        sheet=photo_sheet,
        first_column=2,
        first_row=4,
        columns=2,
        column_spacing=6,
        row_spacing=16,
        cap=31,
        width_px=320,
        height_px=240,
    )
    summary_grid = GridConfig(
        sheet=summary_sheet,
        first_column=2,
        first_row=8,
        columns=2,
        column_spacing=4,
        row_spacing=12,
        cap=4,
        width_px=240,
        height_px=180,
    )
    secondary_template = GridConfig(
        sheet=photo_sheet,
        first_column=1,
        first_row=4,
        columns=2,
        column_spacing=6,
        row_spacing=16,
        cap=12,
        width_px=320,
        height_px=240,
        heading="Granny Flat Photos",
    )
    return PlacementLayout(
        photo_grid=photo_grid,
        summary_grid=summary_grid,
        secondary_grid=secondary_template.beside(photo_grid),
        cover=ImagePlacement(cover_sheet, anchor_column=2, anchor_row=8, width_px=648, height_px=488),
        location_map=ImagePlacement(summary_sheet, anchor_column=2, anchor_row=34, width_px=488, height_px=328),
    )


# =============================================================================
# Fetch Results
# =============================================================================


@dataclass
class PhotoFetched:
    index: int
    asset: PhotoAsset
    data: bytes


@dataclass
class PhotoFailed:
    index: int
    asset: PhotoAsset
    reason: str


PhotoResult = Union[PhotoFetched, PhotoFailed]


def partition_results(results: Sequence[PhotoResult]) -> tuple[list[PhotoFetched], list[PhotoFailed]]:
    """Fold fetch results into (successes, failures), keeping index order."""
    fetched: list[PhotoFetched] = []
    failed: list[PhotoFailed] = []
    for result in sorted(results, key=lambda r: r.index):
        if isinstance(result, PhotoFetched):
            fetched.append(result)
        else:
            failed.append(result)
    return fetched, failed


class PhotoFetcher:
    """Downloads photo bytes, resolving shared drive links first."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
        workers: int = 6,
        resolve_shared_link: Optional[Callable[[str], str]] = None,
    ):
        self._session = session or requests.Session()
        self._timeout = timeout
        self._workers = max(1, workers)
        self._resolve = resolve_shared_link

    def download(self, asset: PhotoAsset) -> bytes:
        url = asset.remote_url
        if self._resolve and is_shared_drive_link(url):
            url = self._resolve(url)
        response = self._session.get(url, timeout=self._timeout)
        response.raise_for_status()
        if not response.content:
            raise ValueError("Empty response body")
        return response.content

    def _fetch_one(self, index: int, asset: PhotoAsset) -> PhotoResult:
        try:
            return PhotoFetched(index=index, asset=asset, data=self.download(asset))
        except (requests.RequestException, ReportError, ValueError, OSError) as e:
            logger.warning(f"Skipping {asset.category.value} photo {index + 1}: {e}")
            return PhotoFailed(index=index, asset=asset, reason=str(e))

    def fetch_all(self, assets: Sequence[PhotoAsset]) -> list[PhotoResult]:
        """Fetch in parallel; the returned list is in collection order."""
        if not assets:
            return []
        with ThreadPoolExecutor(max_workers=min(self._workers, len(assets))) as pool:
            futures = [pool.submit(self._fetch_one, i, asset) for i, asset in enumerate(assets)]
            return [future.result() for future in futures]


# =============================================================================
# Embedding
# =============================================================================


def embed_image(worksheet: Worksheet, placement: ImagePlacement, image: ProcessedImage) -> None:
    """Anchor an image at a placement's top-left cell."""
    picture = XLImage(BytesIO(image.data))
    picture.width = image.width
    picture.height = image.height
    worksheet[placement.cell].value = None
    worksheet.add_image(picture, placement.cell)


def clear_anchor(worksheet: Worksheet, placement: ImagePlacement) -> None:
    worksheet[placement.cell].value = None


@dataclass
class PlacementReport:
    """What the placement pass did."""

    placed: dict[str, int] = field(default_factory=dict)
    cleared: int = 0
    dropped: int = 0
    failures: list[PhotoFailed] = field(default_factory=list)
    cover_placed: bool = False
    map_placed: bool = False

    @property
    def total_placed(self) -> int:
        return sum(self.placed.values())

    def count(self, sheet: str) -> None:
        self.placed[sheet] = self.placed.get(sheet, 0) + 1


class ImagePlacementEngine:
    """Fetches, sizes and embeds every report image for one record."""

    def __init__(self, layout: PlacementLayout, fetcher: PhotoFetcher):
        self.layout = layout
        self._fetcher = fetcher

    def _fill_grid(
        self,
        workbook: Workbook,
        grid: GridConfig,
        fetched: Sequence[PhotoFetched],
        report: PlacementReport,
    ) -> None:
        worksheet = workbook[grid.sheet]
        by_index = {item.index: item for item in fetched}

        for slot, placement in enumerate(grid.placements()):
            item = by_index.get(slot)
            if item is None:
                clear_anchor(worksheet, placement)
                report.cleared += 1
                continue
            try:
                image = crop_to_fit(item.data, grid.width_px, grid.height_px, grid.border)
                embed_image(worksheet, placement, image)
            except _EMBED_ERRORS as e:
                logger.warning(f"Could not embed photo {slot + 1} on {grid.sheet}: {e}")
                report.failures.append(PhotoFailed(index=slot, asset=item.asset, reason=str(e)))
                clear_anchor(worksheet, placement)
                report.cleared += 1
                continue
            report.count(grid.sheet)

    def place_photos(self, workbook: Workbook, record: PropertyRecord) -> PlacementReport:
        """
        Place cover, primary, summary and secondary photos.

        Per-photo failures are collected on the report and never raised.
        """
        layout = self.layout
        report = PlacementReport()

        primary = record.primary_photos()
        if len(primary) > layout.photo_grid.cap:
            report.dropped += len(primary) - layout.photo_grid.cap
            logger.info(
                f"{len(primary)} photos exceed the grid cap of {layout.photo_grid.cap}, "
                f"dropping {report.dropped}"
            )
        primary = primary[: layout.photo_grid.cap]

        secondary = record.photos(PhotoCategory.GRANNY_FLAT)
        if len(secondary) > layout.secondary_grid.cap:
            report.dropped += len(secondary) - layout.secondary_grid.cap
        secondary = secondary[: layout.secondary_grid.cap]

        cover = record.cover_photo()

        # One parallel batch; the slices below restore per-collection indices
        batch = list(primary) + list(secondary) + ([cover] if cover else [])
        fetched, failed = partition_results(self._fetcher.fetch_all(batch))
        report.failures.extend(failed)

        primary_fetched = [item for item in fetched if item.index < len(primary)]
        secondary_fetched = [
            PhotoFetched(index=item.index - len(primary), asset=item.asset, data=item.data)
            for item in fetched
            if len(primary) <= item.index < len(primary) + len(secondary)
        ]
        cover_fetched = next(
            (item for item in fetched if cover and item.index == len(batch) - 1),
            None,
        )

        self._fill_grid(workbook, layout.photo_grid, primary_fetched, report)
        self._fill_grid(
            workbook,
            layout.summary_grid,
            [item for item in primary_fetched if item.index < layout.summary_grid.cap],
            report,
        )

        if secondary:
            workbook[layout.secondary_grid.sheet][layout.secondary_grid.heading_cell].value = (
                layout.secondary_grid.heading
            )
            self._fill_grid(workbook, layout.secondary_grid, secondary_fetched, report)

        report.cover_placed = self._place_cover(workbook, cover_fetched)

        logger.info(
            f"Placed {report.total_placed} images for record {record.record_id} "
            f"({len(report.failures)} failed, {report.dropped} dropped, {report.cleared} cleared)"
        )
        return report

    def _place_cover(self, workbook: Workbook, cover: Optional[PhotoFetched]) -> bool:
        placement = self.layout.cover
        worksheet = workbook[placement.sheet]
        if cover is None:
            clear_anchor(worksheet, placement)
            return False

        border = self.layout.cover_border
        try:
            image = crop_to_fit(
                cover.data,
                placement.width_px - 2 * border,
                placement.height_px - 2 * border,
                border,
            )
            embed_image(worksheet, placement, image)
        except _EMBED_ERRORS as e:
            logger.warning(f"Could not embed cover photo: {e}")
            clear_anchor(worksheet, placement)
            return False
        return True

    def place_map(self, workbook: Workbook, image: ProcessedImage) -> None:
        """Embed an already-sized location map at its dedicated anchor."""
        placement = self.layout.location_map
        embed_image(workbook[placement.sheet], placement, image)

    @property
    def map_box(self) -> tuple[int, int, int]:
        """(width, height, border) the map image must be sized to."""
        placement = self.layout.location_map
        border = self.layout.map_border
        return placement.width_px - 2 * border, placement.height_px - 2 * border, border
