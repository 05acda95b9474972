"""
Tests for the Image Placement Engine

Tests cover:
- Row-major anchors that never overlap within the cap
- Secondary grid columns clear of the primary grid
- Overflow beyond the cap dropped without error, unused cells cleared
- Placement by collection index regardless of fetch outcome
- Per-photo failures folded, never raised, including oversized images
- Cover photo at its dedicated anchor, cleared when absent
"""

import pytest
import requests
from openpyxl import load_workbook
from PIL import Image

from core.errors import AuthError
from core.models import PhotoAsset, PhotoCategory
from reporting.placement import (
    GridConfig,
    ImagePlacementEngine,
    PhotoFailed,
    PhotoFetched,
    PhotoFetcher,
    PlacementLayout,
    default_layout,
    partition_results,
)

OK_PREFIX = "https://photos.example/ok/"
BAD_PREFIX = "https://photos.example/missing/"


def anchors(worksheet):
    return [image.anchor for image in worksheet._images]


@pytest.fixture
def photo_session(fake_session, fake_response, make_image):
    return fake_session({
        OK_PREFIX: fake_response(content=make_image(400, 300)),
        BAD_PREFIX: fake_response(status_code=404),
    })


@pytest.fixture
def engine(photo_session):
    return ImagePlacementEngine(default_layout(), PhotoFetcher(session=photo_session, workers=4))


def ok_urls(count, prefix=OK_PREFIX):
    return [f"{prefix}{i}.jpg" for i in range(count)]


# =============================================================================
# Grid Geometry
# =============================================================================


class TestGridGeometry:
    """Anchor computation."""

    def test_row_major_order(self):
        grid = GridConfig("Photos", first_column=2, first_row=4, columns=2,
                          column_spacing=6, row_spacing=16, cap=5, width_px=100, height_px=80)

        cells = [grid.placement(i).cell for i in range(5)]

        assert cells == ["B4", "H4", "B20", "H20", "B36"]

    def test_placement_size_includes_border(self):
        grid = GridConfig("Photos", 1, 1, 1, 1, 1, cap=1, width_px=100, height_px=80, border=4)
        placement = grid.placement(0)
        assert (placement.width_px, placement.height_px) == (108, 88)

    def test_index_beyond_cap_rejected(self):
        grid = default_layout().summary_grid
        with pytest.raises(IndexError):
            grid.placement(grid.cap)

    @pytest.mark.parametrize("grid_name", ["photo_grid", "summary_grid", "secondary_grid"])
    def test_anchors_never_overlap(self, grid_name):
        grid = getattr(default_layout(), grid_name)
        cells = [p.cell for p in grid.placements()]
        assert len(cells) == grid.cap
        assert len(set(cells)) == grid.cap

    def test_secondary_grid_clear_of_primary(self):
        layout = default_layout()
        primary = layout.photo_grid
        secondary_columns = {p.anchor_column for p in layout.secondary_grid.placements()}
        assert min(secondary_columns) >= primary.max_column + primary.column_spacing

    def test_overlapping_secondary_grid_rejected(self):
        layout = default_layout()
        with pytest.raises(ValueError, match="overlaps"):
            PlacementLayout(
                photo_grid=layout.photo_grid,
                summary_grid=layout.summary_grid,
                secondary_grid=layout.photo_grid,
                cover=layout.cover,
                location_map=layout.location_map,
            )

    def test_invalid_grid_rejected(self):
        with pytest.raises(ValueError):
            GridConfig("Photos", 1, 1, columns=0, column_spacing=1, row_spacing=1,
                       cap=1, width_px=10, height_px=10)

    def test_primary_grid_caps(self):
        layout = default_layout()
        assert layout.photo_grid.cap == 31
        assert layout.photo_grid.columns == 2
        assert layout.summary_grid.cap == 4
        assert layout.summary_grid.column_spacing < layout.photo_grid.column_spacing


# =============================================================================
# Fetching
# =============================================================================


class TestPhotoFetcher:
    """Parallel fetch folded into successes and failures."""

    def test_results_in_collection_order(self, photo_session):
        urls = [OK_PREFIX + "a.jpg", BAD_PREFIX + "b.jpg", OK_PREFIX + "c.jpg"]
        assets = [PhotoAsset(PhotoCategory.EXTERIOR, url) for url in urls]

        results = PhotoFetcher(session=photo_session, workers=3).fetch_all(assets)

        assert [r.index for r in results] == [0, 1, 2]
        assert isinstance(results[0], PhotoFetched)
        assert isinstance(results[1], PhotoFailed)
        assert isinstance(results[2], PhotoFetched)

    def test_network_error_is_a_failure_not_an_exception(self, fake_session):
        session = fake_session({OK_PREFIX: requests.ConnectionError("reset")})
        results = PhotoFetcher(session=session).fetch_all([PhotoAsset(PhotoCategory.INTERIOR, OK_PREFIX + "x")])
        assert isinstance(results[0], PhotoFailed)
        assert "reset" in results[0].reason

    def test_shared_links_resolved_first(self, photo_session):
        resolved = []

        def resolve(url):
            resolved.append(url)
            return OK_PREFIX + "resolved.jpg"

        fetcher = PhotoFetcher(session=photo_session, resolve_shared_link=resolve)
        result = fetcher.fetch_all([PhotoAsset(PhotoCategory.COVER, "https://1drv.ms/i/s!abc")])

        assert resolved == ["https://1drv.ms/i/s!abc"]
        assert isinstance(result[0], PhotoFetched)

    def test_resolution_auth_failure_skips_photo(self, photo_session):
        def resolve(url):
            raise AuthError("token refused")

        fetcher = PhotoFetcher(session=photo_session, resolve_shared_link=resolve)
        result = fetcher.fetch_all([PhotoAsset(PhotoCategory.COVER, "https://contoso.sharepoint.com/x")])
        assert isinstance(result[0], PhotoFailed)

    def test_partition_sorts_by_index(self):
        asset = PhotoAsset(PhotoCategory.EXTERIOR, "u")
        results = [
            PhotoFetched(2, asset, b"c"),
            PhotoFailed(1, asset, "gone"),
            PhotoFetched(0, asset, b"a"),
        ]

        fetched, failed = partition_results(results)

        assert [f.index for f in fetched] == [0, 2]
        assert [f.index for f in failed] == [1]

    def test_empty_collection(self, photo_session):
        assert PhotoFetcher(session=photo_session).fetch_all([]) == []


# =============================================================================
# Placement
# =============================================================================


class TestImagePlacement:
    """Embedding into the template."""

    def test_empty_collections_place_nothing(self, engine, template_path, sample_record):
        workbook = load_workbook(template_path)

        report = engine.place_photos(workbook, sample_record)

        assert report.total_placed == 0
        assert not report.cover_placed
        assert workbook["Photos"]._images == []
        assert workbook["Cover"]["B8"].value is None
        assert workbook["Photos"]["B4"].value is None
        assert workbook["Photos"]["H4"].value is None

    def test_overflow_dropped_at_cap(self, engine, template_path, record_with_photos):
        workbook = load_workbook(template_path)
        record = record_with_photos(exteriorPhotos=ok_urls(40))

        report = engine.place_photos(workbook, record)

        assert len(workbook["Photos"]._images) == 31
        assert report.placed["Photos"] == 31
        assert report.dropped == 9
        assert report.failures == []
        assert len(workbook["Summary"]._images) == 4

    def test_primary_order_exterior_interior_additional(self, engine, template_path, record_with_photos):
        workbook = load_workbook(template_path)
        record = record_with_photos(
            additionalPhotos=ok_urls(1, OK_PREFIX + "additional-"),
            interiorPhotos=ok_urls(1, OK_PREFIX + "interior-"),
            exteriorPhotos=ok_urls(1, OK_PREFIX + "exterior-"),
        )

        engine.place_photos(workbook, record)

        assert anchors(workbook["Photos"]) == ["B4", "H4", "B20"]
        fetched_urls = [url for method, url, _ in engine._fetcher._session.calls]
        assert sorted(fetched_urls) == sorted(p.remote_url for p in record.primary_photos())

    def test_failed_photo_keeps_its_slot_empty(self, engine, template_path, record_with_photos):
        workbook = load_workbook(template_path)
        record = record_with_photos(exteriorPhotos=[OK_PREFIX + "0", BAD_PREFIX + "1", OK_PREFIX + "2"])

        report = engine.place_photos(workbook, record)

        assert anchors(workbook["Photos"]) == ["B4", "B20"]
        assert workbook["Photos"]["H4"].value is None
        assert len(report.failures) == 1
        assert report.failures[0].index == 1

    def test_undecodable_photo_is_skipped(self, fake_session, fake_response, template_path, record_with_photos):
        session = fake_session({OK_PREFIX: fake_response(content=b"<html>not an image</html>")})
        engine = ImagePlacementEngine(default_layout(), PhotoFetcher(session=session))
        workbook = load_workbook(template_path)

        report = engine.place_photos(workbook, record_with_photos(exteriorPhotos=ok_urls(2)))

        assert workbook["Photos"]._images == []
        assert len(report.failures) >= 2

    def test_oversized_photo_is_skipped(self, engine, template_path, record_with_photos, monkeypatch):
        workbook = load_workbook(template_path)
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)

        report = engine.place_photos(workbook, record_with_photos(exteriorPhotos=ok_urls(2)))

        assert workbook["Photos"]._images == []
        assert workbook["Summary"]._images == []
        assert {failure.index for failure in report.failures} == {0, 1}
        assert report.total_placed == 0

    def test_cover_photo_at_dedicated_anchor(self, engine, template_path, record_with_photos):
        workbook = load_workbook(template_path)

        report = engine.place_photos(workbook, record_with_photos(reportCoverPhoto=OK_PREFIX + "cover.jpg"))

        assert report.cover_placed
        assert anchors(workbook["Cover"]) == [default_layout().cover.cell]
        assert workbook["Photos"]._images == []

    def test_secondary_grid_only_when_present(self, engine, template_path, record_with_photos):
        layout = default_layout()
        heading_cell = layout.secondary_grid.heading_cell

        workbook = load_workbook(template_path)
        engine.place_photos(workbook, record_with_photos(exteriorPhotos=ok_urls(2)))
        assert workbook["Photos"][heading_cell].value is None

        workbook = load_workbook(template_path)
        engine.place_photos(workbook, record_with_photos(exteriorPhotos=ok_urls(2), grannyFlatPhotos=ok_urls(3)))
        assert workbook["Photos"][heading_cell].value == "Granny Flat Photos"

        secondary_cells = {p.cell for p in layout.secondary_grid.placements()[:3]}
        assert secondary_cells <= set(anchors(workbook["Photos"]))
        assert len(workbook["Photos"]._images) == 5
