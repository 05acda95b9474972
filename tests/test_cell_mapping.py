"""
Tests for the Cell Mapper

Tests cover:
- Mapping table integrity (each cell written exactly once)
- Safe navigation: missing fields resolve to ''
- List joining, amenity formatting, selected-improvement labels
- Missing template sheets are fatal
"""

import pytest
from openpyxl import load_workbook

from core.errors import TemplateError
from core.models import PropertyRecord
from reporting.cell_mapping import (
    CellMapping,
    IMPROVEMENT_ORDER,
    amenity,
    apply_cell_mappings,
    build_cell_mappings,
    field_value,
    first_of,
    joined,
    resolve,
    selected_labels,
    validate_mappings,
)
from utils.formatting import format_label, join_values, to_cell_text


# =============================================================================
# Formatting Helpers
# =============================================================================


class TestFormatting:
    """Label and value formatting used by the mapper."""

    def test_format_label_splits_camel_case(self):
        assert format_label("swimmingPool") == "Swimming Pool"
        assert format_label("communalGarden") == "Communal Garden"

    def test_format_label_single_word(self):
        assert format_label("gym") == "Gym"

    def test_format_label_empty(self):
        assert format_label("") == ""

    def test_join_values_skips_blanks(self):
        assert join_values(["a", "", None, " b "]) == "a, b"

    def test_to_cell_text(self):
        assert to_cell_text(None) == ""
        assert to_cell_text(True) == "Yes"
        assert to_cell_text(False) == "No"
        assert to_cell_text(12) == 12


# =============================================================================
# Mapping Table
# =============================================================================


class TestMappingTable:
    """The static table targets each cell exactly once."""

    def test_no_cell_mapped_twice(self):
        mappings = build_cell_mappings()
        targets = [(m.sheet, m.cell) for m in mappings]
        assert len(targets) == len(set(targets))

    def test_duplicate_target_rejected(self):
        extractor = field_value("overview.jobNumber")
        with pytest.raises(ValueError, match="more than once"):
            validate_mappings([
                CellMapping("Fillout", "B3", extractor),
                CellMapping("Fillout", "b3", extractor),
            ])

    def test_overview_block_layout(self):
        by_cell = {m.cell: m.source for m in build_cell_mappings() if m.sheet == "Fillout"}
        assert by_cell["B3"] == "overview.jobNumber"
        assert by_cell["B12"] == "overview.addressStreet"
        assert by_cell["B15"] == "overview.addressPostcode"
        assert by_cell["B18"] == "overview.reportSent"

    def test_custom_sheet_names(self):
        mappings = build_cell_mappings(data_sheet="Data", summary_sheet="Sum", cover_sheet="Front")
        assert {m.sheet for m in mappings} == {"Data", "Sum", "Front"}


# =============================================================================
# Extractors
# =============================================================================


class TestExtractors:
    """Safe navigation and value shaping."""

    def test_missing_nested_field_is_empty_string(self):
        record = PropertyRecord(record_id="r", sections={})
        assert field_value("overview.jobNumber")(record) == ""
        assert field_value("a.b.c.d")(record) == ""

    def test_non_mapping_step_is_empty_string(self):
        record = PropertyRecord(record_id="r", sections={"overview": "flat string"})
        assert field_value("overview.jobNumber")(record) == ""

    def test_list_value_joined_in_order(self, sample_record):
        assert joined("roomFeaturesFixtures.flooringTypes")(sample_record) == "Carpet, Tiles, Timber"
        assert field_value("roomFeaturesFixtures.flooringTypes")(sample_record) == "Carpet, Tiles, Timber"

    def test_dict_value_is_empty_string(self, sample_record):
        assert field_value("locationAndNeighborhood.shop")(sample_record) == ""

    def test_first_of_prefers_first_present_path(self, sample_record):
        roofing = first_of("propertyDescriptors.customRoofing", "propertyDescriptors.roofing")
        walls = first_of("propertyDescriptors.customMainBuildingType", "propertyDescriptors.mainBuildingType")
        assert roofing(sample_record) == "Slate"
        assert walls(sample_record) == "Brick"

    def test_amenity_with_distance(self, sample_record):
        extract = amenity("locationAndNeighborhood.publicTransport")
        assert extract(sample_record) == "Central Station (1.2 km)"

    def test_amenity_without_distance(self, sample_record):
        assert amenity("locationAndNeighborhood.shop")(sample_record) == "Corner Store"

    def test_amenity_missing(self, sample_record):
        assert amenity("locationAndNeighborhood.cbd")(sample_record) == ""

    def test_selected_labels_in_schema_order(self, sample_record):
        extract = selected_labels("ancillaryImprovements.improvements")
        # paths precedes swimmingPool in schema order; custom name wins for custom slots
        assert extract(sample_record) == "Paths, Swimming Pool, Boat Shed"

    def test_selected_labels_ignores_unknown_keys(self):
        record = PropertyRecord(
            record_id="r",
            sections={"ancillaryImprovements": {"improvements": {"helipad": {"selected": True}}}},
        )
        assert selected_labels("ancillaryImprovements.improvements")(record) == ""

    def test_improvement_order_complete(self):
        assert len(IMPROVEMENT_ORDER) == 16
        assert IMPROVEMENT_ORDER[0] == "paths"
        assert IMPROVEMENT_ORDER[-1] == "custom3"

    def test_resolve_never_raises(self, sample_record):
        def broken(record):
            raise TypeError("boom")

        assert resolve(CellMapping("Fillout", "Z1", broken), sample_record) == ""


# =============================================================================
# Applying to a Workbook
# =============================================================================


class TestApplyCellMappings:
    """Writing the table into a template."""

    def test_every_mapping_written_once(self, template_path, sample_record):
        workbook = load_workbook(template_path)
        mappings = build_cell_mappings()
        assert apply_cell_mappings(workbook, sample_record, mappings) == len(mappings)

    def test_values_written(self, template_path, sample_record):
        workbook = load_workbook(template_path)
        apply_cell_mappings(workbook, sample_record, build_cell_mappings())

        fillout = workbook["Fillout"]
        assert fillout["B3"].value == "JOB-42"
        assert fillout["B17"].value == "Yes"
        assert fillout["B18"].value == "No"
        assert fillout["B34"].value == 1998
        assert fillout["B78"].value == "Paths, Swimming Pool, Boat Shed"
        assert workbook["Summary"]["C3"].value == 850000

    def test_empty_record_overwrites_stale_template_values(self, template_path):
        workbook = load_workbook(template_path)
        apply_cell_mappings(workbook, PropertyRecord(record_id="empty"), build_cell_mappings())
        # openpyxl stores '' as an empty cell
        assert workbook["Fillout"]["B3"].value in ("", None)

    def test_missing_sheet_is_fatal(self, make_template, sample_record):
        path = make_template(sheets=("Fillout", "Photos", "Cover"))
        workbook = load_workbook(path)

        with pytest.raises(TemplateError) as exc_info:
            apply_cell_mappings(workbook, sample_record, build_cell_mappings())

        assert "Summary" in exc_info.value.message
        assert "Fillout" in exc_info.value.detail
        assert exc_info.value.status_code == 400
