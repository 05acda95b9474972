"""
Cell Mapper - Projects a Property Record onto Template Cells

The mapping table is static: each entry names a target (sheet, cell) and
an extractor that reads the record with safe navigation. Unresolved paths
always produce '' so no cell is ever left holding a stale template value
or None.

Rules:
- Every target cell appears exactly once in the table.
- List values are joined with ", " in stored order.
- Flag-selected sub-objects (ancillary improvements) are filtered to the
  selected entries, label-formatted and joined in schema order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Final, Iterable

from openpyxl.workbook.workbook import Workbook

from core.errors import TemplateError
from core.models import PropertyRecord
from utils.formatting import format_label, join_values, to_cell_text

logger = logging.getLogger(__name__)

Extractor = Callable[[PropertyRecord], Any]


# =============================================================================
# Mapping Types
# =============================================================================


@dataclass(frozen=True)
class CellMapping:
    """One (sheet, cell) target and the extractor that fills it."""

    sheet: str
    cell: str
    extract: Extractor
    source: str = ""


# =============================================================================
# Extractors
# =============================================================================


def field_value(path: str) -> Extractor:
    """Scalar at a dotted path, '' when unresolved."""

    def extract(record: PropertyRecord) -> Any:
        value = record.get(path)
        if isinstance(value, (list, tuple)):
            return join_values(value)
        if isinstance(value, dict):
            return ""
        return to_cell_text(value)

    return extract


def first_of(*paths: str) -> Extractor:
    """First non-blank scalar among several paths (current field, then legacy field)."""

    def extract(record: PropertyRecord) -> Any:
        for path in paths:
            value = field_value(path)(record)
            if value != "":
                return value
        return ""

    return extract


def joined(path: str) -> Extractor:
    """List at a dotted path joined with ', '."""

    def extract(record: PropertyRecord) -> str:
        value = record.get(path)
        if isinstance(value, (list, tuple)):
            return join_values(value)
        if isinstance(value, str):
            return value
        return ""

    return extract


def amenity(path: str) -> Extractor:
    """Nested amenity object rendered as 'name (distance unit)'."""

    def extract(record: PropertyRecord) -> str:
        value = record.get(path)
        if not isinstance(value, dict):
            return ""
        name = str(value.get("name") or "").strip()
        distance = str(value.get("distance") or "").strip()
        unit = str(value.get("unit") or "").strip()
        if not name:
            return ""
        if distance:
            return f"{name} ({join_values([distance, unit], ' ')})"
        return name

    return extract


# Schema order of the ancillary improvement slots
IMPROVEMENT_ORDER: Final[tuple[str, ...]] = (
    "paths",
    "swimmingPool",
    "retainingWalls",
    "verandah",
    "pergola",
    "solarPanels",
    "landscaping",
    "lifts",
    "gym",
    "communalGarden",
    "paving",
    "tennisCourt",
    "custom",
    "custom1",
    "custom2",
    "custom3",
)


def selected_labels(path: str, order: Iterable[str] = IMPROVEMENT_ORDER) -> Extractor:
    """Labels of the sub-objects flagged ``selected``, joined in schema order."""

    def extract(record: PropertyRecord) -> str:
        items = record.get(path)
        if not isinstance(items, dict):
            return ""
        labels = []
        for key in order:
            item = items.get(key)
            if not isinstance(item, dict) or not item.get("selected"):
                continue
            custom_name = str(item.get("customName") or "").strip()
            labels.append(custom_name if custom_name else format_label(key))
        return join_values(labels)

    return extract


# =============================================================================
# Mapping Table
# =============================================================================


def build_cell_mappings(
    data_sheet: str = "Fillout",
    summary_sheet: str = "Summary",
    cover_sheet: str = "Cover",
) -> tuple[CellMapping, ...]:
    """
    Build the static mapping table for the given sheet names.

    Raises:
        ValueError: If a (sheet, cell) target is declared twice
    """
    d, s, c = data_sheet, summary_sheet, cover_sheet
    table = (
        # Overview
        CellMapping(d, "B3", field_value("overview.jobNumber"), "overview.jobNumber"),
        CellMapping(d, "B4", field_value("overview.closedBy"), "overview.closedBy"),
        CellMapping(d, "B5", field_value("overview.propertyValuer"), "overview.propertyValuer"),
        CellMapping(d, "B6", field_value("overview.instructedBy"), "overview.instructedBy"),
        CellMapping(d, "B7", field_value("overview.reportType"), "overview.reportType"),
        CellMapping(d, "B8", field_value("overview.valuationType"), "overview.valuationType"),
        CellMapping(d, "B9", field_value("overview.surveyType"), "overview.surveyType"),
        CellMapping(d, "B10", field_value("overview.dateOfInspection"), "overview.dateOfInspection"),
        CellMapping(d, "B11", field_value("overview.dateOfValuation"), "overview.dateOfValuation"),
        CellMapping(d, "B12", field_value("overview.addressStreet"), "overview.addressStreet"),
        CellMapping(d, "B13", field_value("overview.addressSuburb"), "overview.addressSuburb"),
        CellMapping(d, "B14", field_value("overview.addressState"), "overview.addressState"),
        CellMapping(d, "B15", field_value("overview.addressPostcode"), "overview.addressPostcode"),
        CellMapping(d, "B16", field_value("overview.purposeOfReport"), "overview.purposeOfReport"),
        CellMapping(d, "B17", field_value("overview.reportUploaded"), "overview.reportUploaded"),
        CellMapping(d, "B18", field_value("overview.reportSent"), "overview.reportSent"),
        # Valuation details
        CellMapping(d, "B21", field_value("valuationDetails.landValue"), "valuationDetails.landValue"),
        CellMapping(d, "B22", field_value("valuationDetails.improvements"), "valuationDetails.improvements"),
        CellMapping(d, "B23", field_value("valuationDetails.marketValue"), "valuationDetails.marketValue"),
        CellMapping(d, "B24", field_value("valuationDetails.interestValued"), "valuationDetails.interestValued"),
        CellMapping(d, "B25", field_value("valuationDetails.valuationAmount"), "valuationDetails.valuationAmount"),
        CellMapping(d, "B26", field_value("valuationDetails.directComparison"), "valuationDetails.directComparison"),
        CellMapping(d, "B27", field_value("valuationDetails.rentalValue"), "valuationDetails.rentalValue"),
        CellMapping(d, "B28", field_value("valuationDetails.rentalFrequency"), "valuationDetails.rentalFrequency"),
        CellMapping(d, "B29", field_value("valuationDetails.occupancyStatus"), "valuationDetails.occupancyStatus"),
        CellMapping(d, "B30", field_value("valuationDetails.valuationNotes"), "valuationDetails.valuationNotes"),
        # Property details
        CellMapping(d, "B33", field_value("propertyDetails.propertyType"), "propertyDetails.propertyType"),
        CellMapping(d, "B34", first_of("propertyDetails.buildYear", "propertyDetails.constructionYear"), "propertyDetails.buildYear"),
        CellMapping(d, "B35", field_value("propertyDetails.siteArea"), "propertyDetails.siteArea"),
        CellMapping(d, "B36", field_value("propertyDetails.titleReference"), "propertyDetails.titleReference"),
        CellMapping(d, "B37", field_value("propertyDetails.councilArea"), "propertyDetails.councilArea"),
        CellMapping(d, "B38", field_value("propertyDetails.zoning"), "propertyDetails.zoning"),
        CellMapping(d, "B39", field_value("propertyDetails.accommodation"), "propertyDetails.accommodation"),
        CellMapping(d, "B40", field_value("propertyDetails.buildingArea"), "propertyDetails.buildingArea"),
        CellMapping(d, "B41", field_value("propertyDetails.livingArea"), "propertyDetails.livingArea"),
        CellMapping(d, "B42", field_value("propertyDetails.landShape"), "propertyDetails.landShape"),
        CellMapping(d, "B43", field_value("propertyDetails.landSlope"), "propertyDetails.landSlope"),
        CellMapping(d, "B44", field_value("propertyDetails.heritageIssue"), "propertyDetails.heritageIssue"),
        # Location
        CellMapping(d, "B47", field_value("locationAndNeighborhood.suburbDescription"), "locationAndNeighborhood.suburbDescription"),
        CellMapping(d, "B48", field_value("locationAndNeighborhood.suburbDescription2"), "locationAndNeighborhood.suburbDescription2"),
        CellMapping(d, "B49", amenity("locationAndNeighborhood.publicTransport"), "locationAndNeighborhood.publicTransport"),
        CellMapping(d, "B50", amenity("locationAndNeighborhood.busStop"), "locationAndNeighborhood.busStop"),
        CellMapping(d, "B51", amenity("locationAndNeighborhood.shop"), "locationAndNeighborhood.shop"),
        CellMapping(d, "B52", amenity("locationAndNeighborhood.primarySchool"), "locationAndNeighborhood.primarySchool"),
        CellMapping(d, "B53", amenity("locationAndNeighborhood.highSchool"), "locationAndNeighborhood.highSchool"),
        CellMapping(d, "B54", amenity("locationAndNeighborhood.cbd"), "locationAndNeighborhood.cbd"),
        CellMapping(d, "B55", field_value("locationAndNeighborhood.includesGas"), "locationAndNeighborhood.includesGas"),
        # Room features
        CellMapping(d, "B58", field_value("roomFeaturesFixtures.primaryCategory"), "roomFeaturesFixtures.primaryCategory"),
        CellMapping(d, "B59", joined("roomFeaturesFixtures.flooringTypes"), "roomFeaturesFixtures.flooringTypes"),
        CellMapping(d, "B60", joined("roomFeaturesFixtures.features"), "roomFeaturesFixtures.features"),
        CellMapping(d, "B61", joined("roomFeaturesFixtures.fixtures"), "roomFeaturesFixtures.fixtures"),
        CellMapping(d, "B62", joined("roomFeaturesFixtures.pcItems"), "roomFeaturesFixtures.pcItems"),
        # Property descriptors
        CellMapping(d, "B65", first_of("propertyDescriptors.customMainBuildingType", "propertyDescriptors.mainBuildingType"), "propertyDescriptors.mainBuildingType"),
        CellMapping(d, "B66", first_of("propertyDescriptors.customExternalWalls", "propertyDescriptors.externalWalls"), "propertyDescriptors.externalWalls"),
        CellMapping(d, "B67", first_of("propertyDescriptors.customInternalWalls", "propertyDescriptors.internalWalls"), "propertyDescriptors.internalWalls"),
        CellMapping(d, "B68", first_of("propertyDescriptors.customRoofing", "propertyDescriptors.roofing"), "propertyDescriptors.roofing"),
        CellMapping(d, "B69", field_value("propertyDescriptors.numberOfBedrooms"), "propertyDescriptors.numberOfBedrooms"),
        CellMapping(d, "B70", field_value("propertyDescriptors.numberOfBathrooms"), "propertyDescriptors.numberOfBathrooms"),
        CellMapping(d, "B71", field_value("propertyDescriptors.numberOfCarSpaces"), "propertyDescriptors.numberOfCarSpaces"),
        CellMapping(d, "B72", field_value("propertyDescriptors.internalCondition"), "propertyDescriptors.internalCondition"),
        CellMapping(d, "B73", field_value("propertyDescriptors.externalCondition"), "propertyDescriptors.externalCondition"),
        # Ancillary improvements
        CellMapping(d, "B76", first_of("ancillaryImprovements.customDriveway", "ancillaryImprovements.driveway"), "ancillaryImprovements.driveway"),
        CellMapping(d, "B77", first_of("ancillaryImprovements.customFencing", "ancillaryImprovements.fencing"), "ancillaryImprovements.fencing"),
        CellMapping(d, "B78", selected_labels("ancillaryImprovements.improvements"), "ancillaryImprovements.improvements"),
        # Statutory, site and planning
        CellMapping(d, "B81", field_value("statutoryDetails.titleReference"), "statutoryDetails.titleReference"),
        CellMapping(d, "B82", field_value("statutoryDetails.lotPlanNumber"), "statutoryDetails.lotPlanNumber"),
        CellMapping(d, "B83", field_value("statutoryDetails.zoningClassification"), "statutoryDetails.zoningClassification"),
        CellMapping(d, "B84", field_value("statutoryDetails.easements"), "statutoryDetails.easements"),
        CellMapping(d, "B85", field_value("siteDetails.erfSize"), "siteDetails.erfSize"),
        CellMapping(d, "B86", field_value("siteDetails.siteTopography"), "siteDetails.siteTopography"),
        CellMapping(d, "B87", joined("siteDetails.utilities"), "siteDetails.utilities"),
        CellMapping(d, "B88", field_value("planningDetails.currentUse"), "planningDetails.currentUse"),
        CellMapping(d, "B89", field_value("planningDetails.planningScheme"), "planningDetails.planningScheme"),
        # General comments
        CellMapping(d, "B92", field_value("generalComments.marketOverview"), "generalComments.marketOverview"),
        CellMapping(d, "B93", field_value("generalComments.propertyDescription"), "generalComments.propertyDescription"),
        CellMapping(d, "B94", field_value("generalComments.valuationComments"), "generalComments.valuationComments"),
        # Market evidence
        CellMapping(d, "B97", field_value("marketEvidence.marketTrends"), "marketEvidence.marketTrends"),
        CellMapping(d, "B98", field_value("marketEvidence.averageDaysOnMarket"), "marketEvidence.averageDaysOnMarket"),
        # Summary
        CellMapping(s, "C2", field_value("overview.addressStreet"), "overview.addressStreet"),
        CellMapping(s, "C3", field_value("valuationDetails.marketValue"), "valuationDetails.marketValue"),
        CellMapping(s, "C4", field_value("overview.dateOfValuation"), "overview.dateOfValuation"),
        CellMapping(s, "C5", field_value("overview.propertyValuer"), "overview.propertyValuer"),
        # Cover
        CellMapping(c, "B3", field_value("overview.addressStreet"), "overview.addressStreet"),
        CellMapping(c, "B4", field_value("overview.addressSuburb"), "overview.addressSuburb"),
        CellMapping(c, "B5", field_value("overview.jobNumber"), "overview.jobNumber"),
    )
    validate_mappings(table)
    return table


def validate_mappings(mappings: Iterable[CellMapping]) -> None:
    """Reject a table that targets the same cell twice."""
    seen: set[tuple[str, str]] = set()
    for mapping in mappings:
        key = (mapping.sheet, mapping.cell.upper())
        if key in seen:
            raise ValueError(f"Cell {mapping.sheet}!{mapping.cell} is mapped more than once")
        seen.add(key)


# =============================================================================
# Application
# =============================================================================


def resolve(mapping: CellMapping, record: PropertyRecord) -> Any:
    """Run one extractor. Never raises; failures resolve to ''."""
    try:
        value = mapping.extract(record)
    except (AttributeError, TypeError, ValueError) as e:
        logger.warning(f"Mapping {mapping.sheet}!{mapping.cell} ({mapping.source}) failed: {e}")
        return ""
    return "" if value is None else value


def apply_cell_mappings(
    workbook: Workbook,
    record: PropertyRecord,
    mappings: Iterable[CellMapping],
) -> int:
    """
    Write every mapped field into its target cell.

    Returns:
        Number of cells written

    Raises:
        TemplateError: If a mapping targets a sheet the workbook lacks
    """
    written = 0
    for mapping in mappings:
        if mapping.sheet not in workbook.sheetnames:
            raise TemplateError(
                f"Template missing required sheet '{mapping.sheet}'",
                detail=f"Available sheets: {', '.join(workbook.sheetnames)}",
            )
        workbook[mapping.sheet][mapping.cell] = resolve(mapping, record)
        written += 1

    logger.info(f"Mapped {written} cells for record {record.record_id}")
    return written
