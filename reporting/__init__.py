"""
Reporting module for the valuation report engine.

Populates the Excel report template from a property record, embeds photos
and the location map, and converts the result to PDF through LibreOffice.

Usage:
    from reporting import ReportGenerator
    from utils.config import Config

    generator = ReportGenerator.from_config(Config.load())
    artifacts = generator.generate(record)
"""

from .cell_mapping import CellMapping, apply_cell_mappings, build_cell_mappings
from .image_processor import ProcessedImage, crop_to_fit
from .map_compositor import MapImageCompositor
from .placement import (
    GridConfig,
    ImagePlacement,
    ImagePlacementEngine,
    PhotoFetcher,
    PlacementLayout,
    default_layout,
)
from .workbook import SerializedWorkbook, load_template, serialize_workbook
from .engine import DocumentEngine, EngineDocument, EngineSession, OpenMode, PageSetup
from .pdf_converter import (
    ConversionAttempt,
    ConversionState,
    PdfConversionFailure,
    PdfConversionResult,
    PdfConversionSuccess,
    PdfConverter,
)
from .generator import ReportGenerator

__all__ = [
    # Cells
    "CellMapping",
    "apply_cell_mappings",
    "build_cell_mappings",
    # Images
    "ProcessedImage",
    "crop_to_fit",
    "MapImageCompositor",
    "GridConfig",
    "ImagePlacement",
    "ImagePlacementEngine",
    "PhotoFetcher",
    "PlacementLayout",
    "default_layout",
    # Workbook
    "SerializedWorkbook",
    "load_template",
    "serialize_workbook",
    # PDF
    "DocumentEngine",
    "EngineDocument",
    "EngineSession",
    "OpenMode",
    "PageSetup",
    "ConversionAttempt",
    "ConversionState",
    "PdfConversionFailure",
    "PdfConversionResult",
    "PdfConversionSuccess",
    "PdfConverter",
    # Pipeline
    "ReportGenerator",
]
