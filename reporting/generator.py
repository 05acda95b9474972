"""
Report Generator - Valuation Report Pipeline

record -> template + cell mapping -> location map + photos -> serialize
       -> upload workbook (request-critical) -> PDF conversion + upload
          (best-effort)

Failure semantics:
- Template, workbook and storage-auth failures abort the request and no
  partial artifact is returned.
- Map and per-photo failures are logged and skipped.
- Any PDF failure leaves pdf_generated False with a diagnostic category;
  the workbook artifact is still returned.
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Optional, Sequence

import requests
from openpyxl.workbook.workbook import Workbook
from PIL import Image

from core.errors import ReportError, categorize
from core.models import PropertyRecord, ReportArtifacts
from core.storage import ArtifactUploader, GraphTokenManager, OneDriveStore
from reporting.cell_mapping import CellMapping, apply_cell_mappings, build_cell_mappings
from reporting.libreoffice import LibreOfficeEngine
from reporting.map_compositor import MapImageCompositor
from reporting.pdf_converter import PdfConversionFailure, PdfConverter
from reporting.placement import ImagePlacementEngine, PhotoFetcher, PlacementReport, default_layout
from reporting.workbook import load_template, serialize_workbook
from utils.config import Config

logger = logging.getLogger(__name__)


def report_filename(record_id: str, suffix: str) -> str:
    """Logical name of an uploaded artifact."""
    return f"Valuation-Report-{record_id}{suffix}"


class ReportGenerator:
    """Runs the full report pipeline for one record at a time."""

    def __init__(
        self,
        config: Config,
        uploader: ArtifactUploader,
        placement: ImagePlacementEngine,
        compositor: Optional[MapImageCompositor] = None,
        converter: Optional[PdfConverter] = None,
        mappings: Optional[Sequence[CellMapping]] = None,
    ):
        self.config = config
        self.uploader = uploader
        self.placement = placement
        self.compositor = compositor
        self.converter = converter
        self.mappings = list(mappings) if mappings is not None else build_cell_mappings(
            data_sheet=config.data_sheet,
            summary_sheet=config.summary_sheet,
            cover_sheet=config.cover_sheet,
        )

    @classmethod
    def from_config(cls, config: Config) -> "ReportGenerator":
        """Wire the production collaborators from configuration."""
        tokens = GraphTokenManager(
            tenant_id=config.graph_tenant_id,
            client_id=config.graph_client_id,
            client_secret=config.graph_client_secret,
            cache_path=config.token_cache_path,
            timeout=config.request_timeout,
        )
        store = OneDriveStore(
            user_email=config.drive_user_email,
            folder=config.drive_folder,
            timeout=config.request_timeout * 2,
        )
        uploader = ArtifactUploader(tokens, store)

        fetcher = PhotoFetcher(
            timeout=config.request_timeout,
            workers=config.photo_workers,
            resolve_shared_link=uploader.resolve_download_url,
        )
        layout = default_layout(config.photo_sheet, config.summary_sheet, config.cover_sheet)

        if not config.maps_api_key:
            logger.warning("GOOGLE_MAPS_API_KEY not set, reports will have no location map")

        converter = PdfConverter(
            lambda: LibreOfficeEngine(
                binary=config.soffice_binary,
                timeout=config.conversion_timeout,
                process_name=config.engine_process_name,
            ),
            work_root=config.work_dir,
            lock_timeout=config.engine_lock_timeout,
            settle_timeout=config.engine_settle_timeout,
        )

        return cls(
            config=config,
            uploader=uploader,
            placement=ImagePlacementEngine(layout, fetcher),
            compositor=MapImageCompositor(
                config.maps_api_key,
                zoom=config.map_zoom,
                timeout=config.request_timeout,
            ),
            converter=converter,
        )

    # -------------------------------------------------------------------------
    # Workbook
    # -------------------------------------------------------------------------

    def build_workbook(self, record: PropertyRecord) -> tuple[Workbook, PlacementReport]:
        """
        Template, cells and images for one record.

        Raises:
            TemplateError: Before any image work if the template is unusable
        """
        workbook = load_template(self.config.template_path, self.config.required_sheets)
        apply_cell_mappings(workbook, record, self.mappings)

        map_placed = self._place_map(workbook, record)
        report = self.placement.place_photos(workbook, record)
        report.map_placed = map_placed
        return workbook, report

    def _place_map(self, workbook: Workbook, record: PropertyRecord) -> bool:
        if self.compositor is None or not self.compositor.enabled:
            return False
        address = record.full_address
        if not address:
            logger.info(f"Record {record.record_id} has no address, skipping location map")
            return False

        width, height, border = self.placement.map_box
        try:
            image = self.compositor.compose(address, width, height, border)
            self.placement.place_map(workbook, image)
        except (requests.RequestException, Image.DecompressionBombError, ValueError, OSError) as e:
            logger.warning(f"Location map skipped for record {record.record_id}: {e}")
            return False
        return True

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def generate(self, record: PropertyRecord, pdf_sheets: Optional[Sequence[str]] = None) -> ReportArtifacts:
        """
        Generate and upload the report artifacts for a record.

        Args:
            record: Property record to report on
            pdf_sheets: Sheets to export to PDF (configured sheets when omitted)

        Raises:
            ReportError: For any failure that prevents the workbook artifact
        """
        logger.info(f"Generating report for record {record.record_id}")
        workbook, _ = self.build_workbook(record)

        serialized = serialize_workbook(workbook, record.record_id, directory=self.config.work_dir)
        try:
            data = serialized.read_bytes()
            filename = report_filename(record.record_id, ".xlsx")
            workbook_url = self.uploader.upload(data, record.record_id, filename)

            artifacts = ReportArtifacts(
                workbook_url=workbook_url,
                base64_workbook=base64.b64encode(data).decode("ascii"),
                filename=filename,
            )
            self._attach_pdf(artifacts, serialized.path, record, pdf_sheets or self.config.pdf_sheets)
        finally:
            serialized.delete()

        logger.info(
            f"Report for record {record.record_id} complete "
            f"(pdf {'generated' if artifacts.pdf_generated else 'not generated'})"
        )
        return artifacts

    def _attach_pdf(
        self,
        artifacts: ReportArtifacts,
        workbook_path: Path,
        record: PropertyRecord,
        pdf_sheets: Sequence[str],
    ) -> None:
        """Best-effort PDF step. Never raises."""
        if self.converter is None:
            artifacts.pdf_error = "generic"
            artifacts.pdf_message = "Excel report generated; PDF conversion is not configured"
            return

        result = self.converter.convert(workbook_path, list(pdf_sheets))
        if isinstance(result, PdfConversionFailure):
            artifacts.pdf_error = result.category.value
            artifacts.pdf_message = f"Excel report generated; PDF conversion failed: {result.message}"
            return

        try:
            artifacts.pdf_url = self.uploader.upload(
                result.pdf_bytes,
                record.record_id,
                report_filename(record.record_id, ".pdf"),
            )
        except ReportError as e:
            logger.error(f"PDF upload failed for record {record.record_id}: {e.message}")
            artifacts.pdf_error = categorize(e).value
            artifacts.pdf_message = f"Excel report generated; PDF upload failed: {e.message}"
            return
        artifacts.pdf_generated = True
