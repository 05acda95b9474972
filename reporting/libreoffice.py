"""
LibreOffice Engine - Headless Calc as the Document Engine

The open document handle is an openpyxl workbook loaded once from the
serialized file. Visibility and page setup are applied to that handle, and
every export writes a staging copy of it for ``soffice --convert-to pdf``
to render. The handle is never reloaded from disk during a conversion.

Open modes:
- REPAIR     interactive instance only; a damaged package is rebuilt from
             every archive member that still reads back before loading
- SIMPLE     plain load
- EXPLICIT   load with every parameter spelled out
- READ_ONLY  streaming load; the handle cannot be changed, so exports render
             the source file as-is
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import zipfile
import zlib
from io import BytesIO
from pathlib import Path
from typing import Final, Optional, Sequence
from xml.etree.ElementTree import ParseError

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook
from openpyxl.worksheet.page import PageMargins
from openpyxl.worksheet.properties import PageSetupProperties

from core.errors import CorruptionError, EngineError, ExportError
from reporting.engine import DocumentEngine, EngineDocument, OpenMode, PageSetup

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

PROCESS_NAME: Final[str] = "soffice.bin"
PDF_FILTER: Final[str] = "calc_pdf_Export"

# Whole-document export at full quality, all pages
QUALITY_FILTER_OPTIONS: Final[dict] = {
    "Quality": {"type": "long", "value": "100"},
    "ReduceImageResolution": {"type": "boolean", "value": "false"},
    "UseLosslessCompression": {"type": "boolean", "value": "true"},
}

_LOAD_ERRORS = (
    zipfile.BadZipFile,
    InvalidFileException,
    ParseError,
    KeyError,
    OSError,
    ValueError,
    EOFError,
    zlib.error,
)


def soffice_binary(configured: Optional[str] = None) -> str:
    """Resolve the soffice executable; Windows needs the console launcher."""
    binary = configured or os.environ.get("LIBREOFFICE_BIN") or os.environ.get("SOFFICE_BIN") or "soffice"
    if os.name == "nt" and binary.lower() == "soffice":
        return "soffice.com"
    return binary


def rebuild_package(source: Path, target: Path) -> int:
    """
    Copy every readable member of a damaged xlsx package into a new one.

    Returns:
        Number of members recovered

    Raises:
        CorruptionError: If the archive directory itself is unreadable
    """
    recovered = 0
    try:
        with zipfile.ZipFile(source) as damaged, zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED) as rebuilt:
            for info in damaged.infolist():
                try:
                    data = damaged.read(info.filename)
                except (zipfile.BadZipFile, zlib.error, OSError, EOFError) as e:
                    logger.warning(f"Dropping unreadable package member {info.filename}: {e}")
                    continue
                rebuilt.writestr(info, data)
                recovered += 1
    except (zipfile.BadZipFile, OSError) as e:
        raise CorruptionError("Workbook package is not repairable", detail=str(e)) from e
    return recovered


def snapshot_images(workbook: Workbook) -> dict[int, bytes]:
    """Bytes of every embedded image whose stream is still open."""
    snapshot: dict[int, bytes] = {}
    for worksheet in workbook.worksheets:
        for image in getattr(worksheet, "_images", []):
            if isinstance(image.ref, BytesIO) and not image.ref.closed:
                snapshot[id(image)] = image.ref.getvalue()
    return snapshot


def rewind_images(workbook: Workbook, snapshot: dict[int, bytes]) -> None:
    """Give each image a fresh stream; openpyxl closes them on every save."""
    for worksheet in workbook.worksheets:
        for image in getattr(worksheet, "_images", []):
            if id(image) in snapshot:
                image.ref = BytesIO(snapshot[id(image)])


# =============================================================================
# Document
# =============================================================================


class CalcDocument(EngineDocument):
    """An openpyxl handle rendered through LibreOffice Calc."""

    def __init__(self, engine: "LibreOfficeEngine", source: Path, workbook: Workbook, writable: bool = True):
        self._engine = engine
        self.source = source
        self.workbook = workbook
        self.writable = writable
        self._closed = False
        self._images = snapshot_images(workbook) if writable else {}

    def sheet_names(self) -> list[str]:
        return list(self.workbook.sheetnames)

    def _require_writable(self, action: str) -> bool:
        if not self.writable:
            logger.warning(f"Read-only document: skipping {action}")
        return self.writable

    def set_sheet_visible(self, name: str, visible: bool) -> None:
        if self._require_writable(f"visibility of {name}"):
            self.workbook[name].sheet_state = "visible" if visible else "hidden"

    def activate_sheet(self, name: str) -> None:
        if self._require_writable(f"activating {name}"):
            self.workbook.active = self.workbook.sheetnames.index(name)

    def apply_page_setup(self, name: str, setup: PageSetup) -> None:
        if not self._require_writable(f"page setup of {name}"):
            return
        worksheet = self.workbook[name]
        worksheet.print_area = None

        properties = worksheet.sheet_properties
        if properties.pageSetUpPr is None:
            properties.pageSetUpPr = PageSetupProperties(fitToPage=True)
        else:
            properties.pageSetUpPr.fitToPage = True

        page = worksheet.page_setup
        page.fitToWidth = setup.fit_to_width
        page.fitToHeight = setup.fit_to_height
        page.horizontalDpi = setup.dpi
        page.verticalDpi = setup.dpi
        page.draft = setup.draft
        page.blackAndWhite = setup.black_and_white
        page.cellComments = "atEnd" if setup.print_notes else None

        worksheet.page_margins = PageMargins(
            left=setup.margin_left,
            right=setup.margin_right,
            top=setup.margin_top,
            bottom=setup.margin_bottom,
            header=setup.margin_header,
            footer=setup.margin_footer,
        )
        worksheet.print_options.gridLines = setup.print_gridlines
        worksheet.print_options.headings = setup.print_headings

    def _stage(self, output_dir: Path, stem: str) -> Path:
        """Write the handle (or copy the source) for the engine to render."""
        staged = output_dir / f"{stem}.xlsx"
        if self.writable:
            rewind_images(self.workbook, self._images)
            self.workbook.save(staged)
        else:
            shutil.copyfile(self.source, staged)
        return staged

    def export_pdf(self, sheets: Sequence[str], output_dir: Path, *, minimal: bool = False) -> Path:
        staged = self._stage(output_dir, "export-minimal" if minimal else "export-full")
        options = None if minimal else QUALITY_FILTER_OPTIONS
        return self._engine.convert(staged, output_dir, options)

    def export_sheet_pdf(self, sheet: str, output_dir: Path) -> Path:
        if not self.writable:
            raise ExportError("Per-sheet export needs a writable document")

        states = {ws.title: ws.sheet_state for ws in self.workbook.worksheets}
        active = self.workbook.active
        try:
            self.activate_sheet(sheet)
            for name in states:
                self.workbook[name].sheet_state = "visible" if name == sheet else "hidden"
            index = self.workbook.sheetnames.index(sheet)
            staged = self._stage(output_dir, f"sheet-{index}")
        finally:
            for name, state in states.items():
                self.workbook[name].sheet_state = state
            self.workbook.active = active
        return self._engine.convert(staged, output_dir, QUALITY_FILTER_OPTIONS)

    def close(self, save: bool = False) -> None:
        if self._closed:
            return
        self._closed = True
        if save and self.writable:
            self.workbook.save(self.source)
        # Read-only workbooks hold the file open until closed
        if not self.writable:
            self.workbook.close()


# =============================================================================
# Engine
# =============================================================================


class LibreOfficeEngine(DocumentEngine):
    """Runs one headless soffice child per export."""

    process_name = PROCESS_NAME

    def __init__(
        self,
        binary: Optional[str] = None,
        timeout: int = 120,
        profile_dir: Optional[Path] = None,
        process_name: str = PROCESS_NAME,
    ):
        self.process_name = process_name
        self.binary = soffice_binary(binary)
        self.timeout = timeout
        self.profile_dir = profile_dir
        self.interactive: Optional[bool] = None
        self._process: Optional[subprocess.Popen] = None

    def start(self, interactive: bool) -> None:
        if shutil.which(self.binary) is None and not Path(self.binary).is_file():
            raise EngineError(f"LibreOffice executable not found: {self.binary}")
        self.interactive = interactive

    def stop(self) -> None:
        self._terminate_child()
        self.interactive = None

    def _terminate_child(self) -> None:
        process, self._process = self._process, None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=10)

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def open(self, path: Path, mode: OpenMode) -> CalcDocument:
        if self.interactive is None:
            raise EngineError("Engine not started")
        if mode is OpenMode.REPAIR:
            if not self.interactive:
                raise EngineError("Repair open needs an interactive engine")
            return self._open_with_repair(path)

        try:
            if mode is OpenMode.SIMPLE:
                return CalcDocument(self, path, load_workbook(path))
            if mode is OpenMode.EXPLICIT:
                workbook = load_workbook(
                    path,
                    read_only=False,
                    keep_vba=False,
                    data_only=False,
                    keep_links=True,
                    rich_text=False,
                )
                return CalcDocument(self, path, workbook)
            return CalcDocument(self, path, load_workbook(path, read_only=True), writable=False)
        except _LOAD_ERRORS as e:
            raise CorruptionError(f"{mode.value} open failed for {path.name}", detail=str(e)) from e

    def _open_with_repair(self, path: Path) -> CalcDocument:
        try:
            return CalcDocument(self, path, load_workbook(path))
        except _LOAD_ERRORS as e:
            logger.warning(f"{path.name} did not load cleanly, rebuilding package: {e}")

        repaired = path.with_name(f"{path.stem}-repaired{path.suffix}")
        recovered = rebuild_package(path, repaired)
        try:
            workbook = load_workbook(repaired)
        except _LOAD_ERRORS as e:
            raise CorruptionError("Workbook unreadable after repair", detail=str(e)) from e
        logger.info(f"Repaired {path.name}: {recovered} package members recovered")
        return CalcDocument(self, repaired, workbook)

    def command(self, source: Path, output_dir: Path, filter_options: Optional[dict]) -> list[str]:
        convert_to = "pdf"
        if filter_options:
            convert_to = f"pdf:{PDF_FILTER}:{json.dumps(filter_options, separators=(',', ':'))}"
        command = [self.binary, "--headless", "--nologo", "--nodefault", "--nolockcheck"]
        if not self.interactive:
            command.append("--norestore")
        if self.profile_dir:
            command.append(f"-env:UserInstallation={self.profile_dir.resolve().as_uri()}")
        command += ["--convert-to", convert_to, "--outdir", str(output_dir), str(source)]
        return command

    def convert(self, source: Path, output_dir: Path, filter_options: Optional[dict] = None) -> Path:
        """
        Render one staged file to PDF.

        Raises:
            ExportError: On timeout, non-zero exit or missing output
        """
        if self.interactive is None:
            raise EngineError("Engine not started")

        command = self.command(source, output_dir, filter_options)
        logger.debug(f"Running {' '.join(command)}")
        self._process = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        try:
            _, stderr = self._process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as e:
            self._terminate_child()
            raise ExportError(f"LibreOffice timed out after {self.timeout}s converting {source.name}") from e

        returncode = self._process.returncode
        self._process = None
        if returncode != 0:
            raise ExportError(
                f"LibreOffice exited with {returncode} converting {source.name}",
                detail=(stderr or b"").decode("utf-8", "replace")[:500],
            )

        output = output_dir / f"{source.stem}.pdf"
        if not output.is_file():
            raise ExportError(f"LibreOffice produced no PDF for {source.name}")
        return output
