"""
PDF Converter - Repair and Export-Fallback State Machine

Drives the document engine from a serialized workbook to PDF bytes.

    INIT -> REPAIR_ATTEMPT -> REPAIR_OK | REPAIR_FAILED
         -> EXPORT_ATTEMPT (method 1..K) -> EXPORTED | EXPORT_FAILED
         -> CLEANUP -> DONE | FATAL

- INIT starts an interactive engine so repair prompts are auto-confirmed.
- A successful repair open keeps that in-memory handle for export.
- REPAIR_FAILED restarts a non-interactive engine and reopens the original
  file with the fallback sequence simple -> explicit -> read-only.
- Export methods are tried in order until one yields bytes starting with
  the PDF signature.
- CLEANUP always runs: document closed unsaved, engine stopped, strays
  killed, working directory removed.

The converter never raises. Every outcome is a
PdfConversionSuccess or PdfConversionFailure.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Final, Optional, Sequence, Union

from core.errors import (
    CorruptionError,
    ErrorCategory,
    ExportError,
    ReportError,
    TemplateError,
    categorize,
)
from reporting.engine import (
    FALLBACK_OPEN_MODES,
    DocumentEngine,
    EngineDocument,
    EngineSession,
    HostProcesses,
    OpenMode,
    PageSetup,
    WorkingDirectory,
)

logger = logging.getLogger(__name__)

PDF_SIGNATURE: Final[bytes] = b"%PDF-"


# =============================================================================
# States
# =============================================================================


class ConversionState(Enum):
    INIT = "init"
    REPAIR_ATTEMPT = "repair_attempt"
    REPAIR_OK = "repair_ok"
    REPAIR_FAILED = "repair_failed"
    EXPORT_ATTEMPT = "export_attempt"
    EXPORTED = "exported"
    EXPORT_FAILED = "export_failed"
    CLEANUP = "cleanup"
    DONE = "done"
    FATAL = "fatal"


@dataclass
class ConversionAttempt:
    """Transient record of one conversion call."""

    repair_attempted: bool = False
    repair_succeeded: bool = False
    open_mode: Optional[OpenMode] = None
    export_method_index: int = 0
    state: ConversionState = ConversionState.INIT
    history: list[ConversionState] = field(default_factory=lambda: [ConversionState.INIT])
    export_errors: list[str] = field(default_factory=list)

    def transition(self, state: ConversionState) -> None:
        logger.info(f"PDF conversion: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


# =============================================================================
# Results
# =============================================================================


@dataclass
class ExportOk:
    method: str
    path: Path


@dataclass
class ExportFailed:
    method: str
    reason: str


ExportResult = Union[ExportOk, ExportFailed]


@dataclass
class PdfConversionSuccess:
    pdf_bytes: bytes
    attempt: ConversionAttempt
    method: str


@dataclass
class PdfConversionFailure:
    category: ErrorCategory
    message: str
    attempt: ConversionAttempt


PdfConversionResult = Union[PdfConversionSuccess, PdfConversionFailure]


def is_valid_pdf(data: bytes) -> bool:
    """Non-empty and starting with the PDF signature."""
    return bool(data) and data.startswith(PDF_SIGNATURE)


# =============================================================================
# Sheet Preparation
# =============================================================================


def configure_visibility(document: EngineDocument, targets: Sequence[str]) -> None:
    """
    Hide every non-target sheet, show the targets and activate the first.

    Raises:
        TemplateError: If a target sheet does not exist
    """
    names = document.sheet_names()
    missing = [name for name in targets if name not in names]
    if missing:
        raise TemplateError(
            f"Sheet(s) not found for PDF export: {', '.join(missing)}",
            detail=f"Available sheets: {', '.join(names)}",
        )

    # Show targets first so the workbook never has zero visible sheets
    for name in targets:
        document.set_sheet_visible(name, True)
    document.activate_sheet(targets[0])
    for name in names:
        if name not in targets:
            document.set_sheet_visible(name, False)


def configure_page_setup(document: EngineDocument, targets: Sequence[str], setup: PageSetup) -> None:
    """Apply print settings per sheet; a failing sheet is logged and skipped."""
    for name in targets:
        try:
            document.apply_page_setup(name, setup)
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(f"Page setup failed for sheet {name}: {e}")


# =============================================================================
# Export Strategies
# =============================================================================

ExportStrategy = Callable[[EngineDocument, Sequence[str], Path], Path]


def export_whole_document(document: EngineDocument, targets: Sequence[str], output_dir: Path) -> Path:
    return document.export_pdf(targets, output_dir)


def export_per_sheet(document: EngineDocument, targets: Sequence[str], output_dir: Path) -> Path:
    """
    One PDF per target sheet; the first sheet's file is the result.

    Merging several sheet PDFs is not supported.
    """
    first: Optional[Path] = None
    for index, name in enumerate(targets):
        try:
            path = document.export_sheet_pdf(name, output_dir)
        except (ReportError, OSError, ValueError) as e:
            if index == 0:
                raise
            logger.warning(f"Per-sheet export of {name} failed: {e}")
            continue
        if index == 0:
            first = path
    if first is None:
        raise ExportError("Per-sheet export produced no output for the first sheet")
    if len(targets) > 1:
        logger.warning(
            f"Per-sheet export keeps only '{targets[0]}'; {len(targets) - 1} other sheet(s) not merged"
        )
    return first


def export_minimal(document: EngineDocument, targets: Sequence[str], output_dir: Path) -> Path:
    return document.export_pdf(targets, output_dir, minimal=True)


EXPORT_STRATEGIES: Final[tuple[tuple[str, ExportStrategy], ...]] = (
    ("whole_document", export_whole_document),
    ("per_sheet", export_per_sheet),
    ("minimal", export_minimal),
)


def run_strategy(
    name: str,
    strategy: ExportStrategy,
    document: EngineDocument,
    targets: Sequence[str],
    output_dir: Path,
) -> ExportResult:
    try:
        return ExportOk(method=name, path=strategy(document, targets, output_dir))
    except (ReportError, OSError, ValueError, KeyError) as e:
        return ExportFailed(method=name, reason=str(e))


# =============================================================================
# Converter
# =============================================================================


class PdfConverter:
    """
    Converts a serialized workbook to PDF through a document engine.

    Usage:
        converter = PdfConverter(lambda: LibreOfficeEngine(...))
        result = converter.convert(path, ["Cover", "Summary"])
        if isinstance(result, PdfConversionSuccess):
            ...
    """

    def __init__(
        self,
        engine_factory: Callable[[], DocumentEngine],
        processes: Optional[HostProcesses] = None,
        work_root: Optional[str | Path] = None,
        lock_timeout: float = 300.0,
        settle_timeout: float = 10.0,
        page_setup: Optional[PageSetup] = None,
        strategies: Sequence[tuple[str, ExportStrategy]] = EXPORT_STRATEGIES,
    ):
        self._engine_factory = engine_factory
        self._processes = processes
        self._work_root = work_root
        self._lock_timeout = lock_timeout
        self._settle_timeout = settle_timeout
        self._page_setup = page_setup or PageSetup()
        self._strategies = tuple(strategies)

    def convert(self, source: Path, target_sheets: Sequence[str]) -> PdfConversionResult:
        """
        Produce PDF bytes for the target sheets of a serialized workbook.

        Never raises; unexpected errors become a generic failure.
        """
        attempt = ConversionAttempt()
        if not target_sheets:
            attempt.transition(ConversionState.FATAL)
            return PdfConversionFailure(ErrorCategory.TEMPLATE, "No sheets requested for PDF export", attempt)

        pdf_bytes: Optional[bytes] = None
        method = ""
        failure: Optional[ReportError] = None

        try:
            with WorkingDirectory(self._work_root) as workdir:
                source_copy = workdir.file(f"source{source.suffix or '.xlsx'}")
                shutil.copyfile(source, source_copy)

                session = EngineSession(
                    self._engine_factory(),
                    processes=self._processes,
                    lock_timeout=self._lock_timeout,
                    settle_timeout=self._settle_timeout,
                )
                with session:
                    try:
                        pdf_bytes, method = self._run(session, source_copy, workdir.path, target_sheets, attempt)
                    finally:
                        attempt.transition(ConversionState.CLEANUP)
        except ReportError as e:
            failure = e
        except OSError as e:
            failure = ReportError("PDF conversion I/O failure", detail=str(e))
        except Exception as e:
            logger.exception(f"Unexpected error during PDF conversion of {source.name}")
            failure = ReportError(f"Unexpected PDF conversion error: {type(e).__name__}", detail=str(e))

        if pdf_bytes is not None:
            attempt.transition(ConversionState.DONE)
            logger.info(f"PDF generated with method '{method}' ({len(pdf_bytes)} bytes)")
            return PdfConversionSuccess(pdf_bytes=pdf_bytes, attempt=attempt, method=method)

        attempt.transition(ConversionState.FATAL)
        if failure is None:
            failure = ExportError(
                "All PDF export methods failed",
                detail="; ".join(attempt.export_errors),
            )
        logger.error(f"PDF conversion failed ({categorize(failure).value}): {failure.message}")
        return PdfConversionFailure(category=categorize(failure), message=failure.message, attempt=attempt)

    def _open(self, session: EngineSession, path: Path, attempt: ConversionAttempt) -> EngineDocument:
        attempt.transition(ConversionState.REPAIR_ATTEMPT)
        attempt.repair_attempted = True
        try:
            document = session.open(path, OpenMode.REPAIR)
        except ReportError as e:
            logger.warning(f"Repair open failed: {e.message}")
            attempt.transition(ConversionState.REPAIR_FAILED)
        else:
            attempt.repair_succeeded = True
            attempt.open_mode = OpenMode.REPAIR
            attempt.transition(ConversionState.REPAIR_OK)
            return document

        session.restart(interactive=False)
        errors: list[str] = []
        for mode in FALLBACK_OPEN_MODES:
            try:
                document = session.open(path, mode)
            except ReportError as e:
                logger.warning(f"{mode.value} open failed: {e.message}")
                errors.append(f"{mode.value}: {e.message}")
                continue
            attempt.open_mode = mode
            logger.info(f"Opened workbook with {mode.value} fallback")
            return document

        raise CorruptionError("Workbook could not be opened after repair", detail="; ".join(errors))

    def _run(
        self,
        session: EngineSession,
        path: Path,
        workdir: Path,
        targets: Sequence[str],
        attempt: ConversionAttempt,
    ) -> tuple[Optional[bytes], str]:
        document = self._open(session, path, attempt)
        configure_visibility(document, targets)
        configure_page_setup(document, targets, self._page_setup)

        for index, (name, strategy) in enumerate(self._strategies, start=1):
            attempt.export_method_index = index
            attempt.transition(ConversionState.EXPORT_ATTEMPT)
            result = run_strategy(name, strategy, document, targets, workdir)

            if isinstance(result, ExportOk):
                data = result.path.read_bytes() if result.path.is_file() else b""
                if is_valid_pdf(data):
                    attempt.transition(ConversionState.EXPORTED)
                    return data, name
                result = ExportFailed(method=name, reason="output is not a valid PDF")

            logger.warning(f"Export method {index} ({name}) failed: {result.reason}")
            attempt.export_errors.append(f"{name}: {result.reason}")

        attempt.transition(ConversionState.EXPORT_FAILED)
        return None, ""
