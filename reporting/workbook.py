"""
Workbook Serializer - Template Loading and Integrity-Checked Writes

Loads the report template, checking every required sheet is present before
any data or image work starts, and writes the populated workbook to a
uniquely named temp file that is verified before anything else reads it.

Integrity checks, in order:
1. The file exists.
2. The file is not empty.
3. (optional) The file reopens and enumerates sheets.

Any failure raises WorkbookError and the partial file is removed.
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional
from xml.etree.ElementTree import ParseError
from zipfile import BadZipFile

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from openpyxl.workbook.workbook import Workbook

from core.errors import TemplateError, WorkbookError

logger = logging.getLogger(__name__)

XLSX_SUFFIX = ".xlsx"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")

_READ_ERRORS = (BadZipFile, InvalidFileException, ParseError, OSError, KeyError, ValueError)


# =============================================================================
# Template
# =============================================================================


def load_template(path: str | Path, required_sheets: Iterable[str]) -> Workbook:
    """
    Load the report template and check its sheets.

    Raises:
        TemplateError: If the file is missing, unreadable or lacks a required sheet
    """
    template_path = Path(path)
    if not template_path.is_file():
        raise TemplateError(f"Template not found: {template_path}")

    try:
        workbook = load_workbook(template_path)
    except _READ_ERRORS as e:
        raise TemplateError(f"Template could not be read: {template_path}", detail=str(e)) from e

    missing = [name for name in required_sheets if name not in workbook.sheetnames]
    if missing:
        raise TemplateError(
            f"Template is missing required sheet(s): {', '.join(missing)}",
            detail=f"Available sheets: {', '.join(workbook.sheetnames)}",
        )

    logger.info(f"Loaded template {template_path.name} with sheets {workbook.sheetnames}")
    return workbook


# =============================================================================
# Serializer
# =============================================================================


@dataclass
class SerializedWorkbook:
    """A verified workbook file on disk."""

    path: Path
    size: int
    sheetnames: list[str]

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()

    def delete(self) -> None:
        """Remove the file. Failures are logged, not raised."""
        try:
            self.path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete serialized workbook {self.path}: {e}")


def unique_filename(record_id: str, suffix: str = XLSX_SUFFIX, now: Optional[datetime] = None) -> str:
    """
    Collision-free temp name from record id and timestamp.

    A short random token covers two requests in the same microsecond.
    """
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%S%f")
    safe_id = _UNSAFE_NAME.sub("_", record_id) or "record"
    return f"report-{safe_id}-{stamp}-{uuid.uuid4().hex[:8]}{suffix}"


def verify_workbook_file(path: Path, reopen: bool = True) -> SerializedWorkbook:
    """
    Run the integrity checks on a written workbook.

    Raises:
        WorkbookError: On the first failed check
    """
    if not path.exists():
        raise WorkbookError(f"Serialized workbook was not created: {path.name}")

    size = path.stat().st_size
    if size <= 0:
        raise WorkbookError(f"Serialized workbook is empty: {path.name}")

    sheetnames: list[str] = []
    if reopen:
        try:
            reopened = load_workbook(path, read_only=True)
        except _READ_ERRORS as e:
            raise WorkbookError("Serialized workbook failed to reopen", detail=str(e)) from e
        try:
            sheetnames = list(reopened.sheetnames)
        finally:
            reopened.close()
        if not sheetnames:
            raise WorkbookError("Serialized workbook has no sheets")

    return SerializedWorkbook(path=path, size=size, sheetnames=sheetnames)


def serialize_workbook(
    workbook: Workbook,
    record_id: str,
    directory: Optional[str | Path] = None,
    reopen: bool = True,
) -> SerializedWorkbook:
    """
    Write a workbook to a unique temp file and verify it.

    Args:
        workbook: Populated workbook
        record_id: Record the report belongs to (used in the file name)
        directory: Target directory (system temp dir when omitted)
        reopen: Also reopen the file and enumerate its sheets

    Raises:
        WorkbookError: If writing or any integrity check fails
    """
    target_dir = Path(directory) if directory else Path(tempfile.gettempdir())
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / unique_filename(record_id)

    try:
        workbook.save(path)
        serialized = verify_workbook_file(path, reopen=reopen)
    except WorkbookError:
        _discard(path)
        raise
    except (OSError, ValueError, TypeError) as e:
        _discard(path)
        raise WorkbookError("Failed to write workbook", detail=str(e)) from e

    logger.info(f"Serialized workbook {path.name} ({serialized.size} bytes)")
    return serialized


def _discard(path: Path) -> None:
    try:
        if path.exists():
            os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove partial workbook {path}: {e}")
