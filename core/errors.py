"""
Report Errors - Failure Taxonomy for Report Generation

Every failure the report pipeline can surface is one of these types.
Each carries the HTTP status the web layer responds with and a short
category string used in diagnostics.

Propagation rules:
- TemplateError, AuthError, NotFoundError, WorkbookError abort the request.
- CorruptionError and ExportError only ever affect the PDF step, which is
  best-effort; the spreadsheet artifact is still returned.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Diagnostic category reported to callers."""

    AUTH = "auth"
    TEMPLATE = "template"
    NOT_FOUND = "not_found"
    CORRUPTION = "corruption"
    EXPORT = "export"
    GENERIC = "generic"


class ReportError(Exception):
    """Base class for report generation failures."""

    status_code: int = 500
    category: ErrorCategory = ErrorCategory.GENERIC

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        """Convert to the JSON error body."""
        body = {
            "success": False,
            "error": self.category.value,
            "message": self.message,
        }
        if self.detail:
            body["detail"] = self.detail
        return body


class TemplateError(ReportError):
    """Template file missing or lacking a required sheet. Fatal."""

    status_code = 400
    category = ErrorCategory.TEMPLATE


class AuthError(ReportError):
    """Storage token could not be obtained or was rejected twice. Fatal."""

    status_code = 401
    category = ErrorCategory.AUTH


class NotFoundError(ReportError):
    """Property record does not exist."""

    status_code = 404
    category = ErrorCategory.NOT_FOUND


class WorkbookError(ReportError):
    """Serialized workbook failed an integrity check. Fatal, no partial artifact."""

    status_code = 500
    category = ErrorCategory.GENERIC


class CorruptionError(ReportError):
    """Document unreadable even after the repair attempt and every reopen fallback."""

    status_code = 500
    category = ErrorCategory.CORRUPTION


class ExportError(ReportError):
    """Every PDF export method failed or produced an invalid document."""

    status_code = 500
    category = ErrorCategory.EXPORT


class EngineError(ReportError):
    """External document engine could not be started, locked or driven."""

    status_code = 500
    category = ErrorCategory.GENERIC


def categorize(exc: BaseException) -> ErrorCategory:
    """Map any exception onto a diagnostic category."""
    if isinstance(exc, ReportError):
        return exc.category
    return ErrorCategory.GENERIC
