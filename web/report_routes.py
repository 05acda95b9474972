"""
Report Routes - Valuation Report API

Endpoints:
- GET  /api/property/{record_id}          fetch a stored record
- PUT  /api/property/{record_id}          create or replace a record
- GET  /api/property/{record_id}/report   generate the report
- POST /api/property/{record_id}/report   generate the report, optional sheet override

Report responses:
- 200 with the workbook artifact; pdfGenerated false plus pdfError when the
  PDF step failed
- 400 template, 401 storage auth, 404 unknown record, 500 anything else
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from core.errors import ReportError
from core.models import PropertyRecord
from core.repository import PropertyRecordRepository, get_record_repository
from reporting.generator import ReportGenerator
from utils.config import Config

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(prefix="/api/property", tags=["report"])

_generator_instance: Optional[ReportGenerator] = None


def get_config() -> Config:
    return Config.load()


def get_report_generator() -> ReportGenerator:
    """Process-wide generator built from the environment."""
    global _generator_instance
    if _generator_instance is None:
        _generator_instance = ReportGenerator.from_config(get_config())
    return _generator_instance


def get_repository() -> PropertyRecordRepository:
    config = get_config()
    return get_record_repository(str(Path(config.data_dir) / "records.json"))


# =============================================================================
# Request Models
# =============================================================================


class PropertyRecordPayload(BaseModel):
    """Body of a record upsert: the record's sections."""

    sections: Dict[str, Any] = {}


class GenerateReportRequest(BaseModel):
    """Optional body of a report request."""

    pdf_sheets: Optional[List[str]] = None


def error_response(error: ReportError) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code)


# =============================================================================
# Records
# =============================================================================


@router.get("/{record_id}")
def get_property(record_id: str, repo: PropertyRecordRepository = Depends(get_repository)):
    try:
        record = repo.require(record_id)
    except ReportError as e:
        return error_response(e)
    return {"success": True, "record": record.to_dict()}


@router.put("/{record_id}")
def put_property(
    record_id: str,
    payload: PropertyRecordPayload,
    repo: PropertyRecordRepository = Depends(get_repository),
):
    record = repo.save(PropertyRecord(record_id=record_id, sections=payload.sections))
    logger.info(f"Stored record {record_id}")
    return {"success": True, "record": record.to_dict()}


# =============================================================================
# Reports
# =============================================================================


def _generate(
    record_id: str,
    repo: PropertyRecordRepository,
    generator: ReportGenerator,
    pdf_sheets: Optional[List[str]] = None,
) -> JSONResponse:
    try:
        record = repo.require(record_id)
        artifacts = generator.generate(record, pdf_sheets=pdf_sheets)
    except ReportError as e:
        logger.error(f"Report generation failed for {record_id} ({e.category.value}): {e.message}")
        return error_response(e)
    return JSONResponse(artifacts.to_response())


@router.get("/{record_id}/report")
def generate_report(
    record_id: str,
    repo: PropertyRecordRepository = Depends(get_repository),
    generator: ReportGenerator = Depends(get_report_generator),
):
    """Generate the Excel report (and PDF when possible) for a record."""
    return _generate(record_id, repo, generator)


@router.post("/{record_id}/report")
def generate_report_post(
    record_id: str,
    request_data: Optional[GenerateReportRequest] = Body(default=None),
    repo: PropertyRecordRepository = Depends(get_repository),
    generator: ReportGenerator = Depends(get_report_generator),
):
    pdf_sheets = request_data.pdf_sheets if request_data else None
    return _generate(record_id, repo, generator, pdf_sheets=pdf_sheets)
