"""
Shared fixtures for the report pipeline tests.

No network and no LibreOffice: HTTP sessions, the token source and the
document engine are in-memory fakes. Templates and images are generated
with openpyxl and Pillow.
"""

import zipfile
from io import BytesIO
from pathlib import Path
from typing import Optional

import pytest
import requests
from openpyxl import Workbook
from PIL import Image

from core.errors import AuthError, CorruptionError, ExportError
from core.models import PropertyRecord
from reporting.engine import DocumentEngine, EngineDocument, OpenMode

TEMPLATE_SHEETS = ("Fillout", "Photos", "Summary", "Cover")
MINIMAL_PDF = b"%PDF-1.7\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"
GARBLED_SHEET_XML = b"<worksheet><sheetData><row>"


# =============================================================================
# Images and Templates
# =============================================================================


def encode_image(width: int, height: int, color=(200, 30, 30), image_format: str = "JPEG") -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format=image_format)
    return buffer.getvalue()


@pytest.fixture
def make_image():
    """Factory for encoded test images."""
    return encode_image


@pytest.fixture
def make_template(tmp_path):
    """Factory writing a report template with the given sheets."""

    def build(sheets=TEMPLATE_SHEETS, name: str = "template.xlsx") -> Path:
        workbook = Workbook()
        workbook.active.title = sheets[0]
        for sheet in sheets[1:]:
            workbook.create_sheet(sheet)
        if "Photos" in sheets:
            workbook["Photos"]["B4"] = "Photo 1"
            workbook["Photos"]["H4"] = "Photo 2"
        if "Cover" in sheets:
            workbook["Cover"]["B8"] = "Cover photo"
        if "Fillout" in sheets:
            workbook["Fillout"]["B3"] = "stale job number"
        path = tmp_path / name
        workbook.save(path)
        return path

    return build


@pytest.fixture
def template_path(make_template):
    return make_template()


@pytest.fixture
def garble_member(tmp_path):
    """Factory copying an xlsx package with one member's XML replaced."""

    def build(
        source: Path,
        member: str = "xl/worksheets/sheet1.xml",
        content: bytes = GARBLED_SHEET_XML,
        name: str = "garbled.xlsx",
    ) -> Path:
        target = tmp_path / name
        with zipfile.ZipFile(source) as original, zipfile.ZipFile(target, "w", zipfile.ZIP_DEFLATED) as copy:
            for info in original.infolist():
                data = content if info.filename == member else original.read(info.filename)
                copy.writestr(info.filename, data)
        return target

    return build


@pytest.fixture
def sample_record():
    """A record with every section populated and no photos."""
    return PropertyRecord(
        record_id="rec-001",
        sections={
            "overview": {
                "jobNumber": "JOB-42",
                "closedBy": "A. Smith",
                "propertyValuer": "J. Doe",
                "instructedBy": "Bank of Example",
                "reportType": "Full",
                "valuationType": "Market",
                "surveyType": "Internal",
                "dateOfInspection": "2024-03-01",
                "dateOfValuation": "2024-03-02",
                "addressStreet": "12 Example Street",
                "addressSuburb": "Springfield",
                "addressState": "NSW",
                "addressPostcode": "2000",
                "purposeOfReport": "Mortgage",
                "reportUploaded": True,
                "reportSent": False,
            },
            "valuationDetails": {"marketValue": 850000, "landValue": 400000},
            "propertyDetails": {"propertyType": "House", "constructionYear": 1998},
            "locationAndNeighborhood": {
                "publicTransport": {"name": "Central Station", "distance": "1.2", "unit": "km"},
                "shop": {"name": "Corner Store"},
            },
            "roomFeaturesFixtures": {"flooringTypes": ["Carpet", "Tiles", "Timber"]},
            "propertyDescriptors": {"mainBuildingType": "Brick", "customRoofing": "Slate"},
            "ancillaryImprovements": {
                "improvements": {
                    "swimmingPool": {"selected": True},
                    "paths": {"selected": True},
                    "gym": {"selected": False},
                    "custom1": {"selected": True, "customName": "Boat Shed"},
                },
            },
            "photos": {},
        },
    )


def with_photos(record: PropertyRecord, **photos) -> PropertyRecord:
    sections = dict(record.sections)
    sections["photos"] = photos
    return PropertyRecord(record_id=record.record_id, sections=sections)


@pytest.fixture
def record_with_photos(sample_record):
    """Factory: the sample record with the given photos section."""

    def build(**photos) -> PropertyRecord:
        return with_photos(sample_record, **photos)

    return build


# =============================================================================
# HTTP Fakes
# =============================================================================


class FakeResponse:
    def __init__(self, status_code: int = 200, content: bytes = b"", json_data=None, headers=None):
        self.status_code = status_code
        self.content = content if json_data is None else b"{}"
        self._json = json_data
        self.headers = headers or {}
        self.text = content.decode("latin-1") if content else ""

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return self._json if self._json is not None else {}

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    """
    Minimal requests.Session stand-in.

    ``routes`` maps a URL prefix to a FakeResponse, an exception, or a list
    of either consumed one per call.
    """

    def __init__(self, routes: Optional[dict] = None):
        self.routes = routes or {}
        self.calls: list[tuple[str, str, dict]] = []

    def _respond(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        for prefix in sorted(self.routes, key=len, reverse=True):
            if url.startswith(prefix):
                outcome = self.routes[prefix]
                if isinstance(outcome, list):
                    outcome = outcome.pop(0)
                if isinstance(outcome, Exception):
                    raise outcome
                return outcome
        raise requests.ConnectionError(f"No route for {url}")

    def get(self, url, **kwargs):
        return self._respond("GET", url, **kwargs)

    def put(self, url, **kwargs):
        return self._respond("PUT", url, **kwargs)

    def post(self, url, **kwargs):
        return self._respond("POST", url, **kwargs)


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def fake_session():
    return FakeSession


class FakeTokens:
    """Token source handing out numbered tokens."""

    def __init__(self, fail_on_refresh: bool = False):
        self.calls: list[bool] = []
        self.fail_on_refresh = fail_on_refresh

    def get_token(self, force_refresh: bool = False) -> str:
        self.calls.append(force_refresh)
        if force_refresh and self.fail_on_refresh:
            raise AuthError("refresh refused")
        return f"token-{len(self.calls)}"


@pytest.fixture
def fake_tokens():
    return FakeTokens


# =============================================================================
# Document Engine Fakes
# =============================================================================


class FakeDocument(EngineDocument):
    def __init__(self, engine: "FakeEngine", mode: OpenMode):
        self.engine = engine
        self.mode = mode
        self.visible = {name: True for name in engine.sheets}
        self.active: Optional[str] = None
        self.page_setups: dict = {}
        self.closed = False

    def sheet_names(self):
        return list(self.engine.sheets)

    def set_sheet_visible(self, name, visible):
        self.visible[name] = visible

    def activate_sheet(self, name):
        self.active = name

    def apply_page_setup(self, name, setup):
        self.page_setups[name] = setup

    def export_pdf(self, sheets, output_dir, *, minimal=False):
        return self.engine.export("minimal" if minimal else "whole_document", output_dir)

    def export_sheet_pdf(self, sheet, output_dir):
        return self.engine.export("per_sheet", output_dir, sheet)

    def close(self, save=False):
        self.closed = True
        self.engine.close_calls.append(save)


class FakeEngine(DocumentEngine):
    """Scriptable engine: choose which opens and exports fail."""

    process_name = "fake-engine.bin"

    def __init__(
        self,
        sheets=TEMPLATE_SHEETS,
        repair_fails: bool = False,
        failing_modes=(),
        failing_exports=(),
        invalid_exports=(),
    ):
        self.sheets = list(sheets)
        self.repair_fails = repair_fails
        self.failing_modes = set(failing_modes)
        self.failing_exports = set(failing_exports)
        self.invalid_exports = set(invalid_exports)
        self.starts: list[bool] = []
        self.stops = 0
        self.running = False
        self.opens: list[OpenMode] = []
        self.exports: list[str] = []
        self.documents: list[FakeDocument] = []
        self.close_calls: list[bool] = []
        self.workdirs: list[Path] = []

    def start(self, interactive):
        self.starts.append(interactive)
        self.running = True

    def stop(self):
        self.stops += 1
        self.running = False

    def is_running(self):
        return self.running

    def open(self, path, mode):
        self.opens.append(mode)
        self.workdirs.append(Path(path).parent)
        if mode is OpenMode.REPAIR and self.repair_fails:
            raise CorruptionError("repair prompt failed")
        if mode in self.failing_modes:
            raise CorruptionError(f"{mode.value} open failed")
        document = FakeDocument(self, mode)
        self.documents.append(document)
        return document

    def export(self, method, output_dir, sheet=None):
        self.exports.append(method)
        if method in self.failing_exports:
            raise ExportError(f"{method} export failed")
        path = Path(output_dir) / f"{method}-{sheet or 'all'}.pdf"
        path.write_bytes(b"not a pdf" if method in self.invalid_exports else MINIMAL_PDF)
        return path


class FakeProcesses:
    """Host process control that only records calls."""

    def __init__(self):
        self.killed: list[str] = []

    def running(self, name):
        return False

    def kill(self, name):
        self.killed.append(name)


@pytest.fixture
def fake_engine():
    return FakeEngine


@pytest.fixture
def fake_processes():
    return FakeProcesses()
