"""
Tests for the Workbook Serializer

Tests cover:
- Template loading and required-sheet checks
- Unique, filesystem-safe temp names
- Integrity checks in order: exists, non-empty, reopens
- Damaged package XML reported as template or workbook errors
- Partial files removed on failure
"""

from datetime import datetime, timezone

import pytest
from openpyxl import Workbook, load_workbook

from core.errors import TemplateError, WorkbookError
from reporting.workbook import (
    load_template,
    serialize_workbook,
    unique_filename,
    verify_workbook_file,
)

TEMPLATE_SHEETS = ("Fillout", "Photos", "Summary", "Cover")


class TestLoadTemplate:
    """Template checks run before any data work."""

    def test_loads_with_all_sheets(self, template_path):
        workbook = load_template(template_path, TEMPLATE_SHEETS)
        assert workbook.sheetnames == list(TEMPLATE_SHEETS)

    def test_missing_file(self, tmp_path):
        with pytest.raises(TemplateError, match="not found"):
            load_template(tmp_path / "nope.xlsx", TEMPLATE_SHEETS)

    def test_missing_sheet_lists_available(self, make_template):
        path = make_template(sheets=("Fillout", "Photos"))

        with pytest.raises(TemplateError) as exc_info:
            load_template(path, TEMPLATE_SHEETS)

        assert "Summary" in exc_info.value.message
        assert "Cover" in exc_info.value.message
        assert "Fillout, Photos" in exc_info.value.detail

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "broken.xlsx"
        path.write_bytes(b"this is not a zip archive")
        with pytest.raises(TemplateError, match="could not be read"):
            load_template(path, TEMPLATE_SHEETS)

    def test_garbled_sheet_xml(self, template_path, garble_member):
        garbled = garble_member(template_path)
        with pytest.raises(TemplateError, match="could not be read"):
            load_template(garbled, TEMPLATE_SHEETS)

    def test_unsupported_extension(self, template_path, tmp_path):
        path = tmp_path / "template.csv"
        path.write_bytes(template_path.read_bytes())
        with pytest.raises(TemplateError, match="could not be read"):
            load_template(path, TEMPLATE_SHEETS)


class TestUniqueFilename:
    """Temp names never collide and never escape the directory."""

    def test_distinct_for_same_instant(self):
        now = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)
        names = {unique_filename("rec-1", now=now) for _ in range(50)}
        assert len(names) == 50

    def test_unsafe_characters_replaced(self):
        name = unique_filename("../etc/passwd")
        assert "/" not in name
        assert name.startswith("report-.._etc_passwd-")
        assert name.endswith(".xlsx")

    def test_timestamp_embedded(self):
        now = datetime(2024, 3, 1, 12, 30, 45, 123456, tzinfo=timezone.utc)
        assert "20240301T123045123456" in unique_filename("rec", now=now)


class TestVerifyWorkbookFile:
    """Integrity checks, first failure wins."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(WorkbookError, match="not created"):
            verify_workbook_file(tmp_path / "missing.xlsx")

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.xlsx"
        path.write_bytes(b"")
        with pytest.raises(WorkbookError, match="empty"):
            verify_workbook_file(path)

    def test_unreadable_file(self, tmp_path):
        path = tmp_path / "garbage.xlsx"
        path.write_bytes(b"garbage")
        with pytest.raises(WorkbookError, match="reopen"):
            verify_workbook_file(path)

    def test_garbled_workbook_xml(self, template_path, garble_member):
        garbled = garble_member(template_path, member="xl/workbook.xml", content=b"<workbook><sheets>")
        with pytest.raises(WorkbookError, match="reopen"):
            verify_workbook_file(garbled)

    def test_unsupported_extension(self, template_path, tmp_path):
        path = tmp_path / "report.txt"
        path.write_bytes(template_path.read_bytes())
        with pytest.raises(WorkbookError, match="reopen"):
            verify_workbook_file(path)

    def test_reopen_skipped(self, tmp_path):
        path = tmp_path / "garbage.xlsx"
        path.write_bytes(b"garbage")
        serialized = verify_workbook_file(path, reopen=False)
        assert serialized.size == 7
        assert serialized.sheetnames == []


class TestSerializeWorkbook:
    """Writing the populated workbook."""

    def test_writes_verified_file(self, template_path, tmp_path):
        workbook = load_workbook(template_path)

        serialized = serialize_workbook(workbook, "rec-001", directory=tmp_path / "out")

        assert serialized.path.parent == tmp_path / "out"
        assert serialized.path.is_file()
        assert serialized.size == serialized.path.stat().st_size > 0
        assert serialized.sheetnames == list(TEMPLATE_SHEETS)
        assert serialized.read_bytes()[:2] == b"PK"

    def test_two_serializations_never_share_a_file(self, template_path, tmp_path):
        first = serialize_workbook(load_workbook(template_path), "rec-001", directory=tmp_path)
        second = serialize_workbook(load_workbook(template_path), "rec-001", directory=tmp_path)
        assert first.path != second.path

    def test_delete_removes_file(self, template_path, tmp_path):
        serialized = serialize_workbook(load_workbook(template_path), "rec-001", directory=tmp_path)
        serialized.delete()
        assert not serialized.path.exists()
        # Second delete is a no-op
        serialized.delete()

    def test_write_failure_leaves_no_partial_file(self, tmp_path, monkeypatch):
        workbook = Workbook()

        def broken_save(path):
            with open(path, "wb") as handle:
                handle.write(b"partial")
            raise OSError("disk full")

        monkeypatch.setattr(workbook, "save", broken_save)

        with pytest.raises(WorkbookError) as exc_info:
            serialize_workbook(workbook, "rec-001", directory=tmp_path)

        assert "disk full" in exc_info.value.detail
        assert list(tmp_path.iterdir()) == []

    def test_failed_check_leaves_no_partial_file(self, tmp_path, monkeypatch):
        workbook = Workbook()
        monkeypatch.setattr(workbook, "save", lambda path: open(path, "wb").close())

        with pytest.raises(WorkbookError, match="empty"):
            serialize_workbook(workbook, "rec-001", directory=tmp_path)

        assert list(tmp_path.iterdir()) == []
