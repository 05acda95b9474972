"""
Property Record Repository - Read Access to Valuation Records

The report pipeline only reads records. This is an in-memory
implementation with optional JSON file persistence for development;
production plugs in the real record store behind the same interface.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from core.errors import NotFoundError
from core.models import PropertyRecord

logger = logging.getLogger(__name__)


# =============================================================================
# Repository
# =============================================================================


class PropertyRecordRepository:
    """
    Repository for storing and retrieving property records.

    Uses in-memory storage with optional file persistence.
    """

    def __init__(self, persist_path: Optional[str] = None):
        """
        Initialise repository.

        Args:
            persist_path: Optional path to persist data to JSON file
        """
        self._records: dict[str, PropertyRecord] = {}
        self._persist_path = Path(persist_path) if persist_path else None

        if self._persist_path and self._persist_path.exists():
            self._load_from_file()

    def _save_to_file(self) -> None:
        """Persist data to file."""
        if not self._persist_path:
            return

        data = {
            "records": {rid: record.to_dict() for rid, record in self._records.items()},
            "saved_at": datetime.utcnow().isoformat(),
        }

        self._persist_path.parent.mkdir(parents=True, exist_ok=True)
        self._persist_path.write_text(json.dumps(data, indent=2))

    def _load_from_file(self) -> None:
        """Load data from file."""
        if not self._persist_path or not self._persist_path.exists():
            return

        try:
            data = json.loads(self._persist_path.read_text())
            for rid, record_data in data.get("records", {}).items():
                self._records[rid] = PropertyRecord.from_dict(record_data)
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning(f"Could not load record data from {self._persist_path}: {e}")

    # =========================================================================
    # Operations
    # =========================================================================

    def save(self, record: PropertyRecord) -> PropertyRecord:
        """Insert or replace a record."""
        self._records[record.record_id] = record
        self._save_to_file()
        return record

    def get(self, record_id: str) -> Optional[PropertyRecord]:
        """
        Get a record by ID.

        Returns:
            PropertyRecord if found, None otherwise
        """
        return self._records.get(record_id)

    def require(self, record_id: str) -> PropertyRecord:
        """
        Get a record by ID or fail.

        Raises:
            NotFoundError: If the record does not exist
        """
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(f"Property {record_id} not found")
        return record

    def delete(self, record_id: str) -> bool:
        """Delete a record. Returns True if it existed."""
        existed = self._records.pop(record_id, None) is not None
        if existed:
            self._save_to_file()
        return existed

    def count(self) -> int:
        """Number of stored records."""
        return len(self._records)


# =============================================================================
# Singleton Instance
# =============================================================================

_repository_instance: Optional[PropertyRecordRepository] = None


def get_record_repository(persist_path: Optional[str] = None) -> PropertyRecordRepository:
    """
    Get the record repository singleton.

    Args:
        persist_path: Optional path for persistence (only used on first call)
    """
    global _repository_instance
    if _repository_instance is None:
        _repository_instance = PropertyRecordRepository(persist_path or "data/records.json")
    return _repository_instance


def reset_record_repository() -> None:
    """Drop the singleton (tests)."""
    global _repository_instance
    _repository_instance = None
