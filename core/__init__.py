"""
Valuation Report Engine - Core Domain

Records, error taxonomy, record store and artifact storage used by the
report pipeline in ``reporting``.
"""

from .errors import (
    ErrorCategory,
    ReportError,
    TemplateError,
    AuthError,
    NotFoundError,
    WorkbookError,
    CorruptionError,
    ExportError,
    EngineError,
    categorize,
)
from .models import (
    PhotoCategory,
    PhotoAsset,
    PropertyRecord,
    ReportArtifacts,
    PRIMARY_PHOTO_ORDER,
)
from .repository import (
    PropertyRecordRepository,
    get_record_repository,
    reset_record_repository,
)
from .storage import (
    ArtifactUploader,
    GraphTokenManager,
    OneDriveStore,
    StorageError,
    TokenProvider,
)

__all__ = [
    # Errors
    "ErrorCategory",
    "ReportError",
    "TemplateError",
    "AuthError",
    "NotFoundError",
    "WorkbookError",
    "CorruptionError",
    "ExportError",
    "EngineError",
    "categorize",
    # Models
    "PhotoCategory",
    "PhotoAsset",
    "PropertyRecord",
    "ReportArtifacts",
    "PRIMARY_PHOTO_ORDER",
    # Repository
    "PropertyRecordRepository",
    "get_record_repository",
    "reset_record_repository",
    # Storage
    "ArtifactUploader",
    "GraphTokenManager",
    "OneDriveStore",
    "StorageError",
    "TokenProvider",
]
