"""
Configuration management.
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> tuple[str, ...]:
    return tuple(part.strip() for part in os.getenv(name, default).split(",") if part.strip())


@dataclass
class Config:
    """
    Application configuration.

    Loads from environment variables with sensible defaults.
    """

    # Server
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: int(os.getenv("PORT", "8000")))
    debug: bool = field(default_factory=lambda: _env_bool("DEBUG"))

    # Template
    template_path: str = field(
        default_factory=lambda: os.getenv("REPORT_TEMPLATE_PATH", "templates/AAP-Report.xlsx")
    )
    data_sheet: str = field(default_factory=lambda: os.getenv("REPORT_DATA_SHEET", "Fillout"))
    photo_sheet: str = field(default_factory=lambda: os.getenv("REPORT_PHOTO_SHEET", "Photos"))
    summary_sheet: str = field(default_factory=lambda: os.getenv("REPORT_SUMMARY_SHEET", "Summary"))
    cover_sheet: str = field(default_factory=lambda: os.getenv("REPORT_COVER_SHEET", "Cover"))
    pdf_sheets: tuple[str, ...] = field(
        default_factory=lambda: _env_list("REPORT_PDF_SHEETS", "Cover,Summary,Photos")
    )
    work_dir: Optional[str] = field(default_factory=lambda: os.getenv("REPORT_WORK_DIR") or None)

    # Map provider
    maps_api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_MAPS_API_KEY", ""))
    map_zoom: int = field(default_factory=lambda: int(os.getenv("MAP_ZOOM", "14")))

    # Cloud storage (Microsoft Graph / OneDrive)
    graph_tenant_id: str = field(default_factory=lambda: os.getenv("TENANT_ID", ""))
    graph_client_id: str = field(default_factory=lambda: os.getenv("CLIENT_ID", ""))
    graph_client_secret: str = field(default_factory=lambda: os.getenv("CLIENT_SECRET", ""))
    drive_user_email: str = field(default_factory=lambda: os.getenv("USER_EMAIL", ""))
    drive_folder: str = field(default_factory=lambda: os.getenv("DRIVE_FOLDER", "photos"))
    token_cache_path: Optional[str] = field(
        default_factory=lambda: os.getenv("TOKEN_CACHE_PATH", "config/onedrive-tokens.json") or None
    )

    # Document engine
    soffice_binary: str = field(
        default_factory=lambda: os.getenv("LIBREOFFICE_BIN") or os.getenv("SOFFICE_BIN") or "soffice"
    )
    engine_process_name: str = field(
        default_factory=lambda: os.getenv("ENGINE_PROCESS_NAME", "soffice.bin")
    )
    conversion_timeout: int = field(
        default_factory=lambda: int(os.getenv("LO_CONVERT_TIMEOUT_SEC", "120"))
    )
    engine_lock_timeout: float = field(
        default_factory=lambda: float(os.getenv("ENGINE_LOCK_TIMEOUT_SEC", "300"))
    )
    engine_settle_timeout: float = field(
        default_factory=lambda: float(os.getenv("ENGINE_SETTLE_TIMEOUT_SEC", "10"))
    )

    # Network
    request_timeout: int = field(default_factory=lambda: int(os.getenv("REQUEST_TIMEOUT", "30")))
    photo_workers: int = field(default_factory=lambda: int(os.getenv("PHOTO_FETCH_WORKERS", "6")))

    # Data
    data_dir: str = field(default_factory=lambda: os.getenv("DATA_DIR", "./data"))

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment."""
        return cls()

    @property
    def required_sheets(self) -> tuple[str, ...]:
        """Sheets the template must contain."""
        return (self.data_sheet, self.photo_sheet, self.summary_sheet, self.cover_sheet)

    def to_dict(self) -> dict:
        """Convert config to dictionary. Secrets are never included."""
        return {
            "host": self.host,
            "port": self.port,
            "debug": self.debug,
            "template_path": self.template_path,
            "required_sheets": list(self.required_sheets),
            "pdf_sheets": list(self.pdf_sheets),
            "maps_enabled": bool(self.maps_api_key),
            "storage_configured": bool(self.graph_client_id and self.graph_tenant_id),
            "drive_folder": self.drive_folder,
            "soffice_binary": self.soffice_binary,
            "conversion_timeout": self.conversion_timeout,
            "request_timeout": self.request_timeout,
            "photo_workers": self.photo_workers,
            "data_dir": self.data_dir,
        }
