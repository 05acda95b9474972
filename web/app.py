"""
FastAPI application for the valuation report service.

Production deployment configuration via environment variables.
"""

import logging
import os
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.errors import ReportError
from utils.config import Config
from web.report_routes import error_response, router as report_router

logger = logging.getLogger(__name__)

# =============================================================================
# Environment Configuration
# =============================================================================

IS_PRODUCTION = os.getenv("PRODUCTION", "").lower() == "true"

# CORS configuration - locked down for production
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "").split(",") if os.getenv("ALLOWED_ORIGINS") else []
if not ALLOWED_ORIGINS and not IS_PRODUCTION:
    # Development fallback only
    ALLOWED_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

# Debug mode - never enabled in production
DEBUG_MODE = os.getenv("DEBUG", "false").lower() == "true" and not IS_PRODUCTION

VERSION = "0.1.0"


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Valuation Report Engine",
        description="Generates valuation report workbooks and PDFs from property records",
        version=VERSION,
        docs_url=None if IS_PRODUCTION else "/docs",
        redoc_url=None if IS_PRODUCTION else "/redoc",
        openapi_url=None if IS_PRODUCTION else "/openapi.json",
        debug=DEBUG_MODE,
    )

    # Healthchecks first: no dependencies, no IO
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "healthy"}

    if ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    @app.exception_handler(ReportError)
    async def report_error_handler(request: Request, exc: ReportError):
        return error_response(exc)

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.url.path}")
        return JSONResponse(
            {"success": False, "error": "generic", "message": "Internal server error"},
            status_code=500,
        )

    @app.on_event("startup")
    def on_startup():
        """Deferred startup tasks. Runs after healthcheck is ready."""
        config = Config.load()
        Path(config.data_dir).mkdir(parents=True, exist_ok=True)
        if not Path(config.template_path).is_file():
            logger.warning(f"Report template not found at {config.template_path}")
        logger.info(f"Valuation report engine started: {config.to_dict()}")

    app.include_router(report_router)

    @app.get("/api/health")
    async def api_health():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": VERSION,
            "environment": "production" if IS_PRODUCTION else "development",
        }

    return app


# Create app instance for uvicorn
app = create_app()
