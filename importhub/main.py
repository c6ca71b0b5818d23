"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
builds the import services and registers the API routers.
"""
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from importhub.api.routers import imports, jobs
from importhub.core.config import settings
from importhub.core.logging_config import configure_logging
from importhub.db.session import get_engine
from importhub.domain.imports.errors import (
    DependencyUnavailable,
    ImportHubError,
    InvalidJobTransition,
    JobNotFound,
    OrchestrationError,
)
from importhub.services import Services, build_services

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level)

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = [
    (JobNotFound, 404),
    (InvalidJobTransition, 409),
    (OrchestrationError, 400),
    (DependencyUnavailable, 422),
]


def create_app(services: Optional[Services] = None) -> FastAPI:
    """
    Build the application. Passing ``services`` skips database bootstrap and
    leaves their lifecycle to the caller.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifecycle - startup and shutdown events."""
        if services is not None:
            app.state.services = services
            yield
            return

        if os.getenv("SKIP_DB_INIT") == "1":
            logger.info("SKIP_DB_INIT=1 detected; skipping service bootstrap during startup")
            yield
            return

        try:
            owned = build_services(settings, get_engine())
        except Exception:
            logger.exception("Failed to initialize import services; the application cannot start")
            raise
        owned.start()
        app.state.services = owned
        logger.info("Import services ready")

        yield  # Application runs here

        owned.shutdown(wait=False)

    app = FastAPI(
        title="ImportHub API",
        version="1.0.0",
        description="Batch import of accounts, products, opportunities and documents",
        lifespan=lifespan,
    )

    allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
    allowed_origins = [origin.strip() for origin in allowed_origins]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ImportHubError)
    async def import_error_handler(request: Request, exc: ImportHubError):
        status_code = 500
        for error_type, code in ERROR_STATUS_CODES:
            if isinstance(exc, error_type):
                status_code = code
                break
        return JSONResponse(status_code=status_code, content={"detail": exc.message})

    @app.exception_handler(ValidationError)
    async def options_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": f"Invalid options: {exc.errors()[0].get('msg')}"})

    app.include_router(imports.router)
    app.include_router(jobs.router)

    @app.get("/health")
    async def health_check():
        """Health check endpoint for deployment monitoring."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "service": "importhub-api",
        }

    return app


app = create_app()
