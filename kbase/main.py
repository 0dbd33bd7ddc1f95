# ============================================================================
# kbase - FastAPI Application Entry Point
# ============================================================================
"""
Main FastAPI application module for kbase.

Sets up:
- Logging for the ``kbase`` logger hierarchy
- CORS middleware
- Startup (table creation, bucket bootstrap) and shutdown handlers
- Exception handlers mapping domain errors to JSON error bodies
- The v1 API router under /api/v1

Usage:
    uvicorn kbase.main:app --host 0.0.0.0 --port 8000
"""

import asyncio
import logging
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from kbase.api.v1 import api_router
from kbase.api.v1.schemas import ErrorResponse
from kbase.config import settings
from kbase.core.exceptions import (
    KnowledgeBaseError,
    PermissionDeniedError,
    ResourceNotFoundError,
    ResourceValidationError,
)
from kbase.core.shared.database_service import database_service
from kbase.core.storage.minio_service import get_minio_service

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger("kbase.main")

# ============================================================================
# APPLICATION INITIALIZATION
# ============================================================================

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    description="kbase - knowledge base API: collections, resources, ingestion and usage metering",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# ============================================================================
# APPLICATION EVENT HANDLERS
# ============================================================================


@app.on_event("startup")
async def startup_event() -> None:
    logger.info(f"Starting kbase {settings.api_version} (debug={settings.debug})")
    await database_service.init_db()

    try:
        await asyncio.to_thread(get_minio_service().ensure_bucket)
    except Exception as e:
        # Reads and ingestion report their own storage errors
        logger.warning(f"Object storage not ready at startup: {e}")

    logger.info("Startup complete")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down kbase")
    await database_service.close()


# ============================================================================
# ERROR HANDLERS
# ============================================================================

_DOMAIN_STATUS = {
    ResourceValidationError: (status.HTTP_400_BAD_REQUEST, "Validation Error"),
    PermissionDeniedError: (status.HTTP_403_FORBIDDEN, "Permission Denied"),
    ResourceNotFoundError: (status.HTTP_404_NOT_FOUND, "Not Found"),
}


def _error_response(status_code: int, error: str, detail: str) -> JSONResponse:
    body = ErrorResponse(error=error, detail=detail, timestamp=datetime.now())
    return JSONResponse(status_code=status_code, content=body.model_dump(mode="json"))


@app.exception_handler(KnowledgeBaseError)
async def domain_exception_handler(request: Request, exc: KnowledgeBaseError) -> JSONResponse:
    """Map domain errors to 400/403/404; anything else in the hierarchy is a 500."""
    for exc_type, (status_code, error) in _DOMAIN_STATUS.items():
        if isinstance(exc, exc_type):
            return _error_response(status_code, error, str(exc))
    logger.error(f"Unhandled domain error on {request.url.path}: {exc}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", str(exc))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "Validation Error", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    response = _error_response(exc.status_code, f"HTTP {exc.status_code}", str(exc.detail))
    if exc.headers:
        response.headers.update(exc.headers)
    return response


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=True)
    detail = str(exc) if settings.debug else "An unexpected error occurred"
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal Server Error", detail)


# ============================================================================
# ROUTES
# ============================================================================

app.include_router(api_router, prefix="/api/v1")


@app.get("/", include_in_schema=False)
async def root():
    return {"name": settings.api_title, "version": settings.api_version, "docs": "/docs"}
