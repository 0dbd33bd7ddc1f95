"""System endpoints (health)."""

import asyncio

from fastapi import APIRouter

from kbase.api.v1.schemas import HealthResponse
from kbase.config import settings
from kbase.core.shared.database_service import database_service
from kbase.core.storage.minio_service import get_minio_service

router = APIRouter(tags=["System"])


@router.get("/health", response_model=HealthResponse)
async def health():
    database = await database_service.health_check()
    connected, buckets, error = await asyncio.to_thread(get_minio_service().check_health)
    storage = {"connected": connected, "bucket_ready": bool(buckets) and settings.minio_bucket in buckets}
    if error:
        storage["error"] = error

    healthy = database.get("status") == "healthy" and connected
    return HealthResponse(
        status="healthy" if healthy else "degraded",
        version=settings.api_version,
        database=database,
        storage=storage,
    )
