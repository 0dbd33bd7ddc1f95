"""
Celery tasks for resource ingestion.

``enqueue_finalize_resource`` is the only way resources reach the worker; it
must be called after the creating transaction has committed.
"""
import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from kbase.core.ingestion.resource_ingestion import resource_ingestion_service
from kbase.core.knowledge.schemas import FinalizeResourcePayload
from kbase.core.shared.database_service import database_service

logger = logging.getLogger("kbase.tasks.resources")

RESOURCES_QUEUE = "resources"


@shared_task(
    bind=True,
    name="kbase.tasks.finalize_resource_task",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def finalize_resource_task(self, payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Ingest one created resource.

    Args:
        payload: FinalizeResourcePayload as a JSON dict

    Returns:
        Dict with the resource id
    """
    params = FinalizeResourcePayload.model_validate(payload)
    logger.info(f"Finalizing resource {params.resource_id} (attempt {self.request.retries + 1})")

    asyncio.run(_finalize_resource_async(params))

    logger.info(f"Finalized resource {params.resource_id}")
    return {"resource_id": params.resource_id}


async def _finalize_resource_async(params: FinalizeResourcePayload) -> None:
    async with database_service.get_session() as session:
        await resource_ingestion_service.finalize_resource(session, params)


def enqueue_finalize_resource(payload: FinalizeResourcePayload) -> str:
    """Send a resource to the ingestion queue. Returns the task id."""
    result = finalize_resource_task.apply_async(
        kwargs={"payload": payload.model_dump(mode="json")},
        queue=RESOURCES_QUEUE,
    )
    logger.info(f"Queued resource {payload.resource_id} for ingestion (task {result.id})")
    return result.id
