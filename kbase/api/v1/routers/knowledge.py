"""
Knowledge API Router.

Endpoints:
    GET    /knowledge/collections          - List own collections
    POST   /knowledge/collections          - Create (or update by collectionId) a collection
    GET    /knowledge/collections/{id}     - Collection with its resources (owner or public)
    PUT    /knowledge/collections/{id}     - Update collection
    DELETE /knowledge/collections/{id}     - Soft-delete collection (resources are kept)

    GET    /knowledge/resources            - List own resources
    POST   /knowledge/resources            - Create resource and queue its ingestion
    GET    /knowledge/resources/{id}       - Resource detail, ?with_doc=true hydrates the document
    PUT    /knowledge/resources/{id}       - Update resource
    DELETE /knowledge/resources/{id}       - Soft-delete resource and its indexed chunks

Security:
    - All endpoints require a Bearer token
    - Mutations are owner-only; reads also succeed on public records
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.api.v1.schemas import (
    CollectionDetailResponse,
    CollectionListResponse,
    CollectionResponse,
    ResourceListResponse,
    ResourceResponse,
)
from kbase.core.database.base import get_db
from kbase.core.database.models import User
from kbase.core.knowledge.knowledge_service import knowledge_service
from kbase.core.knowledge.schemas import UpsertCollectionRequest, UpsertResourceRequest
from kbase.core.tasks.resources import enqueue_finalize_resource
from kbase.dependencies import get_current_user

router = APIRouter(prefix="/knowledge", tags=["Knowledge"])

logger = logging.getLogger("kbase.api.knowledge")


# =========================================================================
# COLLECTION ENDPOINTS
# =========================================================================


@router.get("/collections", response_model=CollectionListResponse)
async def list_collections(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    collections = await knowledge_service.list_collections(session, user, page=page, page_size=page_size)
    return CollectionListResponse(
        data=[CollectionResponse.from_model(c) for c in collections],
        page=page,
        page_size=page_size,
    )


@router.post("/collections", response_model=CollectionResponse, status_code=status.HTTP_201_CREATED)
async def upsert_collection(
    request: UpsertCollectionRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    collection = await knowledge_service.upsert_collection(session, user, request)
    return CollectionResponse.from_model(collection)


@router.get("/collections/{collection_id}", response_model=CollectionDetailResponse)
async def get_collection_detail(
    collection_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    collection, resources = await knowledge_service.get_collection_detail(session, user, collection_id)
    return CollectionDetailResponse(
        **CollectionResponse.from_model(collection).model_dump(),
        resources=[ResourceResponse.from_model(r) for r in resources],
    )


@router.put("/collections/{collection_id}", response_model=CollectionResponse)
async def update_collection(
    collection_id: str,
    request: UpsertCollectionRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    collection = await knowledge_service.update_collection(session, user, collection_id, request)
    return CollectionResponse.from_model(collection)


@router.delete("/collections/{collection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_collection(
    collection_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    await knowledge_service.delete_collection(session, user, collection_id)


# =========================================================================
# RESOURCE ENDPOINTS
# =========================================================================


@router.get("/resources", response_model=ResourceListResponse)
async def list_resources(
    resource_type: Optional[str] = Query(None, description="Filter by type: weblink, note"),
    collection_id: Optional[str] = Query(None, description="Only resources in this collection"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    resources = await knowledge_service.list_resources(
        session,
        user,
        resource_type=resource_type,
        collection_id=collection_id,
        page=page,
        page_size=page_size,
    )
    return ResourceListResponse(
        data=[ResourceResponse.from_model(r) for r in resources],
        page=page,
        page_size=page_size,
    )


@router.post("/resources", response_model=ResourceResponse, status_code=status.HTTP_201_CREATED)
async def create_resource(
    request: UpsertResourceRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    """
    Create a resource in ``processing`` state and queue its ingestion.

    The row is committed before the task is queued so the worker can always
    find it.
    When queueing fails the row is settled as ``failed`` and the error is
    re-raised.
    """
    resource, payload = await knowledge_service.create_resource(session, user, request)
    await session.commit()
    try:
        enqueue_finalize_resource(payload)
    except Exception as e:
        logger.error(f"Failed to queue ingestion of resource {resource.resource_id}: {e}", exc_info=True)
        await knowledge_service.mark_ingestion_failed(session, resource.resource_id, user.id)
        await session.commit()
        raise
    return ResourceResponse.from_model(resource)


@router.get("/resources/{resource_id}", response_model=ResourceResponse)
async def get_resource_detail(
    resource_id: str,
    with_doc: bool = Query(False, description="Include the stored document body"),
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    detail = await knowledge_service.get_resource_detail(session, user, resource_id, with_doc=with_doc)
    return ResourceResponse.from_detail(detail)


@router.put("/resources/{resource_id}", response_model=ResourceResponse)
async def update_resource(
    resource_id: str,
    request: UpsertResourceRequest,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    resource = await knowledge_service.update_resource(session, user, resource_id, request)
    return ResourceResponse.from_model(resource)


@router.delete("/resources/{resource_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_resource(
    resource_id: str,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db),
):
    await knowledge_service.delete_resource(session, user, resource_id)
