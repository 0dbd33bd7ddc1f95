# kbase/core/knowledge/schemas.py
"""
Request and job payload models for the knowledge domain.

``FinalizeResourcePayload`` is the typed message that crosses the task-queue
boundary between resource creation and ingestion. It carries everything the
worker needs, so the worker never has to reconstruct request state.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ResourceData(BaseModel):
    """Type-specific input for a resource (url / link id / upload key)."""

    model_config = ConfigDict(populate_by_name=True)

    url: Optional[str] = None
    link_id: Optional[str] = Field(default=None, alias="linkId")
    title: Optional[str] = None
    storage_key: Optional[str] = Field(default=None, alias="storageKey")


class UpsertResourceRequest(BaseModel):
    """Create or update a resource."""

    model_config = ConfigDict(populate_by_name=True)

    resource_type: Optional[str] = Field(default=None, alias="resourceType")
    title: Optional[str] = None
    data: Optional[ResourceData] = None
    content: Optional[str] = None
    storage_key: Optional[str] = Field(default=None, alias="storageKey")
    collection_id: Optional[str] = Field(default=None, alias="collectionId")
    collection_name: Optional[str] = Field(default=None, alias="collectionName")
    is_public: Optional[bool] = Field(default=None, alias="isPublic")
    read_only: Optional[bool] = Field(default=None, alias="readOnly")


class UpsertCollectionRequest(BaseModel):
    """Create or update a collection."""

    model_config = ConfigDict(populate_by_name=True)

    collection_id: Optional[str] = Field(default=None, alias="collectionId")
    title: Optional[str] = None
    description: Optional[str] = None
    is_public: Optional[bool] = Field(default=None, alias="isPublic")


class FinalizeResourcePayload(BaseModel):
    """Message handed to the ingestion worker for one created resource."""

    resource_id: str
    user_id: str
    resource_type: str
    collection_id: Optional[str] = None
    title: Optional[str] = None
    content: Optional[str] = None
    storage_key: Optional[str] = None
    data: ResourceData = Field(default_factory=ResourceData)
