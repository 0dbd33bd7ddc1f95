# kbase/api/v1/schemas.py
"""Response models for the v1 API."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from kbase.core.database.models import Collection, Resource, UsageMeter
from kbase.core.knowledge.knowledge_service import ResourceDetail
from kbase.core.knowledge.meta import load_meta, meta_to_dict


class ErrorResponse(BaseModel):
    """Error body returned by every exception handler."""
    error: str
    detail: str
    timestamp: datetime


class CollectionResponse(BaseModel):
    collection_id: str
    title: str
    description: Optional[str] = None
    is_public: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, collection: Collection) -> "CollectionResponse":
        return cls(
            collection_id=collection.collection_id,
            title=collection.title,
            description=collection.description,
            is_public=collection.is_public,
            created_at=collection.created_at,
            updated_at=collection.updated_at,
        )


class ResourceResponse(BaseModel):
    resource_id: str
    resource_type: str
    title: str
    data: Dict[str, Any] = Field(default_factory=dict)
    storage_key: Optional[str] = None
    index_status: str
    is_public: bool
    read_only: bool
    word_count: int
    collection_ids: List[str] = Field(default_factory=list)
    doc: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, resource: Resource, meta=None, doc: Optional[str] = None) -> "ResourceResponse":
        meta = meta if meta is not None else load_meta(resource.resource_type, resource.meta)
        return cls(
            resource_id=resource.resource_id,
            resource_type=resource.resource_type,
            title=resource.title,
            data=meta_to_dict(meta),
            storage_key=resource.storage_key or meta.storage_key,
            index_status=resource.index_status,
            is_public=resource.is_public,
            read_only=resource.read_only,
            word_count=resource.word_count,
            collection_ids=[c.collection_id for c in resource.collections if c.deleted_at is None],
            doc=doc,
            created_at=resource.created_at,
            updated_at=resource.updated_at,
        )

    @classmethod
    def from_detail(cls, detail: ResourceDetail) -> "ResourceResponse":
        return cls.from_model(detail.resource, meta=detail.meta, doc=detail.doc)


class CollectionDetailResponse(CollectionResponse):
    resources: List[ResourceResponse] = Field(default_factory=list)


class CollectionListResponse(BaseModel):
    data: List[CollectionResponse]
    page: int
    page_size: int


class ResourceListResponse(BaseModel):
    data: List[ResourceResponse]
    page: int
    page_size: int


class CheckoutSessionRequest(BaseModel):
    lookup_key: str = Field(..., description="Price lookup key, e.g. pro_monthly")


class SessionUrlResponse(BaseModel):
    session_id: Optional[str] = None
    url: Optional[str] = None


class UsageMeterResponse(BaseModel):
    meter_id: str
    subscription_id: Optional[str] = None
    start_at: datetime
    end_at: datetime
    t1_token_quota: int
    t1_token_used: int
    t2_token_quota: int
    t2_token_used: int

    @classmethod
    def from_model(cls, meter: UsageMeter) -> "UsageMeterResponse":
        return cls(
            meter_id=meter.meter_id,
            subscription_id=meter.subscription_id,
            start_at=meter.start_at,
            end_at=meter.end_at,
            t1_token_quota=meter.t1_token_quota,
            t1_token_used=meter.t1_token_used,
            t2_token_quota=meter.t2_token_quota,
            t2_token_used=meter.t2_token_used,
        )


class UsageResponse(BaseModel):
    available_tiers: List[str]
    plan_type: str
    meter: Optional[UsageMeterResponse] = None


class HealthResponse(BaseModel):
    status: str
    version: str
    database: Dict[str, Any]
    storage: Dict[str, Any]
