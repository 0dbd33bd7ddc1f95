"""Knowledge domain: collections, resources, index status and resource meta."""

from .knowledge_service import KnowledgeService, ResourceDetail, knowledge_service, resolve_storage_key
from .schemas import FinalizeResourcePayload, ResourceData, UpsertCollectionRequest, UpsertResourceRequest
from .status import IndexStatus

__all__ = [
    "KnowledgeService",
    "ResourceDetail",
    "knowledge_service",
    "resolve_storage_key",
    "FinalizeResourcePayload",
    "ResourceData",
    "UpsertCollectionRequest",
    "UpsertResourceRequest",
    "IndexStatus",
]
