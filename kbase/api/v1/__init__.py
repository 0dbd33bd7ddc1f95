from fastapi import APIRouter

# Aggregate all v1 routers here
from .routers import knowledge, subscription, system, webhooks

api_router = APIRouter()
api_router.include_router(system.router)
api_router.include_router(knowledge.router)
api_router.include_router(subscription.router)
api_router.include_router(webhooks.router)

__all__ = ["api_router"]
