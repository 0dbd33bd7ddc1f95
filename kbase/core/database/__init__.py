# kbase/core/database/__init__.py
"""
Database package for kbase.

Provides SQLAlchemy models, the declarative base and the session dependency.
"""

from .base import Base, get_db
from .models import (
    CheckoutSession,
    Collection,
    Resource,
    SearchChunk,
    Subscription,
    SubscriptionUsageQuota,
    TokenUsage,
    UsageMeter,
    User,
    Weblink,
    resource_collections,
)

__all__ = [
    "Base",
    "get_db",
    "User",
    # Knowledge
    "Collection",
    "Resource",
    "Weblink",
    "SearchChunk",
    "resource_collections",
    # Billing
    "SubscriptionUsageQuota",
    "Subscription",
    "CheckoutSession",
    "UsageMeter",
    "TokenUsage",
]
