# kbase/core/database/models.py
"""
SQLAlchemy ORM models for the knowledge base.

Models:
    - User: account owning resources, meters and the current subscription pointer
    - Collection: named grouping of resources
    - Resource: stored document (weblink capture or authored note)
    - Weblink: prior crawl record that a resource can reuse by link id
    - SearchChunk: indexed chunk of a resource, scoped per user
    - SubscriptionUsageQuota: token quotas per plan type
    - Subscription: payments-provider subscription mirrored locally
    - CheckoutSession: checkout attempt, updated when the provider confirms payment
    - UsageMeter: time-windowed token counters per pricing tier
    - TokenUsage: immutable line item for one unit of paid work

Public identifiers (resource_id, collection_id, meter_id) are opaque strings;
internal primary keys are UUIDs. Nothing here is ever hard-deleted by the
application; soft deletion sets ``deleted_at``.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Table,
    Text,
    TypeDecorator,
)
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import relationship

from kbase.core.utils.time_utils import utcnow

from .base import Base


# UUID type that works with both SQLite and PostgreSQL
class UUID(TypeDecorator):
    """Platform-independent UUID type.

    Uses PostgreSQL's UUID type when available, otherwise uses String(36).
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PG_UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == "postgresql":
            return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(str(value))


resource_collections = Table(
    "resource_collections",
    Base.metadata,
    Column("resource_pk", UUID(), ForeignKey("resources.id", ondelete="CASCADE"), primary_key=True),
    Column("collection_pk", UUID(), ForeignKey("collections.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    """
    Account owning resources and billing state.

    Attributes:
        id: Internal primary key
        uid: Public user identifier (also used as the checkout reference id)
        email: Contact email, forwarded to the payments provider at checkout
        customer_id: Payments-provider customer id, set after the first paid checkout
        subscription_id: Current subscription (provider id); cleared on cancellation
    """

    __tablename__ = "users"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    uid = Column(String(64), nullable=False, unique=True, index=True)
    email = Column(String(255), nullable=True)
    customer_id = Column(String(255), nullable=True)
    subscription_id = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<User(uid={self.uid}, subscription_id={self.subscription_id})>"


class Collection(Base):
    """Named grouping of resources. Deleting a collection never touches its resources.

    Membership lives in ``resource_collections`` and is navigated from the
    resource side (``Resource.collections``).
    """

    __tablename__ = "collections"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    collection_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(512), nullable=False, default="Default Collection")
    description = Column(Text, nullable=True)
    is_public = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Collection(collection_id={self.collection_id}, title={self.title})>"


class Resource(Base):
    """
    Stored document owned by a user.

    ``meta`` holds the JSON-serialized, type-specific payload (see
    kbase.core.knowledge.meta). ``storage_key`` is the canonical pointer into the
    blob store; rows written before it existed only carry ``meta.storageKey``.
    ``index_status`` is driven by kbase.core.knowledge.status.
    """

    __tablename__ = "resources"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    resource_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    resource_type = Column(String(32), nullable=False)
    title = Column(String(1024), nullable=False, default="Untitled")
    meta = Column(Text, nullable=False, default="{}")
    storage_key = Column(String(1024), nullable=True)
    index_status = Column(String(32), nullable=False, default="processing", index=True)
    is_public = Column(Boolean, nullable=False, default=False)
    read_only = Column(Boolean, nullable=False, default=False)
    word_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False, index=True)
    deleted_at = Column(DateTime, nullable=True)

    collections = relationship(
        "Collection",
        secondary=resource_collections,
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return (
            f"<Resource(resource_id={self.resource_id}, type={self.resource_type}, "
            f"index_status={self.index_status})>"
        )


class Weblink(Base):
    """Page captured earlier (e.g. by the browser extension) with its parsed document."""

    __tablename__ = "weblinks"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    link_id = Column(String(64), nullable=False, unique=True, index=True)
    url = Column(String(2048), nullable=False, index=True)
    title = Column(String(1024), nullable=True)
    parsed_doc_storage_key = Column(String(1024), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class SearchChunk(Base):
    """One indexed chunk of a resource. Rows are scoped by ``user_id``."""

    __tablename__ = "search_chunks"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    resource_id = Column(String(64), nullable=False)
    collection_id = Column(String(64), nullable=True)
    chunk_index = Column(Integer, nullable=False, default=0)
    title = Column(String(1024), nullable=True)
    url = Column(String(2048), nullable=True)
    content = Column(Text, nullable=False)
    embedding = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_search_chunks_user_resource", "user_id", "resource_id"),
    )


class SubscriptionUsageQuota(Base):
    """Token quotas granted per plan type (``free``, ``plus``, ``pro`` …)."""

    __tablename__ = "subscription_usage_quotas"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    plan_type = Column(String(32), nullable=False, unique=True)
    t1_token_quota = Column(Integer, nullable=False, default=0)
    t2_token_quota = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class Subscription(Base):
    """Subscription as last reported by the payments provider."""

    __tablename__ = "subscriptions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    subscription_id = Column(String(255), nullable=False, unique=True, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    lookup_key = Column(String(128), nullable=False)
    plan_type = Column(String(32), nullable=False)
    interval = Column(String(32), nullable=False)
    status = Column(String(32), nullable=False)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class CheckoutSession(Base):
    """
    Checkout attempt.

    Written at checkout start with no payment status; updated once the provider
    reports the session completed. ``uid`` must match the provider event's
    client reference id.
    """

    __tablename__ = "checkout_sessions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    session_id = Column(String(255), nullable=False, index=True)
    uid = Column(String(64), nullable=False, index=True)
    lookup_key = Column(String(128), nullable=False)
    payment_status = Column(String(32), nullable=True)
    subscription_id = Column(String(255), nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class UsageMeter(Base):
    """Token counters for the half-open window ``[start_at, end_at)``."""

    __tablename__ = "usage_meters"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    meter_id = Column(String(64), nullable=False, unique=True, index=True)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    subscription_id = Column(String(255), nullable=True, index=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    t1_token_quota = Column(Integer, nullable=False, default=0)
    t1_token_used = Column(Integer, nullable=False, default=0)
    t2_token_quota = Column(Integer, nullable=False, default=0)
    t2_token_used = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    deleted_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_usage_meters_user_window", "user_id", "start_at", "end_at"),
    )

    def __repr__(self) -> str:
        return f"<UsageMeter(meter_id={self.meter_id}, start_at={self.start_at}, end_at={self.end_at})>"


class TokenUsage(Base):
    """Immutable usage line item for one model invocation."""

    __tablename__ = "token_usages"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    conv_id = Column(String(64), nullable=True)
    job_id = Column(String(64), nullable=True)
    span_id = Column(String(64), nullable=True)
    tier = Column(String(8), nullable=False)
    model_provider = Column(String(64), nullable=False)
    model_name = Column(String(128), nullable=False)
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    skill_id = Column(String(64), nullable=True)
    skill_tpl_name = Column(String(128), nullable=True)
    skill_display_name = Column(String(255), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
