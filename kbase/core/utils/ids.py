# kbase/core/utils/ids.py
"""Generators for public, prefixed identifiers."""

import uuid


def _gen_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def gen_resource_id() -> str:
    return _gen_id("r")


def gen_collection_id() -> str:
    return _gen_id("cl")


def gen_usage_meter_id() -> str:
    return _gen_id("um")


def resource_storage_key(resource_id: str) -> str:
    """Blob-store key for server-persisted resource content."""
    return f"resource/{resource_id}"
