# kbase/core/knowledge/meta.py
"""
Type-specific resource metadata.

The ``meta`` column holds a JSON object whose shape depends on the resource
type. In memory it is a tagged union keyed by ``resource_type``; it is only
turned into JSON text at the storage boundary (``load_meta`` / ``dump_meta``).
Stored keys stay camelCase (``linkId``, ``storageKey``) so rows written by
earlier releases keep parsing.
"""

import json
import logging
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from kbase.core.exceptions import ResourceValidationError

logger = logging.getLogger("kbase.knowledge.meta")

RESOURCE_TYPES = ("weblink", "note")


class _MetaBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    title: Optional[str] = None
    storage_key: Optional[str] = Field(default=None, alias="storageKey")


class WeblinkMeta(_MetaBase):
    resource_type: Literal["weblink"] = "weblink"
    url: Optional[str] = None
    link_id: Optional[str] = Field(default=None, alias="linkId")


class NoteMeta(_MetaBase):
    resource_type: Literal["note"] = "note"


ResourceMeta = Annotated[Union[WeblinkMeta, NoteMeta], Field(discriminator="resource_type")]

_META_ADAPTER = TypeAdapter(ResourceMeta)


def build_meta(resource_type: str, data: Optional[dict] = None) -> Union[WeblinkMeta, NoteMeta]:
    """Build the tagged meta for a resource type from a plain dict."""
    if resource_type not in RESOURCE_TYPES:
        raise ResourceValidationError(f"Invalid resource type: {resource_type}")
    try:
        return _META_ADAPTER.validate_python({**(data or {}), "resource_type": resource_type})
    except ValidationError as e:
        raise ResourceValidationError(f"Invalid {resource_type} data: {e}") from e


def load_meta(resource_type: str, raw: Optional[str]) -> Union[WeblinkMeta, NoteMeta]:
    """Parse the stored JSON text of a resource's meta column."""
    try:
        data = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning(f"Unparseable meta for {resource_type} resource, treating as empty")
        data = {}
    if not isinstance(data, dict):
        data = {}
    return build_meta(resource_type, data)


def dump_meta(meta: Union[WeblinkMeta, NoteMeta]) -> str:
    """Serialize meta for the meta column. The tag itself lives in resource_type."""
    return json.dumps(meta.model_dump(by_alias=True, exclude_none=True, exclude={"resource_type"}))


def meta_to_dict(meta: Union[WeblinkMeta, NoteMeta]) -> dict:
    """API representation of meta (camelCase keys, tag omitted)."""
    return meta.model_dump(by_alias=True, exclude_none=True, exclude={"resource_type"})
