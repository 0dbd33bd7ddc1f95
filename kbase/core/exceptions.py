# kbase/core/exceptions.py
"""
Domain exceptions.

Synchronous CRUD errors propagate to the API layer, where kbase.main maps them
to HTTP responses:

    ResourceValidationError  -> 400
    PermissionDeniedError    -> 403
    ResourceNotFoundError    -> 404

Ingestion errors never reach a request; they are recorded on the resource as
``index_status = failed`` and re-raised to the task queue.
"""


class KnowledgeBaseError(Exception):
    """Base class for all kbase domain errors."""


class ResourceValidationError(KnowledgeBaseError):
    """Request is malformed or violates a creation rule."""


class PermissionDeniedError(KnowledgeBaseError):
    """Acting user does not own a record it tried to access or mutate."""


class ResourceNotFoundError(KnowledgeBaseError):
    """Record does not exist or has been soft-deleted."""


class InvalidStatusTransitionError(KnowledgeBaseError):
    """Write path attempted an index status change the state machine forbids."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal index status transition: {current} -> {target}")
        self.current = current
        self.target = target


class IngestionError(KnowledgeBaseError):
    """Ingestion of a resource failed."""


class IngestionTimeoutError(IngestionError):
    """An external call made during ingestion exceeded its time budget."""
