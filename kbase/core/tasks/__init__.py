"""
Celery tasks package for kbase.

Celery discovers tasks via the include= list in kbase.celery_app, which
references each submodule directly.
"""

from kbase.core.tasks.resources import enqueue_finalize_resource, finalize_resource_task
from kbase.core.tasks.usage import enqueue_token_usage, renew_usage_meters, report_token_usage_task

__all__ = [
    "enqueue_finalize_resource",
    "finalize_resource_task",
    "enqueue_token_usage",
    "renew_usage_meters",
    "report_token_usage_task",
]
