"""
Celery application setup for kbase.

Configures Celery from environment variables so workers and the API share the
same broker/result backend. Tasks live in kbase.core.tasks.

Queue Architecture:
- resources: resource ingestion (one task per created resource)
- billing: token usage reports
- maintenance: scheduled tasks such as usage meter renewal

Delivery is at-least-once (acks_late, prefetch 1). Tasks must tolerate
redelivery; ingestion of the same resource twice is last-write-wins.
"""
import logging
import os

from celery import Celery
from celery.signals import after_setup_logger
from kombu import Queue


def _bool(val: str, default: bool = False) -> bool:
    if val is None:
        return default
    return str(val).lower() in {"1", "true", "yes", "on"}


BROKER_URL = os.getenv("CELERY_BROKER_URL", "redis://redis:6379/0")
RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", "redis://redis:6379/1")

app = Celery(
    "kbase",
    broker=BROKER_URL,
    backend=RESULT_BACKEND,
    include=["kbase.core.tasks.resources", "kbase.core.tasks.usage"],
)

app.conf.task_queues = (
    Queue("resources", routing_key="resources"),
    Queue("billing", routing_key="billing"),
    Queue("maintenance", routing_key="maintenance"),
)

app.conf.update(
    task_acks_late=_bool(os.getenv("CELERY_ACKS_LATE", "true"), True),
    worker_prefetch_multiplier=int(os.getenv("CELERY_PREFETCH_MULTIPLIER", "1")),
    worker_max_tasks_per_child=int(os.getenv("CELERY_MAX_TASKS_PER_CHILD", "50")),
    task_soft_time_limit=int(os.getenv("CELERY_TASK_SOFT_TIME_LIMIT", "600")),
    task_time_limit=int(os.getenv("CELERY_TASK_TIME_LIMIT", "900")),
    result_expires=int(os.getenv("CELERY_RESULT_EXPIRES", "86400")),
    task_default_queue=os.getenv("CELERY_DEFAULT_QUEUE", "resources"),
    task_serializer="json",
    accept_content=["json"],
    task_routes={
        "kbase.tasks.finalize_resource_task": {"queue": "resources"},
        "kbase.tasks.report_token_usage_task": {"queue": "billing"},
        "kbase.tasks.renew_usage_meters": {"queue": "maintenance"},
    },
)

# ============================================================================
# Celery Beat Schedule
# ============================================================================

meter_renewal_enabled = _bool(os.getenv("METER_RENEWAL_ENABLED", "true"), True)
meter_renewal_interval = int(os.getenv("METER_RENEWAL_INTERVAL", "3600"))

beat_schedule = {}
if meter_renewal_enabled:
    beat_schedule["renew-usage-meters"] = {
        "task": "kbase.tasks.renew_usage_meters",
        "schedule": meter_renewal_interval,
        "options": {"queue": "maintenance"},
    }

app.conf.beat_schedule = beat_schedule
app.conf.timezone = "UTC"


@after_setup_logger.connect
def on_setup_logger(logger, loglevel, **kwargs):
    """Route kbase.* loggers through the worker's handlers at the worker's level."""
    logging.getLogger("kbase").setLevel(loglevel)
