"""
Celery tasks for usage metering.

- report_token_usage_task: charge one completed unit of paid work
- renew_usage_meters: periodic (beat) renewal of expired meters
"""
import asyncio
import logging
from typing import Any, Dict

from celery import shared_task

from kbase.core.billing.schemas import TokenUsageReport
from kbase.core.billing.subscription_service import subscription_service
from kbase.core.shared.database_service import database_service

logger = logging.getLogger("kbase.tasks.usage")

BILLING_QUEUE = "billing"


@shared_task(
    bind=True,
    name="kbase.tasks.report_token_usage_task",
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def report_token_usage_task(self, report: Dict[str, Any]) -> Dict[str, Any]:
    """
    Record a TokenUsageReport (as a JSON dict).

    Returns:
        Dict with ``charged``: whether a meter covered the usage timestamp
    """
    params = TokenUsageReport.model_validate(report)
    charged = asyncio.run(_report_token_usage_async(params))
    return {"uid": params.uid, "charged": charged}


async def _report_token_usage_async(report: TokenUsageReport) -> bool:
    async with database_service.get_session() as session:
        return await subscription_service.report_usage(session, report)


def enqueue_token_usage(report: TokenUsageReport) -> str:
    result = report_token_usage_task.apply_async(
        kwargs={"report": report.model_dump(mode="json")},
        queue=BILLING_QUEUE,
    )
    return result.id


@shared_task(bind=True, name="kbase.tasks.renew_usage_meters")
def renew_usage_meters(self) -> Dict[str, Any]:
    """Give users whose latest meter has ended a new, chained meter."""
    logger.info("Renewing expired usage meters")
    created = asyncio.run(_renew_usage_meters_async())
    logger.info(f"Usage meter renewal complete: {created} created")
    return {"created": created}


async def _renew_usage_meters_async() -> int:
    async with database_service.get_session() as session:
        return await subscription_service.renew_expired_meters(session)
