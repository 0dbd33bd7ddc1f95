#!/usr/bin/env python3
# kbase/commands/seed_plan_quotas.py
"""
Seed the per-plan token quota table.

Writes one ``subscription_usage_quotas`` row per plan (free, plus, pro) from
the ``*_TOKEN_QUOTA`` settings. Existing rows are left alone unless
``--overwrite`` is given.

Usage:
    python -m kbase.commands.seed_plan_quotas
    python -m kbase.commands.seed_plan_quotas --overwrite
"""

import argparse
import asyncio
import logging
from typing import Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.billing.plans import default_plan_quotas
from kbase.core.database.models import SubscriptionUsageQuota
from kbase.core.shared.database_service import database_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("kbase.commands.seed_plan_quotas")


async def seed_plan_quotas(session: AsyncSession, overwrite: bool = False) -> Dict[str, str]:
    """Returns plan_type -> "created" | "updated" | "kept"."""
    outcome: Dict[str, str] = {}
    for plan_type, quotas in default_plan_quotas().items():
        existing = await session.scalar(
            select(SubscriptionUsageQuota).where(SubscriptionUsageQuota.plan_type == plan_type)
        )
        if existing is None:
            session.add(SubscriptionUsageQuota(plan_type=plan_type, **quotas))
            outcome[plan_type] = "created"
        elif overwrite:
            existing.t1_token_quota = quotas["t1_token_quota"]
            existing.t2_token_quota = quotas["t2_token_quota"]
            outcome[plan_type] = "updated"
        else:
            outcome[plan_type] = "kept"
    await session.flush()
    return outcome


async def run(overwrite: bool) -> Dict[str, str]:
    await database_service.init_db()
    async with database_service.get_session() as session:
        return await seed_plan_quotas(session, overwrite=overwrite)


def main():
    parser = argparse.ArgumentParser(description="Seed per-plan token quotas")
    parser.add_argument("--overwrite", action="store_true", help="Update existing rows from settings")
    args = parser.parse_args()

    for plan_type, result in asyncio.run(run(overwrite=args.overwrite)).items():
        logger.info(f"{plan_type}: {result}")


if __name__ == "__main__":
    main()
