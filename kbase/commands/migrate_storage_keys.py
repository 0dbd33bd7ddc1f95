#!/usr/bin/env python3
# kbase/commands/migrate_storage_keys.py
"""
One-time migration promoting ``meta.storageKey`` into ``resources.storage_key``.

Resources written before the ``storage_key`` column existed carry their blob
key only inside the meta JSON. Reads fall back to it (see
``kbase.core.knowledge.knowledge_service.resolve_storage_key``); this command
moves the key into the column so the fallback can be retired.

Usage:
    # Report what would change
    python -m kbase.commands.migrate_storage_keys --dry-run

    # Apply in batches of 500
    python -m kbase.commands.migrate_storage_keys --batch-size 500
"""

import argparse
import asyncio
import logging
from typing import Dict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from kbase.core.database.models import Resource
from kbase.core.knowledge.meta import load_meta
from kbase.core.shared.database_service import database_service

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("kbase.commands.migrate_storage_keys")


async def migrate_storage_keys(
    session: AsyncSession,
    dry_run: bool = False,
    batch_size: int = 500,
) -> Dict[str, int]:
    """
    Copy ``meta.storageKey`` into the column for rows that lack it.

    Soft-deleted rows are migrated too. Returns counts of scanned, migrated
    and skipped (no key in meta) rows.
    """
    stats = {"scanned": 0, "migrated": 0, "skipped": 0}
    last_id = None

    while True:
        query = select(Resource).where(Resource.storage_key.is_(None)).order_by(Resource.id).limit(batch_size)
        if last_id is not None:
            query = query.where(Resource.id > last_id)
        rows = list((await session.execute(query)).scalars().all())
        if not rows:
            break

        for resource in rows:
            stats["scanned"] += 1
            key = load_meta(resource.resource_type, resource.meta).storage_key
            if not key:
                stats["skipped"] += 1
                continue
            stats["migrated"] += 1
            if not dry_run:
                resource.storage_key = key
        last_id = rows[-1].id

        if not dry_run:
            await session.flush()
        logger.info(f"Processed batch ending at {last_id}: {stats}")

    return stats


async def run(dry_run: bool, batch_size: int) -> Dict[str, int]:
    async with database_service.get_session() as session:
        stats = await migrate_storage_keys(session, dry_run=dry_run, batch_size=batch_size)
        if dry_run:
            await session.rollback()
    return stats


def main():
    parser = argparse.ArgumentParser(
        description="Promote meta.storageKey into the resources.storage_key column",
    )
    parser.add_argument("--dry-run", action="store_true", help="Report changes without writing")
    parser.add_argument("--batch-size", type=int, default=500, help="Rows per batch (default: 500)")
    args = parser.parse_args()

    stats = asyncio.run(run(dry_run=args.dry_run, batch_size=args.batch_size))
    mode = "would migrate" if args.dry_run else "migrated"
    logger.info(f"Done: {mode} {stats['migrated']} of {stats['scanned']} rows ({stats['skipped']} without a key)")


if __name__ == "__main__":
    main()
