# kbase/core/shared/database_service.py
"""
Async SQLAlchemy engine and session provider for kbase.

One process-wide ``database_service`` owns the engine. Request handlers get
sessions through ``kbase.dependencies.get_db``; Celery tasks and operator
commands open their own with ``database_service.get_session()``, which
commits on a clean exit and rolls back when the block raises.

Engines by backend:
    - PostgreSQL (asyncpg), API process: QueuePool sized by ``db_pool_size``,
      ``db_max_overflow`` and ``db_pool_recycle``.
    - PostgreSQL inside a Celery worker: NullPool, one connection per checkout.
    - SQLite (aiosqlite): StaticPool over a single connection, used by tests
      and local runs.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from kbase.config import settings
from kbase.core.database.base import Base


def _in_worker_process() -> bool:
    return (
        os.getenv("CELERY_WORKER") == "1"
        or "celery" in os.getenv("_", "").lower()
        or os.getenv("FORKED_BY_MULTIPROCESSING") == "1"
    )


def _redact(database_url: str) -> str:
    return database_url.rsplit("@", 1)[-1]


class DatabaseService:
    """Owns the async engine and hands out sessions."""

    def __init__(self, database_url: Optional[str] = None):
        self._logger = logging.getLogger("kbase.database")
        self._database_url = database_url or os.getenv("DATABASE_URL") or settings.database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._build_engine()

    @property
    def dialect(self) -> str:
        return "sqlite" if self._database_url.lower().startswith("sqlite") else "postgresql"

    def _build_engine(self) -> None:
        url = self._database_url
        if self.dialect == "postgresql" and "postgresql" not in url.lower():
            raise ValueError(
                f"Unsupported DATABASE_URL scheme '{url.split(':', 1)[0]}'; "
                "expected postgresql+asyncpg://... or sqlite+aiosqlite://..."
            )

        self._logger.info(f"Connecting to {self.dialect} at {_redact(url)}")

        if self.dialect == "sqlite":
            # In-memory databases live only as long as their connection
            self._engine = create_async_engine(
                url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=settings.debug,
            )
        elif _in_worker_process():
            # Each task runs in a fresh event loop
            self._engine = create_async_engine(
                url,
                poolclass=NullPool,
                echo=settings.debug,
                connect_args={"server_settings": {"application_name": "kbase-worker"}},
            )
            self._logger.info("Worker process detected, pooling disabled")
        else:
            self._engine = create_async_engine(
                url,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_recycle=settings.db_pool_recycle,
                pool_pre_ping=True,
                echo=settings.debug,
                connect_args={"server_settings": {"application_name": "kbase"}},
            )
            self._logger.info(
                f"Pool size={settings.db_pool_size} overflow={settings.db_max_overflow} "
                f"recycle={settings.db_pool_recycle}s"
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Yield a session bound to the shared engine.

        The transaction is committed when the block exits normally and rolled
        back (then re-raised) when it raises.
        """
        if self._session_factory is None:
            raise RuntimeError("DatabaseService has no session factory")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """Create missing tables for every mapped model."""
        if self._engine is None:
            raise RuntimeError("DatabaseService has no engine")

        from kbase.core.database import models  # noqa: F401

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")

    async def drop_all(self) -> None:
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def health_check(self) -> Dict[str, Any]:
        """
        Run ``SELECT 1`` and report the outcome.

        Returns:
            ``status`` ("healthy" or "unhealthy"), ``connected``,
            ``database_type``, plus ``pool_checked_out`` when the pool exposes
            it and ``error`` on failure.
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))
        except Exception as e:
            self._logger.error(f"Database health check failed: {e}")
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect,
                "error": str(e),
            }

        report: Dict[str, Any] = {
            "status": "healthy",
            "connected": True,
            "database_type": self.dialect,
        }
        if hasattr(self._engine.pool, "checkedout"):
            report["pool_checked_out"] = self._engine.pool.checkedout()
        return report

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._logger.info("Database engine disposed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect})>"


database_service = DatabaseService()
