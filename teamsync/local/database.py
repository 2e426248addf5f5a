"""Async engine and session factory for the client-local SQLite store."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from teamsync.infra.errors import LocalStoreError
from teamsync.local.models import CompletionRecord, LocalBase, LocalCompletionRecord

if TYPE_CHECKING:
    from teamsync.config.settings import LocalStoreSettings

logger = structlog.get_logger()


def local_url(path: Path) -> str:
    return f"sqlite+aiosqlite:///{path}"


async def create_local_engine(settings: LocalStoreSettings) -> AsyncEngine:
    """Create the async SQLite engine; the parent directory is created if missing."""
    settings.path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        local_url(settings.path),
        connect_args={"timeout": settings.busy_timeout_s},
    )
    logger.info("local_store_engine_created", path=str(settings.path))
    return engine


async def ensure_local_schema(engine: AsyncEngine) -> None:
    """Create the `completions` and `local_completed_activities` partitions."""
    async with engine.begin() as conn:
        await conn.run_sync(LocalBase.metadata.create_all)
    logger.info("local_store_schema_ensured")


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False)


async def clear_local_store(db_session_factory: async_sessionmaker) -> None:
    """Wipe both partitions in one transaction (explicit user cache-clear only)."""
    try:
        async with db_session_factory() as db_session:
            await db_session.execute(delete(CompletionRecord))
            await db_session.execute(delete(LocalCompletionRecord))
            await db_session.commit()
    except (SQLAlchemyError, OSError) as exc:
        raise LocalStoreError(f"Clearing the local store failed: {exc}") from exc
    logger.warning("local_store_cleared")
