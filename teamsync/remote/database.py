"""Async database engine and session factory for the shared PostgreSQL store."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from teamsync.constants import DB_SCHEMA, TEAM_CHANGES_CHANNEL
from teamsync.remote.models import RemoteBase

if TYPE_CHECKING:
    from teamsync.config.settings import DatabaseSettings

logger = structlog.get_logger()


def build_dsn(settings: DatabaseSettings) -> str:
    """Plain libpq DSN for raw asyncpg connections (LISTEN/NOTIFY)."""
    return (
        f"postgresql://{settings.user}:{settings.password}"
        f"@{settings.host}:{settings.port}/{settings.name}"
    )


async def create_db_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Create an async SQLAlchemy engine from DatabaseSettings."""
    url = (
        f"postgresql+asyncpg://{settings.user}:{settings.password}"
        f"@{settings.host}:{settings.port}/{settings.name}"
    )
    engine = create_async_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        connect_args={"server_settings": {"search_path": f"{settings.schema_}, public"}},
    )
    logger.info("db_engine_created", host=settings.host, database=settings.name)
    return engine


async def ensure_schema(
    engine: AsyncEngine,
    schema: str = DB_SCHEMA,
    channel: str = TEAM_CHANGES_CHANNEL,
) -> None:
    """Ensure schema, tables and the team-change notify trigger exist."""
    async with engine.begin() as conn:
        await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {schema}"))
        await conn.run_sync(RemoteBase.metadata.create_all)

        # Separate execute() calls to avoid asyncpg multi-statement issues.
        await conn.execute(text(f"""
            CREATE OR REPLACE FUNCTION {schema}.notify_team_change()
            RETURNS trigger AS $$
            BEGIN
                PERFORM pg_notify(
                    '{channel}',
                    json_build_object('event_id', NEW.event_id, 'team_id', NEW.id)::text
                );
                RETURN NEW;
            END;
            $$ LANGUAGE plpgsql
        """))

        await conn.execute(text(
            f"DROP TRIGGER IF EXISTS trg_teams_notify_change ON {schema}.teams"
        ))

        await conn.execute(text(f"""
            CREATE TRIGGER trg_teams_notify_change
            AFTER INSERT OR UPDATE ON {schema}.teams
            FOR EACH ROW
            EXECUTE FUNCTION {schema}.notify_team_change()
        """))

    logger.info("db_schema_ensured", schema=schema)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create an async session factory bound to the engine."""
    return async_sessionmaker(engine, expire_on_commit=False)
