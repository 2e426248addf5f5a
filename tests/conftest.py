"""Shared pytest fixtures for teamsync tests.

Unit tests get a throwaway SQLite local store per test and an in-memory
snapshot source. Integration tests get PostgreSQL via two modes:
1. TEST_DATABASE_* env vars present → connect to external PG (CI scenario)
2. Otherwise → testcontainers auto-starts a temporary PG container (local dev)

Safety: refuses to run against any database whose name doesn't contain '_test'.
"""

from __future__ import annotations

import asyncio
import os
from collections import defaultdict
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
import pytest_asyncio
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from teamsync.constants import DB_SCHEMA
from teamsync.local.database import ensure_local_schema, local_url
from teamsync.local.database import make_session_factory as make_local_session_factory
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.remote.database import ensure_schema
from teamsync.remote.models import EventRecord, TeamRecord
from teamsync.remote.store import RemoteTeamStore

# ---------------------------------------------------------------------------
# Local store (SQLite)
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def local_engine(tmp_path):
    engine = create_async_engine(local_url(tmp_path / "teamsync_local.db"))
    await ensure_local_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def local_session_factory(local_engine) -> async_sessionmaker[AsyncSession]:
    return make_local_session_factory(local_engine)


@pytest.fixture
def fast_backoff() -> BackoffPolicy:
    """Real exponential policy with delays short enough for unit tests."""
    return BackoffPolicy(base_delay=0.001, max_delay=0.01, max_attempts=10)


# ---------------------------------------------------------------------------
# Live-read fake
# ---------------------------------------------------------------------------


class FakeSnapshotSource:
    """In-memory SnapshotSource: tests push snapshots or errors per path.

    Each stream() call counts as one connection. A pushed exception is
    raised out of the stream that receives it, as a dropped live read would.
    """

    def __init__(self) -> None:
        self._queues: defaultdict[str, asyncio.Queue] = defaultdict(asyncio.Queue)
        self.connects: defaultdict[str, int] = defaultdict(int)
        self.fail_connect: dict[str, Exception] = {}

    def push(self, path: str, snapshot: dict[str, Any]) -> None:
        self._queues[path].put_nowait(snapshot)

    def fail(self, path: str, exc: Exception) -> None:
        self._queues[path].put_nowait(exc)

    async def stream(self, path: str) -> AsyncIterator[dict[str, Any]]:
        self.connects[path] += 1
        if path in self.fail_connect:
            raise self.fail_connect[path]
        queue = self._queues[path]
        while True:
            item = await queue.get()
            if isinstance(item, Exception):
                raise item
            yield item


@pytest.fixture
def snapshot_source() -> FakeSnapshotSource:
    return FakeSnapshotSource()


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the loop until `predicate()` holds; fail the test on timeout."""
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def until():
    return wait_for


# ---------------------------------------------------------------------------
# Remote store (PostgreSQL, integration only)
# ---------------------------------------------------------------------------


def _validate_test_db_name(name: str) -> None:
    """Safety: refuse to truncate a database whose name doesn't contain '_test'."""
    if "_test" not in name.lower():
        raise RuntimeError(
            f"Refusing to run tests against database '{name}': "
            "name must contain '_test' to prevent accidental data loss. "
            "Set TEST_DATABASE_NAME to a test-specific database."
        )


def _build_pg_url_from_env() -> str | None:
    """Build async PG URL from TEST_DATABASE_* env vars, or return None."""
    host = os.getenv("TEST_DATABASE_HOST")
    if host is None:
        return None
    port = os.getenv("TEST_DATABASE_PORT", "5432")
    user = os.getenv("TEST_DATABASE_USER", "postgres")
    password = os.getenv("TEST_DATABASE_PASSWORD", "")
    name = os.getenv("TEST_DATABASE_NAME", "teamsync_test")
    _validate_test_db_name(name)
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{name}"


@pytest.fixture(scope="session")
def _pg_container():
    """Manage testcontainers PostgreSQL lifecycle.

    Yields (url, container) where container is None if using external PG.
    """
    url = _build_pg_url_from_env()
    if url is not None:
        yield url, None
        return

    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer("postgres:16", dbname="teamsync_test")
    container.start()

    host = container.get_container_host_ip()
    port = container.get_exposed_port(5432)
    user = container.username
    password = container.password
    dbname = container.dbname
    _validate_test_db_name(dbname)

    url = f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{dbname}"

    yield url, container

    container.stop()


@pytest.fixture(scope="session")
def pg_url(_pg_container) -> str:
    url, _ = _pg_container
    return url


@pytest.fixture(scope="session")
def pg_dsn(pg_url: str) -> str:
    """libpq DSN for raw asyncpg connections (LISTEN/NOTIFY)."""
    return pg_url.replace("postgresql+asyncpg://", "postgresql://", 1)


@pytest_asyncio.fixture
async def db_engine(pg_url: str):
    """Engine with schema, tables and notify trigger; tables truncated on teardown.

    Function-scoped so every test's connections live on its own event loop.
    """
    engine = create_async_engine(pg_url, echo=False, pool_size=20, max_overflow=10)
    await ensure_schema(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.execute(text(f"TRUNCATE {DB_SCHEMA}.teams, {DB_SCHEMA}.events CASCADE"))
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def remote_store(db_session_factory) -> RemoteTeamStore:
    return RemoteTeamStore(db_session_factory, lock_timeout_ms=5000)


@pytest.fixture
def seed_event(db_session_factory):
    """Insert one event and its teams.

    `teams` maps team_id -> list of activity entries; every team starts with
    `points` points and the roster is the key set.
    """

    async def _seed(
        event_id: int,
        teams: dict[int, list[dict[str, Any]]],
        *,
        points: int = 0,
        roster: list[int] | None = None,
    ) -> None:
        async with db_session_factory() as db_session:
            db_session.add(
                EventRecord(
                    id=event_id,
                    name=f"event-{event_id}",
                    roster=roster if roster is not None else sorted(teams),
                )
            )
            await db_session.flush()
            for team_id, activities in teams.items():
                db_session.add(
                    TeamRecord(
                        event_id=event_id,
                        id=team_id,
                        name=f"team-{team_id}",
                        points=points,
                        activities=[dict(a) for a in activities],
                    )
                )
            await db_session.commit()

    return _seed
