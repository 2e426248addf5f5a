"""Live-read sources feeding the listener registry.

A source turns a document path into an async stream of snapshots. The
stream ends or raises when the underlying connection is lost; reconnecting
is the registry's job, not the source's.
"""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator
from typing import Any, Protocol

import asyncpg
import structlog

from teamsync.infra.errors import InvalidPathError, TransientSyncError
from teamsync.remote.store import RemoteTeamStore

logger = structlog.get_logger()

_TEAM_PATH = re.compile(r"^events/(?P<event_id>\d+)/teams/(?P<team_id>\d+)$")


def team_path(event_id: int, team_id: int) -> str:
    return f"events/{event_id}/teams/{team_id}"


def parse_team_path(path: str) -> tuple[int, int]:
    """`events/{event_id}/teams/{team_id}` -> (event_id, team_id)."""
    match = _TEAM_PATH.match(path.strip("/"))
    if match is None:
        raise InvalidPathError(path)
    return int(match["event_id"]), int(match["team_id"])


class SnapshotSource(Protocol):
    def stream(self, path: str) -> AsyncIterator[dict[str, Any]]:
        """Yield the current snapshot, then one per remote change."""
        ...


class PgNotifySnapshotSource:
    """Team snapshots driven by PostgreSQL LISTEN/NOTIFY.

    LISTEN is issued before the initial read so no change between the read
    and the subscription is missed. Notification bursts are coalesced into
    a single re-read.
    """

    def __init__(
        self,
        dsn: str,
        store: RemoteTeamStore,
        *,
        channel: str,
        connect_timeout_s: float = 10.0,
    ) -> None:
        self._dsn = dsn
        self._store = store
        self._channel = channel
        self._connect_timeout_s = connect_timeout_s

    async def stream(self, path: str) -> AsyncIterator[dict[str, Any]]:
        event_id, team_id = parse_team_path(path)
        signals: asyncio.Queue[Exception | None] = asyncio.Queue()

        def on_notify(_conn, _pid, _channel, payload: str) -> None:
            try:
                data = json.loads(payload)
            except ValueError:
                logger.warning("listen_payload_invalid", channel=self._channel)
                return
            if data.get("event_id") == event_id and data.get("team_id") == team_id:
                signals.put_nowait(None)

        def on_terminate(_conn) -> None:
            signals.put_nowait(TransientSyncError(f"LISTEN connection for {path} terminated"))

        try:
            conn = await asyncpg.connect(self._dsn, timeout=self._connect_timeout_s)
        except (OSError, TimeoutError, asyncpg.PostgresError) as exc:
            raise TransientSyncError(f"LISTEN connect failed for {path}: {exc}") from exc

        try:
            await conn.add_listener(self._channel, on_notify)
            conn.add_termination_listener(on_terminate)

            snapshot = await self._store.fetch_team(event_id, team_id)
            if snapshot is not None:
                yield snapshot
            else:
                logger.info("team_snapshot_missing", event_id=event_id, team_id=team_id)

            while True:
                signal = await signals.get()
                while signal is None and not signals.empty():
                    signal = signals.get_nowait()
                if signal is not None:
                    raise signal
                snapshot = await self._store.fetch_team(event_id, team_id)
                if snapshot is not None:
                    yield snapshot
        finally:
            conn.remove_termination_listener(on_terminate)
            if not conn.is_closed():
                try:
                    await conn.close(timeout=5)
                except (OSError, TimeoutError, asyncpg.PostgresError):
                    logger.debug("listen_close_failed", path=path)
