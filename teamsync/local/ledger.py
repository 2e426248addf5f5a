"""Local completion ledger: the client-side one-way completion ratchet.

A mark is written the instant a completion is attempted and is removed only
when remote state echoes the completion (or arbitration reports the race
lost). While a mark exists the reconciler presents the activity complete.

If the SQLite store fails, marks are kept in memory for the life of the
process and the failure is logged; protection never depends on the store
being healthy.
"""

from __future__ import annotations

import time

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from teamsync.local.models import LocalCompletionMark, LocalCompletionRecord, activity_key

logger = structlog.get_logger()

_STORE_ERRORS = (SQLAlchemyError, OSError)


class CompletionLedger:
    """Durable per-(event, team, activity) completion marks."""

    def __init__(self, db_session_factory: async_sessionmaker) -> None:
        self._db: async_sessionmaker = db_session_factory
        # Marks that could not be persisted; consulted alongside the store.
        self._volatile: dict[str, LocalCompletionMark] = {}

    async def mark(
        self,
        event_id: int,
        team_id: int,
        activity_id: int,
        completed_at: float | None = None,
    ) -> LocalCompletionMark:
        """Upsert a mark. Re-marking overwrites completed_at and resets `synced`."""
        mark = LocalCompletionMark(
            event_id=event_id,
            team_id=team_id,
            activity_id=activity_id,
            completed_at=completed_at if completed_at is not None else time.time(),
        )
        values = {
            "activity_key": mark.key,
            "event_id": event_id,
            "team_id": team_id,
            "activity_id": activity_id,
            "completed_at": mark.completed_at,
            "synced": False,
            "synced_at": None,
        }
        stmt = sqlite_insert(LocalCompletionRecord).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["activity_key"],
            set_={k: v for k, v in values.items() if k != "activity_key"},
        )
        try:
            async with self._db() as db_session:
                await db_session.execute(stmt)
                await db_session.commit()
        except _STORE_ERRORS:
            logger.exception(
                "ledger_store_degraded",
                op="mark",
                activity_key=mark.key,
                msg="Keeping completion mark in memory",
            )
            self._volatile[mark.key] = mark
        else:
            self._volatile.pop(mark.key, None)
        logger.info("ledger_marked", activity_key=mark.key)
        return mark

    async def is_marked(self, event_id: int, team_id: int, activity_id: int) -> bool:
        key = activity_key(event_id, team_id, activity_id)
        if key in self._volatile:
            return True
        try:
            async with self._db() as db_session:
                record = await db_session.get(LocalCompletionRecord, key)
        except _STORE_ERRORS:
            logger.exception("ledger_store_degraded", op="is_marked", activity_key=key)
            return False
        return record is not None

    async def get(
        self, event_id: int, team_id: int, activity_id: int
    ) -> LocalCompletionMark | None:
        key = activity_key(event_id, team_id, activity_id)
        if key in self._volatile:
            return self._volatile[key]
        try:
            async with self._db() as db_session:
                record = await db_session.get(LocalCompletionRecord, key)
        except _STORE_ERRORS:
            logger.exception("ledger_store_degraded", op="get", activity_key=key)
            return None
        return LocalCompletionMark.from_record(record) if record is not None else None

    async def list_for_team(self, event_id: int, team_id: int) -> list[LocalCompletionMark]:
        """All marks of one team, via the (event_id, team_id) index."""
        marks: dict[str, LocalCompletionMark] = {}
        try:
            async with self._db() as db_session:
                result = await db_session.execute(
                    select(LocalCompletionRecord)
                    .where(
                        LocalCompletionRecord.event_id == event_id,
                        LocalCompletionRecord.team_id == team_id,
                    )
                    .order_by(LocalCompletionRecord.completed_at)
                )
                for record in result.scalars():
                    marks[record.activity_key] = LocalCompletionMark.from_record(record)
        except _STORE_ERRORS:
            logger.exception(
                "ledger_store_degraded", op="list_for_team", event_id=event_id, team_id=team_id
            )
        for key, mark in self._volatile.items():
            if mark.event_id == event_id and mark.team_id == team_id:
                marks[key] = mark
        return list(marks.values())

    async def mark_synced(self, event_id: int, team_id: int, activity_id: int) -> None:
        """Advisory flag only: a synced mark still protects the activity."""
        key = activity_key(event_id, team_id, activity_id)
        now = time.time()
        if key in self._volatile:
            self._volatile[key].synced = True
            self._volatile[key].synced_at = now
            return
        try:
            async with self._db() as db_session:
                await db_session.execute(
                    update(LocalCompletionRecord)
                    .where(LocalCompletionRecord.activity_key == key)
                    .values(synced=True, synced_at=now)
                )
                await db_session.commit()
        except _STORE_ERRORS:
            logger.exception("ledger_store_degraded", op="mark_synced", activity_key=key)

    async def clear(self, event_id: int, team_id: int, activity_id: int) -> None:
        """Remove protection. Reserved for the reconciler."""
        key = activity_key(event_id, team_id, activity_id)
        self._volatile.pop(key, None)
        try:
            async with self._db() as db_session:
                await db_session.execute(
                    delete(LocalCompletionRecord).where(LocalCompletionRecord.activity_key == key)
                )
                await db_session.commit()
        except _STORE_ERRORS:
            # The persisted mark survives; it keeps protecting until the next echo.
            logger.exception("ledger_store_degraded", op="clear", activity_key=key)
            return
        logger.info("ledger_cleared", activity_key=key)

    def reset_memory(self) -> None:
        """Forget in-memory marks (after an explicit local cache clear)."""
        self._volatile.clear()
