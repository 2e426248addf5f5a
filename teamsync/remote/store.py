"""Transactional access to shared team records (PostgreSQL atomic semantics).

Multi-writer safe: every mutation is a read-then-write inside one
transaction holding row locks (SELECT ... FOR UPDATE), never a blind
overwrite. Exclusive-activity arbitration locks the event row first, which
serializes all claimants of the same event; single-entry updates lock only
the team row.
"""

from __future__ import annotations

import time
from collections.abc import AsyncIterator, Iterable, Mapping
from contextlib import asynccontextmanager
from typing import Any

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from teamsync.infra.errors import EntityNotFoundError, TransientSyncError
from teamsync.remote.awards import (
    PointsDelta,
    completion_fields,
    compute_award,
    prior_awarded_points,
    resolve_points_delta,
    valorate_for,
)
from teamsync.remote.contracts import (
    AWARDED_POINTS,
    DELETED,
    VALORATE,
    ArbitrationResult,
    find_entry,
    holds_completion,
)
from teamsync.remote.models import EventRecord, TeamRecord

logger = structlog.get_logger()

# serialization_failure, deadlock_detected, lock_not_available, query_canceled,
# admin/crash shutdown, cannot_connect_now
_TRANSIENT_SQLSTATES = frozenset({"40001", "40P01", "55P03", "57014", "57P01", "57P02", "57P03"})


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (OperationalError, InterfaceError, TimeoutError, OSError)):
        return True
    if isinstance(exc, DBAPIError):
        if exc.connection_invalidated:
            return True
        orig = exc.orig
        code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
        return code in _TRANSIENT_SQLSTATES
    return False


class RemoteTeamStore:
    """Arbitration transaction and atomic single-entry updates on team records."""

    def __init__(
        self,
        db_session_factory: async_sessionmaker,
        *,
        lock_timeout_ms: int = 5000,
    ) -> None:
        self._db: async_sessionmaker = db_session_factory
        self._lock_timeout_ms = lock_timeout_ms

    @asynccontextmanager
    async def _transaction(self, op: str) -> AsyncIterator[AsyncSession]:
        """One transaction; storage failures surface as TransientSyncError."""
        try:
            async with self._db() as db_session, db_session.begin():
                await db_session.execute(
                    text(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
                )
                yield db_session
        except (EntityNotFoundError, TransientSyncError):
            raise
        except Exception as exc:
            if _is_transient(exc):
                raise TransientSyncError(f"{op} failed: {exc}") from exc
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def fetch_team(self, event_id: int, team_id: int) -> dict[str, Any] | None:
        """Current team snapshot, or None if the team does not exist."""
        async with self._transaction("fetch_team") as db_session:
            record = await db_session.get(TeamRecord, (event_id, team_id))
            return record.to_snapshot() if record is not None else None

    async def fetch_event(self, event_id: int) -> dict[str, Any] | None:
        async with self._transaction("fetch_event") as db_session:
            record = await db_session.get(EventRecord, event_id)
            if record is None:
                return None
            return {"id": record.id, "name": record.name, "roster": list(record.roster or [])}

    async def ping(self) -> bool:
        """Round-trip check used by connection diagnostics."""
        try:
            async with self._transaction("ping") as db_session:
                await db_session.execute(text("SELECT 1"))
        except TransientSyncError:
            return False
        return True

    # ------------------------------------------------------------------
    # Arbitration (exclusive activities)
    # ------------------------------------------------------------------

    async def complete_exclusive_activity(
        self,
        event_id: int,
        team_id: int,
        activity_id: int,
        activity_snapshot: Mapping[str, Any],
        success: bool,
        media: Mapping[str, Any] | None = None,
        valorate_value: int | None = None,
        points_to_add: PointsDelta = None,
        *,
        completed_at: float | None = None,
    ) -> ArbitrationResult:
        """Claim an exclusive activity for `team_id`, atomically.

        Reads the roster and every competitor inside the transaction. If a
        competitor already holds the completion the claim is rejected with
        `already_completed_by`. Otherwise the claimant's entry is completed,
        its points are raised by the in-transaction delta, and every other
        holder's entry is flagged deleted.

        With `points_to_add=None` the delta comes from compute_award()
        against the claimant's stored entry, so a replayed claim adds 0.
        """
        valorate = (
            valorate_value
            if valorate_value is not None
            else valorate_for(activity_snapshot, success)
        )

        async with self._transaction("arbitration") as db_session:
            event = (
                await db_session.execute(
                    select(EventRecord).where(EventRecord.id == event_id).with_for_update()
                )
            ).scalar_one_or_none()
            if event is None:
                raise EntityNotFoundError(f"Event {event_id} not found")

            roster = {int(t) for t in (event.roster or [])}
            if not roster:
                raise EntityNotFoundError(f"No teams found in event {event_id}")

            teams = {
                record.id: record
                for record in (
                    await db_session.execute(
                        select(TeamRecord)
                        .where(
                            TeamRecord.event_id == event_id,
                            TeamRecord.id.in_(sorted(roster | {team_id})),
                        )
                        .order_by(TeamRecord.id)
                        .with_for_update()
                    )
                ).scalars()
            }

            claimant = teams.get(team_id)
            if claimant is None:
                raise EntityNotFoundError(f"Team {team_id} not found in event {event_id}")
            index = find_entry(claimant.activities, activity_id)
            if index is None:
                raise EntityNotFoundError(
                    f"Activity {activity_id} not assigned to team {team_id}"
                )

            for other_id, other in teams.items():
                if other_id == team_id:
                    continue
                other_index = find_entry(other.activities, activity_id)
                if other_index is not None and holds_completion(other.activities[other_index]):
                    logger.info(
                        "arbitration_rejected",
                        event_id=event_id,
                        team_id=team_id,
                        activity_id=activity_id,
                        winner=other_id,
                    )
                    return ArbitrationResult(accepted=False, already_completed_by=other_id)

            prior = claimant.activities[index]
            if points_to_add is None:
                delta = compute_award(
                    activity_snapshot, success, prior_awarded_points(prior), valorate=valorate
                )
            else:
                delta = resolve_points_delta(points_to_add, prior)

            activities = [dict(a) for a in claimant.activities]
            activities[index] = {
                **prior,
                **completion_fields(
                    activity_snapshot, success, media, valorate, completed_at or time.time()
                ),
            }
            claimant.activities = activities
            if delta:
                claimant.points = (claimant.points or 0) + delta

            losers: list[int] = []
            for other_id, other in teams.items():
                if other_id == team_id:
                    continue
                other_index = find_entry(other.activities, activity_id)
                if other_index is None:
                    continue
                other_activities = [dict(a) for a in other.activities]
                other_activities[other_index] = {**other_activities[other_index], DELETED: True}
                other.activities = other_activities
                losers.append(other_id)

        logger.info(
            "arbitration_accepted",
            event_id=event_id,
            team_id=team_id,
            activity_id=activity_id,
            points_awarded=delta,
            hidden_for=losers,
        )
        return ArbitrationResult(accepted=True, points_awarded=delta)

    # ------------------------------------------------------------------
    # Single-entry updates (non-exclusive path, admin edits)
    # ------------------------------------------------------------------

    async def update_activity_field(
        self,
        event_id: int,
        team_id: int,
        activity_id: int,
        field_updates: Mapping[str, Any],
        *,
        points_to_add: PointsDelta = None,
        fields_to_delete: Iterable[str] = (),
    ) -> dict[str, Any]:
        """Merge `field_updates` into one activity entry of one team, atomically.

        Keys in `fields_to_delete` are removed after the merge. The points
        delta, if any, is applied to the total read in the same transaction.
        Returns the updated entry.
        """
        to_delete = tuple(fields_to_delete)
        async with self._transaction("field_update") as db_session:
            team = (
                await db_session.execute(
                    select(TeamRecord)
                    .where(TeamRecord.event_id == event_id, TeamRecord.id == team_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if team is None:
                raise EntityNotFoundError(f"Team {team_id} not found in event {event_id}")
            index = find_entry(team.activities, activity_id)
            if index is None:
                raise EntityNotFoundError(
                    f"Activity {activity_id} not assigned to team {team_id}"
                )

            prior = team.activities[index]
            merged = {**prior, **field_updates}
            for key in to_delete:
                merged.pop(key, None)
            merged["id"] = prior["id"]

            activities = [dict(a) for a in team.activities]
            activities[index] = merged
            team.activities = activities

            delta = resolve_points_delta(points_to_add, prior)
            if delta:
                team.points = (team.points or 0) + delta

        logger.info(
            "activity_field_updated",
            event_id=event_id,
            team_id=team_id,
            activity_id=activity_id,
            fields=sorted(field_updates),
            deleted_fields=list(to_delete),
            points_delta=delta,
        )
        return merged

    async def valorate_activity(
        self, event_id: int, team_id: int, activity_id: int, points: int
    ) -> dict[str, Any]:
        """Manual valuation: the entry now awards `points`; the total moves by the difference."""
        if points < 0:
            raise ValueError(f"points must be >= 0, got {points}")
        return await self.update_activity_field(
            event_id,
            team_id,
            activity_id,
            {VALORATE: 1, AWARDED_POINTS: points},
            points_to_add=lambda prior: points - prior_awarded_points(prior),
        )

    async def set_activity_deleted(
        self, event_id: int, team_id: int, activity_id: int, deleted: bool
    ) -> dict[str, Any]:
        """Admin hide/restore of one activity instance. Restore drops the flag."""
        if deleted:
            return await self.update_activity_field(
                event_id, team_id, activity_id, {DELETED: True}
            )
        return await self.update_activity_field(
            event_id, team_id, activity_id, {}, fields_to_delete=(DELETED,)
        )

    async def mark_deleted_for_other_teams(
        self, event_id: int, keep_team_id: int, activity_id: int
    ) -> list[int]:
        """Hide an activity for every roster team except `keep_team_id`, in one transaction."""
        async with self._transaction("mark_deleted_for_other_teams") as db_session:
            event = await db_session.get(EventRecord, event_id, with_for_update=True)
            if event is None:
                raise EntityNotFoundError(f"Event {event_id} not found")
            roster = sorted({int(t) for t in (event.roster or [])} - {keep_team_id})
            teams = (
                await db_session.execute(
                    select(TeamRecord)
                    .where(TeamRecord.event_id == event_id, TeamRecord.id.in_(roster))
                    .order_by(TeamRecord.id)
                    .with_for_update()
                )
            ).scalars()
            hidden: list[int] = []
            for team in teams:
                index = find_entry(team.activities, activity_id)
                if index is None:
                    continue
                activities = [dict(a) for a in team.activities]
                activities[index] = {**activities[index], DELETED: True}
                team.activities = activities
                hidden.append(team.id)

        logger.info(
            "activity_hidden_for_other_teams",
            event_id=event_id,
            keep_team_id=keep_team_id,
            activity_id=activity_id,
            hidden_for=hidden,
        )
        return hidden
