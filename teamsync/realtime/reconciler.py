"""TeamStateReconciler: inbound team snapshots are merged against local truth.

Rules, applied to every snapshot before it becomes visible state:

1. An activity with a ledger mark is shown complete. If the inbound entry
   already reports complete=True the echo has arrived and the mark is
   cleared; otherwise the entry is overridden with the local completion time.
2. An entry previously accepted as complete keeps its completion fields when
   a later snapshot reports it incomplete or drops it.
3. Only then is the result compared with the current state.
"""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from teamsync.local.ledger import CompletionLedger
from teamsync.local.models import LocalCompletionMark
from teamsync.remote.contracts import (
    COMPLETE,
    COMPLETE_TIME,
    COMPLETION_FIELDS,
    DELETED,
    find_entry,
    is_complete,
)

logger = structlog.get_logger()


class CompletionState(StrEnum):
    not_started = "not_started"
    locally_completed = "locally_completed"
    sync_confirmed = "sync_confirmed"
    race_lost = "race_lost"
    sync_retry_exhausted = "sync_retry_exhausted"


@dataclass(frozen=True)
class ReconcileResult:
    """Visible team state after one reconciliation, plus what the rules did."""

    team: dict[str, Any]
    changed: bool
    confirmed: list[int] = field(default_factory=list)
    protected: list[int] = field(default_factory=list)
    retained: list[int] = field(default_factory=list)


class TeamStateReconciler:
    """Holds the last accepted state per team and the per-activity state machine."""

    def __init__(self, ledger: CompletionLedger) -> None:
        self._ledger = ledger
        self._accepted: dict[tuple[int, int], dict[str, Any]] = {}
        self._states: dict[tuple[int, int, int], CompletionState] = {}
        self._locks: defaultdict[tuple[int, int], asyncio.Lock] = defaultdict(asyncio.Lock)

    def current(self, event_id: int, team_id: int) -> dict[str, Any] | None:
        team = self._accepted.get((event_id, team_id))
        return copy.deepcopy(team) if team is not None else None

    def state_of(self, event_id: int, team_id: int, activity_id: int) -> CompletionState:
        return self._states.get((event_id, team_id, activity_id), CompletionState.not_started)

    def note_local_completion(self, event_id: int, team_id: int, activity_id: int) -> None:
        self._states[(event_id, team_id, activity_id)] = CompletionState.locally_completed

    def note_retry_exhausted(self, event_id: int, team_id: int, activity_id: int) -> None:
        key = (event_id, team_id, activity_id)
        if self._states.get(key) == CompletionState.locally_completed:
            self._states[key] = CompletionState.sync_retry_exhausted

    def reset_states(self) -> None:
        self._states.clear()

    async def reconcile(
        self, event_id: int, team_id: int, inbound: dict[str, Any]
    ) -> ReconcileResult:
        """Merge a remote snapshot. The only path that clears ledger marks."""
        async with self._locks[(event_id, team_id)]:
            return await self._merge(event_id, team_id, inbound, from_remote=True)

    async def apply_local(self, event_id: int, team_id: int) -> ReconcileResult:
        """Re-apply ledger marks to the current state after a local completion."""
        async with self._locks[(event_id, team_id)]:
            base = self._accepted.get((event_id, team_id)) or {
                "id": team_id,
                "event_id": event_id,
                "activities": [],
            }
            return await self._merge(event_id, team_id, base, from_remote=False)

    async def resolve_race_lost(
        self, event_id: int, team_id: int, activity_id: int, winner: int | None
    ) -> dict[str, Any] | None:
        """Arbitration went to `winner`: drop protection and hide the entry."""
        async with self._locks[(event_id, team_id)]:
            await self._ledger.clear(event_id, team_id, activity_id)
            self._states[(event_id, team_id, activity_id)] = CompletionState.race_lost
            logger.info(
                "race_lost",
                event_id=event_id,
                team_id=team_id,
                activity_id=activity_id,
                winner=winner,
            )
            team = self._accepted.get((event_id, team_id))
            if team is None:
                return None
            index = find_entry(team.get("activities"), activity_id)
            if index is not None:
                team["activities"][index] = {**team["activities"][index], DELETED: True}
            return copy.deepcopy(team)

    async def _merge(
        self,
        event_id: int,
        team_id: int,
        inbound: dict[str, Any],
        *,
        from_remote: bool,
    ) -> ReconcileResult:
        key = (event_id, team_id)
        prior = self._accepted.get(key)
        marks = {m.activity_id: m for m in await self._ledger.list_for_team(event_id, team_id)}

        team = copy.deepcopy(inbound)
        activities: list[dict[str, Any]] = [dict(a) for a in team.get("activities") or []]
        confirmed: list[int] = []
        protected: list[int] = []
        retained: list[int] = []

        for activity_id, mark in marks.items():
            index = find_entry(activities, activity_id)
            entry = activities[index] if index is not None else None
            if from_remote and is_complete(entry):
                await self._ledger.clear(event_id, team_id, activity_id)
                self._states[(event_id, team_id, activity_id)] = CompletionState.sync_confirmed
                confirmed.append(activity_id)
                logger.info(
                    "reconcile_completion_confirmed",
                    event_id=event_id,
                    team_id=team_id,
                    activity_id=activity_id,
                )
                continue
            if is_complete(entry):
                continue
            protected_entry = _protect(entry, activity_id, mark)
            if index is None:
                activities.append(protected_entry)
            else:
                activities[index] = protected_entry
            protected.append(activity_id)

        for prior_entry in (prior or {}).get("activities") or []:
            if not is_complete(prior_entry):
                continue
            activity_id = prior_entry["id"]
            index = find_entry(activities, activity_id)
            entry = activities[index] if index is not None else None
            if is_complete(entry):
                continue
            kept = {**(entry or prior_entry), COMPLETE: True}
            for name in COMPLETION_FIELDS:
                if name in prior_entry:
                    kept[name] = prior_entry[name]
            if index is None:
                activities.append(kept)
            else:
                activities[index] = kept
            retained.append(activity_id)

        if retained and from_remote:
            logger.warning(
                "reconcile_regression_blocked",
                event_id=event_id,
                team_id=team_id,
                activity_ids=retained,
            )

        team["activities"] = activities
        changed = team != prior
        if changed:
            self._accepted[key] = team
        return ReconcileResult(
            team=copy.deepcopy(team),
            changed=changed,
            confirmed=confirmed,
            protected=protected,
            retained=retained,
        )


def _protect(
    entry: dict[str, Any] | None, activity_id: int, mark: LocalCompletionMark
) -> dict[str, Any]:
    return {
        **(entry or {"id": activity_id}),
        COMPLETE: True,
        COMPLETE_TIME: int(mark.completed_at),
    }
