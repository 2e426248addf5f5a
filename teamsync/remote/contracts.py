"""Shared contract types for remote team records.

Activity entries are plain dicts inside a team's `activities` JSONB list.
These helpers are the only place that knows the entry field names.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

COMPLETE = "complete"
COMPLETE_TIME = "complete_time"
DATA = "data"
VALORATE = "valorate"
AWARDED_POINTS = "awarded_points"
DELETED = "deleted"
EXCLUSIVE = "exclusive"

# Fields preserved together when a completed entry is protected from regression.
COMPLETION_FIELDS: tuple[str, ...] = (COMPLETE_TIME, DATA, VALORATE, AWARDED_POINTS)


@dataclass(frozen=True)
class ArbitrationResult:
    """Outcome of an exclusive-activity claim.

    accepted=False is an expected result, not a failure: another team got
    there first and `already_completed_by` names it.
    """

    accepted: bool
    already_completed_by: int | None = None
    points_awarded: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "accepted": self.accepted,
            "already_completed_by": self.already_completed_by,
            "points_awarded": self.points_awarded,
        }


def find_entry(activities: Sequence[Mapping[str, Any]] | None, activity_id: int) -> int | None:
    """Index of the entry with `activity_id`, or None."""
    for index, entry in enumerate(activities or ()):
        if entry.get("id") == activity_id:
            return index
    return None


def is_complete(entry: Mapping[str, Any] | None) -> bool:
    return bool(entry) and entry.get(COMPLETE) is True


def holds_completion(entry: Mapping[str, Any] | None) -> bool:
    """Completed and still visible: the winning state of an exclusive activity."""
    return is_complete(entry) and not entry.get(DELETED, False)
