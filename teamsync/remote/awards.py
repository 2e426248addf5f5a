"""Point award rules: one formula for every completion path.

Plain completion, queued completion, exclusive arbitration and manual
valuation all derive the points delta from compute_award(), evaluated
against the entry read inside the writing transaction, so replaying a
completion awards nothing the second time.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from teamsync.remote.contracts import AWARDED_POINTS, COMPLETE, COMPLETE_TIME, DATA, VALORATE

# An explicit delta, or a rule evaluated against the entry as read in-transaction.
PointsDelta = int | Callable[[Mapping[str, Any] | None], int] | None


def valorate_for(activity: Mapping[str, Any], success: bool) -> int:
    """0 while the result awaits organizer review, 1 once it is valued."""
    return 0 if activity.get("manual_review", False) else 1


def awarded_points_for(activity: Mapping[str, Any], success: bool, valorate: int = 1) -> int:
    """Points an entry should carry: the activity's points for a valued success."""
    if valorate != 1 or not success:
        return 0
    return int(activity.get("points") or 0)


def prior_awarded_points(entry: Mapping[str, Any] | None) -> int:
    if not entry:
        return 0
    return int(entry.get(AWARDED_POINTS) or 0)


def compute_award(
    activity: Mapping[str, Any],
    success: bool,
    prior_awarded_points: int,
    *,
    valorate: int = 1,
) -> int:
    """Delta to add to the team total so the entry ends up awarding the right amount."""
    return awarded_points_for(activity, success, valorate) - prior_awarded_points


def award_delta(
    activity: Mapping[str, Any], success: bool, *, valorate: int = 1
) -> Callable[[Mapping[str, Any] | None], int]:
    """Deferred compute_award() for transactions that read the prior entry themselves."""

    def _delta(prior_entry: Mapping[str, Any] | None) -> int:
        return compute_award(
            activity, success, prior_awarded_points(prior_entry), valorate=valorate
        )

    return _delta


def resolve_points_delta(points_to_add: PointsDelta, prior_entry: Mapping[str, Any] | None) -> int:
    if points_to_add is None:
        return 0
    if callable(points_to_add):
        return int(points_to_add(prior_entry))
    return int(points_to_add)


def completion_fields(
    activity: Mapping[str, Any],
    success: bool,
    media: Mapping[str, Any] | None,
    valorate: int,
    completed_at: float,
) -> dict[str, Any]:
    """Entry fields written when a completion lands remotely."""
    return {
        COMPLETE: True,
        COMPLETE_TIME: int(completed_at),
        DATA: (media or {}).get("data"),
        VALORATE: valorate,
        AWARDED_POINTS: awarded_points_for(activity, success, valorate),
    }
