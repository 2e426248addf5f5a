"""Tests for the single points formula shared by every completion path."""

from __future__ import annotations

from teamsync.remote.awards import (
    award_delta,
    awarded_points_for,
    completion_fields,
    compute_award,
    prior_awarded_points,
    resolve_points_delta,
    valorate_for,
)

ACTIVITY = {"id": 5, "points": 10}


class TestComputeAward:
    def test_first_success_awards_full_points(self) -> None:
        assert compute_award(ACTIVITY, True, 0) == 10

    def test_replay_awards_nothing(self) -> None:
        assert compute_award(ACTIVITY, True, 10) == 0

    def test_failure_awards_nothing(self) -> None:
        assert compute_award(ACTIVITY, False, 0) == 0

    def test_failure_after_success_takes_points_back(self) -> None:
        assert compute_award(ACTIVITY, False, 10) == -10

    def test_pending_review_awards_nothing(self) -> None:
        assert compute_award(ACTIVITY, True, 0, valorate=0) == 0

    def test_missing_points_is_zero(self) -> None:
        assert compute_award({"id": 1}, True, 0) == 0


class TestValorate:
    def test_default_is_valued(self) -> None:
        assert valorate_for(ACTIVITY, True) == 1

    def test_manual_review_is_pending(self) -> None:
        assert valorate_for({**ACTIVITY, "manual_review": True}, True) == 0

    def test_awarded_points_needs_valued_success(self) -> None:
        assert awarded_points_for(ACTIVITY, True, 1) == 10
        assert awarded_points_for(ACTIVITY, True, 0) == 0
        assert awarded_points_for(ACTIVITY, False, 1) == 0


class TestDeferredDelta:
    def test_reads_prior_entry(self) -> None:
        delta = award_delta(ACTIVITY, True)
        assert delta(None) == 10
        assert delta({"id": 5, "awarded_points": 10}) == 0
        assert delta({"id": 5, "awarded_points": 4}) == 6

    def test_resolve_variants(self) -> None:
        entry = {"id": 5, "awarded_points": 3}
        assert resolve_points_delta(None, entry) == 0
        assert resolve_points_delta(7, entry) == 7
        assert resolve_points_delta(lambda prior: 20 - prior_awarded_points(prior), entry) == 17


class TestCompletionFields:
    def test_fields_written_on_completion(self) -> None:
        fields = completion_fields(ACTIVITY, True, {"data": "photo.jpg"}, 1, 1700000000.9)
        assert fields == {
            "complete": True,
            "complete_time": 1700000000,
            "data": "photo.jpg",
            "valorate": 1,
            "awarded_points": 10,
        }

    def test_no_media(self) -> None:
        assert completion_fields(ACTIVITY, True, None, 0, 1.0)["data"] is None
