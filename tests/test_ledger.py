"""
Unit tests for running totals and milestone detection.
"""
import pytest
from prometheus_client import REGISTRY

from app.errors import NotFoundError
from app.services.ledger_service import (
    MILESTONE_GOAL,
    MILESTONE_HALF,
    LedgerUpdate,
    check_milestone,
    credit_player,
    record_milestone,
)


def _milestone_count(label):
    return REGISTRY.get_sample_value("heart_milestones_total", {"milestone": label}) or 0.0


class TestCheckMilestone:
    @pytest.mark.parametrize(
        "previous,new,goal,expected",
        [
            (0, 5000, 10000, MILESTONE_HALF),
            (4500, 5500, 10000, MILESTONE_HALF),
            (5000, 6000, 10000, None),
            (5500, 6000, 10000, None),
            (9000, 10000, 10000, MILESTONE_GOAL),
            (4000, 12000, 10000, MILESTONE_GOAL),
            (10000, 11000, 10000, None),
            (0, 100, 10000, None),
            (0, 5000, 10001, None),
            (0, 5001, 10001, MILESTONE_HALF),
            (0, 1000, 0, None),
            (6000, 6000, 10000, None),
        ],
    )
    def test_thresholds(self, previous, new, goal, expected):
        assert check_milestone(previous, new, goal) == expected

    def test_update_property(self):
        update = LedgerUpdate(player_id="p", previous_cents=4900, new_cents=5000, goal_cents=10000)
        assert update.milestone == MILESTONE_HALF


class TestCreditPlayer:
    def test_increments_total(self, store):
        pid = store.add_player(goal_cents=10000, total_raised_cents=2500)
        with store.transaction() as cur:
            update = credit_player(cur, pid, 1500)
        assert (update.previous_cents, update.new_cents, update.goal_cents) == (2500, 4000, 10000)
        assert store.players[pid]["total_raised_cents"] == 4000

    def test_unknown_player(self, store):
        with pytest.raises(NotFoundError):
            with store.transaction() as cur:
                credit_player(cur, "missing", 100)

    def test_negative_credit_rejected(self, store):
        pid = store.add_player()
        with pytest.raises(ValueError):
            with store.transaction() as cur:
                credit_player(cur, pid, -1)


class TestRecordMilestone:
    def test_counts_crossing(self):
        before = _milestone_count(MILESTONE_GOAL)
        update = LedgerUpdate(player_id="p", previous_cents=9500, new_cents=10500, goal_cents=10000)
        assert record_milestone(update) == MILESTONE_GOAL
        assert _milestone_count(MILESTONE_GOAL) == before + 1

    def test_no_crossing_no_count(self):
        before = _milestone_count(MILESTONE_HALF)
        update = LedgerUpdate(player_id="p", previous_cents=6000, new_cents=6500, goal_cents=10000)
        assert record_milestone(update) is None
        assert _milestone_count(MILESTONE_HALF) == before
