"""
Running totals per player and goal milestone detection.

A total only ever moves inside the same transaction as the donation rows
that justify it; there is deliberately no recompute path.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import structlog

from app.errors import NotFoundError
from app.models.player import increment_total_raised
from app.utils.metrics import MILESTONES

log = structlog.get_logger(__name__)

MILESTONE_HALF = "50%"
MILESTONE_GOAL = "100%"


@dataclass(frozen=True)
class LedgerUpdate:
    player_id: str
    previous_cents: int
    new_cents: int
    goal_cents: int

    @property
    def milestone(self) -> Optional[str]:
        return check_milestone(self.previous_cents, self.new_cents, self.goal_cents)


def credit_player(cur, player_id: str, amount_cents: int) -> LedgerUpdate:
    if amount_cents < 0:
        raise ValueError("ledger credits must be non-negative")
    row = increment_total_raised(cur, player_id, amount_cents)
    if row is None:
        raise NotFoundError("player not found", extra={"player_id": player_id})
    previous, new, goal = row
    return LedgerUpdate(
        player_id=player_id, previous_cents=previous, new_cents=new, goal_cents=goal
    )


def check_milestone(previous_cents: int, new_cents: int, goal_cents: int) -> Optional[str]:
    """
    At most one milestone per update; 100% wins when both are crossed.
    Compared in cents so 50% of an odd goal is not rounded.
    """
    if goal_cents <= 0 or new_cents <= previous_cents:
        return None
    if previous_cents < goal_cents <= new_cents:
        return MILESTONE_GOAL
    if 2 * previous_cents < goal_cents <= 2 * new_cents:
        return MILESTONE_HALF
    return None


def record_milestone(update: LedgerUpdate) -> Optional[str]:
    milestone = update.milestone
    if milestone:
        MILESTONES.labels(milestone=milestone).inc()
        log.info(
            "ledger.milestone_reached",
            player_id=update.player_id,
            milestone=milestone,
            previous_cents=update.previous_cents,
            new_cents=update.new_cents,
            goal_cents=update.goal_cents,
        )
    return milestone
