"""
Heart grid layout and square value assignment.

Values are integer cents. generate() draws every value from [min, max] in
whole-dollar steps, then redistributes the difference to the target across
squares without leaving the clamp, so the grid always sums to the target
exactly.
"""

from __future__ import annotations
import random
from typing import List, Optional, Tuple

import structlog

from app.errors import ConfigurationError, NotFoundError
from app.models.player import insert_player, lock_player, slug_exists
from app.models.square import (
    insert_squares,
    lock_squares_for_player,
    update_unpurchased_values,
)
from app.services.config_service import ConfigService
from app.utils.db import transaction
from app.utils.slug import slugify_with_fallback

log = structlog.get_logger(__name__)

HEART_GRID_SIZE = 15
DEFAULT_STEP_CENTS = 100


def _heart_coordinates(grid_size: int = HEART_GRID_SIZE, scale: float = 6.0):
    center = grid_size // 2
    coords = []
    for y in range(grid_size):
        for x in range(grid_size):
            nx = (x - center) / scale
            ny = -(y - center) / scale
            if (nx * nx + ny * ny - 1) ** 3 - nx * nx * ny**3 < 0:
                coords.append((x, y))
    return tuple(coords)


# (x, y) cells shared by every player's grid; 127 cells on the 15x15 grid.
HEART_COORDINATES: Tuple[Tuple[int, int], ...] = _heart_coordinates()
HEART_SQUARE_COUNT = len(HEART_COORDINATES)


def _check_feasible(count: int, min_cents: int, max_cents: int, target_cents: int):
    if min_cents <= 0 or max_cents < min_cents:
        raise ConfigurationError(
            "square value bounds must satisfy 0 < min <= max",
            extra={"min_cents": min_cents, "max_cents": max_cents},
        )
    if count * min_cents > target_cents or count * max_cents < target_cents:
        raise ConfigurationError(
            "no square value assignment can reach the target",
            extra={
                "count": count,
                "min_cents": min_cents,
                "max_cents": max_cents,
                "target_cents": target_cents,
            },
        )


def _rebalance(
    values: List[int],
    min_cents: int,
    max_cents: int,
    target_cents: int,
    step_cents: int,
    rng: random.Random,
) -> None:
    diff = target_cents - sum(values)
    order = list(range(len(values)))

    # Whole steps first, one step per square per sweep so the correction is
    # spread evenly instead of piling onto the first squares.
    rng.shuffle(order)
    moved = True
    while abs(diff) >= step_cents and moved:
        moved = False
        for i in order:
            if abs(diff) < step_cents:
                break
            if diff > 0 and values[i] + step_cents <= max_cents:
                values[i] += step_cents
                diff -= step_cents
                moved = True
            elif diff < 0 and values[i] - step_cents >= min_cents:
                values[i] -= step_cents
                diff += step_cents
                moved = True

    # Sub-step remainder (odd cents, or squares within one step of a bound).
    rng.shuffle(order)
    for i in order:
        if diff == 0:
            break
        if diff > 0:
            delta = min(diff, max_cents - values[i])
        else:
            delta = -min(-diff, values[i] - min_cents)
        values[i] += delta
        diff -= delta

    if diff != 0:
        # unreachable once _check_feasible has passed
        raise ConfigurationError("square values could not be balanced")


def generate(
    count: int,
    min_cents: int,
    max_cents: int,
    target_cents: int,
    *,
    step_cents: int = DEFAULT_STEP_CENTS,
    rng: Optional[random.Random] = None,
) -> List[int]:
    """
    Return `count` values in [min_cents, max_cents] summing to target_cents.
    Raises ConfigurationError when no such assignment exists.
    """
    if count == 0:
        if target_cents != 0:
            raise ConfigurationError("cannot spread a non-zero target over no squares")
        return []
    _check_feasible(count, min_cents, max_cents, target_cents)

    rng = rng or random.SystemRandom()
    step = max(1, step_cents)
    slots = (max_cents - min_cents) // step
    values = [min_cents + step * rng.randint(0, slots) for _ in range(count)]
    _rebalance(values, min_cents, max_cents, target_cents, step, rng)
    rng.shuffle(values)
    return values


def rerandomize(
    player_id: str, config: ConfigService, *, rng: Optional[random.Random] = None
) -> dict:
    """
    Redraw values of the player's unpurchased squares. The remaining target is
    the goal minus what purchased squares are already worth.
    """
    bounds = config.get_square_randomization_config()
    with transaction() as cur:
        player = lock_player(cur, player_id)
        if not player:
            raise NotFoundError("player not found")
        squares = lock_squares_for_player(cur, player_id)
        open_squares = [s for s in squares if not s["is_purchased"]]
        sold_cents = sum(int(s["value_cents"]) for s in squares if s["is_purchased"])

        if not open_squares:
            return {"squares_updated": 0, "total_cents": sold_cents}

        remaining = int(player["goal_cents"]) - sold_cents
        values = generate(
            len(open_squares),
            bounds.min_cents,
            bounds.max_cents,
            remaining,
            rng=rng,
        )
        updated = update_unpurchased_values(
            cur, {str(s["id"]): v for s, v in zip(open_squares, values)}
        )

    log.info(
        "squares.rerandomized",
        player_id=player_id,
        squares_updated=updated,
        remaining_cents=remaining,
    )
    return {"squares_updated": updated, "total_cents": sold_cents + sum(values)}


def create_player_with_grid(
    *,
    name: str,
    goal_cents: Optional[int],
    config: ConfigService,
    owner_email: Optional[str] = None,
    slug: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> dict:
    bounds = config.get_square_randomization_config()
    goal = bounds.target_cents if goal_cents is None else goal_cents
    values = generate(
        HEART_SQUARE_COUNT, bounds.min_cents, bounds.max_cents, goal, rng=rng
    )

    with transaction() as cur:
        base = slugify_with_fallback(slug or name, fallback="player")
        candidate, i = base, 2
        while slug_exists(cur, candidate):
            candidate = f"{base}-{i}"
            i += 1
        player = insert_player(
            cur, name=name, slug=candidate, goal_cents=goal, owner_email=owner_email
        )
        insert_squares(
            cur,
            str(player["id"]),
            [(x, y, v) for (x, y), v in zip(HEART_COORDINATES, values)],
        )

    log.info("player.created", player_id=str(player["id"]), goal_cents=goal)
    return player
