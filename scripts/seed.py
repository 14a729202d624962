#!/usr/bin/env python3
"""
Seed the database with demo players and their heart grids.

Usage: python scripts/seed.py [--force]
Requires: migrations applied (alembic upgrade head)
"""
import os
import sys

# Ensure app is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from app.services.config_service import ConfigService
from app.services.randomizer import create_player_with_grid
from app.utils.db import get_db_connection
from app.utils.logging import configure_logging

log = structlog.get_logger("seed")

DEMO_PLAYERS = [
    ("Demo Player", "demo-player", 50000, "owner@example.com"),
    ("Jordan Rivers", "jordan-rivers", 75000, None),
]


def seed(force: bool = False):
    with get_db_connection() as conn, conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM players WHERE slug = 'demo-player'")
        if cur.fetchone()[0] > 0 and not force:
            log.info("seed.skipped", reason="demo-player exists, use --force")
            return

    config = ConfigService()
    for name, slug, goal_cents, owner in DEMO_PLAYERS:
        player = create_player_with_grid(
            name=name,
            goal_cents=goal_cents,
            config=config,
            owner_email=owner,
            slug=slug,
        )
        log.info("seed.player_created", player_id=str(player["id"]), slug=player["slug"])


if __name__ == "__main__":
    configure_logging()
    seed(force="--force" in sys.argv)
