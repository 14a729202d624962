import json
import uuid

import redis
import structlog
from flask import Blueprint, jsonify

from app.models.donation import recent_succeeded_for_player
from app.models.player import get_player, get_player_by_slug
from app.models.square import list_squares_for_player
from app.services.purchase_service import player_cache_key
from app.utils.cache import PLAYER_PAGE_TTL, r
from app.utils.money import format_cents

players_bp = Blueprint("players", __name__, url_prefix="/api/players")
log = structlog.get_logger(__name__)


def _lookup(id_or_slug: str):
    try:
        uuid.UUID(id_or_slug)
    except ValueError:
        return get_player_by_slug(id_or_slug)
    return get_player(id_or_slug)


def _square_out(s: dict) -> dict:
    return {
        "id": str(s["id"]),
        "x": s["position_x"],
        "y": s["position_y"],
        "valueCents": int(s["value_cents"]),
        "value": format_cents(s["value_cents"]),
        "isPurchased": bool(s["is_purchased"]),
        "donorName": None if s["is_anonymous"] else s["donor_name"],
    }


def _build_page(player: dict) -> dict:
    pid = str(player["id"])
    goal = int(player["goal_cents"])
    raised = int(player["total_raised_cents"])
    return {
        "player": {
            "id": pid,
            "name": player["name"],
            "slug": player["slug"],
            "goalCents": goal,
            "totalRaisedCents": raised,
            "goal": format_cents(goal),
            "totalRaised": format_cents(raised),
            "percent": round(100.0 * raised / goal, 1) if goal else 0.0,
        },
        "squares": [_square_out(s) for s in list_squares_for_player(pid)],
        "recentDonations": recent_succeeded_for_player(pid, limit=10),
    }


@players_bp.get("/<id_or_slug>")
def player_page(id_or_slug):
    """
    Public heart grid for one player, with progress and recent donations.
    Cached in Redis; every ledger change drops the entry.
    """
    player = _lookup(id_or_slug)
    if not player or not player.get("is_active", True):
        return jsonify({"error": "player not found"}), 404

    key = player_cache_key(str(player["id"]))
    try:
        cached = r().get(key)
        if cached:
            return jsonify(json.loads(cached)), 200
    except redis.RedisError as e:
        log.warning("cache.read_failed", key=key, error=str(e))

    page = _build_page(player)
    try:
        r().setex(key, PLAYER_PAGE_TTL, json.dumps(page))
    except redis.RedisError as e:
        log.warning("cache.write_failed", key=key, error=str(e))
    return jsonify(page), 200
