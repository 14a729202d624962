from flask import Blueprint, Response, current_app, jsonify, request
from prometheus_client import REGISTRY, generate_latest, CONTENT_TYPE_LATEST
import structlog

from app.errors import AppError, ValidationError
from app.models.audit_log import list_audit_events
from app.models.player import list_player_ids
from app.models.setting import list_settings, upsert_settings
from app.services.payment_providers import DonorInfo
from app.services.purchase_service import invalidate_player_cache, record_manual_donation
from app.services.randomizer import create_player_with_grid, rerandomize
from app.utils.authz import require_admin
from app.utils.money import to_cents

admin_bp = Blueprint("admin", __name__)
log = structlog.get_logger(__name__)

SECRET_MARKERS = ("SECRET", "TOKEN", "SIGNATURE_KEY", "ACCESS")


def _config():
    return current_app.extensions["config_service"]


def _amount_cents(raw, field: str) -> int:
    try:
        return to_cents(raw)
    except ValueError:
        raise ValidationError(f"{field} must be a number")


@admin_bp.get("/admin/metrics")
@require_admin
def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        generate_latest(REGISTRY),
        mimetype=CONTENT_TYPE_LATEST,
    )


@admin_bp.post("/api/admin/players")
@require_admin
def create_player():
    body = request.get_json(force=True, silent=True) or {}
    name = (body.get("name") or "").strip()
    if not name:
        raise ValidationError("name required")
    goal = body.get("goal")
    player = create_player_with_grid(
        name=name,
        goal_cents=None if goal is None else _amount_cents(goal, "goal"),
        config=_config(),
        owner_email=(body.get("ownerEmail") or "").strip() or None,
        slug=(body.get("slug") or "").strip() or None,
    )
    return jsonify(player), 201


@admin_bp.post("/api/admin/players/randomize-all")
@require_admin
def randomize_all():
    """
    Redraw unpurchased square values for every active player. A player whose
    goal cannot be met under the current bounds is reported and skipped.
    """
    config = _config()
    results = []
    updated = failed = 0
    for player_id in list_player_ids():
        try:
            result = rerandomize(player_id, config)
        except AppError as e:
            failed += 1
            log.warning("squares.rerandomize_skipped", player_id=player_id, error=e.message)
            results.append({"player_id": player_id, "error": e.message, **e.extra})
            continue
        updated += result["squares_updated"]
        results.append({"player_id": player_id, **result})
        try:
            invalidate_player_cache(player_id)
        except Exception:
            log.exception("cache.invalidate_failed", player_id=player_id)
    log.info("squares.rerandomized_all", players=len(results), squares_updated=updated, failed=failed)
    return jsonify({
        "players": len(results),
        "failed": failed,
        "squares_updated": updated,
        "results": results,
    }), 200


@admin_bp.post("/api/admin/players/<player_id>/randomize-squares")
@require_admin
def randomize_squares(player_id):
    result = rerandomize(player_id, _config())
    try:
        invalidate_player_cache(player_id)
    except Exception:
        log.exception("cache.invalidate_failed", player_id=player_id)
    return jsonify(result), 200


@admin_bp.post("/api/admin/players/<player_id>/manual-donation")
@require_admin
def manual_donation(player_id):
    body = request.get_json(force=True, silent=True) or {}
    if body.get("amount") is None:
        raise ValidationError("amount required")
    result = record_manual_donation(
        player_id=player_id,
        amount_cents=_amount_cents(body["amount"], "amount"),
        method=(body.get("method") or "cash").strip().lower(),
        donor=DonorInfo(
            name=(body.get("donorName") or "").strip() or None,
            email=(body.get("donorEmail") or "").strip() or None,
            is_anonymous=bool(body.get("isAnonymous")),
        ),
        square_id=body.get("squareId") or None,
        notes=body.get("notes"),
    )
    return jsonify(result), 201


@admin_bp.put("/api/admin/settings")
@require_admin
def update_settings():
    body = request.get_json(force=True, silent=True) or {}
    settings = body.get("settings")
    if not isinstance(settings, dict) or not settings:
        raise ValidationError("settings must be a non-empty object")
    items = [
        {
            "key": key,
            "value": "" if value is None else value,
            "category": "payment" if key.startswith(("STRIPE_", "SQUARE_", "PAYMENT_")) else "app",
            "is_secret": any(m in key for m in SECRET_MARKERS),
        }
        for key, value in settings.items()
    ]
    count = upsert_settings(items)
    _config().invalidate()
    log.info("settings.updated", keys=sorted(settings))
    return jsonify({"updated": count}), 200


@admin_bp.get("/api/admin/settings")
@require_admin
def get_settings():
    category = request.args.get("category") or None
    out = []
    for s in list_settings(category):
        value = s["value"]
        if s["is_secret"] and value:
            value = "****" + value[-4:] if len(value) > 8 else "****"
        out.append({
            "key": s["key"],
            "value": value,
            "category": s["category"],
            "isSecret": bool(s["is_secret"]),
        })
    return jsonify({"settings": out}), 200


@admin_bp.get("/api/admin/players/<player_id>/audit-logs")
@require_admin
def audit_logs(player_id):
    try:
        limit = min(max(int(request.args.get("limit", 50)), 1), 200)
    except ValueError:
        raise ValidationError("limit must be an integer")
    events = list_audit_events(player_id, limit=limit)
    for e in events:
        e["id"] = str(e["id"])
        if e["donation_id"] is not None:
            e["donation_id"] = str(e["donation_id"])
        if e["created_at"] is not None:
            e["created_at"] = e["created_at"].isoformat()
    return jsonify({"events": events}), 200
