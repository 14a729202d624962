import uuid

from flask import Blueprint, current_app, jsonify, request
import structlog

from app.errors import ValidationError
from app.services.payment_providers import DonorInfo
from app.services.purchase_service import (
    cancel_payment,
    create_intent,
    process_simulation_payment,
    process_token_payment,
)
from app.utils.rate_limit import rate_limited

payment_bp = Blueprint("payment", __name__, url_prefix="/api/payment")
log = structlog.get_logger(__name__)


def _config():
    return current_app.extensions["config_service"]


def _body() -> dict:
    body = request.get_json(force=True, silent=True)
    if not isinstance(body, dict):
        raise ValidationError("JSON body required")
    return body


def _square_ids(body: dict) -> list[str]:
    ids = body.get("squareIds")
    if ids is None and body.get("squareId"):
        ids = [body["squareId"]]
    if not isinstance(ids, list) or not ids:
        raise ValidationError("squareId or squareIds required")
    out = []
    for i in ids:
        try:
            out.append(str(uuid.UUID(i.strip())))
        except (AttributeError, ValueError):
            raise ValidationError("squareIds must be square UUIDs", extra={"squareId": i})
    return out


def _donor(body: dict) -> DonorInfo:
    email = (body.get("donorEmail") or "").strip() or None
    if email and "@" not in email:
        raise ValidationError("donorEmail is not a valid email address")
    return DonorInfo(
        name=(body.get("donorName") or "").strip() or None,
        email=email,
        is_anonymous=bool(body.get("isAnonymous")),
    )


@payment_bp.post("/create-intent")
@rate_limited("payment")
def create_payment_intent():
    body = _body()
    resp = create_intent(_config(), _square_ids(body), _donor(body))
    return jsonify(resp), 200


@payment_bp.post("/square/process")
@rate_limited("payment")
def square_process():
    body = _body()
    square_ids = _square_ids(body)
    source_id = (body.get("sourceId") or "").strip()
    if not source_id:
        raise ValidationError("sourceId required")
    result = process_token_payment(_config(), square_ids, source_id, _donor(body))
    return jsonify(result.to_dict()), 200


@payment_bp.post("/simulation/process")
@rate_limited("payment")
def simulation_process():
    body = _body()
    result = process_simulation_payment(_config(), _square_ids(body), _donor(body))
    return jsonify(result.to_dict()), 200


@payment_bp.post("/square/cancel")
def square_cancel():
    body = _body()
    square_ids = _square_ids(body)
    payment_id = (body.get("paymentId") or "").strip() or None
    try:
        cancel_payment(square_ids, payment_id)
    except Exception:
        log.exception("payment.cancel_failed", square_ids=square_ids, payment_id=payment_id)
    return jsonify({"success": True}), 200
