from flask import Blueprint, current_app, request, jsonify
from app.services.payment_providers import SQUARE_SIGNATURE_HEADER, STRIPE_SIGNATURE_HEADER
from app.services.webhook_service import process_square_event, process_stripe_event

webhooks_bp = Blueprint("webhooks", __name__)


@webhooks_bp.post("/api/payment/webhook")
def stripe_webhook():
    status, resp = process_stripe_event(
        current_app.extensions["config_service"],
        payload=request.get_data(),
        sig_header=request.headers.get(STRIPE_SIGNATURE_HEADER),
    )
    return jsonify(resp), status


@webhooks_bp.post("/api/payment/square/webhook")
def square_webhook():
    status, resp = process_square_event(
        current_app.extensions["config_service"],
        payload=request.get_data(),
        signature=request.headers.get(SQUARE_SIGNATURE_HEADER),
        request_url=request.url,
    )
    return jsonify(resp), status
