import os
from typing import Any, Dict, Optional, Tuple

import structlog

from app.errors import MalformedPayloadError, SignatureVerificationError
from app.models.webhook_event import record_webhook_event
from app.services.config_service import ConfigService
from app.services.payment_providers import (
    FAILED,
    SUCCEEDED,
    PaymentProvider,
    WebhookEvent,
    load_event_json,
)
from app.services.purchase_service import (
    provider_for_webhook,
    reconcile_failed,
    reconcile_succeeded,
)
from app.utils.db import transaction
from app.utils.metrics import WEBHOOK_EVENTS

log = structlog.get_logger(__name__)


def _skip_verification() -> bool:
    return os.getenv("DEV_WEBHOOK_NO_VERIFY") == "1"


def _verify(
    provider: PaymentProvider, payload: bytes, signature: Optional[str], url: Optional[str]
) -> Dict[str, Any]:
    """
    Signature first, then JSON. Raises SignatureVerificationError or
    MalformedPayloadError; nothing has touched the database yet.
    """
    if _skip_verification():
        log.warning("webhook.verification_skipped", provider=provider.name)
        return load_event_json(payload)
    return provider.verify_webhook(payload, signature, url)


def _record_ignored(event: WebhookEvent) -> bool:
    with transaction() as cur:
        return record_webhook_event(
            cur, event.provider, event.event_id, event.event_type, event.raw
        )


def _dispatch(event: WebhookEvent) -> Dict[str, Any]:
    if event.outcome == SUCCEEDED:
        outcome = reconcile_succeeded(event)
    elif event.outcome == FAILED:
        outcome = reconcile_failed(event)
    else:
        inserted = _record_ignored(event)
        log.debug("webhook.ignored", provider=event.provider, type=event.event_type)
        return {"ok": True, "ignored": True, "duplicate": not inserted}

    WEBHOOK_EVENTS.labels(provider=event.provider, outcome=outcome.status).inc()
    return {
        "ok": True,
        "status": outcome.status,
        "duplicate": outcome.status == "duplicate",
    }


def _process(
    config: ConfigService,
    provider_name: str,
    payload: bytes,
    signature: Optional[str],
    url: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    provider = provider_for_webhook(config, provider_name)
    try:
        raw = _verify(provider, payload, signature, url)
    except SignatureVerificationError as e:
        WEBHOOK_EVENTS.labels(provider=provider_name, outcome="bad_signature").inc()
        log.warning("webhook.bad_signature", provider=provider_name, reason=e.message)
        return e.status_code, e.to_dict()
    except MalformedPayloadError as e:
        WEBHOOK_EVENTS.labels(provider=provider_name, outcome="malformed").inc()
        return e.status_code, e.to_dict()

    event = provider.parse_event(raw)
    log.info(
        "webhook.received",
        provider=provider_name,
        event_id=event.event_id,
        type=event.event_type,
        payment_id=event.payment_id,
    )
    try:
        return 200, _dispatch(event)
    except Exception:
        WEBHOOK_EVENTS.labels(provider=provider_name, outcome="error").inc()
        log.exception(
            "webhook.reconcile_error",
            provider=provider_name,
            event_id=event.event_id,
            payment_id=event.payment_id,
        )
        return 200, {"ok": True, "error": "processing failed"}


def process_stripe_event(
    config: ConfigService, payload: bytes, sig_header: Optional[str]
) -> Tuple[int, Dict[str, Any]]:
    """
    Handle payment_intent.succeeded / payment_failed / canceled idempotently.
    """
    return _process(config, "stripe", payload, sig_header)


def process_square_event(
    config: ConfigService,
    payload: bytes,
    signature: Optional[str],
    request_url: Optional[str] = None,
) -> Tuple[int, Dict[str, Any]]:
    """
    Handle payment.completed / payment.updated / payment.failed idempotently.
    The signature covers the notification URL, so the configured
    SQUARE_WEBHOOK_URL wins over the URL Flask saw behind a proxy.
    """
    return _process(config, "square", payload, signature, request_url)
