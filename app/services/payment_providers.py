"""
Payment provider gateway.

One class per backend behind a single contract:

- StripeProvider     intent-based: the browser confirms the PaymentIntent,
                     the webhook is the authoritative result.
- SquareProvider     token-based: the browser tokenizes the card, the server
                     charges the token; webhooks confirm non-terminal results.
- SimulationProvider no external call, every settlement succeeds.

get_gateway() picks the active provider once per request and silently falls
back to simulation when that provider is switched off or not credentialed.
"""

from __future__ import annotations
import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
import stripe
import structlog

from app.errors import (
    MalformedPayloadError,
    ProviderConfigurationError,
    ProviderTransientError,
    SignatureVerificationError,
)
from app.services.config_service import ProviderConfig

log = structlog.get_logger(__name__)

SUCCEEDED = "succeeded"
PENDING = "pending"
FAILED = "failed"

SQUARE_API_VERSION = "2024-10-17"
SQUARE_BASE_URLS = {
    "production": "https://connect.squareup.com",
    "sandbox": "https://connect.squareupsandbox.com",
}
SQUARE_SIGNATURE_HEADER = "x-square-hmacsha256-signature"
STRIPE_SIGNATURE_HEADER = "Stripe-Signature"


@dataclass(frozen=True)
class DonorInfo:
    name: Optional[str] = None
    email: Optional[str] = None
    is_anonymous: bool = False

    @property
    def display_name(self) -> Optional[str]:
        return None if self.is_anonymous else self.name


@dataclass(frozen=True)
class IntentResult:
    provider: str
    client_secret: Optional[str] = None
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentResult:
    status: str
    payment_id: str
    order_id: Optional[str] = None
    raw_status: Optional[str] = None
    decline_reason: Optional[str] = None


@dataclass(frozen=True)
class WebhookEvent:
    """A provider notification reduced to what reconciliation needs."""

    provider: str
    event_id: str
    event_type: str
    outcome: str  # succeeded | failed | ignored
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    square_ids: List[str] = field(default_factory=list)
    player_id: Optional[str] = None
    amount_cents: Optional[int] = None
    donor: DonorInfo = DonorInfo()
    raw: Dict[str, Any] = field(default_factory=dict)


def _split_ids(raw: Optional[str]) -> List[str]:
    return [s.strip() for s in (raw or "").split(",") if s.strip()]


def load_event_json(payload: bytes) -> Dict[str, Any]:
    try:
        event = json.loads(payload.decode("utf-8") or "{}")
    except (UnicodeDecodeError, json.JSONDecodeError):
        raise MalformedPayloadError("bad payload")
    if not isinstance(event, dict):
        raise MalformedPayloadError("bad payload")
    return event


class PaymentProvider:
    name = ""
    accepts_tokens = False

    def is_configured(self) -> bool:
        raise NotImplementedError

    def create_intent(
        self,
        *,
        amount_cents: int,
        square_ids: List[str],
        player_id: str,
        donor: DonorInfo,
    ) -> IntentResult:
        raise NotImplementedError

    def settle(
        self,
        token: str,
        *,
        amount_cents: int,
        square_ids: List[str],
        player_id: str,
        donor: DonorInfo,
    ) -> PaymentResult:
        """Charge a browser-issued card token. Only token providers implement this;
        intent providers settle through their webhook."""
        raise NotImplementedError

    def refund(self, payment_id: str, amount_cents: int) -> None:
        raise NotImplementedError

    def verify_webhook(
        self, payload: bytes, signature: Optional[str], url: Optional[str] = None
    ) -> Dict[str, Any]:
        raise SignatureVerificationError(f"{self.name} does not send webhooks")

    def parse_event(self, event: Dict[str, Any]) -> WebhookEvent:
        raise NotImplementedError


class SimulationProvider(PaymentProvider):
    name = "simulation"

    def is_configured(self) -> bool:
        return True

    def create_intent(self, *, amount_cents, square_ids, player_id, donor):
        return IntentResult(provider=self.name)

    def settle(self, token, *, amount_cents, square_ids, player_id, donor):
        payment_id = f"sim_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
        return PaymentResult(status=SUCCEEDED, payment_id=payment_id, raw_status="SIMULATED")

    def refund(self, payment_id, amount_cents):
        log.info("simulation.refund", payment_id=payment_id, amount_cents=amount_cents)


class StripeProvider(PaymentProvider):
    name = "stripe"

    def __init__(self, cfg: ProviderConfig):
        self._secret = (cfg.stripe_secret_key or "").strip()
        self._webhook_secret = (cfg.stripe_webhook_secret or "").strip()
        self._currency = cfg.currency

    def is_configured(self) -> bool:
        return self._secret.startswith(("sk_", "rk_"))

    def create_intent(self, *, amount_cents, square_ids, player_id, donor):
        try:
            pi = stripe.PaymentIntent.create(
                api_key=self._secret,
                amount=amount_cents,
                currency=self._currency,
                automatic_payment_methods={"enabled": True},
                metadata={
                    "player_id": player_id,
                    "square_ids": ",".join(square_ids),
                    "donor_email": donor.email or "",
                    "donor_name": donor.name or "",
                    "is_anonymous": "1" if donor.is_anonymous else "0",
                },
            )
        except stripe.AuthenticationError as e:
            raise ProviderConfigurationError(f"stripe rejected credentials: {e}")
        except stripe.StripeError as e:
            raise ProviderTransientError(f"stripe unavailable: {e}")
        return IntentResult(
            provider=self.name, client_secret=pi.client_secret, payment_id=pi.id
        )

    def refund(self, payment_id, amount_cents):
        stripe.Refund.create(
            api_key=self._secret, payment_intent=payment_id, amount=amount_cents
        )

    def verify_webhook(self, payload, signature, url=None):
        if not self._webhook_secret:
            raise SignatureVerificationError("stripe webhook secret not configured")
        if not signature:
            raise SignatureVerificationError("missing Stripe-Signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self._webhook_secret
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise SignatureVerificationError(f"invalid stripe signature: {e}")
        return load_event_json(payload)

    def parse_event(self, event):
        ev_type = event.get("type") or ""
        obj = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}

        if ev_type == "payment_intent.succeeded":
            outcome = SUCCEEDED
        elif ev_type in ("payment_intent.payment_failed", "payment_intent.canceled"):
            outcome = FAILED
        else:
            outcome = "ignored"

        email = metadata.get("donor_email") or None
        if email == "anonymous":
            email = None
        amount = obj.get("amount_received") or obj.get("amount")
        return WebhookEvent(
            provider=self.name,
            event_id=event.get("id") or f"{ev_type}:{obj.get('id')}",
            event_type=ev_type,
            outcome=outcome,
            payment_id=obj.get("id"),
            square_ids=_split_ids(metadata.get("square_ids") or metadata.get("squareId")),
            player_id=metadata.get("player_id") or metadata.get("playerId"),
            amount_cents=int(amount) if amount is not None else None,
            donor=DonorInfo(
                name=metadata.get("donor_name") or None,
                email=email,
                is_anonymous=metadata.get("is_anonymous") == "1",
            ),
            raw=event,
        )


class SquareProvider(PaymentProvider):
    name = "square"
    accepts_tokens = True

    _STATUS_MAP = {
        "COMPLETED": SUCCEEDED,
        "APPROVED": PENDING,
        "PENDING": PENDING,
    }

    def __init__(self, cfg: ProviderConfig, *, session: Optional[requests.Session] = None):
        self._token = (cfg.square_access_token or "").strip()
        self._location_id = (cfg.square_location_id or "").strip()
        self._application_id = (cfg.square_application_id or "").strip()
        self._signature_key = (cfg.square_webhook_signature_key or "").strip()
        self._webhook_url = (cfg.square_webhook_url or "").strip()
        self._currency = cfg.currency.upper()
        self._base_url = SQUARE_BASE_URLS[cfg.square_environment]
        self._http = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self._token and self._location_id and self._application_id)

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        try:
            resp = self._http.post(
                f"{self._base_url}{path}",
                json=body,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Square-Version": SQUARE_API_VERSION,
                    "Content-Type": "application/json",
                },
                timeout=15,
            )
        except requests.RequestException as e:
            raise ProviderTransientError(f"square unavailable: {e}")
        if resp.status_code >= 500:
            raise ProviderTransientError(f"square returned {resp.status_code}")
        if resp.status_code == 401:
            raise ProviderConfigurationError("square rejected the access token")
        return resp

    def create_intent(self, *, amount_cents, square_ids, player_id, donor):
        # The browser tokenizes the card; nothing to create server-side yet.
        return IntentResult(provider=self.name)

    def settle(self, token, *, amount_cents, square_ids, player_id, donor):
        body = {
            "source_id": token,
            "idempotency_key": str(uuid.uuid4()),
            "amount_money": {"amount": amount_cents, "currency": self._currency},
            "location_id": self._location_id,
            "reference_id": square_ids[0],
            "note": f"Donation for player {player_id}",
        }
        if donor.email:
            body["buyer_email_address"] = donor.email

        resp = self._post("/v2/payments", body)
        data = resp.json() if resp.content else {}
        payment = data.get("payment") or {}
        errors = data.get("errors") or []

        if not payment.get("id"):
            reason = "; ".join(e.get("detail") or e.get("code", "") for e in errors)
            return PaymentResult(
                status=FAILED,
                payment_id="",
                raw_status=(errors[0].get("code") if errors else str(resp.status_code)),
                decline_reason=reason or "payment was not completed",
            )

        raw_status = payment.get("status") or "UNKNOWN"
        status = self._STATUS_MAP.get(raw_status, FAILED)
        return PaymentResult(
            status=status,
            payment_id=payment["id"],
            order_id=payment.get("order_id"),
            raw_status=raw_status,
            decline_reason=None if status != FAILED else f"square status {raw_status}",
        )

    def refund(self, payment_id, amount_cents):
        resp = self._post(
            "/v2/refunds",
            {
                "idempotency_key": str(uuid.uuid4()),
                "payment_id": payment_id,
                "amount_money": {"amount": amount_cents, "currency": self._currency},
                "reason": "square already sold",
            },
        )
        if resp.status_code >= 400:
            raise ProviderTransientError(f"square refund failed: {resp.text[:200]}")

    def signature_for(self, payload: bytes, url: str) -> str:
        digest = hmac.new(
            self._signature_key.encode("utf-8"),
            url.encode("utf-8") + payload,
            hashlib.sha256,
        ).digest()
        return base64.b64encode(digest).decode("ascii")

    def verify_webhook(self, payload, signature, url=None):
        if not self._signature_key:
            raise SignatureVerificationError("square webhook signature key not configured")
        notification_url = self._webhook_url or url or ""
        expected = self.signature_for(payload, notification_url)
        if not signature or not hmac.compare_digest(expected, signature):
            raise SignatureVerificationError("invalid square signature")
        return load_event_json(payload)

    def parse_event(self, event):
        ev_type = event.get("type") or ""
        payment = ((event.get("data") or {}).get("object") or {}).get("payment") or {}
        status = payment.get("status")

        if ev_type == "payment.completed":
            outcome = SUCCEEDED
        elif ev_type == "payment.failed":
            outcome = FAILED
        elif ev_type == "payment.updated" and status == "COMPLETED":
            outcome = SUCCEEDED
        elif ev_type == "payment.updated" and status in ("FAILED", "CANCELED"):
            outcome = FAILED
        else:
            outcome = "ignored"

        money = payment.get("amount_money") or {}
        amount = money.get("amount")
        ref = payment.get("reference_id")
        return WebhookEvent(
            provider=self.name,
            event_id=event.get("event_id") or f"{ev_type}:{payment.get('id')}:{status}",
            event_type=ev_type,
            outcome=outcome,
            payment_id=payment.get("id"),
            order_id=payment.get("order_id"),
            square_ids=[ref] if ref else [],
            amount_cents=int(amount) if amount is not None else None,
            donor=DonorInfo(email=payment.get("buyer_email_address") or None),
            raw=event,
        )


def build_provider(name: str, cfg: ProviderConfig) -> PaymentProvider:
    if name == StripeProvider.name:
        return StripeProvider(cfg)
    if name == SquareProvider.name:
        return SquareProvider(cfg)
    return SimulationProvider()


def get_gateway(cfg: ProviderConfig) -> PaymentProvider:
    """
    The provider purchases go through. Anything short of a fully credentialed
    active provider resolves to simulation; that downgrade is only logged.
    A provider whose current credential was refused counts as unconfigured.
    """
    if cfg.active == "none":
        return SimulationProvider()
    if cfg.active in cfg.rejected:
        log.warning(
            "gateway.fallback_to_simulation",
            provider=cfg.active,
            reason=f"{cfg.active} rejected its credentials",
        )
        return SimulationProvider()
    provider = build_provider(cfg.active, cfg)
    if provider.is_configured():
        return provider
    err = ProviderConfigurationError(f"{cfg.active} is active but not configured")
    log.warning("gateway.fallback_to_simulation", provider=cfg.active, reason=err.message)
    return SimulationProvider()
