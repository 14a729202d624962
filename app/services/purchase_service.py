"""
Purchase orchestration: availability checks, settlement through the gateway,
and the all-or-nothing commit of square flips, donation rows and the ledger
increment.

Webhook reconciliation lives here too, since it commits the same unit of
work from the provider's side.
"""

from __future__ import annotations
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from app.errors import (
    ConflictError,
    NotFoundError,
    PaymentDeclinedError,
    ProviderConfigurationError,
    ValidationError,
)
from app.models.donation import (
    cancel_pending_for_squares,
    complete_pending_donations,
    insert_donations,
    list_donations_for_payment,
    set_pending_status_for_payment,
)
from app.models.player import lock_player
from app.models.square import get_squares, mark_squares_purchased, release_squares
from app.models.webhook_event import record_webhook_event
from app.realtime import player_room, socketio
from app.services.audit_service import audit_donation_completed, audit_donation_failed
from app.services.config_service import ConfigService
from app.services.ledger_service import LedgerUpdate, credit_player, record_milestone
from app.services.notification_service import notify_post_donation
from app.services.payment_providers import (
    FAILED,
    PENDING,
    SUCCEEDED,
    DonorInfo,
    PaymentProvider,
    PaymentResult,
    SimulationProvider,
    WebhookEvent,
    build_provider,
    get_gateway,
)
from app.utils.cache import r
from app.utils.db import transaction
from app.utils.metrics import PAYMENTS
from app.utils.money import format_cents

log = structlog.get_logger(__name__)

RECONCILED = "reconciled"
MARKED_FAILED = "marked_failed"
DUPLICATE = "duplicate"
UNKNOWN_SQUARE = "unknown_square"
ALREADY_FINAL = "already_final"

TOKEN_PROVIDER_HINT = (
    "set PAYMENT_PROVIDER_ACTIVE=square and configure "
    "SQUARE_ACCESS_TOKEN, SQUARE_LOCATION_ID, SQUARE_APPLICATION_ID"
)


@dataclass
class PurchaseResult:
    payment_id: str
    status: str
    player_id: str
    square_ids: List[str]
    total_cents: int
    ledger: Optional[LedgerUpdate] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "paymentId": self.payment_id,
            "status": self.status,
            "squaresProcessed": len(self.square_ids),
            "totalAmount": format_cents(self.total_cents),
        }


@dataclass
class ReconcileOutcome:
    status: str
    payment_id: Optional[str] = None
    credited_cents: int = 0
    square_ids: List[str] = field(default_factory=list)


def player_cache_key(player_id: str) -> str:
    return f"player:{player_id}:page:v1"


def invalidate_player_cache(player_id: str) -> None:
    r().delete(player_cache_key(player_id))


def _unique(square_ids: Iterable[str]) -> List[str]:
    seen, out = set(), []
    for sid in square_ids:
        sid = str(sid).strip()
        if sid and sid not in seen:
            seen.add(sid)
            out.append(sid)
    return out


def check_available(square_ids: List[str]) -> Tuple[List[Dict[str, Any]], str, int]:
    """
    All squares must exist, be unsold and share a player.
    Returns (squares, player_id, total_cents).
    """
    ids = _unique(square_ids)
    if not ids:
        raise ValidationError("squareId or squareIds required")

    with transaction() as cur:
        squares = get_squares(cur, ids)

    found = {str(s["id"]) for s in squares}
    missing = [sid for sid in ids if sid not in found]
    if missing:
        raise NotFoundError("square not found", extra={"squareIds": missing})

    sold = [str(s["id"]) for s in squares if s["is_purchased"]]
    if sold:
        raise ConflictError("square already sold", extra={"squareIds": sold})

    players = {str(s["player_id"]) for s in squares}
    if len(players) > 1:
        raise ConflictError("squares belong to different players")

    by_id = {str(s["id"]): s for s in squares}
    ordered = [by_id[sid] for sid in ids]
    return ordered, players.pop(), sum(int(s["value_cents"]) for s in ordered)


def _donation_rows(
    squares: List[Dict[str, Any]],
    donor: DonorInfo,
    provider: str,
    payment_id: Optional[str],
    status: str,
    order_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    return [
        {
            "player_id": str(s["player_id"]),
            "square_id": str(s["id"]),
            "amount_cents": int(s["value_cents"]),
            "donor_name": donor.name,
            "donor_email": donor.email,
            "is_anonymous": donor.is_anonymous,
            "payment_provider": provider,
            "provider_payment_id": payment_id or None,
            "provider_order_id": order_id,
            "status": status,
        }
        for s in squares
    ]


def _best_effort(label: str, fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except Exception:
        log.exception(label, fn=getattr(fn, "__name__", str(fn)))
        return None


def _broadcast(update: LedgerUpdate, rows: List[Dict[str, Any]], donor: DonorInfo, milestone):
    amount = sum(int(d["amount_cents"]) for d in rows)
    socketio.emit(
        "donation",
        {
            "player_id": update.player_id,
            "square_ids": [d["square_id"] for d in rows if d.get("square_id")],
            "amount_cents": amount,
            "amount": round(amount / 100.0, 2),
            "donor": donor.display_name,
            "total_raised_cents": update.new_cents,
            "goal_cents": update.goal_cents,
            "milestone": milestone,
        },
        to=player_room(update.player_id),
    )


def _after_success(
    update: LedgerUpdate,
    rows: List[Dict[str, Any]],
    donor: DonorInfo,
    payment_id: str,
) -> Optional[str]:
    """Side effects of a committed donation batch. None of them can undo it."""
    milestone = _best_effort("donation.milestone_failed", record_milestone, update)
    _best_effort("donation.cache_invalidate_failed", invalidate_player_cache, update.player_id)
    for row in rows:
        _best_effort("donation.audit_failed", audit_donation_completed, row)
    _best_effort(
        "donation.notify_failed",
        notify_post_donation,
        player_id=update.player_id,
        square_id=rows[0].get("square_id") if rows else None,
        amount_cents=sum(int(d["amount_cents"]) for d in rows),
        donor=donor,
        payment_id=payment_id,
        previous_total_cents=update.previous_cents,
        milestone=milestone,
    )
    _best_effort("donation.broadcast_failed", _broadcast, update, rows, donor, milestone)
    return milestone


def _commit_succeeded(
    gateway: PaymentProvider,
    result: PaymentResult,
    squares: List[Dict[str, Any]],
    player_id: str,
    donor: DonorInfo,
) -> PurchaseResult:
    """
    Flip, record and credit a settled payment in one transaction.

    The provider's webhook can reconcile the same payment before settle()
    returns. Squares it already recorded as succeeded are not flipped or
    credited again, and if its rows already carry the whole amount nothing is
    credited at all. Only squares sold under another payment are a lost race.
    """
    ids = [str(s["id"]) for s in squares]
    total = sum(int(s["value_cents"]) for s in squares)
    try:
        with transaction() as cur:
            existing = (
                list_donations_for_payment(cur, gateway.name, result.payment_id)
                if result.payment_id
                else []
            )
            settled = [d for d in existing if d["status"] == SUCCEEDED]
            settled_cents = sum(int(d["amount_cents"]) for d in settled)
            covered = {str(d["square_id"]) for d in settled if d.get("square_id")}

            todo = [s for s in squares if str(s["id"]) not in covered]
            flipped: List[str] = []
            if todo:
                flipped = mark_squares_purchased(
                    cur,
                    [str(s["id"]) for s in todo],
                    donor_name=donor.name,
                    is_anonymous=donor.is_anonymous,
                )
            lost = [str(s["id"]) for s in todo if str(s["id"]) not in set(flipped)]
            if lost and not settled:
                raise ConflictError("square already sold", extra={"squareIds": lost})
            if lost:
                log.warning(
                    "purchase.squares_sold_elsewhere",
                    payment_id=result.payment_id,
                    square_ids=lost,
                )

            rows: List[Dict[str, Any]] = []
            update: Optional[LedgerUpdate] = None
            if settled_cents < total:
                recorded = [s for s in todo if str(s["id"]) in set(flipped)]
                pending = {
                    str(d["square_id"]): d
                    for d in existing
                    if d["status"] == PENDING and d.get("square_id")
                }
                to_complete = [
                    pending[str(s["id"])]["id"] for s in recorded if str(s["id"]) in pending
                ]
                to_insert = [s for s in recorded if str(s["id"]) not in pending]
                if to_complete:
                    rows += complete_pending_donations(
                        cur, to_complete, provider_order_id=result.order_id
                    )
                if to_insert:
                    rows += insert_donations(
                        cur,
                        _donation_rows(
                            to_insert, donor, gateway.name, result.payment_id,
                            SUCCEEDED, result.order_id,
                        ),
                    )
                if rows:
                    update = credit_player(
                        cur, player_id, sum(int(d["amount_cents"]) for d in rows)
                    )
    except ConflictError:
        log.warning(
            "purchase.lost_race",
            provider=gateway.name,
            payment_id=result.payment_id,
            square_ids=ids,
        )
        PAYMENTS.labels(provider=gateway.name, outcome="conflict").inc()
        _best_effort("purchase.refund_failed", gateway.refund, result.payment_id, total)
        raise

    if update is None:
        log.info(
            "purchase.already_reconciled",
            provider=gateway.name,
            payment_id=result.payment_id,
            squares_flipped=len(flipped),
        )
        if flipped:
            _best_effort(
                "donation.cache_invalidate_failed", invalidate_player_cache, player_id
            )
    else:
        log.info(
            "purchase.completed",
            provider=gateway.name,
            payment_id=result.payment_id,
            player_id=player_id,
            squares=len(ids),
            amount_cents=update.new_cents - update.previous_cents,
        )
        _after_success(update, rows, donor, result.payment_id)
    return PurchaseResult(
        payment_id=result.payment_id,
        status=SUCCEEDED,
        player_id=player_id,
        square_ids=ids,
        total_cents=total,
        ledger=update,
    )


def create_intent(
    config: ConfigService, square_ids: List[str], donor: DonorInfo
) -> Dict[str, Any]:
    squares, player_id, total = check_available(square_ids)
    ids = [str(s["id"]) for s in squares]

    gateway = get_gateway(config.get_active_payment_provider_config())
    kwargs = dict(amount_cents=total, square_ids=ids, player_id=player_id, donor=donor)
    try:
        intent = gateway.create_intent(**kwargs)
    except ProviderConfigurationError as e:
        config.reject_provider_credentials(gateway.name)
        log.warning(
            "intent.fallback_to_simulation", provider=gateway.name, reason=e.message
        )
        intent = SimulationProvider().create_intent(**kwargs)

    out: Dict[str, Any] = {
        "provider": intent.provider,
        "amount": format_cents(total),
        "squareIds": ids,
        "playerId": player_id,
    }
    if intent.client_secret:
        out["clientSecret"] = intent.client_secret
    return out


def process_token_payment(
    config: ConfigService,
    square_ids: List[str],
    source_id: str,
    donor: DonorInfo,
) -> PurchaseResult:
    if not source_id:
        raise ValidationError("sourceId required")

    gateway = get_gateway(config.get_active_payment_provider_config())
    if not gateway.accepts_tokens:
        raise ProviderConfigurationError(
            "card payments are not available", extra={"hint": TOKEN_PROVIDER_HINT}
        )

    squares, player_id, total = check_available(square_ids)
    ids = [str(s["id"]) for s in squares]
    try:
        result = gateway.settle(
            source_id, amount_cents=total, square_ids=ids, player_id=player_id, donor=donor
        )
    except ProviderConfigurationError as e:
        config.reject_provider_credentials(gateway.name)
        raise ProviderConfigurationError(e.message, extra={"hint": TOKEN_PROVIDER_HINT})
    PAYMENTS.labels(provider=gateway.name, outcome=result.status).inc()

    if result.status == SUCCEEDED:
        return _commit_succeeded(gateway, result, squares, player_id, donor)

    if result.status == PENDING:
        with transaction() as cur:
            insert_donations(
                cur,
                _donation_rows(
                    squares, donor, gateway.name, result.payment_id, PENDING, result.order_id
                ),
            )
        log.info(
            "purchase.pending",
            provider=gateway.name,
            payment_id=result.payment_id,
            raw_status=result.raw_status,
        )
        return PurchaseResult(
            payment_id=result.payment_id,
            status=PENDING,
            player_id=player_id,
            square_ids=ids,
            total_cents=total,
        )

    with transaction() as cur:
        rows = insert_donations(
            cur,
            _donation_rows(squares, donor, gateway.name, result.payment_id, FAILED),
        )
    for row in rows:
        _best_effort(
            "donation.audit_failed", audit_donation_failed, row, result.decline_reason
        )
    log.info(
        "purchase.declined",
        provider=gateway.name,
        payment_id=result.payment_id or None,
        reason=result.decline_reason,
    )
    raise PaymentDeclinedError(
        result.decline_reason or "payment declined",
        extra={"status": result.raw_status},
    )


def process_simulation_payment(
    config: ConfigService, square_ids: List[str], donor: DonorInfo
) -> PurchaseResult:
    gateway = get_gateway(config.get_active_payment_provider_config())
    if not isinstance(gateway, SimulationProvider) and not config.get_bool(
        "ALLOW_SIMULATION_PAYMENTS"
    ):
        raise ConflictError(
            f"simulation payments are disabled while {gateway.name} is active"
        )

    simulation = SimulationProvider()
    squares, player_id, total = check_available(square_ids)
    ids = [str(s["id"]) for s in squares]
    result = simulation.settle(
        "", amount_cents=total, square_ids=ids, player_id=player_id, donor=donor
    )
    PAYMENTS.labels(provider=simulation.name, outcome=result.status).inc()
    return _commit_succeeded(simulation, result, squares, player_id, donor)


def cancel_payment(
    square_ids: List[str], payment_id: Optional[str] = None, provider: str = "square"
) -> Dict[str, Any]:
    """
    Abandon a checkout: pending rows become cancelled, squares left flagged
    without a succeeded donation are released.
    """
    ids = _unique(square_ids)
    with transaction() as cur:
        if payment_id:
            cancelled = set_pending_status_for_payment(cur, provider, payment_id, "cancelled")
        else:
            cancelled = cancel_pending_for_squares(cur, ids)
        released = release_squares(cur, ids)

    log.info(
        "purchase.cancelled",
        payment_id=payment_id,
        cancelled=len(cancelled),
        released=len(released),
    )
    return {"cancelled": len(cancelled), "released": released}


def _donor_from_rows(rows: List[Dict[str, Any]], fallback: DonorInfo) -> DonorInfo:
    for d in rows:
        if d.get("donor_name") or d.get("donor_email"):
            return DonorInfo(
                name=d.get("donor_name"),
                email=d.get("donor_email"),
                is_anonymous=bool(d.get("is_anonymous")),
            )
    return fallback


def reconcile_succeeded(event: WebhookEvent) -> ReconcileOutcome:
    """
    Apply a provider's "payment succeeded" notification exactly once.

    Squares come from the payment's pending donation rows, else from the
    event metadata. Squares already sold are not flipped again, but the
    donation is still recorded; the ledger is credited with exactly the rows
    that became succeeded here.
    """
    if not event.payment_id:
        return ReconcileOutcome(status=UNKNOWN_SQUARE)

    with transaction() as cur:
        if not record_webhook_event(
            cur, event.provider, event.event_id, event.event_type, event.raw
        ):
            log.debug("reconcile.duplicate_event", event_id=event.event_id)
            return ReconcileOutcome(status=DUPLICATE, payment_id=event.payment_id)

        existing = list_donations_for_payment(cur, event.provider, event.payment_id)
        if any(d["status"] == SUCCEEDED for d in existing):
            log.debug("reconcile.already_succeeded", payment_id=event.payment_id)
            return ReconcileOutcome(status=DUPLICATE, payment_id=event.payment_id)

        pending = [d for d in existing if d["status"] == PENDING]
        if pending:
            square_ids = _unique(d["square_id"] for d in pending if d.get("square_id"))
        else:
            square_ids = _unique(event.square_ids)
        squares = get_squares(cur, square_ids, for_update=True)
        if not squares:
            log.debug(
                "reconcile.unknown_square",
                payment_id=event.payment_id,
                square_ids=square_ids,
            )
            return ReconcileOutcome(status=UNKNOWN_SQUARE, payment_id=event.payment_id)

        donor = _donor_from_rows(pending, event.donor)
        open_ids = [str(s["id"]) for s in squares if not s["is_purchased"]]
        for s in squares:
            if s["is_purchased"]:
                log.warning(
                    "reconcile.square_already_purchased",
                    square_id=str(s["id"]),
                    payment_id=event.payment_id,
                )
        flipped = mark_squares_purchased(
            cur, open_ids, donor_name=donor.name, is_anonymous=donor.is_anonymous
        )

        if pending:
            completed = complete_pending_donations(
                cur, [d["id"] for d in pending], provider_order_id=event.order_id
            )
        else:
            rows = _donation_rows(
                squares, donor, event.provider, event.payment_id, SUCCEEDED, event.order_id
            )
            if len(rows) == 1 and event.amount_cents:
                rows[0]["amount_cents"] = event.amount_cents
            completed = insert_donations(cur, rows)

        per_player: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for d in completed:
            per_player[d["player_id"]].append(d)
        updates = [
            (credit_player(cur, pid, sum(int(d["amount_cents"]) for d in rows)), rows)
            for pid, rows in per_player.items()
        ]

    credited = sum(u.new_cents - u.previous_cents for u, _ in updates)
    log.info(
        "reconcile.succeeded",
        provider=event.provider,
        payment_id=event.payment_id,
        squares_flipped=len(flipped),
        credited_cents=credited,
    )
    for update, rows in updates:
        _after_success(update, rows, donor, event.payment_id)
    return ReconcileOutcome(
        status=RECONCILED,
        payment_id=event.payment_id,
        credited_cents=credited,
        square_ids=flipped,
    )


def reconcile_failed(event: WebhookEvent) -> ReconcileOutcome:
    """Pending rows become failed. Terminal rows, and the ledger, are untouched."""
    if not event.payment_id:
        return ReconcileOutcome(status=UNKNOWN_SQUARE)

    with transaction() as cur:
        if not record_webhook_event(
            cur, event.provider, event.event_id, event.event_type, event.raw
        ):
            log.debug("reconcile.duplicate_event", event_id=event.event_id)
            return ReconcileOutcome(status=DUPLICATE, payment_id=event.payment_id)

        failed = set_pending_status_for_payment(
            cur, event.provider, event.payment_id, FAILED
        )
        if not failed:
            if list_donations_for_payment(cur, event.provider, event.payment_id):
                log.debug("reconcile.already_final", payment_id=event.payment_id)
                return ReconcileOutcome(status=ALREADY_FINAL, payment_id=event.payment_id)
            squares = get_squares(cur, _unique(event.square_ids))
            if not squares:
                return ReconcileOutcome(
                    status=UNKNOWN_SQUARE, payment_id=event.payment_id
                )
            failed = insert_donations(
                cur,
                _donation_rows(squares, event.donor, event.provider, event.payment_id, FAILED),
            )

    for row in failed:
        _best_effort(
            "donation.audit_failed", audit_donation_failed, row, event.event_type
        )
    log.info(
        "reconcile.failed",
        provider=event.provider,
        payment_id=event.payment_id,
        donations=len(failed),
    )
    return ReconcileOutcome(status=MARKED_FAILED, payment_id=event.payment_id)


def record_manual_donation(
    *,
    player_id: str,
    amount_cents: int,
    method: str,
    donor: DonorInfo,
    square_id: Optional[str] = None,
    notes: Optional[str] = None,
) -> Dict[str, Any]:
    """Cash or check taken offline, entered by an admin."""
    if amount_cents <= 0:
        raise ValidationError("amount must be positive")
    if method not in ("cash", "check", "other"):
        raise ValidationError("method must be one of cash, check, other")

    payment_id = f"manual_{uuid.uuid4().hex}"
    with transaction() as cur:
        if not lock_player(cur, player_id):
            raise NotFoundError("player not found")
        if square_id:
            squares = get_squares(cur, [square_id], for_update=True)
            if not squares or str(squares[0]["player_id"]) != str(player_id):
                raise NotFoundError("square not found", extra={"squareIds": [square_id]})
            if not mark_squares_purchased(
                cur, [square_id], donor_name=donor.name, is_anonymous=donor.is_anonymous
            ):
                raise ConflictError("square already sold", extra={"squareIds": [square_id]})
        rows = insert_donations(
            cur,
            [
                {
                    "player_id": player_id,
                    "square_id": square_id,
                    "amount_cents": amount_cents,
                    "donor_name": donor.name,
                    "donor_email": donor.email,
                    "is_anonymous": donor.is_anonymous,
                    "payment_provider": "manual",
                    "provider_payment_id": payment_id,
                    "manual_payment_method": method,
                    "notes": notes,
                    "status": SUCCEEDED,
                }
            ],
        )
        update = credit_player(cur, player_id, amount_cents)

    log.info(
        "donation.manual_recorded",
        player_id=player_id,
        amount_cents=amount_cents,
        method=method,
    )
    milestone = _after_success(update, rows, donor, payment_id)
    return {
        "donation": rows[0],
        "totalRaisedCents": update.new_cents,
        "milestone": milestone,
    }


def provider_for_webhook(config: ConfigService, name: str) -> PaymentProvider:
    """Webhooks are verified with the named provider's keys even when it is not active."""
    return build_provider(name, config.get_active_payment_provider_config())
