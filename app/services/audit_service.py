from typing import Any, Optional

from app.models.audit_log import insert_audit_event


def audit_donation_completed(donation: dict[str, Any]) -> None:
    insert_audit_event(
        event_type="donation.completed",
        player_id=donation.get("player_id"),
        donation_id=donation.get("id"),
        details={
            "square_id": donation.get("square_id"),
            "amount_cents": int(donation.get("amount_cents") or 0),
            "provider": donation.get("payment_provider"),
            "payment_id": donation.get("provider_payment_id"),
        },
    )


def audit_donation_failed(donation: dict[str, Any], reason: Optional[str] = None) -> None:
    insert_audit_event(
        event_type="donation.failed",
        player_id=donation.get("player_id"),
        donation_id=donation.get("id"),
        details={
            "square_id": donation.get("square_id"),
            "amount_cents": int(donation.get("amount_cents") or 0),
            "provider": donation.get("payment_provider"),
            "payment_id": donation.get("provider_payment_id"),
            "reason": reason,
        },
    )
