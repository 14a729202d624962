"""
Post-donation email: donor receipt, owner notification, milestone notice.

notify_post_donation() only hands the work to the queue (or runs it inline
when USE_EMAIL_QUEUE is off); a failed send is logged, never raised.
"""

from __future__ import annotations
from typing import Optional

import structlog

from app.models.player import get_player
from app.services.payment_providers import DonorInfo
from app.tasks import enqueue
from app.utils.email_sender import send_email
from app.utils.money import format_cents

log = structlog.get_logger(__name__)


def notify_post_donation(
    *,
    player_id: str,
    square_id: Optional[str],
    amount_cents: int,
    donor: DonorInfo,
    payment_id: str,
    previous_total_cents: int,
    milestone: Optional[str] = None,
) -> bool:
    return enqueue(
        send_post_donation_emails,
        player_id,
        square_id,
        amount_cents,
        donor.name,
        donor.email,
        donor.is_anonymous,
        payment_id,
        previous_total_cents,
        milestone,
    )


def _send(to_email: str, subject: str, body_text: str, kind: str, reply_to: Optional[str] = None) -> None:
    provider, msg = send_email(
        to_email=to_email, subject=subject, body_text=body_text, reply_to=reply_to
    )
    if provider is None:
        log.warning("email.not_sent", kind=kind, reason=msg)
    else:
        log.info("email.sent", kind=kind, provider=provider, message_id=msg)


def send_post_donation_emails(
    player_id: str,
    square_id: Optional[str],
    amount_cents: int,
    donor_name: Optional[str],
    donor_email: Optional[str],
    is_anonymous: bool,
    payment_id: str,
    previous_total_cents: int,
    milestone: Optional[str] = None,
) -> None:
    player = get_player(player_id)
    if not player:
        log.warning("email.player_missing", player_id=player_id)
        return

    amount = format_cents(amount_cents)
    new_total = previous_total_cents + amount_cents
    shown_donor = "An anonymous donor" if is_anonymous else (donor_name or "Someone")

    if donor_email:
        _send(
            donor_email,
            f"Thanks for supporting {player['name']}!",
            f"Hi {donor_name or 'there'},\n\n"
            f"Thank you for your donation of ${amount} to {player['name']}.\n"
            f"Reference: {payment_id}\n\n"
            f"- The Team\n",
            "receipt",
        )

    owner = player.get("owner_email")
    if not owner:
        return
    _send(
        owner,
        f"New donation for {player['name']}",
        f"{shown_donor} donated ${amount}"
        + (f" for square {square_id}" if square_id else "")
        + f".\nTotal raised: ${format_cents(new_total)} of "
        f"${format_cents(int(player['goal_cents']))}.\n",
        "owner",
        reply_to=None if is_anonymous else donor_email,
    )
    if milestone:
        _send(
            owner,
            f"{player['name']} reached {milestone} of the goal!",
            f"{player['name']} has now raised ${format_cents(new_total)}, "
            f"passing {milestone} of the ${format_cents(int(player['goal_cents']))} goal.\n",
            "milestone",
        )
