"""
SES / SendGrid email sending wrapper.

Configure via env:
- EMAIL_PROVIDER: "ses" | "sendgrid" (default: sendgrid if SENDGRID_API_KEY is
  set, else ses if AWS credentials or region are set)
- For SES: AWS_REGION, AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY (or default creds)
- For SendGrid: SENDGRID_API_KEY
- FROM_EMAIL, FROM_NAME: sender
- DEV_EMAIL_LOG_ONLY=1: log the message instead of sending it

reply_to lets an owner notice be answered straight to the donor.
"""

from __future__ import annotations
import os
from typing import Optional, Tuple

import structlog

log = structlog.get_logger(__name__)


def _resolve_provider() -> Optional[str]:
    provider = os.getenv("EMAIL_PROVIDER", "").lower()
    if provider:
        return provider
    if os.getenv("SENDGRID_API_KEY"):
        return "sendgrid"
    if os.getenv("AWS_REGION") or os.getenv("AWS_ACCESS_KEY_ID"):
        return "ses"
    return None


def send_email(
    *,
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str] = None,
    reply_to: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    """
    Returns (provider, provider_msg_id) or (None, error_message) on failure.
    """
    from_addr = os.getenv("FROM_EMAIL", "no-reply@example.com")
    from_name = os.getenv("FROM_NAME", "Heart Squares")

    if os.getenv("DEV_EMAIL_LOG_ONLY") == "1":
        log.info("email.log_only", to=to_email, subject=subject, reply_to=reply_to)
        return "log", None

    provider = _resolve_provider()
    if provider == "sendgrid":
        return _send_via_sendgrid(to_email, subject, body_text, body_html, from_addr, from_name, reply_to)
    if provider == "ses":
        return _send_via_ses(to_email, subject, body_text, body_html, from_addr, from_name, reply_to)
    if provider is None:
        return None, "EMAIL_PROVIDER not set and no SENDGRID_API_KEY or AWS creds"
    return None, f"Unknown EMAIL_PROVIDER: {provider}"


def _send_via_sendgrid(
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str],
    from_email: str,
    from_name: str,
    reply_to: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    from sendgrid import SendGridAPIClient
    from sendgrid.helpers.mail import Content, Email, Mail, ReplyTo, To

    api_key = os.getenv("SENDGRID_API_KEY", "").strip()
    if not api_key:
        return None, "SENDGRID_API_KEY not set"

    message = Mail(
        from_email=Email(from_email, from_name),
        to_emails=To(to_email),
        subject=subject,
        plain_text_content=Content("text/plain", body_text),
        html_content=Content("text/html", body_html or f"<pre>{body_text}</pre>"),
    )
    if reply_to:
        message.reply_to = ReplyTo(reply_to)
    try:
        response = SendGridAPIClient(api_key).send(message)
    except Exception as e:
        return None, str(e)

    msg_id = response.headers.get("X-Message-Id") if response.headers else None
    return "sendgrid", msg_id or str(response.status_code)


def _send_via_ses(
    to_email: str,
    subject: str,
    body_text: str,
    body_html: Optional[str],
    from_email: str,
    from_name: str,
    reply_to: Optional[str] = None,
) -> Tuple[Optional[str], Optional[str]]:
    import boto3
    from botocore.exceptions import BotoCoreError, ClientError

    body = {"Text": {"Data": body_text, "Charset": "UTF-8"}}
    if body_html:
        body["Html"] = {"Data": body_html, "Charset": "UTF-8"}

    extra = {"ReplyToAddresses": [reply_to]} if reply_to else {}
    try:
        client = boto3.client("ses", region_name=os.getenv("AWS_REGION", "us-east-1"))
        response = client.send_email(
            Source=f"{from_name} <{from_email}>",
            Destination={"ToAddresses": [to_email]},
            Message={"Subject": {"Data": subject, "Charset": "UTF-8"}, "Body": body},
            **extra,
        )
    except ClientError as e:
        return None, str(e.response.get("Error", {}).get("Message", str(e)))
    except BotoCoreError as e:
        return None, str(e)
    return "ses", response.get("MessageId") or "unknown"
