"""
Post-donation email dispatch and the queue/inline switch.
"""
from unittest.mock import MagicMock

import pytest

from app import tasks
from app.services import notification_service
from app.services.audit_service import audit_donation_completed, audit_donation_failed
from app.services.notification_service import notify_post_donation, send_post_donation_emails
from app.services.payment_providers import DonorInfo
from app.utils.email_sender import send_email


@pytest.fixture
def sent(monkeypatch):
    mock = MagicMock(return_value=("log", None))
    monkeypatch.setattr(notification_service, "send_email", mock)
    return mock


class TestSendPostDonationEmails:
    def test_receipt_owner_and_milestone(self, store, sent):
        pid = store.add_player(name="Casey", goal_cents=10000, owner_email="coach@example.com")
        send_post_donation_emails(pid, "sq-1", 5000, "Robin", "robin@example.com", False,
                                  "pay-1", 0, "50%")

        recipients = [c.kwargs["to_email"] for c in sent.call_args_list]
        assert recipients == ["robin@example.com", "coach@example.com", "coach@example.com"]
        assert "$50.00" in sent.call_args_list[0].kwargs["body_text"]
        assert "Robin donated $50.00" in sent.call_args_list[1].kwargs["body_text"]
        assert "50%" in sent.call_args_list[2].kwargs["subject"]
        assert sent.call_args_list[1].kwargs["reply_to"] == "robin@example.com"
        assert sent.call_args_list[2].kwargs["reply_to"] is None

    def test_anonymous_donor_hidden_from_owner(self, store, sent):
        pid = store.add_player(owner_email="coach@example.com")
        send_post_donation_emails(pid, None, 1500, "Robin", None, True, "pay-2", 0, None)
        assert len(sent.call_args_list) == 1
        body = sent.call_args_list[0].kwargs["body_text"]
        assert "An anonymous donor donated $15.00" in body
        assert "Robin" not in body
        assert sent.call_args_list[0].kwargs["reply_to"] is None

    def test_no_owner_no_email_address(self, store, sent):
        pid = store.add_player(owner_email=None)
        send_post_donation_emails(pid, None, 1500, None, None, False, "pay-3", 0, None)
        sent.assert_not_called()

    def test_missing_player(self, store, sent):
        send_post_donation_emails("gone", None, 1500, None, "a@b.co", False, "pay-4", 0, None)
        sent.assert_not_called()


class TestNotifyPostDonation:
    def test_runs_inline_without_queue(self, store, sent, monkeypatch):
        monkeypatch.setenv("USE_EMAIL_QUEUE", "0")
        pid = store.add_player(owner_email="coach@example.com")
        queued = notify_post_donation(
            player_id=pid, square_id="sq-1", amount_cents=1500,
            donor=DonorInfo(name="Robin", email="robin@example.com"),
            payment_id="pay-1", previous_total_cents=0,
        )
        assert queued is False
        assert sent.call_count == 2

    def test_queue_failure_falls_back_inline(self, monkeypatch):
        monkeypatch.setenv("USE_EMAIL_QUEUE", "1")
        monkeypatch.setattr(tasks, "REDIS_URL", "not-a-redis-url")
        job = MagicMock(__name__="job")
        assert tasks.enqueue(job, 1, flag=True) is False
        job.assert_called_once_with(1, flag=True)


class TestAudit:
    def test_completed_and_failed(self, store):
        row = {"id": "d1", "player_id": "p1", "square_id": "s1", "amount_cents": 1500,
               "payment_provider": "square", "provider_payment_id": "pay-1"}
        audit_donation_completed(row)
        audit_donation_failed(row, "CARD_DECLINED")
        assert [e["event_type"] for e in store.audit_events] == ["donation.completed", "donation.failed"]
        assert store.audit_events[1]["details"]["reason"] == "CARD_DECLINED"
        assert store.audit_events[0]["donation_id"] == "d1"


class TestSendEmail:
    def test_log_only(self, monkeypatch):
        monkeypatch.setenv("DEV_EMAIL_LOG_ONLY", "1")
        assert send_email(to_email="a@b.co", subject="s", body_text="b", reply_to="c@d.co") == ("log", None)

    def test_no_provider_configured(self, monkeypatch):
        monkeypatch.setenv("DEV_EMAIL_LOG_ONLY", "0")
        for var in ("EMAIL_PROVIDER", "SENDGRID_API_KEY", "AWS_REGION", "AWS_ACCESS_KEY_ID"):
            monkeypatch.delenv(var, raising=False)
        provider, error = send_email(to_email="a@b.co", subject="s", body_text="b")
        assert provider is None
        assert "EMAIL_PROVIDER" in error
