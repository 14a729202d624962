"""
Shared fixtures: an in-memory stand-in for the PostgreSQL model layer, a fake
Redis, and a Flask app wired to both.
"""
import copy
import itertools
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

os.environ["SOCKETIO_ASYNC_MODE"] = "threading"
os.environ["RATE_LIMIT_ENABLED"] = "0"
os.environ["USE_EMAIL_QUEUE"] = "0"
os.environ["DEV_EMAIL_LOG_ONLY"] = "1"
os.environ.pop("DEV_WEBHOOK_NO_VERIFY", None)

import pytest
from unittest.mock import MagicMock

from app import create_app, realtime
from app.routes import admin_routes, player_routes, receipt_routes
from app.services import (
    audit_service,
    ledger_service,
    notification_service,
    purchase_service,
    randomizer,
    webhook_service,
)
from app.services.config_service import ConfigService


# ============================================================================
# IN-MEMORY STORE
# ============================================================================


DEFAULT_META = {"category": "app", "is_secret": False, "updated_at": None}


class FakeStore:
    """
    Implements the model functions the services call. The `cur` argument is
    ignored; transaction() snapshots state and restores it on exception.
    """

    def __init__(self):
        self.players = {}
        self.squares = {}
        self.donations = {}
        self.webhook_events = {}
        self.audit_events = []
        self.settings = {}
        self.setting_meta = {}
        self.commits = 0
        self.rollbacks = 0
        self._seq = itertools.count(1)

    # -- test helpers -------------------------------------------------------

    def add_player(self, *, name="Test Player", slug=None, goal_cents=10000,
                   total_raised_cents=0, owner_email="owner@example.com"):
        pid = str(uuid.uuid4())
        self.players[pid] = {
            "id": pid,
            "name": name,
            "slug": slug or f"player-{pid[:8]}",
            "owner_email": owner_email,
            "goal_cents": goal_cents,
            "total_raised_cents": total_raised_cents,
            "is_active": True,
            "created_at": datetime.now(timezone.utc),
            "updated_at": datetime.now(timezone.utc),
        }
        return pid

    def add_squares(self, player_id, values):
        ids = []
        for i, value in enumerate(values):
            sid = str(uuid.uuid4())
            self.squares[sid] = {
                "id": sid,
                "player_id": player_id,
                "position_x": i % 15,
                "position_y": i // 15,
                "value_cents": value,
                "is_purchased": False,
                "donor_name": None,
                "is_anonymous": False,
                "purchased_at": None,
            }
            ids.append(sid)
        return ids

    def add_donation(self, **fields):
        row = {
            "id": str(uuid.uuid4()),
            "square_id": None,
            "donor_name": None,
            "donor_email": None,
            "is_anonymous": False,
            "provider_payment_id": None,
            "provider_order_id": None,
            "manual_payment_method": None,
            "notes": None,
            "status": "pending",
            "created_at": next(self._seq),
            "completed_at": None,
        }
        row.update(fields)
        self.donations[row["id"]] = row
        return row

    def donations_for(self, payment_id):
        return [d for d in self.donations.values() if d["provider_payment_id"] == payment_id]

    def succeeded_total(self, player_id):
        return sum(
            d["amount_cents"]
            for d in self.donations.values()
            if d["player_id"] == player_id and d["status"] == "succeeded"
        )

    # -- app.utils.db --------------------------------------------------------

    @contextmanager
    def transaction(self):
        snapshot = copy.deepcopy(
            (self.players, self.squares, self.donations, self.webhook_events)
        )
        try:
            yield object()
        except Exception:
            self.players, self.squares, self.donations, self.webhook_events = snapshot
            self.rollbacks += 1
            raise
        self.commits += 1

    # -- app.models.player ---------------------------------------------------

    def get_player(self, player_id):
        p = self.players.get(player_id)
        return dict(p) if p else None

    def get_player_by_slug(self, slug):
        for p in self.players.values():
            if p["slug"] == slug:
                return dict(p)
        return None

    def list_player_ids(self, *, active_only=True):
        return [pid for pid, p in self.players.items() if p["is_active"] or not active_only]

    def lock_player(self, cur, player_id):
        return self.get_player(player_id)

    def insert_player(self, cur, *, name, slug, goal_cents, owner_email=None):
        pid = self.add_player(name=name, slug=slug, goal_cents=goal_cents,
                              owner_email=owner_email)
        return dict(self.players[pid])

    def slug_exists(self, cur, slug):
        return any(p["slug"] == slug for p in self.players.values())

    def increment_total_raised(self, cur, player_id, amount_cents):
        p = self.players.get(player_id)
        if not p:
            return None
        previous = p["total_raised_cents"]
        p["total_raised_cents"] = previous + amount_cents
        return (previous, p["total_raised_cents"], p["goal_cents"])

    # -- app.models.square ---------------------------------------------------

    def get_squares(self, cur, square_ids, *, for_update=False):
        return [dict(self.squares[s]) for s in sorted(set(square_ids)) if s in self.squares]

    def list_squares_for_player(self, player_id):
        rows = [dict(s) for s in self.squares.values() if s["player_id"] == player_id]
        return sorted(rows, key=lambda s: (s["position_y"], s["position_x"]))

    def lock_squares_for_player(self, cur, player_id):
        return sorted(
            (dict(s) for s in self.squares.values() if s["player_id"] == player_id),
            key=lambda s: s["id"],
        )

    def insert_squares(self, cur, player_id, cells):
        count = 0
        for x, y, value in cells:
            sid = str(uuid.uuid4())
            self.squares[sid] = {
                "id": sid,
                "player_id": player_id,
                "position_x": x,
                "position_y": y,
                "value_cents": value,
                "is_purchased": False,
                "donor_name": None,
                "is_anonymous": False,
                "purchased_at": None,
            }
            count += 1
        return count

    def update_unpurchased_values(self, cur, values):
        updated = 0
        for sid, value in values.items():
            s = self.squares.get(sid)
            if s and not s["is_purchased"]:
                s["value_cents"] = value
                updated += 1
        return updated

    def mark_squares_purchased(self, cur, square_ids, *, donor_name, is_anonymous):
        flipped = []
        for sid in square_ids:
            s = self.squares.get(sid)
            if s and not s["is_purchased"]:
                s.update(
                    is_purchased=True,
                    donor_name=None if is_anonymous else donor_name,
                    is_anonymous=is_anonymous,
                    purchased_at=datetime.now(timezone.utc),
                )
                flipped.append(sid)
        return flipped

    def release_squares(self, cur, square_ids):
        released = []
        for sid in square_ids:
            s = self.squares.get(sid)
            if not s or not s["is_purchased"]:
                continue
            if any(
                d["square_id"] == sid and d["status"] == "succeeded"
                for d in self.donations.values()
            ):
                continue
            s.update(is_purchased=False, donor_name=None, is_anonymous=False,
                     purchased_at=None)
            released.append(sid)
        return released

    # -- app.models.donation -------------------------------------------------

    def insert_donations(self, cur, rows):
        inserted = []
        for row in rows:
            status = row.get("status", "pending")
            if status == "succeeded" and any(
                d["status"] == "succeeded"
                and d["payment_provider"] == row["payment_provider"]
                and d["provider_payment_id"] == row.get("provider_payment_id")
                and d["square_id"] == row.get("square_id")
                for d in self.donations.values()
            ):
                continue
            d = self.add_donation(
                player_id=row["player_id"],
                square_id=row.get("square_id"),
                amount_cents=row["amount_cents"],
                donor_name=row.get("donor_name"),
                donor_email=row.get("donor_email"),
                is_anonymous=bool(row.get("is_anonymous")),
                payment_provider=row["payment_provider"],
                provider_payment_id=row.get("provider_payment_id"),
                provider_order_id=row.get("provider_order_id"),
                manual_payment_method=row.get("manual_payment_method"),
                notes=row.get("notes"),
                status=status,
                completed_at=None if status == "pending" else datetime.now(timezone.utc),
            )
            inserted.append(dict(d))
        return inserted

    def list_donations_for_payment(self, cur, provider, payment_id, *, for_update=True):
        rows = [
            dict(d)
            for d in self.donations.values()
            if d["payment_provider"] == provider and d["provider_payment_id"] == payment_id
        ]
        return sorted(rows, key=lambda d: d["created_at"])

    def complete_pending_donations(self, cur, donation_ids, *, provider_order_id=None):
        out = []
        for did in donation_ids:
            d = self.donations.get(did)
            if d and d["status"] == "pending":
                d["status"] = "succeeded"
                d["completed_at"] = datetime.now(timezone.utc)
                d["provider_order_id"] = d["provider_order_id"] or provider_order_id
                out.append(dict(d))
        return out

    def set_pending_status_for_payment(self, cur, provider, payment_id, status):
        if status not in ("failed", "cancelled"):
            raise ValueError(status)
        out = []
        for d in self.donations.values():
            if (
                d["payment_provider"] == provider
                and d["provider_payment_id"] == payment_id
                and d["status"] == "pending"
            ):
                d["status"] = status
                out.append(dict(d))
        return out

    def cancel_pending_for_squares(self, cur, square_ids):
        out = []
        for d in self.donations.values():
            if d["square_id"] in square_ids and d["status"] == "pending":
                d["status"] = "cancelled"
                out.append(dict(d))
        return out

    def recent_succeeded_for_player(self, player_id, limit=10):
        rows = [
            d for d in self.donations.values()
            if d["player_id"] == player_id and d["status"] == "succeeded"
        ]
        return [
            {
                "id": d["id"],
                "donor": None if d["is_anonymous"] else d["donor_name"],
                "amount_cents": d["amount_cents"],
                "amount": round(d["amount_cents"] / 100.0, 2),
                "completed_at": None,
            }
            for d in rows[-limit:]
        ]

    def receipt_rows(self, payment_id):
        out = []
        for d in sorted(self.donations.values(), key=lambda d: d["created_at"]):
            if d["provider_payment_id"] != payment_id or d["status"] not in ("succeeded", "pending"):
                continue
            player = self.players[d["player_id"]]
            square = self.squares.get(d["square_id"]) or {}
            out.append({
                "id": d["id"],
                "player_id": d["player_id"],
                "square_id": d["square_id"],
                "amount_cents": d["amount_cents"],
                "donor_name": d["donor_name"],
                "is_anonymous": d["is_anonymous"],
                "payment_provider": d["payment_provider"],
                "status": d["status"],
                "created_at": d["completed_at"],
                "completed_at": d["completed_at"],
                "player_name": player["name"],
                "player_slug": player["slug"],
                "position_x": square.get("position_x"),
                "position_y": square.get("position_y"),
            })
        return out

    # -- webhook events, audit, settings -------------------------------------

    def record_webhook_event(self, cur, provider, event_id, event_type, raw_event):
        key = (provider, event_id)
        if key in self.webhook_events:
            return False
        self.webhook_events[key] = event_type
        return True

    def insert_audit_event(self, *, event_type, player_id=None, donation_id=None,
                           details=None):
        self.audit_events.append(
            {"id": next(self._seq), "event_type": event_type, "player_id": player_id,
             "donation_id": donation_id, "details": details,
             "created_at": datetime.now(timezone.utc)}
        )

    def list_audit_events(self, player_id, limit=50):
        rows = [dict(e) for e in reversed(self.audit_events) if e["player_id"] == player_id]
        for e in rows:
            e.pop("player_id")
        return rows[:limit]

    def get_setting(self, key):
        return self.settings.get(key)

    def list_settings(self, category=None):
        return [
            {"key": k, "value": v, **self.setting_meta.get(k, DEFAULT_META)}
            for k, v in sorted(self.settings.items())
            if category is None or self.setting_meta.get(k, DEFAULT_META)["category"] == category
        ]

    def upsert_settings(self, items):
        for item in items:
            self.settings[item["key"]] = str(item["value"])
            self.setting_meta[item["key"]] = {
                "category": item.get("category", "app"),
                "is_secret": bool(item.get("is_secret")),
                "updated_at": None,
            }
        return len(items)


class FakeRedis:
    def __init__(self):
        self.data = {}

    def get(self, key):
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.data[key] = value

    def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)


PATCHED_MODULES = (
    purchase_service,
    ledger_service,
    randomizer,
    webhook_service,
    audit_service,
    notification_service,
    player_routes,
    receipt_routes,
    admin_routes,
    realtime,
)

STORE_FUNCTIONS = (
    "transaction",
    "get_player",
    "get_player_by_slug",
    "list_player_ids",
    "lock_player",
    "insert_player",
    "slug_exists",
    "increment_total_raised",
    "get_squares",
    "list_squares_for_player",
    "lock_squares_for_player",
    "insert_squares",
    "update_unpurchased_values",
    "mark_squares_purchased",
    "release_squares",
    "insert_donations",
    "list_donations_for_payment",
    "complete_pending_donations",
    "set_pending_status_for_payment",
    "cancel_pending_for_squares",
    "recent_succeeded_for_player",
    "receipt_rows",
    "record_webhook_event",
    "insert_audit_event",
    "list_audit_events",
    "list_settings",
    "upsert_settings",
)


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def store(monkeypatch):
    """In-memory database patched into every service and route module."""
    s = FakeStore()
    for module in PATCHED_MODULES:
        for name in STORE_FUNCTIONS:
            if hasattr(module, name):
                monkeypatch.setattr(module, name, getattr(s, name))
    return s


@pytest.fixture
def fake_redis(monkeypatch):
    client = FakeRedis()
    monkeypatch.setattr(purchase_service, "r", lambda: client)
    monkeypatch.setattr(player_routes, "r", lambda: client)
    return client


@pytest.fixture
def notify(monkeypatch):
    """Captures post-donation notifications instead of sending email."""
    mock = MagicMock(return_value=False)
    monkeypatch.setattr(purchase_service, "notify_post_donation", mock)
    return mock


@pytest.fixture
def broadcast(monkeypatch):
    mock = MagicMock()
    monkeypatch.setattr(purchase_service, "socketio", mock)
    return mock


@pytest.fixture
def make_config(store):
    """Build a ConfigService over the fake settings table and an explicit env."""

    def _make(**env):
        return ConfigService(loader=store.get_setting, env=env, ttl_seconds=300)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def side_effects(fake_redis, notify, broadcast):
    return {"redis": fake_redis, "notify": notify, "socketio": broadcast}


@pytest.fixture
def make_client(store, side_effects):
    def _make(config):
        app = create_app(config_service=config)
        app.config["TESTING"] = True
        return app.test_client()

    return _make


@pytest.fixture
def client(make_client, config):
    return make_client(config)
