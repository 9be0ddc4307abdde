from __future__ import annotations

from datetime import UTC, datetime, timedelta
from importlib import import_module
from types import ModuleType

import pytest
from fastapi.testclient import TestClient

from api.utils import db
from api.utils.db import PaymentStatus
from api.utils.notifications import RenewalNotifier, RenewalScheduler

ADMIN_TOKEN = "admin-secret"

ADMIN_HEADERS = {"X-Admin-Token": ADMIN_TOKEN}


def load_main() -> ModuleType:
    return import_module("api.main")


@pytest.fixture()
def client() -> TestClient:
    return TestClient(load_main().app)


def test_healthz_is_public(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"ok": True}


def test_admin_routes_require_token(client):
    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={"X-Admin-Token": "wrong"}).status_code == 401
    assert client.get("/payments").status_code == 401


def test_admin_routes_fail_closed_without_configured_token(client, monkeypatch):
    monkeypatch.delenv("ADMIN_TOKEN")

    assert client.get("/status", headers=ADMIN_HEADERS).status_code == 500


def test_status_reports_counts(client):
    user = db.upsert_user(100, "alice")
    db.set_user_key(user.id, "key-1", datetime.now(UTC) + timedelta(days=1))
    db.upsert_user(101, "bob")
    db.create_payment(user.id, "file-1")

    body = client.get("/status", headers=ADMIN_HEADERS).json()

    assert body["users"] == 2
    assert body["keys"] == 1
    assert body["expiring"] == 1
    assert body["pending_payments"] == 1
    assert body["bot_status"] == "active"


def test_expiring_users_endpoint(client):
    soon = db.upsert_user(100, "soon")
    later = db.upsert_user(101, "later")
    db.set_user_key(soon.id, "key-1", datetime.now(UTC) + timedelta(days=2))
    db.set_user_key(later.id, "key-2", datetime.now(UTC) + timedelta(days=20))

    body = client.get("/users/expiring", params={"days": 3}, headers=ADMIN_HEADERS).json()

    assert body["days"] == 3
    assert [user["telegram_id"] for user in body["expiring"]] == [100]


def test_payments_listing_and_lookup(client):
    user = db.upsert_user(100, "alice")
    first = db.create_payment(user.id, "file-1")
    second = db.create_payment(user.id, "file-2")
    db.set_payment_status(first.id, PaymentStatus.REJECTED, "blurry")

    pending = client.get("/payments", params={"status": "pending"}, headers=ADMIN_HEADERS).json()
    assert pending["total"] == 1
    assert [payment["id"] for payment in pending["payments"]] == [second.id]

    rejected = client.get(f"/payments/{first.id}", headers=ADMIN_HEADERS).json()
    assert rejected["payment"]["status"] == "rejected"
    assert rejected["payment"]["comment"] == "blurry"

    assert client.get("/payments/999", headers=ADMIN_HEADERS).status_code == 404
    assert client.get("/payments", params={"status": "lost"}, headers=ADMIN_HEADERS).status_code == 422


def test_manual_renewal_run(client, monkeypatch):
    now = datetime(2030, 6, 1, 9, 0, tzinfo=UTC)
    user = db.upsert_user(100, "alice")
    db.set_user_key(user.id, "key-1", now + timedelta(hours=3))

    sent: list[int] = []
    scheduler = RenewalScheduler(RenewalNotifier(send_message=lambda chat_id, text: sent.append(chat_id)))
    monkeypatch.setattr(client.app.state, "renewal_scheduler", scheduler)

    response = client.post(
        "/admin/renewals/run",
        json={"now": now.isoformat()},
        headers=ADMIN_HEADERS,
    )

    assert response.status_code == 200
    assert response.json()["notified"] == 1
    assert sent == [100]
