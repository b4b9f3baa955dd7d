"""HTTP surface tests: auth, error envelope and the main order flows."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.orm import sessionmaker

from app.api import step_up as step_up_api
from app.api.deps import get_db, get_notification_sender, get_reconciler, get_step_up_gate
from app.main import app
from app.models.order import OrderStatus
from app.models.subscription import Subscription
from app.services.payments.errors import ProviderUnavailable, TransitionRejected
from app.services.payments.events import LedgerEventKind
from app.services.payments.ledger import OrderLedger
from app.services.step_up import StepUpGate
from tests.mocks import VALID_SIGNATURE, FakeSender, make_order


def _token(subject="user-1", roles=None, session_id="sess-1", email="fan@example.com"):
    claims = {"sub": subject, "roles": roles or [], "session_id": session_id}
    if email:
        claims["email"] = email
    return jwt.encode(claims, "test-secret", algorithm="HS256")


def _auth(**kwargs):
    return {"Authorization": f"Bearer {_token(**kwargs)}"}


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def seed(session_factory):
    """Insert rows through a session that is closed before any request runs."""

    def _seed(**kwargs):
        session = session_factory()
        try:
            order = make_order(session, **kwargs)
            return order.id
        finally:
            session.close()

    return _seed


@pytest.fixture()
def sender():
    return FakeSender()


@pytest.fixture()
def client(session_factory, reconciler, sender):
    def _get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_reconciler] = lambda: reconciler
    app.dependency_overrides[get_step_up_gate] = lambda: StepUpGate("test-pepper", "test-secret")
    app.dependency_overrides[get_notification_sender] = lambda: sender
    step_up_api.limiter.reset()
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.dependency_overrides.clear()


# =============================================================================
# Platform
# =============================================================================


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


def test_missing_token_uses_error_envelope(client):
    response = client.get("/api/v1/subscriptions/group-1/access")

    assert response.status_code == 401
    body = response.json()
    assert body["code"] == "http_401"
    assert body["message"] == "Unauthorized"
    assert body["request_id"]


def test_token_signed_with_another_secret_is_rejected(client):
    token = jwt.encode({"sub": "user-1"}, "other-secret", algorithm="HS256")

    response = client.get(
        "/api/v1/subscriptions/group-1/access",
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == 401


# =============================================================================
# Webhooks
# =============================================================================


class TestWebhookEndpoint:
    def test_valid_delivery_is_applied_then_acknowledged_as_duplicate(self, client, seed):
        order_id = seed()
        body = json.dumps({"kind": "paid", "order_id": str(order_id), "event_id": "evt_1"})
        headers = {"X-Test-Signature": VALID_SIGNATURE, "Content-Type": "application/json"}

        first = client.post("/api/v1/payments/webhooks/card", content=body, headers=headers)
        second = client.post("/api/v1/payments/webhooks/card", content=body, headers=headers)

        assert first.status_code == 200
        assert first.json() == {"status": "ok"}
        assert second.json() == {"status": "duplicate"}
        order = client.get(f"/api/v1/orders/{order_id}", headers=_auth()).json()
        assert order["status"] == "paid"
        assert order["version"] == 2

    def test_bad_signature_is_401_without_detail(self, client, seed):
        order_id = seed()
        body = json.dumps({"kind": "paid", "order_id": str(order_id), "event_id": "evt_2"})

        response = client.post(
            "/api/v1/payments/webhooks/card",
            content=body,
            headers={"X-Test-Signature": "forged"},
        )

        assert response.status_code == 401
        assert response.json()["code"] == "signature_invalid"
        assert response.json()["details"] is None
        order = client.get(f"/api/v1/orders/{order_id}", headers=_auth()).json()
        assert order["status"] == "pending"

    def test_malformed_signed_body_is_acknowledged(self, client):
        response = client.post(
            "/api/v1/payments/webhooks/card",
            content=b"not json",
            headers={"X-Test-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    def test_illegal_transition_is_acknowledged_not_conflict(self, client, seed):
        order_id = seed(status=OrderStatus.canceled)
        body = json.dumps({"kind": "paid", "order_id": str(order_id), "event_id": "evt_late"})

        response = client.post(
            "/api/v1/payments/webhooks/card",
            content=body,
            headers={"X-Test-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored"}

    def test_persistent_version_race_is_retryable_503(self, client, seed, monkeypatch):
        order_id = seed()

        def always_stale(db, order, event, expected_version=None):
            raise TransitionRejected("stale_version", "pending", "paid")

        monkeypatch.setattr(OrderLedger, "apply", staticmethod(always_stale))
        body = json.dumps({"kind": "paid", "order_id": str(order_id), "event_id": "evt_race"})

        response = client.post(
            "/api/v1/payments/webhooks/card",
            content=body,
            headers={"X-Test-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 503
        assert response.json()["code"] == "webhook_deferred"
        assert response.json()["details"]["retryable"] is True

    def test_unknown_provider_is_404(self, client):
        response = client.post(
            "/api/v1/payments/webhooks/bank_transfer",
            content=b"{}",
            headers={"X-Test-Signature": VALID_SIGNATURE},
        )

        assert response.status_code == 404
        assert response.json()["code"] == "unknown_provider"


# =============================================================================
# Orders
# =============================================================================


CHECKOUT_BODY = {
    "line_items": [{"sku": "T1", "name": "Ticket", "quantity": 2, "unit_price": "2500"}],
    "provider": "card",
    "recipient_email": "fan@example.com",
}


class TestOrderEndpoints:
    def test_checkout_returns_created_order_and_redirect(self, client):
        response = client.post("/api/v1/orders", json=CHECKOUT_BODY, headers=_auth())

        assert response.status_code == 201
        body = response.json()
        assert body["provider"] == "card"
        assert body["redirect_url"].startswith("https://pay.example/")
        assert body["order"]["owner_id"] == "user-1"
        assert body["order"]["status"] == "pending"
        assert Decimal(body["order"]["amount"]) == Decimal("5000")
        assert body["order"]["external_refs"] == {"card": body["external_id"]}

    def test_checkout_during_provider_outage_is_503(self, client, card_adapter):
        card_adapter.initiate_error = ProviderUnavailable("card")

        response = client.post("/api/v1/orders", json=CHECKOUT_BODY, headers=_auth())

        assert response.status_code == 503
        body = response.json()
        assert body["code"] == "provider_unavailable"
        assert body["details"] == {"provider": "card", "retryable": True}

    def test_checkout_validation_error(self, client):
        response = client.post(
            "/api/v1/orders", json={"line_items": [], "provider": "card"}, headers=_auth()
        )

        assert response.status_code == 422
        assert response.json()["code"] == "validation_error"

    def test_other_owner_cannot_read_order(self, client, seed):
        order_id = seed()

        response = client.get(f"/api/v1/orders/{order_id}", headers=_auth(subject="user-2"))

        assert response.status_code == 404
        assert response.json()["code"] == "order_not_found"

    def test_status_with_refresh_polls_provider(self, client, seed, card_adapter):
        order_id = seed()
        client.post(
            f"/api/v1/orders/{order_id}/payment", json={"provider": "card"}, headers=_auth()
        )

        plain = client.get(f"/api/v1/orders/{order_id}/status", headers=_auth())
        card_adapter.poll_kind = LedgerEventKind.paid
        refreshed = client.get(
            f"/api/v1/orders/{order_id}/status", params={"refresh": "true"}, headers=_auth()
        )

        assert plain.json()["status"] == "pending"
        assert plain.json()["refreshed"] is False
        assert refreshed.status_code == 200
        assert refreshed.json()["status"] == "paid"
        assert refreshed.json()["payment_status"] == "captured"
        assert refreshed.json()["refreshed"] is True

    def test_retry_payment_with_another_provider(self, client, seed):
        order_id = seed()

        response = client.post(
            f"/api/v1/orders/{order_id}/payment",
            json={"provider": "qr_wallet_b"},
            headers=_auth(),
        )

        assert response.status_code == 200
        assert response.json()["order"]["status"] == "pending_provider_b"

    def test_cancel_pending_order(self, client, seed, card_adapter):
        order_id = seed()
        checkout = client.post(
            f"/api/v1/orders/{order_id}/payment", json={"provider": "card"}, headers=_auth()
        ).json()

        response = client.post(
            f"/api/v1/orders/{order_id}/cancel", json={"reason": "changed_mind"}, headers=_auth()
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "canceled"
        assert body["cancel_reason"] == "changed_mind"
        assert body["remote_void_status"] == "confirmed"
        assert card_adapter.voided == [checkout["external_id"]]

    def test_cancel_without_body_uses_default_reason(self, client, seed):
        order_id = seed()

        response = client.post(f"/api/v1/orders/{order_id}/cancel", headers=_auth())

        assert response.status_code == 200
        assert response.json()["remote_void_status"] == "not_required"

    def test_cancel_paid_order_is_conflict(self, client, seed):
        order_id = seed(status=OrderStatus.paid)

        response = client.post(f"/api/v1/orders/{order_id}/cancel", headers=_auth())

        assert response.status_code == 409
        assert response.json()["code"] == "order_not_cancelable"
        assert response.json()["details"] == {"status": "paid"}


class TestFulfillmentEndpoint:
    def test_requires_admin_role(self, client, seed):
        order_id = seed(status=OrderStatus.paid)

        response = client.post(
            f"/api/v1/admin/orders/{order_id}/fulfillment",
            json={"status": "processing"},
            headers=_auth(),
        )

        assert response.status_code == 403

    def test_admin_advances_fulfillment(self, client, seed):
        order_id = seed(status=OrderStatus.paid)

        response = client.post(
            f"/api/v1/admin/orders/{order_id}/fulfillment",
            json={"status": "processing", "expected_version": 1},
            headers=_auth(subject="admin-1", roles=["admin"]),
        )

        assert response.status_code == 200
        assert response.json()["status"] == "processing"
        assert response.json()["version"] == 2

    def test_stale_version_is_conflict(self, client, seed):
        order_id = seed(status=OrderStatus.paid)

        response = client.post(
            f"/api/v1/admin/orders/{order_id}/fulfillment",
            json={"status": "processing", "expected_version": 7},
            headers=_auth(subject="admin-1", roles=["admin"]),
        )

        assert response.status_code == 409
        assert response.json()["code"] == "stale_version"

    def test_skipping_payment_is_conflict(self, client, seed):
        order_id = seed()

        response = client.post(
            f"/api/v1/admin/orders/{order_id}/fulfillment",
            json={"status": "shipped"},
            headers=_auth(subject="admin-1", roles=["admin"]),
        )

        assert response.status_code == 409
        assert response.json()["code"] == "illegal_transition"
        assert response.json()["details"]["from_status"] == "pending"

    def test_non_fulfillment_status_is_rejected(self, client, seed):
        order_id = seed(status=OrderStatus.paid)

        response = client.post(
            f"/api/v1/admin/orders/{order_id}/fulfillment",
            json={"status": "refunded"},
            headers=_auth(subject="admin-1", roles=["admin"]),
        )

        assert response.status_code == 422


# =============================================================================
# Subscriptions
# =============================================================================


class TestSubscriptionEndpoints:
    def _subscription(self, session_factory, period_end):
        session = session_factory()
        try:
            session.add(
                Subscription(
                    owner_id="user-1",
                    group_id="group-1",
                    provider="card",
                    provider_subscription_id="sub_1",
                    cached_status="active",
                    current_period_end=period_end,
                )
            )
            session.commit()
        finally:
            session.close()

    def test_access_granted_for_active_subscription(self, client, session_factory):
        self._subscription(session_factory, datetime.now(timezone.utc) + timedelta(days=3))

        response = client.get("/api/v1/subscriptions/group-1/access", headers=_auth())

        assert response.status_code == 200
        body = response.json()
        assert body["has_access"] is True
        assert body["subscription"]["provider_subscription_id"] == "sub_1"

    def test_lapsed_subscription_has_no_access(self, client, session_factory):
        self._subscription(session_factory, datetime.now(timezone.utc) - timedelta(minutes=1))

        response = client.get("/api/v1/subscriptions/group-1/access", headers=_auth())

        assert response.json()["has_access"] is False
        assert response.json()["subscription"]["cached_status"] == "expired"

    def test_no_subscription(self, client):
        response = client.get("/api/v1/subscriptions/group-9/access", headers=_auth())

        assert response.json() == {"group_id": "group-9", "has_access": False, "subscription": None}

    def test_cancel_at_period_end_keeps_access(self, client, session_factory, card_adapter):
        self._subscription(session_factory, datetime.now(timezone.utc) + timedelta(days=3))

        response = client.post("/api/v1/subscriptions/sub_1/cancel", headers=_auth())

        assert response.status_code == 200
        assert response.json()["cancel_at_period_end"] is True
        assert response.json()["cached_status"] == "active"
        assert card_adapter.subscription_updates == [("sub_1", True)]
        access = client.get("/api/v1/subscriptions/group-1/access", headers=_auth()).json()
        assert access["has_access"] is True

    def test_reactivate(self, client, session_factory, card_adapter):
        self._subscription(session_factory, datetime.now(timezone.utc) + timedelta(days=3))
        client.post("/api/v1/subscriptions/sub_1/cancel", headers=_auth())

        response = client.post("/api/v1/subscriptions/sub_1/reactivate", headers=_auth())

        assert response.status_code == 200
        assert response.json()["cancel_at_period_end"] is False
        assert card_adapter.subscription_updates[-1] == ("sub_1", False)

    def test_cancel_other_owners_subscription_is_404(self, client, session_factory):
        self._subscription(session_factory, datetime.now(timezone.utc) + timedelta(days=3))

        response = client.post(
            "/api/v1/subscriptions/sub_1/cancel", headers=_auth(subject="user-2")
        )

        assert response.status_code == 404
        assert response.json()["code"] == "subscription_not_found"

    def test_sweep_requires_admin(self, client):
        response = client.post("/api/v1/subscriptions/sweep", headers=_auth())

        assert response.status_code == 403

    def test_admin_sweep(self, client, session_factory):
        self._subscription(session_factory, datetime.now(timezone.utc) - timedelta(days=1))

        response = client.post(
            "/api/v1/subscriptions/sweep",
            json={"group_id": "group-1"},
            headers=_auth(subject="admin-1", roles=["admin"]),
        )

        assert response.status_code == 200
        assert response.json()["expired"] == 1


# =============================================================================
# Step-up verification
# =============================================================================


class TestStepUpEndpoints:
    def test_wallet_requires_step_up(self, client):
        response = client.get("/api/v1/wallet", headers=_auth())

        assert response.status_code == 403
        assert response.json()["code"] == "step_up_required"

    def test_full_flow_unlocks_wallet(self, client, seed, sender):
        seed(status=OrderStatus.paid, amount="5000")
        seed(status=OrderStatus.shipped, amount="1500")

        issued = client.post("/api/v1/step-up/issue", headers=_auth())

        assert issued.status_code == 202
        assert len(sender.sent) == 1
        template, recipient, data = sender.sent[0]
        assert template == "step_up_code"
        assert recipient == "fan@example.com"
        assert data["code"] not in issued.text

        verified = client.post(
            "/api/v1/step-up/verify", json={"code": data["code"]}, headers=_auth()
        )

        assert verified.status_code == 200
        assert verified.json()["verified"] is True
        assert step_up_api.GRANT_COOKIE in verified.cookies

        wallet = client.get("/api/v1/wallet", headers=_auth())

        assert wallet.status_code == 200
        body = wallet.json()
        assert body["owner_id"] == "user-1"
        assert body["orders_paid"] == 2
        assert Decimal(body["total_paid"]) == Decimal("6500")

    def test_wrong_code_is_generic_400(self, client, sender):
        client.post("/api/v1/step-up/issue", headers=_auth())
        code = sender.sent[0][2]["code"]
        wrong = "AAAAAA" if code != "AAAAAA" else "BBBBBB"

        response = client.post("/api/v1/step-up/verify", json={"code": wrong}, headers=_auth())

        assert response.status_code == 400
        assert response.json()["code"] == "verification_failed"
        assert step_up_api.GRANT_COOKIE not in response.cookies

    def test_code_from_another_session_is_refused(self, client, sender):
        client.post("/api/v1/step-up/issue", headers=_auth())
        code = sender.sent[0][2]["code"]

        response = client.post(
            "/api/v1/step-up/verify", json={"code": code}, headers=_auth(session_id="sess-2")
        )

        assert response.status_code == 400

    def test_issue_without_email_sends_nothing(self, client, sender):
        response = client.post("/api/v1/step-up/issue", headers=_auth(email=None))

        assert response.status_code == 202
        assert sender.sent == []

    def test_reissue_during_cooldown_looks_the_same(self, client, sender):
        first = client.post("/api/v1/step-up/issue", headers=_auth())
        second = client.post("/api/v1/step-up/issue", headers=_auth())

        assert first.json() == second.json()
        assert len(sender.sent) == 1
