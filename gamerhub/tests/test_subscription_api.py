"""
Subscription and entitlement routes.
"""
from datetime import datetime, timezone
from unittest.mock import patch

from gamerhub.features.billing.provider import BillingProviderError, BillingWebhookError
from gamerhub.features.billing.stripe_provider import parse_event
from gamerhub.features.usage.service import get_or_create_user, record_post, set_subscription


ALICE = {"X-User-Id": "user_alice"}


def test_status_for_new_user_is_free(client):
    resp = client.get("/api/subscription/status", headers=ALICE)
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "free"
    assert body["subscription"]["is_free"] is True
    assert body["limits"]["max_posts_per_day"] == 10
    assert body["usage"] == {"posts_today": 0, "storage_used_gb": 0.0, "group_count": 0, "boosts_this_month": 0}


def test_status_reflects_active_subscription(client):
    get_or_create_user("user_alice")
    set_subscription("user_alice", "pro", "active")
    body = client.get("/api/subscription/status", headers=ALICE).json()
    assert body["tier"] == "pro"
    assert body["limits"]["max_posts_per_day"] == -1


def test_status_requires_user(client):
    resp = client.get("/api/subscription/status")
    assert resp.status_code == 401


def test_entitlement_check_for_post(client):
    get_or_create_user("user_alice")
    for _ in range(10):
        record_post("user_alice", created_at=datetime.now(timezone.utc))

    body = client.get("/api/entitlements/post", headers=ALICE).json()
    assert body["allowed"] is False
    assert body["reason"].startswith("Daily post limit reached (10 posts)")


def test_entitlement_check_reports_remaining(client):
    body = client.get("/api/entitlements/boost", headers=ALICE).json()
    assert body == {"allowed": True, "remaining": 5}


def test_entitlement_check_upload_uses_file_size(client):
    assert client.get("/api/entitlements/upload?file_size=1024", headers=ALICE).json() == {"allowed": True}
    body = client.get(f"/api/entitlements/upload?file_size={2 * 1024 ** 3}", headers=ALICE).json()
    assert body["allowed"] is False


def test_entitlement_unknown_action(client):
    resp = client.get("/api/entitlements/teleport", headers=ALICE)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_admin_allow_list_from_settings(client, monkeypatch):
    from gamerhub.core.config import settings

    monkeypatch.setattr(settings, "ADMIN_EMAILS", "boss@gamerhub.gg")
    get_or_create_user("user_boss", email="boss@gamerhub.gg", email_verified=True)
    for _ in range(20):
        record_post("user_boss", created_at=datetime.now(timezone.utc))

    body = client.get("/api/entitlements/post", headers={"X-User-Id": "user_boss"}).json()
    assert body == {"allowed": True}
    status = client.get("/api/subscription/status", headers={"X-User-Id": "user_boss"}).json()
    assert status["tier"] == "pro"


def test_create_subscription_billing_disabled(client):
    resp = client.post("/api/subscription/create", json={"plan": "premium"}, headers=ALICE)
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_create_subscription_returns_checkout_url(client, mock_stripe_provider):
    mock_stripe_provider.ensure_customer.return_value = "cus_1"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/c/1"

    resp = client.post("/api/subscription/create", json={"plan": "Premium"}, headers=ALICE)
    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.com/c/1"}


def test_create_subscription_invalid_plan(client, mock_stripe_provider):
    resp = client.post("/api/subscription/create", json={"plan": "free"}, headers=ALICE)
    assert resp.status_code == 400


def test_create_subscription_stripe_failure(client, mock_stripe_provider):
    mock_stripe_provider.ensure_customer.side_effect = BillingProviderError("Stripe customer creation failed")
    resp = client.post("/api/subscription/create", json={"plan": "pro"}, headers=ALICE)
    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "billing_error"


def test_cancel_without_subscription_not_found(client, mock_stripe_provider):
    resp = client.post("/api/subscription/cancel", headers=ALICE)
    assert resp.status_code == 404


def test_cancel_marks_period_end(client, mock_stripe_provider):
    get_or_create_user("user_alice")
    set_subscription("user_alice", "premium", "active", stripe_subscription_id="sub_1")

    resp = client.post("/api/subscription/cancel", headers=ALICE)
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "cancel_at_period_end": True}
    mock_stripe_provider.cancel_at_period_end.assert_called_once_with("sub_1")


def test_webhook_route_applies_event(client, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = parse_event({
        "id": "evt_9",
        "type": "checkout.session.completed",
        "data": {"object": {"customer": "cus_1", "subscription": "sub_9",
                            "metadata": {"userId": "user_alice", "plan": "pro"}}},
    })

    resp = client.post("/api/webhooks/stripe", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})
    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_9"}

    body = client.get("/api/subscription/status", headers=ALICE).json()
    assert body["tier"] == "pro"


def test_webhook_route_rejects_bad_signature(client, mock_stripe_provider):
    mock_stripe_provider.handle_webhook.side_effect = BillingWebhookError("Invalid signature: nope")
    resp = client.post("/api/webhooks/stripe", content=b"{}")
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "invalid_webhook"


def test_webhook_route_billing_disabled(client):
    with patch("gamerhub.features.billing.service.StripeProvider") as provider:
        resp = client.post("/api/webhooks/stripe", content=b"{}")
        provider.assert_not_called()
    assert resp.status_code == 503
