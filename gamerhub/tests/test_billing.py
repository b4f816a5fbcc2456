"""
Test billing service and Stripe provider.

Tests with mocked Stripe provider (no real API calls). Webhook signatures are
computed locally with the test secret.
"""
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from sqlalchemy import select

from gamerhub.core.database import billing_events, get_db_session
from gamerhub.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from gamerhub.features.billing.service import (
    billing_enabled,
    cancel_subscription,
    get_provider,
    process_webhook_event,
    start_checkout,
)
from gamerhub.features.billing.stripe_provider import StripeProvider, parse_event
from gamerhub.features.entitlements.service import get_entitlement_service
from gamerhub.features.usage.service import get_or_create_user, get_subscription, set_subscription
from gamerhub.models.subscription import SubscriptionTier


def sign(payload: bytes, secret: str = "whsec_test", timestamp: int = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def checkout_completed(event_id="evt_1", user_id="user_alice", plan="premium"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_1",
                "customer": "cus_1",
                "subscription": "sub_1",
                "metadata": {"userId": user_id, "plan": plan},
            }
        },
    }


def subscription_event(event_type, status, event_id="evt_2", cancel_at_period_end=False, price="price_premium"):
    return {
        "id": event_id,
        "type": event_type,
        "data": {
            "object": {
                "id": "sub_1",
                "customer": "cus_1",
                "status": status,
                "cancel_at_period_end": cancel_at_period_end,
                "current_period_end": 1735689600,
                "items": {"data": [{"price": {"id": price}}]},
                "metadata": {},
            }
        },
    }


def webhook_result(event: dict) -> BillingWebhookResult:
    return parse_event(event)


@pytest.fixture
def alice():
    return get_or_create_user("user_alice", email="alice@example.com", display_name="Alice")


def test_billing_disabled_without_secret_key():
    assert billing_enabled() is False
    assert get_provider() is None
    assert start_checkout("user_alice", "premium") is None


def test_start_checkout_creates_customer_once(mock_stripe_provider, alice):
    mock_stripe_provider.ensure_customer.return_value = "cus_new"
    mock_stripe_provider.create_checkout_session.return_value = "https://checkout.stripe.com/c/1"

    url = start_checkout("user_alice", "premium")
    assert url == "https://checkout.stripe.com/c/1"
    mock_stripe_provider.ensure_customer.assert_called_once_with("user_alice", "alice@example.com", "Alice")

    kwargs = mock_stripe_provider.create_checkout_session.call_args.kwargs
    assert kwargs["customer_id"] == "cus_new"
    assert kwargs["price_id"] == "price_premium"
    assert kwargs["metadata"] == {"userId": "user_alice", "plan": "premium"}

    record = get_subscription("user_alice")
    assert record.stripe_customer_id == "cus_new"
    assert record.tier == "free"

    start_checkout("user_alice", "pro")
    assert mock_stripe_provider.ensure_customer.call_count == 1
    assert mock_stripe_provider.create_checkout_session.call_args.kwargs["price_id"] == "price_pro"


@pytest.mark.parametrize("plan", ["free", "platinum"])
def test_start_checkout_rejects_non_paid_plans(mock_stripe_provider, plan):
    with pytest.raises(ValueError):
        start_checkout("user_alice", plan)
    mock_stripe_provider.create_checkout_session.assert_not_called()


def test_cancel_subscription(mock_stripe_provider, alice):
    assert cancel_subscription("user_alice") is False

    set_subscription("user_alice", "premium", "active", stripe_customer_id="cus_1", stripe_subscription_id="sub_1")
    assert cancel_subscription("user_alice") is True
    mock_stripe_provider.cancel_at_period_end.assert_called_once_with("sub_1")
    assert get_subscription("user_alice").cancel_at_period_end is True


def test_cancel_subscription_provider_error(mock_stripe_provider, alice):
    set_subscription("user_alice", "premium", "active", stripe_subscription_id="sub_1")
    mock_stripe_provider.cancel_at_period_end.side_effect = BillingProviderError("boom")
    with pytest.raises(BillingProviderError):
        cancel_subscription("user_alice")
    assert get_subscription("user_alice").cancel_at_period_end is False


def test_checkout_webhook_activates_subscription(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())

    process_webhook_event({}, b"{}")

    record = get_subscription("user_alice")
    assert record.tier == "premium"
    assert record.status == "active"
    assert record.stripe_subscription_id == "sub_1"
    assert record.current_period_end is not None
    assert get_entitlement_service().get_user_subscription("user_alice").tier == SubscriptionTier.PREMIUM


def test_duplicate_webhook_is_processed_once(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())
    process_webhook_event({}, b"{}")

    with patch("gamerhub.features.billing.service.apply_webhook_result") as apply:
        process_webhook_event({}, b"{}")
        apply.assert_not_called()

    with get_db_session() as session:
        rows = session.execute(select(billing_events)).fetchall()
    assert len(rows) == 1
    assert rows[0].processed is True


def test_subscription_deleted_drops_to_free(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())
    process_webhook_event({}, b"{}")

    mock_stripe_provider.handle_webhook.return_value = webhook_result(
        subscription_event("customer.subscription.deleted", "canceled", event_id="evt_3")
    )
    process_webhook_event({}, b"{}")

    record = get_subscription("user_alice")
    assert record.status == "canceled"
    assert get_entitlement_service().get_user_subscription("user_alice").tier == SubscriptionTier.FREE


def test_subscription_updated_sets_cancel_flag_and_period(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())
    process_webhook_event({}, b"{}")

    mock_stripe_provider.handle_webhook.return_value = webhook_result(
        subscription_event("customer.subscription.updated", "active", cancel_at_period_end=True, price="price_pro")
    )
    process_webhook_event({}, b"{}")

    record = get_subscription("user_alice")
    assert record.cancel_at_period_end is True
    assert record.tier == "pro"
    assert record.current_period_end.replace(tzinfo=timezone.utc) == datetime(2025, 1, 1, tzinfo=timezone.utc)


def test_failed_apply_records_error(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())
    with patch("gamerhub.features.billing.service.apply_webhook_result", side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            process_webhook_event({}, b"{}")

    with get_db_session() as session:
        row = session.execute(select(billing_events)).first()
    assert row.processed is False
    assert row.error == "db down"


def test_failed_event_is_applied_on_stripe_retry(mock_stripe_provider):
    mock_stripe_provider.handle_webhook.return_value = webhook_result(checkout_completed())
    with patch("gamerhub.features.billing.service.apply_webhook_result", side_effect=RuntimeError("db down")):
        with pytest.raises(RuntimeError):
            process_webhook_event({}, b"{}")
    assert get_subscription("user_alice") is None

    process_webhook_event({}, b"{}")

    record = get_subscription("user_alice")
    assert record.tier == "premium"
    assert record.status == "active"
    with get_db_session() as session:
        rows = session.execute(select(billing_events)).fetchall()
    assert len(rows) == 1
    assert rows[0].processed is True
    assert rows[0].error is None


def test_stripe_provider_verifies_signature(billing_settings):
    payload = json.dumps(checkout_completed(plan="pro")).encode()
    provider = StripeProvider()

    result = provider.handle_webhook({"stripe-signature": sign(payload)}, payload)
    assert result.event_id == "evt_1"
    assert result.user_id == "user_alice"
    assert result.tier == "pro"
    assert result.customer_id == "cus_1"
    assert result.subscription_id == "sub_1"
    assert result.status == "active"


def test_stripe_provider_rejects_bad_signature(billing_settings):
    payload = json.dumps(checkout_completed()).encode()
    provider = StripeProvider()

    with pytest.raises(BillingWebhookError, match="Invalid signature"):
        provider.handle_webhook({"stripe-signature": sign(payload, secret="whsec_wrong")}, payload)
    with pytest.raises(BillingWebhookError, match="Missing stripe-signature"):
        provider.handle_webhook({}, payload)


def test_stripe_provider_requires_secret_key():
    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_parse_subscription_event_maps_price_to_tier(billing_settings):
    result = parse_event(subscription_event("customer.subscription.updated", "past_due", price="price_pro"))
    assert result.tier == "pro"
    assert result.status == "past_due"
    assert result.subscription_id == "sub_1"
    assert result.current_period_end == datetime(2025, 1, 1, tzinfo=timezone.utc)
