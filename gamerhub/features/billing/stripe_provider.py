"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe API.
Handles webhook signature verification and event parsing.
"""
import json
from typing import Dict, Any, Optional
from datetime import datetime, timedelta, timezone
import stripe

from gamerhub.core.config import settings
from gamerhub.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)


# Checkout completion does not carry the period; assume a monthly cycle
DEFAULT_PERIOD = timedelta(days=30)


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def ensure_customer(self, user_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Create Stripe customer for user."""
        try:
            customer_data: Dict[str, Any] = {
                "metadata": {"userId": user_id}
            }
            if email:
                customer_data["email"] = email
            if name:
                customer_data["name"] = name

            customer = stripe.Customer.create(**customer_data)
            return customer.id
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe customer creation failed: {e}")

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        metadata: Optional[Dict[str, str]] = None
    ) -> str:
        """Create Stripe checkout session."""
        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                payment_method_types=["card"],
                line_items=[{"price": price_id, "quantity": 1}],
                mode="subscription",
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
            )
            return session.url
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")

    def cancel_at_period_end(self, subscription_id: str) -> None:
        try:
            stripe.Subscription.modify(subscription_id, cancel_at_period_end=True)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription update failed: {e}")

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingWebhookResult:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        # Signature verified; parse the raw JSON so the result is plain data
        return parse_event(json.loads(body))


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def map_price_to_tier(price_id: Optional[str]) -> Optional[str]:
    """Map Stripe price ID to internal tier."""
    if not price_id:
        return None
    price_map = {
        settings.STRIPE_PREMIUM_PRICE_ID: "premium",
        settings.STRIPE_PRO_PRICE_ID: "pro",
    }
    return price_map.get(price_id)


def parse_event(event: Dict[str, Any]) -> BillingWebhookResult:
    """Parse Stripe event into normalized BillingWebhookResult."""
    event_type = event["type"]
    event_id = event["id"]
    data = event.get("data", {}).get("object", {}) or {}
    metadata = data.get("metadata") or {}

    user_id = metadata.get("userId")
    customer_id = data.get("customer")
    subscription_id = None
    tier = metadata.get("plan")
    status = None
    current_period_end = None
    cancel_at_period_end = False

    if event_type == "checkout.session.completed":
        subscription_id = data.get("subscription")
        status = "active"
        current_period_end = datetime.now(timezone.utc) + DEFAULT_PERIOD

    elif event_type.startswith("customer.subscription."):
        subscription_id = data.get("id")
        status = data.get("status")
        items = (data.get("items") or {}).get("data") or []
        if not tier and items:
            tier = map_price_to_tier((items[0].get("price") or {}).get("id"))

        period_end = data.get("current_period_end")
        if not period_end and items:
            # Newer API versions moved the period onto the subscription item
            period_end = items[0].get("current_period_end")
        current_period_end = _from_timestamp(period_end)
        cancel_at_period_end = bool(data.get("cancel_at_period_end", False))

    return BillingWebhookResult(
        event_id=event_id,
        event_type=event_type,
        user_id=user_id,
        customer_id=customer_id,
        subscription_id=subscription_id,
        tier=tier,
        status=status,
        current_period_end=current_period_end,
        cancel_at_period_end=cancel_at_period_end,
        metadata=metadata,
    )
