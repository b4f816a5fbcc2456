"""
Billing service orchestrator.

Pure-ish business logic that coordinates:
- Customer management
- Subscription checkout and cancellation
- Webhook processing (idempotent on Stripe event id)
- Subscription record synchronization

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import logging
from typing import Optional, Dict
from datetime import datetime, timezone
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from gamerhub.core.config import settings
from gamerhub.core.database import get_db_session, billing_events, subscriptions, users
from gamerhub.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    BillingWebhookError,
    BillingWebhookResult,
)
from gamerhub.features.billing.stripe_provider import StripeProvider
from gamerhub.features.usage.service import get_or_create_user, get_subscription, set_subscription
from gamerhub.models.subscription import SubscriptionTier


logger = logging.getLogger(__name__)

PAID_TIERS = (SubscriptionTier.PREMIUM, SubscriptionTier.PRO)


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def get_stripe_price_for_tier(tier: str) -> Optional[str]:
    """Map internal tier to Stripe price ID."""
    price_map = {
        SubscriptionTier.PREMIUM.value: settings.STRIPE_PREMIUM_PRICE_ID,
        SubscriptionTier.PRO.value: settings.STRIPE_PRO_PRICE_ID,
    }
    return price_map.get(tier)


def start_checkout(
    user_id: str,
    tier: str,
    success_url: Optional[str] = None,
    cancel_url: Optional[str] = None,
) -> Optional[str]:
    """
    Start a subscription checkout session.

    Returns:
        Checkout URL, or None if billing disabled

    Raises:
        BillingProviderError: If checkout creation fails
        ValueError: If the tier is not a paid tier or has no Stripe price
    """
    provider = get_provider()
    if not provider:
        return None

    if tier not in {t.value for t in PAID_TIERS}:
        raise ValueError(f"Invalid plan: {tier}")
    price_id = get_stripe_price_for_tier(tier)
    if not price_id:
        raise ValueError(f"No Stripe price configured for plan: {tier}")

    existing = get_subscription(user_id)
    customer_id = existing.stripe_customer_id if existing else None
    if not customer_id:
        with get_db_session() as session:
            row = session.execute(
                select(users.c.email, users.c.display_name).where(users.c.user_id == user_id)
            ).first()
        customer_id = provider.ensure_customer(
            user_id,
            row.email if row else None,
            row.display_name if row else None,
        )
        if existing:
            with get_db_session() as session:
                session.execute(
                    update(subscriptions)
                    .where(subscriptions.c.user_id == user_id)
                    .values(stripe_customer_id=customer_id)
                )
        else:
            get_or_create_user(user_id)
            set_subscription(user_id, SubscriptionTier.FREE.value, "inactive", stripe_customer_id=customer_id)
        logger.info("[billing] customer created", extra={"user_id": user_id})

    base = settings.BASE_URL.rstrip("/")
    return provider.create_checkout_session(
        customer_id=customer_id,
        price_id=price_id,
        success_url=success_url or f"{base}/subscription/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=cancel_url or f"{base}/subscription/canceled",
        metadata={"userId": user_id, "plan": tier},
    )


def cancel_subscription(user_id: str) -> bool:
    """
    Cancel the user's subscription at the end of the current period.

    Returns:
        False if the user has no Stripe subscription or billing is disabled

    Raises:
        BillingProviderError: If the Stripe update fails
    """
    provider = get_provider()
    if not provider:
        return False

    record = get_subscription(user_id)
    if not record or not record.stripe_subscription_id:
        return False

    provider.cancel_at_period_end(record.stripe_subscription_id)
    with get_db_session() as session:
        session.execute(
            update(subscriptions)
            .where(subscriptions.c.user_id == user_id)
            .values(cancel_at_period_end=True, updated_at=datetime.now(timezone.utc))
        )
    logger.info("[billing] cancel at period end", extra={"user_id": user_id})
    return True


def apply_webhook_result(result: BillingWebhookResult) -> None:
    """Apply subscription state carried by a parsed webhook (idempotent)."""
    if result.event_type == "checkout.session.completed":
        if not result.user_id or not result.tier:
            logger.warning("[billing] checkout without userId/plan metadata", extra={"event_id": result.event_id})
            return
        get_or_create_user(result.user_id)
        set_subscription(
            result.user_id,
            SubscriptionTier.parse(result.tier).value,
            "active",
            stripe_customer_id=result.customer_id,
            stripe_subscription_id=result.subscription_id,
            current_period_end=result.current_period_end,
            cancel_at_period_end=False,
        )
        return

    if result.event_type in ("customer.subscription.updated", "customer.subscription.deleted"):
        if not result.subscription_id:
            return
        values: Dict[str, object] = {
            "status": result.status or "unknown",
            "current_period_end": result.current_period_end,
            "cancel_at_period_end": result.cancel_at_period_end,
            "updated_at": datetime.now(timezone.utc),
        }
        if result.tier:
            values["tier"] = SubscriptionTier.parse(result.tier).value
        with get_db_session() as session:
            session.execute(
                update(subscriptions)
                .where(subscriptions.c.stripe_subscription_id == result.subscription_id)
                .values(**values)
            )
        return

    logger.info("[billing] unhandled event type", extra={"event_type": result.event_type})


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    provider: Optional[BillingProvider] = None,
) -> BillingWebhookResult:
    """
    Process billing webhook event (idempotent).

    1. Verify signature
    2. Check idempotency (skip if already processed; a recorded but failed
       event is applied again when Stripe retries it)
    3. Apply state changes
    4. Mark as processed

    Raises:
        BillingWebhookError: If signature invalid or billing disabled
    """
    provider = provider or get_provider()
    if not provider:
        raise BillingWebhookError("Billing not enabled")

    result = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.id, billing_events.c.processed)
            .where(billing_events.c.stripe_event_id == result.event_id)
        ).first()
    if existing and existing.processed:
        logger.info("[billing] duplicate webhook skipped", extra={"event_id": result.event_id})
        return result

    if existing:
        logger.info("[billing] retrying unprocessed webhook", extra={"event_id": result.event_id})
    else:
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_events).values(
                        stripe_event_id=result.event_id,
                        event_type=result.event_type,
                        payload_hash=payload_hash,
                        processed=False,
                        received_at=datetime.now(timezone.utc),
                    )
                )
        except IntegrityError:
            # Another worker recorded this event first
            return result

    try:
        apply_webhook_result(result)
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
            )
    except Exception as e:
        with get_db_session() as session:
            session.execute(
                update(billing_events)
                .where(billing_events.c.stripe_event_id == result.event_id)
                .values(error=str(e))
            )
        raise

    logger.info(
        "[billing] webhook processed",
        extra={"event_id": result.event_id, "event_type": result.event_type, "user_id": result.user_id},
    )
    return result
