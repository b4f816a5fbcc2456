"""
Subscription and entitlement API routes.

- GET  /api/subscription/status: Effective tier, limits and current usage
- GET  /api/entitlements/{action}: Entitlement decision for one action kind
- POST /api/subscription/create: Start Stripe checkout for a paid plan
- POST /api/subscription/cancel: Cancel at the end of the current period
- POST /api/webhooks/stripe: Handle Stripe webhooks
"""
from typing import Any, Dict

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

from gamerhub.core.auth import get_current_user_id
from gamerhub.core.logging import log_event
from gamerhub.core.errors import (
    AppError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from gamerhub.features.billing.provider import BillingProviderError, BillingWebhookError
from gamerhub.features.billing.service import (
    billing_enabled,
    cancel_subscription,
    process_webhook_event,
    start_checkout,
)
from gamerhub.features.entitlements.service import ActionKind, get_entitlement_service


router = APIRouter(tags=["subscription"])


class CreateSubscriptionRequest(BaseModel):
    plan: str


class CreateSubscriptionResponse(BaseModel):
    url: str


def _billing_disabled() -> ServiceUnavailableError:
    return ServiceUnavailableError(
        "Stripe is not configured. Set STRIPE_SECRET_KEY environment variable.",
        code="billing_disabled",
    )


@router.get("/subscription/status")
async def subscription_status(user_id: str = Depends(get_current_user_id)) -> Dict[str, Any]:
    service = get_entitlement_service()
    subscription = service.get_user_subscription(user_id)
    return {
        "subscription": subscription.model_dump(mode="json"),
        "limits": service.get_user_limits(user_id).model_dump(mode="json"),
        "usage": service.get_usage_summary(user_id).model_dump(mode="json"),
        "tier": subscription.tier.value,
    }


@router.get("/entitlements/{action}")
async def check_entitlement(
    action: str,
    file_size: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user_id),
) -> Dict[str, Any]:
    """
    Ask whether `action` is currently allowed.

    `file_size` (bytes) only matters for the upload action.
    """
    try:
        kind = ActionKind(action)
    except ValueError:
        raise ValidationError(
            f"Unknown action: {action}. Expected one of: {', '.join(k.value for k in ActionKind)}"
        )
    return get_entitlement_service().check(user_id, kind, file_size_bytes=file_size).as_dict()


@router.post("/subscription/create", response_model=CreateSubscriptionResponse)
async def create_subscription(
    request: CreateSubscriptionRequest,
    user_id: str = Depends(get_current_user_id),
):
    """
    Create Stripe checkout session for the premium or pro plan.

    Errors:
        503: Billing disabled (STRIPE_SECRET_KEY not set)
        400: Unknown plan, free plan or plan without a Stripe price
        502: Stripe API error
    """
    if not billing_enabled():
        raise _billing_disabled()

    try:
        url = start_checkout(user_id=user_id, tier=request.plan.lower())
    except ValueError as e:
        raise ValidationError(str(e))
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_error", status_code=502)

    if not url:
        raise _billing_disabled()
    return {"url": url}


@router.post("/subscription/cancel")
async def cancel(user_id: str = Depends(get_current_user_id)):
    if not billing_enabled():
        raise _billing_disabled()

    try:
        cancelled = cancel_subscription(user_id)
    except BillingProviderError as e:
        raise AppError(str(e), code="billing_error", status_code=502)

    if not cancelled:
        raise NotFoundError("No active subscription found")
    return {"success": True, "cancel_at_period_end": True}


@router.post("/webhooks/stripe")
async def stripe_webhook(request: Request):
    """
    Handle Stripe webhook events.

    Verifies signature, processes event idempotently, and updates subscription state.

    Returns:
        {"received": true, "event_id": str}

    Errors:
        400: Invalid signature or payload
        503: Billing disabled
    """
    if not billing_enabled():
        raise _billing_disabled()

    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    try:
        result = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        log_event("warning", "billing.webhook_rejected", event_type="billing.webhook_rejected", error_code="invalid_webhook", extra={"error": str(e)})
        raise ValidationError(str(e), code="invalid_webhook")
    return {"received": True, "event_id": result.event_id}
