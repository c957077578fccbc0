"""Subscription API endpoints."""

from datetime import datetime

import structlog
from fastapi import APIRouter, HTTPException

from entitlements.api.dependencies import EntitlementServiceDep, StripeServiceDep
from entitlements.auth import CurrentUser
from entitlements.models.billing import CheckoutPlan
from entitlements.models.snapshot import (
    ApiModel,
    CheckoutSession,
    SubscriptionResponse,
    SubscriptionStatus,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/subscription", tags=["subscription"])


class CheckoutRequest(ApiModel):
    """Subscription checkout request."""

    plan: CheckoutPlan = CheckoutPlan.MONTHLY
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(ApiModel):
    """Customer portal request."""

    return_url: str | None = None


class PortalResponse(ApiModel):
    """Customer portal response."""

    url: str


class CancelResponse(ApiModel):
    """Result of scheduling a cancellation."""

    success: bool
    cancel_at_period_end: bool
    current_period_end: datetime | None = None


class ReactivateResponse(ApiModel):
    """Result of undoing a scheduled cancellation."""

    success: bool
    status: SubscriptionStatus


def _bad_request(message: str, code: str = "bad_request") -> HTTPException:
    return HTTPException(status_code=400, detail={"message": message, "code": code})


@router.get("", response_model=SubscriptionResponse)
async def get_subscription(user: CurrentUser, service: EntitlementServiceDep) -> SubscriptionResponse:
    """Return the subscription summary and entitlement snapshot for the caller."""
    summary = await service.get_subscription_summary(user.id)
    snapshot = await service.get_snapshot(user.id)
    return SubscriptionResponse(subscription=summary, entitlements=snapshot)


@router.post("/checkout", response_model=CheckoutSession)
async def create_checkout(
    user: CurrentUser,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
    body: CheckoutRequest | None = None,
) -> CheckoutSession:
    """Create a Stripe Checkout session for Pro."""
    body = body or CheckoutRequest()
    record = await service.repository.get_subscription(user.id)
    customer_id = record.stripe_customer_id if record else None
    # Trial only for users who never subscribed before
    with_trial = record is None or record.stripe_subscription_id is None

    try:
        checkout = await stripe_service.create_subscription_checkout(
            user_id=user.id,
            user_email=user.email,
            plan=body.plan,
            customer_id=customer_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
            with_trial=with_trial,
        )
    except ValueError as e:
        raise _bad_request(str(e), "invalid_plan") from e

    logger.info("subscription_checkout_created", user_id=user.id, plan=body.plan.value)
    return checkout


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    user: CurrentUser,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
    body: PortalRequest | None = None,
) -> PortalResponse:
    """Create a Stripe Customer Portal session."""
    record = await service.repository.get_subscription(user.id)
    customer_id = record.stripe_customer_id if record else None
    if not customer_id:
        raise _bad_request("No billing account found", "no_customer")

    portal = await stripe_service.create_portal_session(
        customer_id=customer_id,
        return_url=body.return_url if body else None,
    )
    return PortalResponse(url=portal.url)


@router.post("/cancel", response_model=CancelResponse)
async def cancel_subscription(
    user: CurrentUser,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
) -> CancelResponse:
    """Cancel at the end of the current period; Pro stays until then."""
    record = await service.repository.get_subscription(user.id)
    if record is None or not record.stripe_subscription_id:
        raise _bad_request("No active subscription", "no_subscription")

    update = await stripe_service.cancel_subscription(record.stripe_subscription_id, user_id=user.id)
    stored = await service.apply_subscription_update(update)
    logger.info("subscription_cancel_scheduled", user_id=user.id)
    return CancelResponse(
        success=True,
        cancel_at_period_end=True,
        current_period_end=stored.current_period_end if stored else update.current_period_end,
    )


@router.post("/reactivate", response_model=ReactivateResponse)
async def reactivate_subscription(
    user: CurrentUser,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
) -> ReactivateResponse:
    """Undo a scheduled cancellation."""
    record = await service.repository.get_subscription(user.id)
    if record is None or not record.stripe_subscription_id:
        raise _bad_request("No subscription to reactivate", "no_subscription")

    update = await stripe_service.reactivate_subscription(
        record.stripe_subscription_id, user_id=user.id
    )
    stored = await service.apply_subscription_update(update)
    logger.info("subscription_reactivated", user_id=user.id)
    return ReactivateResponse(success=True, status=stored.status if stored else update.status)
