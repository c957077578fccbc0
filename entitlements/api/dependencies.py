"""
Shared FastAPI dependencies: service lookup and route guards.

``require_feature`` and ``require_pro`` gate a route on the caller's
entitlements and answer 402 with the denial reason when the gate is closed:

    @router.post("/meal-plans", dependencies=[Depends(require_feature(Feature.AI_MEAL_PLAN, consume=True))])
"""

from typing import Annotated

import structlog
from fastapi import Depends, HTTPException, Request

from entitlements import policy
from entitlements.auth import CurrentUser
from entitlements.models.snapshot import (
    ConsumeResult,
    DenialReason,
    EntitlementSnapshot,
    Feature,
    FeatureCheckResult,
    UpsellCategory,
)
from entitlements.services.entitlement_service import EntitlementService
from entitlements.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)

PAYMENT_REQUIRED = 402

DENIAL_MESSAGES: dict[DenialReason, str] = {
    DenialReason.AI_MEAL_PLAN_LIMIT_REACHED: "Monthly AI meal plan limit reached",
    DenialReason.AI_RECIPE_LIMIT_REACHED: "Monthly AI recipe suggestion limit reached",
    DenialReason.BARCODE_SCAN_LIMIT_REACHED: "Daily barcode scan limit reached",
    DenialReason.NO_EXPORT_TOKENS: "No PDF exports left",
    DenialReason.NO_STREAK_SHIELDS: "No streak shields left",
    DenialReason.INSUFFICIENT_ENTITLEMENT: "Not enough quota or tokens for this feature",
}


def _get_entitlement_service(request: Request) -> EntitlementService:
    service = getattr(request.app.state, "entitlement_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail={"message": "Entitlement service unavailable", "code": "service_unavailable"},
        )
    return service


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail={"message": "Payments are not configured", "code": "payments_unavailable"},
        )
    return service


EntitlementServiceDep = Annotated[EntitlementService, Depends(_get_entitlement_service)]
StripeServiceDep = Annotated[StripeService, Depends(_get_stripe_service)]


def denial_detail(
    reason: DenialReason | None,
    *,
    upsell: UpsellCategory | None = None,
    remaining: int | None = None,
) -> dict:
    """Body of a 402 answer for a denied check or consume."""
    reason = reason or DenialReason.INSUFFICIENT_ENTITLEMENT
    return {
        "success": False,
        "tokensUsed": False,
        "reason": reason.value,
        "code": reason.value,
        "message": DENIAL_MESSAGES.get(reason, "Feature not available"),
        "upsell": upsell.value if upsell else None,
        "remaining": remaining,
    }


def require_feature(
    feature: Feature,
    quantity: int = 1,
    *,
    consume: bool = False,
    use_tokens: bool = False,
):
    """Build a dependency that checks (or consumes) ``feature`` for the caller."""

    async def dependency(
        user: CurrentUser, service: EntitlementServiceDep
    ) -> FeatureCheckResult | ConsumeResult:
        if consume:
            result = await service.consume_feature(
                user.id, feature, quantity, prefer_tokens=use_tokens
            )
            if not result.success:
                logger.info("feature_gate_blocked", user_id=user.id, feature=feature.value)
                raise HTTPException(
                    status_code=PAYMENT_REQUIRED,
                    detail=denial_detail(
                        result.reason, upsell=result.upsell, remaining=result.remaining
                    ),
                )
            return result

        check = await service.check_feature(user.id, feature, quantity)
        if not check.allowed:
            logger.info("feature_gate_blocked", user_id=user.id, feature=feature.value)
            raise HTTPException(
                status_code=PAYMENT_REQUIRED,
                detail=denial_detail(check.reason, upsell=check.upsell, remaining=check.remaining),
            )
        return check

    return dependency


def require_pro():
    """Build a dependency that admits only callers with an active Pro subscription."""

    async def dependency(user: CurrentUser, service: EntitlementServiceDep) -> EntitlementSnapshot:
        snapshot = await service.get_snapshot(user.id)
        if not snapshot.is_pro:
            raise HTTPException(
                status_code=PAYMENT_REQUIRED,
                detail={
                    "message": "A Pro subscription is required",
                    "code": "subscription_required",
                    "upsell": policy.upsell_for(DenialReason.INSUFFICIENT_ENTITLEMENT).value,
                },
            )
        return snapshot

    return dependency
