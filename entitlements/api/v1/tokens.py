"""Token balance, catalogue and purchase endpoints."""

import structlog
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from entitlements.api.dependencies import (
    PAYMENT_REQUIRED,
    EntitlementServiceDep,
    StripeServiceDep,
    denial_detail,
)
from entitlements.auth import CurrentUser
from entitlements.constants import SUBSCRIPTION_PRODUCTS, TOKEN_PRODUCTS
from entitlements.models.billing import SubscriptionProduct, TokenProduct
from entitlements.models.snapshot import (
    ApiModel,
    CheckoutSession,
    ConsumeResult,
    DenialReason,
    TokenBalance,
)

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/tokens", tags=["tokens"])


class ProductsResponse(BaseModel):
    """Everything purchasable."""

    subscriptions: list[SubscriptionProduct]
    tokens: list[TokenProduct]


class PurchaseRequest(ApiModel):
    """Token pack checkout request."""

    product_id: str
    success_url: str | None = None
    cancel_url: str | None = None


@router.get("/balance", response_model=TokenBalance)
async def get_balance(user: CurrentUser, service: EntitlementServiceDep) -> TokenBalance:
    """Return consumable balances with this month's usage and limits."""
    return await service.get_token_balance(user.id)


@router.get("/products", response_model=ProductsResponse)
async def list_products() -> ProductsResponse:
    """Public product catalogue."""
    return ProductsResponse(
        subscriptions=list(SUBSCRIPTION_PRODUCTS.values()),
        tokens=list(TOKEN_PRODUCTS.values()),
    )


@router.post("/purchase", response_model=CheckoutSession)
async def purchase_tokens(
    body: PurchaseRequest,
    user: CurrentUser,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
) -> CheckoutSession:
    """Create a one-off Stripe Checkout session for a token pack."""
    if body.product_id not in TOKEN_PRODUCTS:
        raise HTTPException(
            status_code=400,
            detail={
                "message": f"Unknown token product '{body.product_id}'",
                "code": "invalid_product",
                "details": {"validProducts": sorted(TOKEN_PRODUCTS)},
            },
        )

    record = await service.repository.get_subscription(user.id)
    checkout = await stripe_service.create_token_checkout(
        user_id=user.id,
        user_email=user.email,
        product_id=body.product_id,
        customer_id=record.stripe_customer_id if record else None,
        success_url=body.success_url,
        cancel_url=body.cancel_url,
    )
    logger.info("token_checkout_created", user_id=user.id, product_id=body.product_id)
    return checkout


@router.post("/use-shield", response_model=ConsumeResult, response_model_exclude_none=True)
async def use_streak_shield(user: CurrentUser, service: EntitlementServiceDep) -> ConsumeResult:
    """Spend one streak shield (monthly Pro allowance first, then purchased)."""
    result = await service.use_streak_shield(user.id)
    if not result.success:
        raise HTTPException(
            status_code=PAYMENT_REQUIRED,
            detail=denial_detail(
                DenialReason.NO_STREAK_SHIELDS, upsell=result.upsell, remaining=result.remaining
            ),
        )
    return result
