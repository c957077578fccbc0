"""Feature check and consume endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, Query
from pydantic import Field

from entitlements.api.dependencies import PAYMENT_REQUIRED, EntitlementServiceDep, denial_detail
from entitlements.auth import CurrentUser
from entitlements.models.snapshot import ApiModel, ConsumeResult, FeatureCheckResult

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/features", tags=["features"])


class CheckRequest(ApiModel):
    """Feature check request. ``feature`` is validated by the service."""

    feature: str
    quantity: int = Field(default=1, ge=1)


class ConsumeRequest(ApiModel):
    """Feature consume request."""

    feature: str
    quantity: int = Field(default=1, ge=1)
    use_tokens: bool = False


@router.post("/check", response_model=FeatureCheckResult, response_model_exclude_none=True)
async def check_feature(
    body: CheckRequest, user: CurrentUser, service: EntitlementServiceDep
) -> FeatureCheckResult:
    """Read-only check; a denial is a normal 200 answer with ``allowed: false``."""
    return await service.check_feature(user.id, body.feature, body.quantity)


@router.get(
    "/{feature}/check", response_model=FeatureCheckResult, response_model_exclude_none=True
)
async def check_feature_by_path(
    feature: str,
    user: CurrentUser,
    service: EntitlementServiceDep,
    quantity: int = Query(default=1, ge=1),
) -> FeatureCheckResult:
    return await service.check_feature(user.id, feature, quantity)


@router.post("/consume", response_model=ConsumeResult, response_model_exclude_none=True)
async def consume_feature(
    body: ConsumeRequest, user: CurrentUser, service: EntitlementServiceDep
) -> ConsumeResult:
    """Spend quota or tokens. A denial answers 402 with the reason and upsell."""
    result = await service.consume_feature(
        user.id, body.feature, body.quantity, prefer_tokens=body.use_tokens
    )
    if not result.success:
        raise HTTPException(
            status_code=PAYMENT_REQUIRED,
            detail=denial_detail(result.reason, upsell=result.upsell, remaining=result.remaining),
        )
    return result
