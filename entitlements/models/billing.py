"""Persisted billing state and payment-processor payloads."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from entitlements.models.snapshot import (
    BillingPeriod,
    Consumable,
    Feature,
    SubscriptionStatus,
    Tier,
)


class CheckoutPlan(str, Enum):
    """Plans accepted by the subscription checkout."""

    MONTHLY = "monthly"
    ANNUAL = "annual"


class SubscriptionRecord(BaseModel):
    """Persisted subscription state for a user."""

    user_id: str
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.NONE
    billing_period: BillingPeriod = BillingPeriod.NONE
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    updated_at: datetime | None = None


class UsageCounter(BaseModel):
    """Usage of one feature by one user in the current period.

    ``version`` is bumped on every write and used for conditional updates.
    """

    user_id: str
    feature: Feature
    used: int = Field(default=0, ge=0)
    resets_at: datetime | None = None
    version: int = Field(default=0, ge=0)


class TokenWallet(BaseModel):
    """Consumable balances for a user."""

    user_id: str
    ai_tokens: int = Field(default=0, ge=0)
    export_tokens: int = Field(default=0, ge=0)
    streak_shields: int = Field(default=0, ge=0)

    def balance(self, consumable: Consumable) -> int:
        return getattr(self, consumable.value)


class SubscriptionUpdate(BaseModel):
    """Normalized processor subscription payload."""

    subscription_id: str
    customer_id: str
    status: SubscriptionStatus
    price_id: str
    billing_period: BillingPeriod = BillingPeriod.MONTHLY
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    trial_end: datetime | None = None
    cancel_at_period_end: bool = False
    user_id: str | None = None


class SubscriptionProduct(BaseModel):
    """Recurring plan sold through checkout."""

    id: str
    name: str
    description: str
    amount: int  # cents
    interval: str


class TokenProduct(BaseModel):
    """One-off consumable pack."""

    id: str
    name: str
    description: str
    amount: int  # cents
    tokens: dict[Consumable, int]
