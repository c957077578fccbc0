"""Entitlement snapshot and check/consume result models.

These are the wire types shared by the server and the client. They serialize
to camelCase JSON (``subscriptionStatus``, ``aiTokens``...) and accept either
spelling on input.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base model with camelCase aliases for the JSON surface."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Tier(str, Enum):
    """Subscription tier governing default limits."""

    FREE = "free"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Normalized subscription lifecycle status."""

    ACTIVE = "active"
    CANCELLED = "cancelled"
    PAST_DUE = "past_due"
    TRIALING = "trialing"
    NONE = "none"


class BillingPeriod(str, Enum):
    """Billing interval of the current subscription."""

    MONTHLY = "monthly"
    ANNUAL = "annual"
    NONE = "none"


class Feature(str, Enum):
    """Usage-gated features."""

    AI_MEAL_PLAN = "ai_meal_plan"
    AI_RECIPE = "ai_recipe"
    BARCODE_SCAN = "barcode_scan"
    PDF_EXPORT = "pdf_export"
    STREAK_SHIELD = "streak_shield"


class Consumable(str, Enum):
    """Non-expiring purchasable balances."""

    AI_TOKENS = "ai_tokens"
    EXPORT_TOKENS = "export_tokens"
    STREAK_SHIELDS = "streak_shields"


class UsagePeriod(str, Enum):
    """Window a usage counter is measured over."""

    DAILY = "daily"
    MONTHLY = "monthly"


class DenialReason(str, Enum):
    """Machine-readable reason attached to a denied or degraded decision."""

    AI_MEAL_PLAN_LIMIT_REACHED = "ai_meal_plan_limit_reached"
    AI_RECIPE_LIMIT_REACHED = "ai_recipe_limit_reached"
    BARCODE_SCAN_LIMIT_REACHED = "barcode_scan_limit_reached"
    NO_EXPORT_TOKENS = "no_export_tokens"
    NO_STREAK_SHIELDS = "no_streak_shields"
    INSUFFICIENT_ENTITLEMENT = "insufficient_entitlement"
    OFFLINE_CHECK = "offline_check"
    OFFLINE = "offline"
    UNKNOWN_FEATURE = "unknown_feature"
    UNAUTHENTICATED = "unauthenticated"


class UpsellCategory(str, Enum):
    """Kind of upsell the presentation layer should show for a denial."""

    SUBSCRIPTION = "subscription"
    TOKENS = "tokens"
    CONSUMABLE = "consumable"


class ConsumptionSource(str, Enum):
    """What a successful consume spent."""

    QUOTA = "quota"
    TOKENS = "tokens"


class TierLimits(ApiModel):
    """Per-tier limits. -1 means unlimited."""

    ai_meal_plans_per_month: int
    ai_recipe_suggestions_per_month: int
    barcode_scans_per_day: int
    pdf_exports_included: int
    monthly_streak_shields: int
    history_retention_days: int
    achievements_available: int
    food_database_tier: str
    data_export_enabled: bool
    family_sharing_slots: int


class UsageRecord(ApiModel):
    """Usage of one feature in the current period."""

    used: int = Field(default=0, ge=0)
    limit: int = Field(ge=-1)
    resets_at: datetime | None = None

    @property
    def unlimited(self) -> bool:
        return self.limit == -1


class EntitlementSnapshot(ApiModel):
    """Point-in-time view of what a user may do."""

    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.NONE
    billing_period: BillingPeriod = BillingPeriod.NONE
    period_end: datetime | None = None
    is_pro: bool = False
    is_trialing: bool = False
    trial_days_remaining: int | None = None
    cancel_at_period_end: bool = False
    limits: TierLimits
    usage: dict[Feature, UsageRecord] = Field(default_factory=dict)
    ai_tokens: int = Field(default=0, ge=0)
    export_tokens: int = Field(default=0, ge=0)
    streak_shields: int = Field(default=0, ge=0)
    generated_at: datetime | None = None

    def balance(self, consumable: Consumable) -> int:
        if consumable == Consumable.AI_TOKENS:
            return self.ai_tokens
        if consumable == Consumable.EXPORT_TOKENS:
            return self.export_tokens
        return self.streak_shields

    def usage_for(self, feature: Feature) -> UsageRecord:
        record = self.usage.get(feature)
        if record is None:
            # A feature missing from the snapshot is treated as fully blocked
            return UsageRecord(used=0, limit=0)
        return record


class FeatureCheckResult(ApiModel):
    """Outcome of a check. ``remaining`` is -1 when unlimited."""

    allowed: bool
    reason: DenialReason | None = None
    remaining: int | None = None
    upsell: UpsellCategory | None = None


class ConsumeResult(ApiModel):
    """Outcome of a consume."""

    success: bool
    tokens_used: bool = False
    new_balance: int | None = None
    remaining: int | None = None
    reason: DenialReason | None = None
    upsell: UpsellCategory | None = None


class MonthlyFigures(ApiModel):
    """Monthly counters grouped for the token balance view."""

    ai_meal_plans: int = 0
    ai_recipes: int = 0
    pdf_exports: int = 0


class TokenBalance(ApiModel):
    """Consumable balances plus this month's usage and limits."""

    ai_tokens: int = 0
    export_tokens: int = 0
    streak_shields: int = 0
    monthly_usage: MonthlyFigures = Field(default_factory=MonthlyFigures)
    monthly_limits: MonthlyFigures = Field(default_factory=MonthlyFigures)


class SubscriptionSummary(ApiModel):
    """Subscription fields exposed to the client."""

    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.NONE
    billing_period: BillingPeriod = BillingPeriod.NONE
    current_period_end: datetime | None = None
    trial_end_date: datetime | None = None
    cancel_at_period_end: bool = False


class SubscriptionResponse(ApiModel):
    """Body of GET /api/subscription."""

    subscription: SubscriptionSummary
    entitlements: EntitlementSnapshot


class CheckoutSession(ApiModel):
    """Redirect target issued for a checkout."""

    url: str
    session_id: str | None = None
