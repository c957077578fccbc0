"""
Feature decision table and the pure predicate evaluated on a snapshot.

The server (authoritative check/consume) and the client (offline-safe local
check) both call these functions, so the two sides evaluate identical rules.
Nothing here performs I/O or mutates its inputs.
"""

from datetime import datetime, time, timedelta

from pydantic import BaseModel, ConfigDict

from entitlements.constants import UNLIMITED
from entitlements.errors import UnknownFeatureError
from entitlements.models.snapshot import (
    Consumable,
    ConsumptionSource,
    DenialReason,
    EntitlementSnapshot,
    Feature,
    FeatureCheckResult,
    Tier,
    TierLimits,
    UpsellCategory,
    UsagePeriod,
    UsageRecord,
)


class FeatureRule(BaseModel):
    """How one feature is metered."""

    model_config = ConfigDict(frozen=True)

    limit_field: str
    period: UsagePeriod
    substitute: Consumable | None
    denial: DenialReason


FEATURE_RULES: dict[Feature, FeatureRule] = {
    Feature.AI_MEAL_PLAN: FeatureRule(
        limit_field="ai_meal_plans_per_month",
        period=UsagePeriod.MONTHLY,
        substitute=Consumable.AI_TOKENS,
        denial=DenialReason.AI_MEAL_PLAN_LIMIT_REACHED,
    ),
    Feature.AI_RECIPE: FeatureRule(
        limit_field="ai_recipe_suggestions_per_month",
        period=UsagePeriod.MONTHLY,
        substitute=Consumable.AI_TOKENS,
        denial=DenialReason.AI_RECIPE_LIMIT_REACHED,
    ),
    Feature.BARCODE_SCAN: FeatureRule(
        limit_field="barcode_scans_per_day",
        period=UsagePeriod.DAILY,
        substitute=None,
        denial=DenialReason.BARCODE_SCAN_LIMIT_REACHED,
    ),
    Feature.PDF_EXPORT: FeatureRule(
        limit_field="pdf_exports_included",
        period=UsagePeriod.MONTHLY,
        substitute=Consumable.EXPORT_TOKENS,
        denial=DenialReason.NO_EXPORT_TOKENS,
    ),
    Feature.STREAK_SHIELD: FeatureRule(
        limit_field="monthly_streak_shields",
        period=UsagePeriod.MONTHLY,
        substitute=Consumable.STREAK_SHIELDS,
        denial=DenialReason.NO_STREAK_SHIELDS,
    ),
}

# (free user, pro user) upsell per denial reason
UPSELL_BY_REASON: dict[DenialReason, tuple[UpsellCategory, UpsellCategory]] = {
    DenialReason.AI_MEAL_PLAN_LIMIT_REACHED: (UpsellCategory.SUBSCRIPTION, UpsellCategory.TOKENS),
    DenialReason.AI_RECIPE_LIMIT_REACHED: (UpsellCategory.SUBSCRIPTION, UpsellCategory.TOKENS),
    DenialReason.BARCODE_SCAN_LIMIT_REACHED: (
        UpsellCategory.SUBSCRIPTION,
        UpsellCategory.SUBSCRIPTION,
    ),
    DenialReason.NO_EXPORT_TOKENS: (UpsellCategory.SUBSCRIPTION, UpsellCategory.CONSUMABLE),
    DenialReason.NO_STREAK_SHIELDS: (UpsellCategory.CONSUMABLE, UpsellCategory.CONSUMABLE),
    DenialReason.INSUFFICIENT_ENTITLEMENT: (UpsellCategory.SUBSCRIPTION, UpsellCategory.TOKENS),
}


def resolve_feature(value: Feature | str) -> Feature:
    """Map a feature key onto the Feature enum, raising UnknownFeatureError."""
    if isinstance(value, Feature):
        return value
    try:
        return Feature(value)
    except ValueError:
        raise UnknownFeatureError(str(value)) from None


def limit_for(limits: TierLimits, feature: Feature) -> int:
    return getattr(limits, FEATURE_RULES[feature].limit_field)


def next_reset(period: UsagePeriod, now: datetime) -> datetime:
    """Next UTC period boundary after ``now``."""
    if period == UsagePeriod.DAILY:
        tomorrow = now.date() + timedelta(days=1)
        return datetime.combine(tomorrow, time.min, tzinfo=now.tzinfo)
    if now.month == 12:
        return now.replace(year=now.year + 1, month=1, day=1, hour=0, minute=0, second=0, microsecond=0)
    return now.replace(month=now.month + 1, day=1, hour=0, minute=0, second=0, microsecond=0)


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValueError(f"quantity must be >= 1, got {quantity}")


def _quota_covers(record: UsageRecord, quantity: int) -> bool:
    return record.unlimited or record.used + quantity <= record.limit


def remaining(snapshot: EntitlementSnapshot, feature: Feature | str) -> int:
    """Uses left: quota remaining plus substitute balance, or -1 if unlimited."""
    feature = resolve_feature(feature)
    rule = FEATURE_RULES[feature]
    record = snapshot.usage_for(feature)
    if record.unlimited:
        return UNLIMITED
    left = max(0, record.limit - record.used)
    if rule.substitute is not None:
        left += snapshot.balance(rule.substitute)
    return left


def plan_consumption(
    snapshot: EntitlementSnapshot,
    feature: Feature | str,
    quantity: int = 1,
    prefer_tokens: bool = False,
) -> ConsumptionSource | None:
    """
    Pick what a consume of ``quantity`` would spend, or None if nothing covers it.

    Quota and tokens are never combined: either the period quota covers the
    whole quantity or the substitute balance does.
    """
    feature = resolve_feature(feature)
    _check_quantity(quantity)
    rule = FEATURE_RULES[feature]
    record = snapshot.usage_for(feature)

    tokens_cover = rule.substitute is not None and snapshot.balance(rule.substitute) >= quantity
    if prefer_tokens and tokens_cover:
        return ConsumptionSource.TOKENS
    if _quota_covers(record, quantity):
        return ConsumptionSource.QUOTA
    if tokens_cover:
        return ConsumptionSource.TOKENS
    return None


def upsell_for(reason: DenialReason | None, tier: Tier = Tier.FREE) -> UpsellCategory | None:
    if reason is None:
        return None
    pair = UPSELL_BY_REASON.get(reason)
    if pair is None:
        return None
    return pair[1] if tier == Tier.PRO else pair[0]


def evaluate(
    snapshot: EntitlementSnapshot,
    feature: Feature | str,
    quantity: int = 1,
) -> FeatureCheckResult:
    """Decide whether ``quantity`` uses of ``feature`` are allowed right now."""
    feature = resolve_feature(feature)
    if plan_consumption(snapshot, feature, quantity) is None:
        reason = FEATURE_RULES[feature].denial
        return FeatureCheckResult(
            allowed=False,
            reason=reason,
            remaining=0,
            upsell=upsell_for(reason, snapshot.tier),
        )
    return FeatureCheckResult(allowed=True, remaining=remaining(snapshot, feature))


def apply_consumption(
    snapshot: EntitlementSnapshot,
    feature: Feature | str,
    quantity: int,
    source: ConsumptionSource,
) -> EntitlementSnapshot:
    """Return a new snapshot reflecting a consume the server already accepted."""
    feature = resolve_feature(feature)
    rule = FEATURE_RULES[feature]
    if source == ConsumptionSource.TOKENS and rule.substitute is not None:
        balance = max(0, snapshot.balance(rule.substitute) - quantity)
        return snapshot.model_copy(update={rule.substitute.value: balance}, deep=True)

    record = snapshot.usage_for(feature)
    usage = dict(snapshot.usage)
    usage[feature] = record.model_copy(update={"used": record.used + quantity})
    return snapshot.model_copy(update={"usage": usage}, deep=True)
