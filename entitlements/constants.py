"""
Business constants for the entitlement service.

These values are stable across environments (dev/staging/prod) and do not
need env-var overrides. For operational parameters that vary per environment
(timeouts, grace periods, Stripe prices), see config.py.
"""

from entitlements.models.billing import CheckoutPlan, SubscriptionProduct, TokenProduct
from entitlements.models.snapshot import Consumable, Tier, TierLimits

API_TITLE = "Entitlements API"
API_VERSION = "1.0.0"

# Sentinel limit meaning "no cap"
UNLIMITED = -1

# --- Default limits per tier ---
TIER_LIMITS: dict[Tier, TierLimits] = {
    Tier.FREE: TierLimits(
        ai_meal_plans_per_month=2,
        ai_recipe_suggestions_per_month=2,
        barcode_scans_per_day=10,
        pdf_exports_included=0,
        monthly_streak_shields=0,
        history_retention_days=14,
        achievements_available=5,
        food_database_tier="basic",
        data_export_enabled=False,
        family_sharing_slots=0,
    ),
    Tier.PRO: TierLimits(
        ai_meal_plans_per_month=30,
        ai_recipe_suggestions_per_month=100,
        barcode_scans_per_day=UNLIMITED,
        pdf_exports_included=5,
        monthly_streak_shields=2,
        history_retention_days=UNLIMITED,
        achievements_available=UNLIMITED,
        food_database_tier="premium",
        data_export_enabled=True,
        family_sharing_slots=3,
    ),
}

# --- Recurring plans ---
SUBSCRIPTION_PRODUCTS: dict[CheckoutPlan, SubscriptionProduct] = {
    CheckoutPlan.MONTHLY: SubscriptionProduct(
        id="pro_monthly",
        name="Pro Monthly",
        description="Full access to all Pro features, billed monthly",
        amount=999,
        interval="month",
    ),
    CheckoutPlan.ANNUAL: SubscriptionProduct(
        id="pro_annual",
        name="Pro Annual",
        description="Full access to all Pro features, save 33%",
        amount=7999,
        interval="year",
    ),
}

# --- One-off consumable packs ---
TOKEN_PRODUCTS: dict[str, TokenProduct] = {
    product.id: product
    for product in (
        TokenProduct(
            id="ai_tokens_5",
            name="5 AI Tokens",
            description="Generate 5 AI meal plans or recipe suggestions",
            amount=499,
            tokens={Consumable.AI_TOKENS: 5},
        ),
        TokenProduct(
            id="ai_tokens_15",
            name="15 AI Tokens",
            description="Save 20% - Best value for regular AI users",
            amount=1199,
            tokens={Consumable.AI_TOKENS: 15},
        ),
        TokenProduct(
            id="ai_tokens_50",
            name="50 AI Tokens",
            description="Save 40% - For power users",
            amount=2999,
            tokens={Consumable.AI_TOKENS: 50},
        ),
        TokenProduct(
            id="streak_shields_3",
            name="3 Streak Shields",
            description="Protect your streak during busy days",
            amount=299,
            tokens={Consumable.STREAK_SHIELDS: 3},
        ),
        TokenProduct(
            id="streak_shields_10",
            name="10 Streak Shields",
            description="Save 20% - Never lose a streak again",
            amount=799,
            tokens={Consumable.STREAK_SHIELDS: 10},
        ),
        TokenProduct(
            id="export_single",
            name="Single PDF Export",
            description="Generate one healthcare provider report",
            amount=199,
            tokens={Consumable.EXPORT_TOKENS: 1},
        ),
        TokenProduct(
            id="export_5",
            name="5 PDF Exports",
            description="Perfect for quarterly doctor visits",
            amount=699,
            tokens={Consumable.EXPORT_TOKENS: 5},
        ),
    )
}
