"""Stripe API wrapper."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe

from entitlements.config import StripeConfig
from entitlements.constants import TOKEN_PRODUCTS
from entitlements.models.billing import CheckoutPlan, SubscriptionUpdate
from entitlements.models.snapshot import BillingPeriod, CheckoutSession, SubscriptionStatus

PURCHASE_TYPE_TOKENS = "token_purchase"
PURCHASE_TYPE_SUBSCRIPTION = "subscription"

_STATUS_MAP: dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
}


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp:
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _with_session_id(url: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}session_id={{CHECKOUT_SESSION_ID}}"


def _as_dict(obj: dict | Any) -> dict:
    """StripeObject is a dict subclass in most SDK versions; convert otherwise."""
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


def map_status(status: str | None) -> SubscriptionStatus:
    """Normalize a Stripe subscription status; unknown/ended states are cancelled."""
    return _STATUS_MAP.get(status or "", SubscriptionStatus.CANCELLED)


class StripeService:
    """Encapsulates Stripe SDK calls used by subscription and token routes."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    @property
    def price_mapping(self) -> dict[str, BillingPeriod]:
        return {
            self.config.price_pro_monthly: BillingPeriod.MONTHLY,
            self.config.price_pro_annual: BillingPeriod.ANNUAL,
        }

    def price_id_for_plan(self, plan: CheckoutPlan) -> str | None:
        wanted = BillingPeriod.ANNUAL if plan == CheckoutPlan.ANNUAL else BillingPeriod.MONTHLY
        for price_id, period in self.price_mapping.items():
            if period == wanted and price_id:
                return price_id
        return None

    async def create_subscription_checkout(
        self,
        *,
        user_id: str,
        user_email: str | None,
        plan: CheckoutPlan,
        customer_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
        with_trial: bool = True,
    ) -> CheckoutSession:
        price_id = self.price_id_for_plan(plan)
        if not price_id:
            raise ValueError(f"No Stripe price configured for plan '{plan.value}'")

        metadata = {"user_id": user_id, "type": PURCHASE_TYPE_SUBSCRIPTION, "plan": plan.value}
        subscription_data: dict[str, Any] = {"metadata": metadata}
        if with_trial and self.config.trial_period_days > 0:
            subscription_data["trial_period_days"] = self.config.trial_period_days

        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "client_reference_id": user_id,
            "metadata": metadata,
            "subscription_data": subscription_data,
            "success_url": _with_session_id(success_url or self.config.subscription_success_url),
            "cancel_url": cancel_url or self.config.subscription_cancel_url,
        }
        self._attach_customer(params, customer_id, user_email)

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return CheckoutSession(url=session.url, session_id=session.id)

    async def create_token_checkout(
        self,
        *,
        user_id: str,
        user_email: str | None,
        product_id: str,
        customer_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSession:
        product = TOKEN_PRODUCTS.get(product_id)
        if product is None:
            raise ValueError(f"Unknown token product '{product_id}'")

        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": self.config.currency,
                        "unit_amount": product.amount,
                        "product_data": {
                            "name": product.name,
                            "description": product.description,
                        },
                    },
                    "quantity": 1,
                }
            ],
            "client_reference_id": user_id,
            "metadata": {
                "user_id": user_id,
                "type": PURCHASE_TYPE_TOKENS,
                "product_id": product.id,
            },
            "success_url": _with_session_id(success_url or self.config.purchase_success_url),
            "cancel_url": cancel_url or self.config.purchase_cancel_url,
        }
        self._attach_customer(params, customer_id, user_email)

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return CheckoutSession(url=session.url, session_id=session.id)

    @staticmethod
    def _attach_customer(
        params: dict[str, Any], customer_id: str | None, user_email: str | None
    ) -> None:
        if customer_id:
            params["customer"] = customer_id
        elif user_email:
            params["customer_email"] = user_email

    async def create_portal_session(
        self, *, customer_id: str, return_url: str | None = None
    ) -> CheckoutSession:
        session = await asyncio.to_thread(
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url or self.config.portal_return_url,
        )
        return CheckoutSession(url=session.url, session_id=session.id)

    async def _set_cancel_at_period_end(
        self, subscription_id: str, cancel: bool, user_id: str | None
    ) -> SubscriptionUpdate:
        subscription = await asyncio.to_thread(
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=cancel,
        )
        return self.subscription_update_from_object(subscription, user_id=user_id)

    async def cancel_subscription(
        self, subscription_id: str, *, user_id: str | None = None
    ) -> SubscriptionUpdate:
        """Schedule cancellation at the end of the paid period."""
        return await self._set_cancel_at_period_end(subscription_id, True, user_id)

    async def reactivate_subscription(
        self, subscription_id: str, *, user_id: str | None = None
    ) -> SubscriptionUpdate:
        return await self._set_cancel_at_period_end(subscription_id, False, user_id)

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _as_dict(event)

    async def fetch_subscription_update(
        self, subscription_id: str, *, user_id: str | None = None
    ) -> SubscriptionUpdate:
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return self.subscription_update_from_object(subscription, user_id=user_id)

    def subscription_update_from_object(
        self, subscription_obj: dict | Any, *, user_id: str | None = None
    ) -> SubscriptionUpdate:
        subscription = _as_dict(subscription_obj)

        items = subscription.get("items", {}).get("data", [])
        if not items:
            raise ValueError("Stripe subscription has no items")

        item = items[0]
        price = item.get("price", {}) or {}
        price_id = price.get("id")
        if not price_id:
            raise ValueError("Stripe subscription is missing price id")

        billing_period = self.price_mapping.get(price_id)
        if billing_period is None:
            interval = (price.get("recurring") or {}).get("interval")
            billing_period = BillingPeriod.ANNUAL if interval == "year" else BillingPeriod.MONTHLY

        # Newer API versions report the period on the item instead of the subscription
        period_start = subscription.get("current_period_start") or item.get("current_period_start")
        period_end = subscription.get("current_period_end") or item.get("current_period_end")

        metadata = subscription.get("metadata", {}) or {}
        return SubscriptionUpdate(
            subscription_id=str(subscription.get("id", "")),
            customer_id=str(subscription.get("customer", "")),
            status=map_status(subscription.get("status")),
            price_id=str(price_id),
            billing_period=billing_period,
            current_period_start=_to_datetime(period_start),
            current_period_end=_to_datetime(period_end),
            trial_end=_to_datetime(subscription.get("trial_end")),
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
            user_id=user_id or metadata.get("user_id"),
        )
