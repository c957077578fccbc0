"""Unit tests for Stripe service wrapper."""

from datetime import UTC, datetime
from types import SimpleNamespace

import pytest

from entitlements.config import StripeConfig
from entitlements.models.billing import CheckoutPlan
from entitlements.models.snapshot import BillingPeriod, SubscriptionStatus
from entitlements.services import stripe_service as stripe_service_module
from entitlements.services.stripe_service import StripeService, map_status


class FakeStripeModule:
    """Test double for stripe SDK."""

    def __init__(self):
        self.api_key = None
        self.checkout_calls: list[dict] = []
        self.modify_calls: list[tuple[str, dict]] = []
        self.checkout = SimpleNamespace(Session=SimpleNamespace(create=self._checkout_create))
        self.billing_portal = SimpleNamespace(
            Session=SimpleNamespace(create=self._portal_create)
        )
        self.Webhook = SimpleNamespace(construct_event=self._construct_event)
        self.Subscription = SimpleNamespace(
            retrieve=self._retrieve_subscription, modify=self._modify_subscription
        )
        self._event = {"id": "evt_1", "type": "checkout.session.completed", "data": {"object": {}}}
        self._subscription = {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "items": {"data": [{"price": {"id": "price_month"}}]},
            "current_period_start": 1735689600,
            "current_period_end": 1738368000,
            "cancel_at_period_end": False,
            "metadata": {"user_id": "u1"},
        }

    def _checkout_create(self, **kwargs):
        self.checkout_calls.append(kwargs)
        return SimpleNamespace(id="cs_1", url="https://checkout.test/session")

    @staticmethod
    def _portal_create(**_kwargs):
        return SimpleNamespace(id="bps_1", url="https://billing.test/portal")

    def _construct_event(self, payload, sig_header, secret):
        if sig_header == "bad":
            raise RuntimeError("bad signature")
        assert payload == b'{"ok":true}'
        assert secret == "whsec_test"
        return self._event

    def _retrieve_subscription(self, _subscription_id):
        return self._subscription

    def _modify_subscription(self, subscription_id, **kwargs):
        self.modify_calls.append((subscription_id, kwargs))
        return {**self._subscription, **kwargs}


def _config(**overrides) -> StripeConfig:
    fields = {
        "secret_key": "sk_test_123",
        "webhook_secret": "whsec_test",
        "price_pro_monthly": "price_month",
        "price_pro_annual": "price_year",
        "app_url": "https://app.test",
    }
    fields.update(overrides)
    return StripeConfig(**fields)


@pytest.fixture
def fake_stripe(monkeypatch: pytest.MonkeyPatch) -> FakeStripeModule:
    fake = FakeStripeModule()
    monkeypatch.setattr(stripe_service_module, "stripe", fake)
    return fake


class TestStripeService:
    def test_requires_secret_key(self, fake_stripe):
        with pytest.raises(ValueError, match="secret key"):
            StripeService(_config(secret_key=""))

    async def test_subscription_checkout(self, fake_stripe):
        service = StripeService(_config())

        result = await service.create_subscription_checkout(
            user_id="u1",
            user_email="u1@example.com",
            plan=CheckoutPlan.ANNUAL,
        )

        params = fake_stripe.checkout_calls[0]
        assert result.session_id == "cs_1"
        assert result.url.startswith("https://checkout.test")
        assert params["mode"] == "subscription"
        assert params["line_items"] == [{"price": "price_year", "quantity": 1}]
        assert params["subscription_data"]["trial_period_days"] == 7
        assert params["metadata"] == {"user_id": "u1", "type": "subscription", "plan": "annual"}
        assert params["customer_email"] == "u1@example.com"
        assert params["success_url"] == (
            "https://app.test/dashboard?subscription=success&session_id={CHECKOUT_SESSION_ID}"
        )
        assert params["cancel_url"] == "https://app.test/pricing?subscription=cancelled"

    async def test_subscription_checkout_reuses_customer_without_trial(self, fake_stripe):
        service = StripeService(_config())

        await service.create_subscription_checkout(
            user_id="u1",
            user_email="u1@example.com",
            plan=CheckoutPlan.MONTHLY,
            customer_id="cus_1",
            with_trial=False,
        )

        params = fake_stripe.checkout_calls[0]
        assert params["customer"] == "cus_1"
        assert "customer_email" not in params
        assert "trial_period_days" not in params["subscription_data"]

    async def test_subscription_checkout_requires_configured_price(self, fake_stripe):
        service = StripeService(_config(price_pro_annual=""))

        with pytest.raises(ValueError, match="No Stripe price"):
            await service.create_subscription_checkout(
                user_id="u1", user_email=None, plan=CheckoutPlan.ANNUAL
            )

    async def test_token_checkout_uses_inline_price(self, fake_stripe):
        service = StripeService(_config())

        await service.create_token_checkout(
            user_id="u1",
            user_email=None,
            product_id="export_5",
            success_url="https://app.test/done",
        )

        params = fake_stripe.checkout_calls[0]
        price_data = params["line_items"][0]["price_data"]
        assert params["mode"] == "payment"
        assert price_data["unit_amount"] == 699
        assert price_data["currency"] == "usd"
        assert params["metadata"]["type"] == "token_purchase"
        assert params["metadata"]["product_id"] == "export_5"
        assert params["success_url"] == "https://app.test/done?session_id={CHECKOUT_SESSION_ID}"

    async def test_token_checkout_rejects_unknown_product(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="Unknown token product"):
            await service.create_token_checkout(user_id="u1", user_email=None, product_id="gold")

    async def test_creates_portal_session(self, fake_stripe):
        service = StripeService(_config())

        result = await service.create_portal_session(customer_id="cus_1")

        assert result.session_id == "bps_1"
        assert result.url.startswith("https://billing.test")

    async def test_cancel_and_reactivate_toggle_period_end_flag(self, fake_stripe):
        service = StripeService(_config())

        cancelled = await service.cancel_subscription("sub_1", user_id="u1")
        reactivated = await service.reactivate_subscription("sub_1")

        assert fake_stripe.modify_calls == [
            ("sub_1", {"cancel_at_period_end": True}),
            ("sub_1", {"cancel_at_period_end": False}),
        ]
        assert cancelled.cancel_at_period_end is True
        assert reactivated.cancel_at_period_end is False

    def test_verifies_webhook_event(self, fake_stripe):
        service = StripeService(_config())

        event = service.verify_webhook_event(b'{"ok":true}', "sig_ok")

        assert event["id"] == "evt_1"

    def test_verify_webhook_event_rejects_missing_signature(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="Missing Stripe-Signature"):
            service.verify_webhook_event(b'{"ok":true}', None)

    def test_verify_webhook_event_requires_secret(self, fake_stripe):
        service = StripeService(_config(webhook_secret=""))

        with pytest.raises(ValueError, match="not configured"):
            service.verify_webhook_event(b'{"ok":true}', "sig_ok")

    async def test_fetch_subscription_update(self, fake_stripe):
        service = StripeService(_config())

        update = await service.fetch_subscription_update("sub_1")

        assert update.subscription_id == "sub_1"
        assert update.customer_id == "cus_1"
        assert update.status == SubscriptionStatus.ACTIVE
        assert update.billing_period == BillingPeriod.MONTHLY
        assert update.current_period_start == datetime(2025, 1, 1, tzinfo=UTC)
        assert update.user_id == "u1"

    def test_update_from_object_reads_item_period_and_interval(self, fake_stripe):
        service = StripeService(_config())

        update = service.subscription_update_from_object(
            {
                "id": "sub_9",
                "customer": "cus_9",
                "status": "trialing",
                "trial_end": 1738368000,
                "items": {
                    "data": [
                        {
                            "price": {"id": "price_other", "recurring": {"interval": "year"}},
                            "current_period_start": 1735689600,
                            "current_period_end": 1738368000,
                        }
                    ]
                },
            }
        )

        assert update.billing_period == BillingPeriod.ANNUAL
        assert update.status == SubscriptionStatus.TRIALING
        assert update.current_period_end == datetime(2025, 2, 1, tzinfo=UTC)
        assert update.trial_end == datetime(2025, 2, 1, tzinfo=UTC)

    def test_update_from_object_requires_price_id(self, fake_stripe):
        service = StripeService(_config())

        with pytest.raises(ValueError, match="missing price id"):
            service.subscription_update_from_object(
                {"id": "sub_1", "customer": "cus_1", "status": "active", "items": {"data": [{}]}}
            )


class TestMapStatus:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("active", SubscriptionStatus.ACTIVE),
            ("trialing", SubscriptionStatus.TRIALING),
            ("past_due", SubscriptionStatus.PAST_DUE),
            ("unpaid", SubscriptionStatus.PAST_DUE),
            ("canceled", SubscriptionStatus.CANCELLED),
            ("incomplete_expired", SubscriptionStatus.CANCELLED),
            (None, SubscriptionStatus.CANCELLED),
        ],
    )
    def test_maps_stripe_statuses(self, raw, expected):
        assert map_status(raw) == expected
