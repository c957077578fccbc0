"""Unit tests for the server-side entitlement service."""

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from entitlements.config import EntitlementConfig
from entitlements.constants import TOKEN_PRODUCTS
from entitlements.errors import ConsumeConflictError, UnauthenticatedError, UnknownFeatureError
from entitlements.models.billing import SubscriptionRecord, SubscriptionUpdate, UsageCounter
from entitlements.models.snapshot import (
    BillingPeriod,
    Consumable,
    DenialReason,
    Feature,
    SubscriptionStatus,
    Tier,
    UpsellCategory,
)
from entitlements.services.entitlement_service import (
    EntitlementService,
    InMemoryEntitlementRepository,
)


def make_service(
    clock,
    *,
    config: EntitlementConfig | None = None,
    repository: InMemoryEntitlementRepository | None = None,
) -> tuple[EntitlementService, InMemoryEntitlementRepository]:
    repo = repository or InMemoryEntitlementRepository()
    service = EntitlementService(repo, config or EntitlementConfig(), now_provider=clock.now)
    return service, repo


def pro_record(user_id: str = "user-pro", **overrides) -> SubscriptionRecord:
    fields = {
        "user_id": user_id,
        "tier": Tier.PRO,
        "status": SubscriptionStatus.ACTIVE,
        "billing_period": BillingPeriod.MONTHLY,
        "current_period_start": datetime(2026, 2, 1, tzinfo=UTC),
        "current_period_end": datetime(2026, 3, 1, tzinfo=UTC),
        "stripe_customer_id": "cus_pro",
        "stripe_subscription_id": "sub_pro",
    }
    fields.update(overrides)
    return SubscriptionRecord(**fields)


class YieldingRepository(InMemoryEntitlementRepository):
    """Suspends before every counter read/write so coroutines interleave."""

    async def get_usage(self, user_id, feature):
        await asyncio.sleep(0)
        return await super().get_usage(user_id, feature)

    async def compare_and_set_usage(self, counter, expected_version):
        await asyncio.sleep(0)
        return await super().compare_and_set_usage(counter, expected_version)


class AlwaysConflictingRepository(InMemoryEntitlementRepository):
    async def compare_and_set_usage(self, counter, expected_version):
        return None


class TestSnapshot:
    async def test_new_user_gets_free_snapshot(self, clock):
        service, _ = make_service(clock)

        snapshot = await service.get_snapshot("user-a")

        assert snapshot.tier == Tier.FREE
        assert snapshot.is_pro is False
        assert snapshot.subscription_status == SubscriptionStatus.NONE
        assert set(snapshot.usage) == set(Feature)
        assert snapshot.usage[Feature.AI_MEAL_PLAN].limit == 2
        assert snapshot.usage[Feature.AI_MEAL_PLAN].resets_at == datetime(2026, 3, 1, tzinfo=UTC)
        assert snapshot.usage[Feature.BARCODE_SCAN].resets_at == datetime(2026, 2, 23, tzinfo=UTC)
        assert snapshot.generated_at == clock.now()

    async def test_active_pro_subscription(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.tier == Tier.PRO
        assert snapshot.is_pro is True
        assert snapshot.usage[Feature.BARCODE_SCAN].limit == -1
        assert snapshot.period_end == datetime(2026, 3, 1, tzinfo=UTC)

    async def test_expired_period_falls_back_to_free(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(
            pro_record(current_period_end=datetime(2026, 2, 20, tzinfo=UTC))
        )

        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.tier == Tier.FREE
        assert snapshot.is_pro is False

    async def test_past_due_keeps_pro_limits_during_grace(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(
            pro_record(
                status=SubscriptionStatus.PAST_DUE,
                current_period_end=datetime(2026, 2, 18, tzinfo=UTC),
            )
        )

        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.tier == Tier.PRO
        assert snapshot.limits.ai_meal_plans_per_month == 30
        assert snapshot.is_pro is False

    async def test_past_due_after_grace_is_free(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(
            pro_record(
                status=SubscriptionStatus.PAST_DUE,
                current_period_end=datetime(2026, 2, 10, tzinfo=UTC),
            )
        )

        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.tier == Tier.FREE

    async def test_trial_days_remaining_rounds_up(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(
            pro_record(
                status=SubscriptionStatus.TRIALING,
                trial_end=clock.now() + timedelta(days=3, hours=12),
                current_period_end=clock.now() + timedelta(days=3, hours=12),
            )
        )

        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.is_trialing is True
        assert snapshot.is_pro is True
        assert snapshot.trial_days_remaining == 4

    async def test_monthly_counter_rolls_over(self, clock):
        service, repo = make_service(clock)
        await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)
        await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)

        clock.advance(timedelta(days=8))
        snapshot = await service.get_snapshot("user-a")

        assert snapshot.usage[Feature.AI_MEAL_PLAN].used == 0
        assert snapshot.usage[Feature.AI_MEAL_PLAN].resets_at == datetime(2026, 4, 1, tzinfo=UTC)
        stored = await repo.get_usage("user-a", Feature.AI_MEAL_PLAN)
        assert stored.used == 0

    async def test_requires_user(self, clock):
        service, _ = make_service(clock)

        with pytest.raises(UnauthenticatedError):
            await service.get_snapshot("")


class TestCheckFeature:
    async def test_check_does_not_consume(self, clock):
        service, _ = make_service(clock)

        first = await service.check_feature("user-a", Feature.AI_RECIPE)
        second = await service.check_feature("user-a", Feature.AI_RECIPE)

        assert first.allowed is True
        assert second.remaining == 2

    async def test_free_user_at_limit_is_denied(self, clock):
        service, _ = make_service(clock)
        for _ in range(2):
            await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)

        result = await service.check_feature("user-a", "ai_meal_plan")

        assert result.allowed is False
        assert result.reason == DenialReason.AI_MEAL_PLAN_LIMIT_REACHED
        assert result.upsell == UpsellCategory.SUBSCRIPTION

    async def test_unknown_feature(self, clock):
        service, _ = make_service(clock)

        with pytest.raises(UnknownFeatureError):
            await service.check_feature("user-a", "time_travel")

    async def test_disabled_gating_allows_everything(self, clock):
        service, _ = make_service(clock, config=EntitlementConfig(enabled=False))

        result = await service.check_feature("user-a", Feature.PDF_EXPORT)

        assert result.allowed is True
        assert result.remaining == -1


class TestConsumeFeature:
    async def test_consumes_quota_then_denies(self, clock):
        service, _ = make_service(clock)

        first = await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)
        second = await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)
        third = await service.consume_feature("user-a", Feature.AI_MEAL_PLAN)

        assert first.success is True
        assert first.tokens_used is False
        assert first.new_balance == 1
        assert second.success is True
        assert second.new_balance == 0
        assert third.success is False
        assert third.reason == DenialReason.INSUFFICIENT_ENTITLEMENT
        assert third.upsell == UpsellCategory.SUBSCRIPTION

    async def test_tokens_used_after_quota(self, clock):
        service, _ = make_service(clock)
        await service.add_tokens("user-a", Consumable.AI_TOKENS, 1)

        results = [await service.consume_feature("user-a", Feature.AI_RECIPE) for _ in range(4)]

        assert [r.success for r in results] == [True, True, True, False]
        assert results[2].tokens_used is True
        assert results[2].new_balance == 0
        snapshot = await service.get_snapshot("user-a")
        assert snapshot.ai_tokens == 0
        assert snapshot.usage[Feature.AI_RECIPE].used == 2

    async def test_prefer_tokens_spends_tokens_first(self, clock):
        service, _ = make_service(clock)
        await service.add_tokens("user-a", Consumable.AI_TOKENS, 2)

        result = await service.consume_feature(
            "user-a", Feature.AI_MEAL_PLAN, prefer_tokens=True
        )

        assert result.tokens_used is True
        assert result.new_balance == 1
        snapshot = await service.get_snapshot("user-a")
        assert snapshot.usage[Feature.AI_MEAL_PLAN].used == 0

    async def test_quantity_not_split_between_quota_and_tokens(self, clock):
        service, _ = make_service(clock)
        await service.add_tokens("user-a", Consumable.AI_TOKENS, 1)

        result = await service.consume_feature("user-a", Feature.AI_MEAL_PLAN, quantity=3)

        assert result.success is False
        snapshot = await service.get_snapshot("user-a")
        assert snapshot.ai_tokens == 1
        assert snapshot.usage[Feature.AI_MEAL_PLAN].used == 0

    async def test_pro_unlimited_barcode_scans(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        results = [await service.consume_feature("user-pro", Feature.BARCODE_SCAN) for _ in range(40)]

        assert all(r.success for r in results)
        assert results[-1].remaining == -1

    async def test_daily_counter_resets_next_day(self, clock):
        service, _ = make_service(clock)
        for _ in range(10):
            assert (await service.consume_feature("user-a", Feature.BARCODE_SCAN)).success

        blocked = await service.consume_feature("user-a", Feature.BARCODE_SCAN)
        clock.advance(timedelta(days=1))
        allowed = await service.consume_feature("user-a", Feature.BARCODE_SCAN)

        assert blocked.success is False
        assert allowed.success is True

    async def test_concurrent_consumes_grant_exactly_the_allowance(self, clock):
        service, _ = make_service(clock)
        await service.add_tokens("user-a", Consumable.AI_TOKENS, 3)

        results = await asyncio.gather(
            *(service.consume_feature("user-a", Feature.AI_MEAL_PLAN) for _ in range(10))
        )

        assert sum(r.success for r in results) == 5
        snapshot = await service.get_snapshot("user-a")
        assert snapshot.ai_tokens == 0
        assert snapshot.usage[Feature.AI_MEAL_PLAN].used == 2

    async def test_two_processes_sharing_storage_never_overspend(self, clock):
        repo = YieldingRepository()
        first, _ = make_service(clock, repository=repo)
        second, _ = make_service(clock, repository=repo)

        results = await asyncio.gather(
            *(
                (first if i % 2 else second).consume_feature("user-a", Feature.AI_RECIPE)
                for i in range(10)
            )
        )

        assert sum(r.success for r in results) == 2
        stored = await repo.get_usage("user-a", Feature.AI_RECIPE)
        assert stored.used == 2

    async def test_gives_up_after_bounded_retries(self, clock):
        service, _ = make_service(
            clock,
            config=EntitlementConfig(consume_max_retries=3),
            repository=AlwaysConflictingRepository(),
        )

        with pytest.raises(ConsumeConflictError):
            await service.consume_feature("user-a", Feature.AI_RECIPE)

        assert service._locks == {}

    async def test_locks_are_dropped_after_sequential_consumes(self, clock):
        service, _ = make_service(clock)

        for i in range(200):
            await service.consume_feature(f"user-{i}", Feature.BARCODE_SCAN)

        assert service._locks == {}
        assert service._lock_waiters == {}

    async def test_locks_are_dropped_after_contended_consumes(self, clock):
        service, _ = make_service(clock, repository=YieldingRepository())

        results = await asyncio.gather(
            *(service.consume_feature("user-a", Feature.AI_RECIPE) for _ in range(5)),
            *(service.consume_feature("user-b", Feature.BARCODE_SCAN) for _ in range(5)),
        )

        assert sum(r.success for r in results) == 7
        assert service._locks == {}
        assert service._lock_waiters == {}

    async def test_rejects_non_positive_quantity(self, clock):
        service, _ = make_service(clock)

        with pytest.raises(ValueError):
            await service.consume_feature("user-a", Feature.AI_RECIPE, quantity=0)

    async def test_unknown_feature(self, clock):
        service, _ = make_service(clock)

        with pytest.raises(UnknownFeatureError):
            await service.consume_feature("user-a", "nope")


class TestStreakShields:
    async def test_free_user_without_shields_is_denied(self, clock):
        service, _ = make_service(clock)

        result = await service.use_streak_shield("user-a")

        assert result.success is False
        assert result.upsell == UpsellCategory.CONSUMABLE

    async def test_pro_allowance_then_purchased_shields(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        monthly = [await service.use_streak_shield("user-pro") for _ in range(2)]
        exhausted = await service.use_streak_shield("user-pro")
        await service.add_tokens("user-pro", Consumable.STREAK_SHIELDS, 1)
        purchased = await service.use_streak_shield("user-pro")

        assert all(r.success and not r.tokens_used for r in monthly)
        assert exhausted.success is False
        assert purchased.success is True
        assert purchased.tokens_used is True
        assert purchased.new_balance == 0


class TestTokens:
    async def test_credit_product(self, clock):
        service, _ = make_service(clock)

        wallet = await service.credit_product("user-a", TOKEN_PRODUCTS["ai_tokens_15"])

        assert wallet.ai_tokens == 15
        assert wallet.export_tokens == 0

    async def test_add_tokens_rejects_non_positive_amount(self, clock):
        service, _ = make_service(clock)

        with pytest.raises(ValueError):
            await service.add_tokens("user-a", Consumable.AI_TOKENS, 0)

    async def test_token_balance_reports_monthly_usage(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())
        await service.add_tokens("user-pro", Consumable.EXPORT_TOKENS, 2)
        await service.consume_feature("user-pro", Feature.PDF_EXPORT)
        await service.consume_feature("user-pro", Feature.AI_RECIPE)

        balance = await service.get_token_balance("user-pro")

        assert balance.export_tokens == 2
        assert balance.monthly_usage.pdf_exports == 1
        assert balance.monthly_usage.ai_recipes == 1
        assert balance.monthly_limits.ai_recipes == 100
        assert balance.monthly_limits.pdf_exports == 5


class TestSubscriptionSync:
    async def test_apply_update_creates_record_and_maps_customer(self, clock):
        service, repo = make_service(clock)
        update = SubscriptionUpdate(
            subscription_id="sub_1",
            customer_id="cus_1",
            status=SubscriptionStatus.ACTIVE,
            price_id="price_month",
            current_period_start=datetime(2026, 2, 1, tzinfo=UTC),
            current_period_end=datetime(2026, 3, 1, tzinfo=UTC),
            user_id="u1",
        )

        record = await service.apply_subscription_update(update)

        assert record is not None
        assert record.tier == Tier.PRO
        assert (await repo.get_subscription_by_customer_id("cus_1")).user_id == "u1"
        assert (await service.get_snapshot("u1")).is_pro is True

    async def test_apply_update_without_user_or_customer_is_skipped(self, clock):
        service, _ = make_service(clock)
        update = SubscriptionUpdate(
            subscription_id="sub_x",
            customer_id="cus_unknown",
            status=SubscriptionStatus.ACTIVE,
            price_id="price_month",
        )

        assert await service.apply_subscription_update(update) is None

    async def test_renewal_resets_monthly_counters(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())
        await service.consume_feature("user-pro", Feature.AI_MEAL_PLAN)
        await service.consume_feature("user-pro", Feature.AI_MEAL_PLAN)
        await service.consume_feature("user-pro", Feature.BARCODE_SCAN)

        await service.apply_subscription_update(
            SubscriptionUpdate(
                subscription_id="sub_pro",
                customer_id="cus_pro",
                status=SubscriptionStatus.ACTIVE,
                price_id="price_month",
                current_period_start=datetime(2026, 2, 22, tzinfo=UTC),
                current_period_end=datetime(2026, 3, 22, tzinfo=UTC),
            )
        )
        snapshot = await service.get_snapshot("user-pro")

        assert snapshot.usage[Feature.AI_MEAL_PLAN].used == 0
        assert snapshot.usage[Feature.BARCODE_SCAN].used == 1

    async def test_cancel_status_drops_to_free(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        await service.apply_subscription_update(
            SubscriptionUpdate(
                subscription_id="sub_pro",
                customer_id="cus_pro",
                status=SubscriptionStatus.CANCELLED,
                price_id="price_month",
            )
        )

        assert (await service.get_snapshot("user-pro")).tier == Tier.FREE

    async def test_past_due_and_recovery(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        past_due = await service.mark_subscription_past_due("cus_pro")
        recovered = await service.mark_subscription_recovered("cus_pro")

        assert past_due.status == SubscriptionStatus.PAST_DUE
        assert recovered.status == SubscriptionStatus.ACTIVE

    async def test_downgrade_clears_subscription(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record())

        record = await service.downgrade_subscription("cus_pro")

        assert record.tier == Tier.FREE
        assert record.status == SubscriptionStatus.CANCELLED
        assert record.stripe_subscription_id is None
        assert record.stripe_customer_id == "cus_pro"

    async def test_unknown_customer_is_ignored(self, clock):
        service, _ = make_service(clock)

        assert await service.downgrade_subscription("cus_missing") is None

    async def test_summary_reports_cancel_at_period_end(self, clock):
        service, repo = make_service(clock)
        await repo.upsert_subscription(pro_record(cancel_at_period_end=True))

        summary = await service.get_subscription_summary("user-pro")

        assert summary.tier == Tier.PRO
        assert summary.cancel_at_period_end is True


class TestWebhookIdempotency:
    async def test_duplicate_event_is_rejected(self, clock):
        service, _ = make_service(clock)

        assert await service.process_webhook_event_id("evt_1") is True
        assert await service.process_webhook_event_id("evt_1") is False

    async def test_released_event_can_be_processed_again(self, clock):
        service, _ = make_service(clock)
        await service.process_webhook_event_id("evt_1")

        await service.release_webhook_event_id("evt_1")

        assert await service.process_webhook_event_id("evt_1") is True


class TestInMemoryRepository:
    async def test_compare_and_set_bumps_version(self):
        repo = InMemoryEntitlementRepository()
        counter = UsageCounter(user_id="u", feature=Feature.AI_RECIPE, used=1)

        stored = await repo.compare_and_set_usage(counter, 0)
        stale = await repo.compare_and_set_usage(counter, 0)

        assert stored.version == 1
        assert stale is None

    async def test_debit_refuses_overdraft(self):
        repo = InMemoryEntitlementRepository()
        await repo.credit_tokens("u", Consumable.EXPORT_TOKENS, 1)

        assert await repo.debit_tokens("u", Consumable.EXPORT_TOKENS, 2) is None
        assert await repo.debit_tokens("u", Consumable.EXPORT_TOKENS, 1) == 0
