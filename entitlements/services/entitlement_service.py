"""Entitlement service and repositories."""

import asyncio
import math
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Protocol

import structlog

from entitlements import policy
from entitlements.config import EntitlementConfig
from entitlements.constants import TIER_LIMITS, UNLIMITED
from entitlements.errors import ConsumeConflictError, UnauthenticatedError
from entitlements.models.billing import (
    SubscriptionRecord,
    SubscriptionUpdate,
    TokenProduct,
    TokenWallet,
    UsageCounter,
)
from entitlements.models.snapshot import (
    BillingPeriod,
    Consumable,
    ConsumeResult,
    ConsumptionSource,
    DenialReason,
    EntitlementSnapshot,
    Feature,
    FeatureCheckResult,
    MonthlyFigures,
    SubscriptionStatus,
    SubscriptionSummary,
    Tier,
    TokenBalance,
    UsagePeriod,
    UsageRecord,
)

logger = structlog.get_logger(__name__)

PRO_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}

# How many times a wallet CAS is retried before giving up
_WALLET_CAS_ATTEMPTS = 5


def _utcnow() -> datetime:
    return datetime.now(UTC)


class EntitlementRepository(Protocol):
    """Storage contract for subscription, usage and wallet state."""

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        """Fetch a user's subscription record."""

    async def get_subscription_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        """Fetch a subscription record by Stripe customer ID."""

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        """Persist subscription state."""

    async def get_usage(self, user_id: str, feature: Feature) -> UsageCounter | None:
        """Fetch the usage counter for (user, feature)."""

    async def compare_and_set_usage(
        self, counter: UsageCounter, expected_version: int
    ) -> UsageCounter | None:
        """Store ``counter`` only if the stored version equals ``expected_version``.

        A missing counter has version 0. Returns the stored counter (with its
        version bumped) or None if another writer got there first.
        """

    async def get_wallet(self, user_id: str) -> TokenWallet | None:
        """Fetch consumable balances."""

    async def credit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int:
        """Atomically add ``amount``; returns the new balance."""

    async def debit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int | None:
        """Atomically subtract ``amount`` if the balance covers it.

        Returns the new balance, or None when the balance is insufficient.
        """

    async def mark_webhook_processed(self, event_id: str) -> bool:
        """Record webhook idempotency key.

        Returns True when the event is new; False if already seen.
        """

    async def release_webhook_event(self, event_id: str) -> None:
        """Forget an idempotency key so a redelivery is processed again."""


class InMemoryEntitlementRepository:
    """In-memory repository used for tests and local fallback.

    Each method completes without yielding to the event loop, so every
    read-modify-write below is atomic with respect to other coroutines.
    """

    def __init__(self) -> None:
        self.subscriptions: dict[str, SubscriptionRecord] = {}
        self.customer_to_user: dict[str, str] = {}
        self.usage: dict[tuple[str, Feature], UsageCounter] = {}
        self.wallets: dict[str, TokenWallet] = {}
        self.processed_events: set[str] = set()

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        record = self.subscriptions.get(user_id)
        return record.model_copy(deep=True) if record else None

    async def get_subscription_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        user_id = self.customer_to_user.get(customer_id)
        if not user_id:
            return None
        return await self.get_subscription(user_id)

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        stored = record.model_copy(deep=True)
        self.subscriptions[stored.user_id] = stored
        if stored.stripe_customer_id:
            self.customer_to_user[stored.stripe_customer_id] = stored.user_id
        return stored.model_copy(deep=True)

    async def get_usage(self, user_id: str, feature: Feature) -> UsageCounter | None:
        counter = self.usage.get((user_id, feature))
        return counter.model_copy() if counter else None

    async def compare_and_set_usage(
        self, counter: UsageCounter, expected_version: int
    ) -> UsageCounter | None:
        key = (counter.user_id, counter.feature)
        current = self.usage.get(key)
        current_version = current.version if current else 0
        if current_version != expected_version:
            return None
        stored = counter.model_copy(update={"version": expected_version + 1})
        self.usage[key] = stored
        return stored.model_copy()

    async def get_wallet(self, user_id: str) -> TokenWallet | None:
        wallet = self.wallets.get(user_id)
        return wallet.model_copy() if wallet else None

    async def credit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int:
        wallet = self.wallets.setdefault(user_id, TokenWallet(user_id=user_id))
        new_balance = wallet.balance(consumable) + amount
        setattr(wallet, consumable.value, new_balance)
        return new_balance

    async def debit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int | None:
        wallet = self.wallets.get(user_id)
        if wallet is None or wallet.balance(consumable) < amount:
            return None
        new_balance = wallet.balance(consumable) - amount
        setattr(wallet, consumable.value, new_balance)
        return new_balance

    async def mark_webhook_processed(self, event_id: str) -> bool:
        if event_id in self.processed_events:
            return False
        self.processed_events.add(event_id)
        return True

    async def release_webhook_event(self, event_id: str) -> None:
        self.processed_events.discard(event_id)


class SupabaseEntitlementRepository:
    """Supabase-backed repository.

    Conditional writes are expressed as filtered updates (``.eq`` on the
    version or the current balance); an empty result means the row changed
    underneath us.
    """

    def __init__(
        self,
        client,
        *,
        subscriptions_table: str,
        usage_table: str,
        wallets_table: str,
        webhook_events_table: str,
    ):
        self.client = client
        self.subscriptions_table = subscriptions_table
        self.usage_table = usage_table
        self.wallets_table = wallets_table
        self.webhook_events_table = webhook_events_table

    async def _first_row(self, table: str, column: str, value: str) -> dict | None:
        response = (
            await self.client.table(table).select("*").eq(column, value).limit(1).execute()
        )
        rows = response.data or []
        return rows[0] if rows else None

    async def get_subscription(self, user_id: str) -> SubscriptionRecord | None:
        row = await self._first_row(self.subscriptions_table, "user_id", user_id)
        return SubscriptionRecord.model_validate(row) if row else None

    async def get_subscription_by_customer_id(self, customer_id: str) -> SubscriptionRecord | None:
        row = await self._first_row(self.subscriptions_table, "stripe_customer_id", customer_id)
        return SubscriptionRecord.model_validate(row) if row else None

    async def upsert_subscription(self, record: SubscriptionRecord) -> SubscriptionRecord:
        payload = record.model_dump(mode="json")
        payload["updated_at"] = _utcnow().isoformat()
        response = (
            await self.client.table(self.subscriptions_table)
            .upsert(payload, on_conflict="user_id")
            .execute()
        )
        rows = response.data or []
        if not rows:
            # Some Supabase responses return no data unless `returning=representation`.
            return record
        return SubscriptionRecord.model_validate(rows[0])

    async def get_usage(self, user_id: str, feature: Feature) -> UsageCounter | None:
        response = (
            await self.client.table(self.usage_table)
            .select("*")
            .eq("user_id", user_id)
            .eq("feature", feature.value)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return UsageCounter.model_validate(rows[0]) if rows else None

    async def compare_and_set_usage(
        self, counter: UsageCounter, expected_version: int
    ) -> UsageCounter | None:
        payload = counter.model_dump(mode="json")
        payload["version"] = expected_version + 1

        if expected_version == 0:
            response = (
                await self.client.table(self.usage_table)
                .upsert(payload, on_conflict="user_id,feature", ignore_duplicates=True)
                .execute()
            )
        else:
            response = (
                await self.client.table(self.usage_table)
                .update(payload)
                .eq("user_id", counter.user_id)
                .eq("feature", counter.feature.value)
                .eq("version", expected_version)
                .execute()
            )
        rows = response.data or []
        return UsageCounter.model_validate(rows[0]) if rows else None

    async def get_wallet(self, user_id: str) -> TokenWallet | None:
        row = await self._first_row(self.wallets_table, "user_id", user_id)
        return TokenWallet.model_validate(row) if row else None

    async def _ensure_wallet(self, user_id: str) -> TokenWallet:
        wallet = await self.get_wallet(user_id)
        if wallet is not None:
            return wallet
        await (
            self.client.table(self.wallets_table)
            .upsert({"user_id": user_id}, on_conflict="user_id", ignore_duplicates=True)
            .execute()
        )
        return await self.get_wallet(user_id) or TokenWallet(user_id=user_id)

    async def _swap_balance(
        self, user_id: str, consumable: Consumable, current: int, new: int
    ) -> bool:
        column = consumable.value
        response = (
            await self.client.table(self.wallets_table)
            .update({column: new, "updated_at": _utcnow().isoformat()})
            .eq("user_id", user_id)
            .eq(column, current)
            .execute()
        )
        return bool(response.data)

    async def credit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int:
        for _ in range(_WALLET_CAS_ATTEMPTS):
            wallet = await self._ensure_wallet(user_id)
            current = wallet.balance(consumable)
            if await self._swap_balance(user_id, consumable, current, current + amount):
                return current + amount
        raise ConsumeConflictError(user_id, consumable.value)

    async def debit_tokens(self, user_id: str, consumable: Consumable, amount: int) -> int | None:
        for _ in range(_WALLET_CAS_ATTEMPTS):
            wallet = await self.get_wallet(user_id)
            if wallet is None or wallet.balance(consumable) < amount:
                return None
            current = wallet.balance(consumable)
            if await self._swap_balance(user_id, consumable, current, current - amount):
                return current - amount
        raise ConsumeConflictError(user_id, consumable.value)

    async def mark_webhook_processed(self, event_id: str) -> bool:
        response = (
            await self.client.table(self.webhook_events_table)
            .upsert(
                {"event_id": event_id, "processed_at": _utcnow().isoformat()},
                on_conflict="event_id",
                ignore_duplicates=True,
            )
            .execute()
        )
        return bool(response.data)

    async def release_webhook_event(self, event_id: str) -> None:
        await (
            self.client.table(self.webhook_events_table)
            .delete()
            .eq("event_id", event_id)
            .execute()
        )


class EntitlementService:
    """Authoritative snapshot, check and consume operations."""

    def __init__(
        self,
        repository: EntitlementRepository,
        config: EntitlementConfig,
        now_provider=_utcnow,
    ) -> None:
        self.repository = repository
        self.config = config
        self.now_provider = now_provider
        # One lock per (user, feature), dropped once nobody holds or awaits it
        self._locks: dict[tuple[str, Feature], asyncio.Lock] = {}
        self._lock_waiters: dict[tuple[str, Feature], int] = {}

    @asynccontextmanager
    async def _feature_lock(self, user_id: str, feature: Feature):
        key = (user_id, feature)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_waiters[key] = self._lock_waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_waiters[key] -= 1
            if not self._lock_waiters[key]:
                del self._lock_waiters[key]
                del self._locks[key]

    # ------------------------------------------------------------------
    # Snapshot computation
    # ------------------------------------------------------------------

    def _effective_tier(self, record: SubscriptionRecord | None, now: datetime) -> Tier:
        if record is None or record.tier != Tier.PRO:
            return Tier.FREE

        if record.status in PRO_STATUSES:
            # Don't trust the status alone once the paid period has lapsed
            if record.current_period_end and record.current_period_end < now:
                logger.warning(
                    "subscription_period_expired",
                    user_id=record.user_id,
                    period_end=record.current_period_end.isoformat(),
                )
                return Tier.FREE
            return Tier.PRO

        if record.status == SubscriptionStatus.PAST_DUE:
            if record.current_period_end:
                grace_end = record.current_period_end + timedelta(
                    days=self.config.past_due_grace_days
                )
                if now > grace_end:
                    logger.warning("subscription_grace_expired", user_id=record.user_id)
                    return Tier.FREE
            return Tier.PRO

        return Tier.FREE

    @staticmethod
    def _trial_days_remaining(record: SubscriptionRecord | None, now: datetime) -> int | None:
        if record is None or record.status != SubscriptionStatus.TRIALING or not record.trial_end:
            return None
        days = math.ceil((record.trial_end - now).total_seconds() / 86400)
        return max(0, days)

    async def _current_counter(self, user_id: str, feature: Feature, now: datetime) -> UsageCounter:
        """Load a counter, rolling it into the current period if it has lapsed."""
        period = policy.FEATURE_RULES[feature].period
        counter = await self.repository.get_usage(user_id, feature)
        if counter is None:
            return UsageCounter(
                user_id=user_id, feature=feature, resets_at=policy.next_reset(period, now)
            )
        if counter.resets_at is not None and now < counter.resets_at:
            return counter

        rolled = counter.model_copy(update={"used": 0, "resets_at": policy.next_reset(period, now)})
        stored = await self.repository.compare_and_set_usage(rolled, counter.version)
        if stored is not None:
            logger.info(
                "usage_period_rolled_over",
                user_id=user_id,
                feature=feature.value,
                previous_used=counter.used,
            )
            return stored

        # Another writer touched the counter first; its write already rolled it
        latest = await self.repository.get_usage(user_id, feature)
        if latest is None or latest.resets_at is None or now >= latest.resets_at:
            return rolled.model_copy(update={"version": latest.version if latest else 0})
        return latest

    def _build_snapshot(
        self,
        record: SubscriptionRecord | None,
        wallet: TokenWallet | None,
        counters: dict[Feature, UsageCounter],
        now: datetime,
    ) -> EntitlementSnapshot:
        tier = self._effective_tier(record, now)
        limits = TIER_LIMITS[tier]
        status = record.status if record else SubscriptionStatus.NONE

        usage: dict[Feature, UsageRecord] = {}
        for feature, counter in counters.items():
            usage[feature] = UsageRecord(
                used=counter.used,
                limit=policy.limit_for(limits, feature),
                resets_at=counter.resets_at,
            )

        wallet = wallet or TokenWallet(user_id=record.user_id if record else "")
        return EntitlementSnapshot(
            tier=tier,
            subscription_status=status,
            billing_period=record.billing_period if record else BillingPeriod.NONE,
            period_end=record.current_period_end if record else None,
            is_pro=tier == Tier.PRO and status in PRO_STATUSES,
            is_trialing=status == SubscriptionStatus.TRIALING,
            trial_days_remaining=self._trial_days_remaining(record, now),
            cancel_at_period_end=bool(record and record.cancel_at_period_end),
            limits=limits,
            usage=usage,
            ai_tokens=wallet.ai_tokens,
            export_tokens=wallet.export_tokens,
            streak_shields=wallet.streak_shields,
            generated_at=now,
        )

    async def _snapshot_for(self, user_id: str, features: list[Feature]) -> EntitlementSnapshot:
        now = self.now_provider()
        record = await self.repository.get_subscription(user_id)
        wallet = await self.repository.get_wallet(user_id)
        counters = {f: await self._current_counter(user_id, f, now) for f in features}
        return self._build_snapshot(record, wallet, counters, now)

    async def get_snapshot(self, user_id: str) -> EntitlementSnapshot:
        """Compute the user's snapshot; lapsed counters are rolled over."""
        _require_user(user_id)
        return await self._snapshot_for(user_id, list(Feature))

    async def get_subscription_summary(self, user_id: str) -> SubscriptionSummary:
        _require_user(user_id)
        record = await self.repository.get_subscription(user_id)
        if record is None:
            return SubscriptionSummary()
        return SubscriptionSummary(
            tier=self._effective_tier(record, self.now_provider()),
            status=record.status,
            billing_period=record.billing_period,
            current_period_end=record.current_period_end,
            trial_end_date=record.trial_end,
            cancel_at_period_end=record.cancel_at_period_end,
        )

    async def get_token_balance(self, user_id: str) -> TokenBalance:
        snapshot = await self.get_snapshot(user_id)
        return TokenBalance(
            ai_tokens=snapshot.ai_tokens,
            export_tokens=snapshot.export_tokens,
            streak_shields=snapshot.streak_shields,
            monthly_usage=MonthlyFigures(
                ai_meal_plans=snapshot.usage_for(Feature.AI_MEAL_PLAN).used,
                ai_recipes=snapshot.usage_for(Feature.AI_RECIPE).used,
                pdf_exports=snapshot.usage_for(Feature.PDF_EXPORT).used,
            ),
            monthly_limits=MonthlyFigures(
                ai_meal_plans=snapshot.limits.ai_meal_plans_per_month,
                ai_recipes=snapshot.limits.ai_recipe_suggestions_per_month,
                pdf_exports=snapshot.limits.pdf_exports_included,
            ),
        )

    # ------------------------------------------------------------------
    # Check / consume
    # ------------------------------------------------------------------

    async def check_feature(
        self, user_id: str, feature: Feature | str, quantity: int = 1
    ) -> FeatureCheckResult:
        """Read-only evaluation of the shared predicate on a fresh snapshot."""
        _require_user(user_id)
        feature = policy.resolve_feature(feature)
        if not self.config.enabled:
            return FeatureCheckResult(allowed=True, remaining=UNLIMITED)

        snapshot = await self._snapshot_for(user_id, [feature])
        return policy.evaluate(snapshot, feature, quantity)

    async def consume_feature(
        self,
        user_id: str,
        feature: Feature | str,
        quantity: int = 1,
        prefer_tokens: bool = False,
    ) -> ConsumeResult:
        """
        Spend period quota or a substitute consumable for ``quantity`` uses.

        Serialized per (user, feature) in-process, and guarded across
        processes by a version check on the counter and a balance check on
        the wallet. Spends quota or tokens, never both.

        Raises:
            UnknownFeatureError: feature is not a Feature.
            UnauthenticatedError: no user id.
            ConsumeConflictError: the counter kept changing underneath us.
        """
        _require_user(user_id)
        feature = policy.resolve_feature(feature)
        if quantity < 1:
            raise ValueError(f"quantity must be >= 1, got {quantity}")
        if not self.config.enabled:
            return ConsumeResult(success=True, remaining=UNLIMITED)

        rule = policy.FEATURE_RULES[feature]
        log = logger.bind(user_id=user_id, feature=feature.value, quantity=quantity)

        async with self._feature_lock(user_id, feature):
            for _attempt in range(self.config.consume_max_retries):
                now = self.now_provider()
                record = await self.repository.get_subscription(user_id)
                wallet = await self.repository.get_wallet(user_id)
                counter = await self._current_counter(user_id, feature, now)
                snapshot = self._build_snapshot(record, wallet, {feature: counter}, now)

                source = policy.plan_consumption(snapshot, feature, quantity, prefer_tokens)
                if source is None:
                    log.info("feature_consume_denied", tier=snapshot.tier.value)
                    return ConsumeResult(
                        success=False,
                        reason=DenialReason.INSUFFICIENT_ENTITLEMENT,
                        remaining=policy.remaining(snapshot, feature),
                        upsell=policy.upsell_for(rule.denial, snapshot.tier),
                    )

                if source == ConsumptionSource.TOKENS:
                    new_balance = await self.repository.debit_tokens(
                        user_id, rule.substitute, quantity
                    )
                    if new_balance is None:
                        # Shared balance spent by another feature meanwhile
                        continue
                    after = snapshot.model_copy(update={rule.substitute.value: new_balance})
                    log.info("feature_consumed", source=source.value, new_balance=new_balance)
                    return ConsumeResult(
                        success=True,
                        tokens_used=True,
                        new_balance=new_balance,
                        remaining=policy.remaining(after, feature),
                    )

                updated = counter.model_copy(update={"used": counter.used + quantity})
                stored = await self.repository.compare_and_set_usage(updated, counter.version)
                if stored is None:
                    continue

                after = policy.apply_consumption(snapshot, feature, quantity, source)
                record_after = after.usage_for(feature)
                quota_left = (
                    UNLIMITED
                    if record_after.unlimited
                    else max(0, record_after.limit - record_after.used)
                )
                log.info("feature_consumed", source=source.value, used=stored.used)
                return ConsumeResult(
                    success=True,
                    tokens_used=False,
                    new_balance=quota_left,
                    remaining=policy.remaining(after, feature),
                )

        log.warning("feature_consume_contended", attempts=self.config.consume_max_retries)
        raise ConsumeConflictError(user_id, feature.value)

    async def use_streak_shield(self, user_id: str) -> ConsumeResult:
        """Spend a monthly Pro shield first, then a purchased one."""
        return await self.consume_feature(user_id, Feature.STREAK_SHIELD, 1)

    # ------------------------------------------------------------------
    # Purchases and subscription sync
    # ------------------------------------------------------------------

    async def add_tokens(
        self,
        user_id: str,
        consumable: Consumable,
        amount: int,
        *,
        source: str = "purchase",
        reference: str | None = None,
    ) -> int:
        _require_user(user_id)
        if amount <= 0:
            raise ValueError(f"amount must be positive, got {amount}")
        new_balance = await self.repository.credit_tokens(user_id, consumable, amount)
        logger.info(
            "tokens_credited",
            user_id=user_id,
            consumable=consumable.value,
            amount=amount,
            new_balance=new_balance,
            source=source,
            reference=reference,
        )
        return new_balance

    async def credit_product(
        self, user_id: str, product: TokenProduct, *, reference: str | None = None
    ) -> TokenWallet:
        for consumable, amount in product.tokens.items():
            if amount:
                await self.add_tokens(user_id, consumable, amount, reference=reference)
        return await self.repository.get_wallet(user_id) or TokenWallet(user_id=user_id)

    async def _reset_monthly_usage(self, user_id: str) -> None:
        now = self.now_provider()
        for feature, rule in policy.FEATURE_RULES.items():
            if rule.period != UsagePeriod.MONTHLY:
                continue
            counter = await self.repository.get_usage(user_id, feature)
            if counter is None or counter.used == 0:
                continue
            reset = counter.model_copy(
                update={"used": 0, "resets_at": policy.next_reset(rule.period, now)}
            )
            await self.repository.compare_and_set_usage(reset, counter.version)

    async def apply_subscription_update(
        self, update: SubscriptionUpdate
    ) -> SubscriptionRecord | None:
        record: SubscriptionRecord | None = None
        if update.user_id:
            record = await self.repository.get_subscription(update.user_id)
        if record is None:
            record = await self.repository.get_subscription_by_customer_id(update.customer_id)

        if record is None:
            if not update.user_id:
                logger.warning(
                    "subscription_user_missing",
                    customer_id=update.customer_id,
                    subscription_id=update.subscription_id,
                )
                return None
            record = SubscriptionRecord(user_id=update.user_id)

        previous_period_start = record.current_period_start

        record.tier = Tier.FREE if update.status == SubscriptionStatus.CANCELLED else Tier.PRO
        record.status = update.status
        record.billing_period = update.billing_period
        record.current_period_start = update.current_period_start
        record.current_period_end = update.current_period_end
        record.trial_end = update.trial_end if update.status == SubscriptionStatus.TRIALING else None
        record.cancel_at_period_end = update.cancel_at_period_end
        record.stripe_customer_id = update.customer_id
        record.stripe_subscription_id = update.subscription_id
        record.stripe_price_id = update.price_id

        stored = await self.repository.upsert_subscription(record)

        renewed = (
            update.status == SubscriptionStatus.ACTIVE
            and previous_period_start is not None
            and update.current_period_start is not None
            and update.current_period_start != previous_period_start
        )
        if renewed:
            await self._reset_monthly_usage(stored.user_id)
            logger.info("subscription_renewed", user_id=stored.user_id)

        logger.info(
            "subscription_synced",
            user_id=stored.user_id,
            status=stored.status.value,
            tier=stored.tier.value,
        )
        return stored

    async def _update_by_customer(self, customer_id: str, **changes) -> SubscriptionRecord | None:
        record = await self.repository.get_subscription_by_customer_id(customer_id)
        if record is None:
            logger.warning("subscription_customer_unknown", customer_id=customer_id)
            return None
        for field, value in changes.items():
            setattr(record, field, value)
        return await self.repository.upsert_subscription(record)

    async def mark_subscription_past_due(self, customer_id: str) -> SubscriptionRecord | None:
        return await self._update_by_customer(customer_id, status=SubscriptionStatus.PAST_DUE)

    async def mark_subscription_recovered(self, customer_id: str) -> SubscriptionRecord | None:
        record = await self.repository.get_subscription_by_customer_id(customer_id)
        if record is None or record.status != SubscriptionStatus.PAST_DUE:
            return record
        record.status = SubscriptionStatus.ACTIVE
        return await self.repository.upsert_subscription(record)

    async def downgrade_subscription(self, customer_id: str) -> SubscriptionRecord | None:
        return await self._update_by_customer(
            customer_id,
            tier=Tier.FREE,
            status=SubscriptionStatus.CANCELLED,
            billing_period=BillingPeriod.NONE,
            stripe_subscription_id=None,
            stripe_price_id=None,
            current_period_start=None,
            current_period_end=None,
            trial_end=None,
            cancel_at_period_end=False,
        )

    async def process_webhook_event_id(self, event_id: str) -> bool:
        return await self.repository.mark_webhook_processed(event_id)

    async def release_webhook_event_id(self, event_id: str) -> None:
        await self.repository.release_webhook_event(event_id)


def _require_user(user_id: str | None) -> None:
    if not user_id:
        raise UnauthenticatedError()
