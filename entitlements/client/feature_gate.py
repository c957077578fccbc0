"""
Client-side feature gate.

Local checks run the shared predicate against the snapshot in hand and never
touch the network, so a cached Pro user keeps working offline. Remote checks
fall back to the local answer (tagged ``offline_check``) when the server
cannot be reached. Consumes always go to the server and are refused outright
while offline.
"""

import structlog

from entitlements import policy
from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.cache import (
    ENTITLEMENTS_CACHE_KEY,
    SUBSCRIPTION_CACHE_KEY,
    TOKEN_BALANCE_CACHE_KEY,
    LocalCacheStore,
)
from entitlements.client.session import ClientSession
from entitlements.errors import ClientRequestError, UnauthenticatedError
from entitlements.models.snapshot import (
    ConsumeResult,
    ConsumptionSource,
    DenialReason,
    EntitlementSnapshot,
    Feature,
    FeatureCheckResult,
    UpsellCategory,
)

logger = structlog.get_logger(__name__)


class FeatureGate:
    """Offline-safe entitlement checks backed by the API and local cache."""

    def __init__(
        self,
        api: EntitlementApiClient,
        cache: LocalCacheStore,
        session: ClientSession,
    ) -> None:
        self.api = api
        self.cache = cache
        self.session = session
        self.stale = False
        self._snapshot: EntitlementSnapshot | None = None
        self._snapshot_user: str | None = None
        session.on_sign_out(self.reset)

    @property
    def snapshot(self) -> EntitlementSnapshot | None:
        """Current snapshot for the signed-in user, if any."""
        if self._snapshot_user != self.session.user_id:
            return None
        return self._snapshot

    def reset(self) -> None:
        self._snapshot = None
        self._snapshot_user = None
        self.stale = False

    def _replace(self, snapshot: EntitlementSnapshot | None, *, stale: bool) -> None:
        self._snapshot = snapshot
        self._snapshot_user = self.session.user_id if snapshot else None
        self.stale = stale

    def _cached_snapshot(self) -> EntitlementSnapshot | None:
        return self.cache.get(ENTITLEMENTS_CACHE_KEY, self.session.user_id, EntitlementSnapshot)

    async def load_snapshot(self) -> EntitlementSnapshot | None:
        """Cache first; fetch only on a miss."""
        if not self.session.user_id:
            return None
        cached = self._cached_snapshot()
        if cached is not None:
            self._replace(cached, stale=False)
            return cached
        return await self.refresh_snapshot()

    async def refresh_snapshot(self) -> EntitlementSnapshot | None:
        """
        Fetch a fresh snapshot and overwrite the cache.

        On a transient failure (offline, timeout, 5xx) keep the best snapshot
        available, cached or in memory, and flag it ``stale``.
        """
        user_id = self.session.user_id
        if not user_id:
            return None

        if self.session.online:
            try:
                response = await self.api.get_subscription()
            except ClientRequestError as e:
                if not e.retryable:
                    raise
                logger.warning("snapshot_refresh_failed", user_id=user_id, error=e.message)
            else:
                # The user may have signed out while the request was in flight
                if self.session.user_id != user_id:
                    return None
                self.cache.set(ENTITLEMENTS_CACHE_KEY, response.entitlements, user_id)
                self.cache.set(SUBSCRIPTION_CACHE_KEY, response.subscription, user_id)
                self._replace(response.entitlements, stale=False)
                return response.entitlements

        fallback = self._cached_snapshot() or self.snapshot
        self._replace(fallback, stale=True)
        return fallback

    def can_use_feature_local(
        self,
        feature: Feature | str,
        quantity: int = 1,
        snapshot: EntitlementSnapshot | None = None,
    ) -> bool:
        """Evaluate the shared predicate locally. No snapshot means no access."""
        snapshot = snapshot or self.snapshot
        if snapshot is None:
            return False
        return policy.evaluate(snapshot, feature, quantity).allowed

    def remaining_local(self, feature: Feature | str) -> int:
        snapshot = self.snapshot
        if snapshot is None:
            return 0
        return policy.remaining(snapshot, feature)

    def _local_check(self, feature: Feature, quantity: int) -> FeatureCheckResult:
        snapshot = self.snapshot
        if snapshot is None:
            return FeatureCheckResult(allowed=False, reason=DenialReason.OFFLINE_CHECK, remaining=0)
        result = policy.evaluate(snapshot, feature, quantity)
        return FeatureCheckResult(
            allowed=result.allowed,
            reason=DenialReason.OFFLINE_CHECK,
            remaining=policy.remaining(snapshot, feature),
            upsell=result.upsell,
        )

    async def check_feature(self, feature: Feature | str, quantity: int = 1) -> FeatureCheckResult:
        """Ask the server; degrade to the local answer when it is unreachable."""
        feature = policy.resolve_feature(feature)
        if not self.session.user_id:
            raise UnauthenticatedError()

        if not self.session.online:
            return self._local_check(feature, quantity)

        try:
            return await self.api.check_feature(feature, quantity)
        except ClientRequestError as e:
            if not e.retryable:
                raise
            logger.info("feature_check_offline_fallback", feature=feature.value, error=e.message)
            return self._local_check(feature, quantity)

    async def consume_feature(
        self,
        feature: Feature | str,
        quantity: int = 1,
        use_tokens: bool = False,
    ) -> ConsumeResult:
        """
        Consume on the server. Never attempted offline.

        After a success the cached snapshot is invalidated and refetched; if
        that refetch fails for any reason, the consume is applied to the
        previous snapshot in memory only, so local checks reflect it until the
        next refresh.
        """
        feature = policy.resolve_feature(feature)
        if not self.session.user_id:
            raise UnauthenticatedError()

        if not self.session.online:
            return ConsumeResult(success=False, reason=DenialReason.OFFLINE)

        previous = self.snapshot
        try:
            result = await self.api.consume_feature(feature, quantity, use_tokens)
        except ClientRequestError as e:
            if not e.retryable:
                raise
            logger.warning("feature_consume_failed", feature=feature.value, error=e.message)
            # A timed-out consume may still have been applied server-side
            self.cache.invalidate(ENTITLEMENTS_CACHE_KEY)
            return ConsumeResult(success=False, reason=DenialReason.OFFLINE)

        if not result.success:
            return result

        self.cache.invalidate(ENTITLEMENTS_CACHE_KEY)
        self.cache.invalidate(TOKEN_BALANCE_CACHE_KEY)
        try:
            await self.refresh_snapshot()
        except (ClientRequestError, UnauthenticatedError) as e:
            # The consume already happened; report it even if the refetch is refused
            logger.warning(
                "snapshot_refresh_after_consume_failed", feature=feature.value, error=str(e)
            )
            self.stale = True

        if self.stale and previous is not None:
            source = ConsumptionSource.TOKENS if result.tokens_used else ConsumptionSource.QUOTA
            self._replace(
                policy.apply_consumption(previous, feature, quantity, source), stale=True
            )
        return result

    def upsell_for(self, reason: DenialReason | None) -> UpsellCategory | None:
        snapshot = self.snapshot
        if snapshot is None:
            return policy.upsell_for(reason)
        return policy.upsell_for(reason, snapshot.tier)
