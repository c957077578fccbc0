"""
Shared test fixtures for the entitlements test suite.
"""

from datetime import UTC, datetime, timedelta

import pytest
import structlog
from fastapi.testclient import TestClient

from entitlements import policy
from entitlements.constants import TIER_LIMITS
from entitlements.models.snapshot import (
    EntitlementSnapshot,
    Feature,
    SubscriptionStatus,
    Tier,
    UsageRecord,
)


class MutableClock:
    """Deterministic clock helper for tests."""

    def __init__(self, now: datetime):
        self._now = now

    def now(self) -> datetime:
        return self._now

    def timestamp(self) -> float:
        return self._now.timestamp()

    def advance(self, delta: timedelta) -> None:
        self._now += delta


def make_snapshot(
    tier: Tier = Tier.FREE,
    usage: dict[Feature, int] | None = None,
    **fields,
) -> EntitlementSnapshot:
    """Snapshot with every feature present; ``usage`` gives per-feature used counts."""
    limits = TIER_LIMITS[tier]
    records = {
        feature: UsageRecord(
            used=(usage or {}).get(feature, 0),
            limit=policy.limit_for(limits, feature),
        )
        for feature in Feature
    }
    defaults = {
        "tier": tier,
        "subscription_status": (
            SubscriptionStatus.ACTIVE if tier == Tier.PRO else SubscriptionStatus.NONE
        ),
        "is_pro": tier == Tier.PRO,
        "limits": limits,
        "usage": records,
    }
    defaults.update(fields)
    return EntitlementSnapshot(**defaults)


@pytest.fixture(autouse=True)
def _set_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep external services unconfigured so Settings never reaches them."""
    monkeypatch.setenv("SUPABASE_URL", "")
    monkeypatch.setenv("SUPABASE_SECRET_KEY", "")
    monkeypatch.setenv("STRIPE__SECRET_KEY", "")
    monkeypatch.setenv("DEBUG", "false")


@pytest.fixture(autouse=True)
def _configure_structlog_for_tests():
    """Configure structlog for tests using a simple, deterministic setup."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(0),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 2, 22, 12, 0, tzinfo=UTC))


@pytest.fixture
def client() -> TestClient:
    """FastAPI TestClient wrapping the main application."""
    # Clear the lru_cache so settings pick up test env vars
    from entitlements.config import get_settings

    get_settings.cache_clear()

    from entitlements.main import app

    return TestClient(app)


@pytest.fixture
def snapshot_factory():
    """Factory building snapshots; see make_snapshot."""
    return make_snapshot
