"""Wire the client components from ClientConfig."""

import asyncio
from dataclasses import dataclass
from typing import Callable

import httpx

from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.cache import FileStorage, KeyValueStorage, LocalCacheStore
from entitlements.client.feature_gate import FeatureGate
from entitlements.client.reconciliation import CheckoutReconciler, Sleep
from entitlements.client.session import ClientSession
from entitlements.config import ClientConfig


@dataclass
class EntitlementClient:
    """All client components sharing one session and cache."""

    session: ClientSession
    cache: LocalCacheStore
    api: EntitlementApiClient
    gate: FeatureGate
    reconciler: CheckoutReconciler

    async def close(self) -> None:
        await self.api.close()


def build_client(
    config: ClientConfig,
    *,
    storage: KeyValueStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    open_url: Callable[[str], None] | None = None,
    sleep: Sleep = asyncio.sleep,
) -> EntitlementClient:
    cache = LocalCacheStore(
        storage if storage is not None else FileStorage(config.cache_dir),
        ttl_seconds=config.cache_ttl_seconds,
    )
    session = ClientSession(cache)
    api = EntitlementApiClient(
        config.api_base_url,
        session.get_token,
        timeout_seconds=config.request_timeout_seconds,
        transport=transport,
    )
    gate = FeatureGate(api, cache, session)
    reconciler = CheckoutReconciler(
        api,
        gate,
        session,
        max_attempts=config.reconcile_max_attempts,
        base_delay_seconds=config.reconcile_base_delay_seconds,
        open_url=open_url,
        sleep=sleep,
    )
    return EntitlementClient(
        session=session, cache=cache, api=api, gate=gate, reconciler=reconciler
    )
