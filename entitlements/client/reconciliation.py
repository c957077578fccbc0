"""
Checkout / webhook reconciliation.

After the payment processor redirects back, the entitlement change only
exists once the processor's webhook has reached the server. The reconciler
polls the snapshot with exponential backoff until it reflects the purchase,
the user changes, the caller cancels, or the attempts run out.
"""

import asyncio
from enum import Enum
from typing import Awaitable, Callable
from urllib.parse import parse_qs, urlsplit

import structlog
from pydantic import BaseModel

from entitlements.client.api_client import EntitlementApiClient
from entitlements.client.feature_gate import FeatureGate
from entitlements.client.session import ClientSession
from entitlements.constants import TOKEN_PRODUCTS
from entitlements.errors import ClientRequestError, UnauthenticatedError
from entitlements.models.billing import CheckoutPlan
from entitlements.models.snapshot import CheckoutSession, Consumable, EntitlementSnapshot

logger = structlog.get_logger(__name__)

Expectation = Callable[[EntitlementSnapshot], bool]
Sleep = Callable[[float], Awaitable[None]]


class ReconciliationState(str, Enum):
    IDLE = "idle"
    CHECKOUT_REQUESTED = "checkout_requested"
    REDIRECTED_TO_PROCESSOR = "redirected_to_processor"
    RETURNED_WITH_SUCCESS_PARAM = "returned_with_success_param"
    RECONCILING = "reconciling"
    RECONCILED = "reconciled"
    RECONCILIATION_TIMED_OUT = "reconciliation_timed_out"
    CANCELLED = "cancelled"


class ReconciliationResult(BaseModel):
    """Outcome of one reconciliation run."""

    status: ReconciliationState
    attempts: int
    snapshot: EntitlementSnapshot | None = None


class CancellationToken:
    """Cooperative cancellation flag checked before every attempt."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True


def expect_pro(snapshot: EntitlementSnapshot) -> bool:
    return snapshot.is_pro


def expect_balance_increase(
    baseline: EntitlementSnapshot | None, consumables: list[Consumable]
) -> Expectation:
    """Satisfied once any of ``consumables`` exceeds its balance in ``baseline``."""
    before = {c: baseline.balance(c) if baseline else 0 for c in consumables}

    def expectation(snapshot: EntitlementSnapshot) -> bool:
        return any(snapshot.balance(c) > before[c] for c in consumables)

    return expectation


def _query_flag(url: str, name: str) -> str | None:
    values = parse_qs(urlsplit(url).query).get(name)
    return values[0] if values else None


class CheckoutReconciler:
    """Drives checkout redirects and the post-return polling loop."""

    def __init__(
        self,
        api: EntitlementApiClient,
        gate: FeatureGate,
        session: ClientSession,
        *,
        max_attempts: int = 5,
        base_delay_seconds: float = 1.0,
        sleep: Sleep = asyncio.sleep,
        open_url: Callable[[str], None] | None = None,
    ) -> None:
        self.api = api
        self.gate = gate
        self.session = session
        self.max_attempts = max_attempts
        self.base_delay_seconds = base_delay_seconds
        self.state = ReconciliationState.IDLE
        self._sleep = sleep
        self._open_url = open_url
        self._expectation: Expectation | None = None
        self._active_token: CancellationToken | None = None
        session.on_sign_out(self.cancel)

    def _redirect(self, checkout: CheckoutSession) -> None:
        if self._open_url is not None:
            self._open_url(checkout.url)
        self.state = ReconciliationState.REDIRECTED_TO_PROCESSOR

    async def open_checkout(self, plan: CheckoutPlan = CheckoutPlan.MONTHLY) -> CheckoutSession:
        self.state = ReconciliationState.CHECKOUT_REQUESTED
        try:
            checkout = await self.api.create_checkout(plan)
        except Exception:
            self.state = ReconciliationState.IDLE
            raise
        self._expectation = expect_pro
        self._redirect(checkout)
        logger.info("checkout_redirected", plan=plan.value, session_id=checkout.session_id)
        return checkout

    async def purchase_tokens(self, product_id: str) -> CheckoutSession:
        self.state = ReconciliationState.CHECKOUT_REQUESTED
        try:
            checkout = await self.api.purchase_tokens(product_id)
        except Exception:
            self.state = ReconciliationState.IDLE
            raise
        product = TOKEN_PRODUCTS.get(product_id)
        consumables = list(product.tokens) if product else list(Consumable)
        self._expectation = expect_balance_increase(self.gate.snapshot, consumables)
        self._redirect(checkout)
        logger.info("token_checkout_redirected", product_id=product_id)
        return checkout

    async def open_billing_portal(self, return_url: str | None = None) -> str:
        url = await self.api.create_portal(return_url)
        if self._open_url is not None:
            self._open_url(url)
        return url

    async def handle_return(
        self, url: str, cancel_token: CancellationToken | None = None
    ) -> ReconciliationResult | None:
        """React to the redirect back from the processor.

        A success parameter starts reconciliation; a cancel parameter resets
        to idle. Other URLs are ignored.
        """
        subscription_flag = _query_flag(url, "subscription")
        purchase_flag = _query_flag(url, "purchase")

        if "success" in (subscription_flag, purchase_flag):
            self.state = ReconciliationState.RETURNED_WITH_SUCCESS_PARAM
            expectation = self._expectation
            if expectation is None:
                # Returned in a fresh process: infer from the redirect itself
                expectation = (
                    expect_pro
                    if subscription_flag == "success"
                    else expect_balance_increase(self.gate.snapshot, list(Consumable))
                )
            # The pre-checkout snapshot is stale now; never serve it from cache again
            self.gate.cache.clear()
            self.gate.reset()
            return await self.refresh_with_retry(expectation, cancel_token=cancel_token)

        if "cancelled" in (subscription_flag, purchase_flag):
            logger.info("checkout_cancelled_by_user")
            self._expectation = None
            self.state = ReconciliationState.IDLE
        return None

    async def refresh_with_retry(
        self,
        expectation: Expectation | None = None,
        *,
        max_attempts: int | None = None,
        base_delay_seconds: float | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ReconciliationResult:
        """
        Poll the snapshot until ``expectation`` holds.

        Waits ``base * 2**attempt`` before each attempt (1, 2, 4, 8, 16s by
        default). Before every attempt the cancel token and the signed-in user
        are re-checked; a sign-out or account switch ends the loop as
        cancelled so nothing is written under the wrong user.
        """
        max_attempts = self.max_attempts if max_attempts is None else max_attempts
        base = self.base_delay_seconds if base_delay_seconds is None else base_delay_seconds
        token = cancel_token or CancellationToken()
        self._active_token = token

        user_id = self.session.user_id
        if not user_id:
            raise UnauthenticatedError()

        self.state = ReconciliationState.RECONCILING
        snapshot: EntitlementSnapshot | None = None

        for attempt in range(max_attempts):
            await self._sleep(base * 2**attempt)

            if token.cancelled or self.session.user_id != user_id:
                logger.info("reconciliation_cancelled", attempts=attempt)
                return self._finish(ReconciliationState.CANCELLED, attempt, snapshot)

            try:
                refreshed = await self.gate.refresh_snapshot()
            except ClientRequestError as e:
                logger.warning("reconciliation_attempt_failed", attempt=attempt + 1, error=e.message)
                continue

            if refreshed is None or self.gate.stale:
                continue
            snapshot = refreshed
            if expectation is None or expectation(snapshot):
                logger.info("reconciliation_succeeded", attempts=attempt + 1)
                return self._finish(ReconciliationState.RECONCILED, attempt + 1, snapshot)

        logger.warning("reconciliation_timed_out", attempts=max_attempts)
        return self._finish(ReconciliationState.RECONCILIATION_TIMED_OUT, max_attempts, snapshot)

    def _finish(
        self, status: ReconciliationState, attempts: int, snapshot: EntitlementSnapshot | None
    ) -> ReconciliationResult:
        self.state = status
        self._expectation = None
        self._active_token = None
        return ReconciliationResult(status=status, attempts=attempts, snapshot=snapshot)

    def cancel(self) -> None:
        """Abort the in-flight poll, if any, before its next attempt."""
        if self._active_token is not None:
            self._active_token.cancel()
