"""HTTP client for the entitlements API."""

from typing import Any, Awaitable, Callable

import httpx
import structlog

from entitlements.errors import ApiError, NetworkError, RequestTimeoutError, UnauthenticatedError
from entitlements.models.billing import CheckoutPlan
from entitlements.models.snapshot import (
    CheckoutSession,
    ConsumeResult,
    DenialReason,
    Feature,
    FeatureCheckResult,
    SubscriptionResponse,
    TokenBalance,
    UpsellCategory,
)

logger = structlog.get_logger(__name__)

TokenProvider = Callable[[], Awaitable[str | None]]

DEFAULT_TIMEOUT_SECONDS = 15.0


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _enum_or_none(enum_cls, value):
    try:
        return enum_cls(value) if value is not None else None
    except ValueError:
        return None


class EntitlementApiClient:
    """
    Thin async wrapper over the HTTP API.

    Every call carries the session's bearer token and an explicit timeout.
    Failures surface as typed errors so callers can tell "never reached the
    server" (NetworkError), "may or may not have run" (RequestTimeoutError)
    and "server said no" (ApiError) apart.
    """

    def __init__(
        self,
        base_url: str,
        token_provider: TokenProvider,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = timeout_seconds
        self._token_provider = token_provider
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "EntitlementApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
        authenticated: bool = True,
    ) -> dict[str, Any]:
        headers: dict[str, str] = {}
        if authenticated:
            token = await self._token_provider()
            if not token:
                raise UnauthenticatedError()
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            logger.warning("entitlement_request_timeout", path=path, timeout=self.timeout_seconds)
            raise RequestTimeoutError(path, self.timeout_seconds) from e
        except httpx.TransportError as e:
            logger.warning("entitlement_request_failed", path=path, error=str(e))
            raise NetworkError(path, e) from e

        if response.is_error:
            body = _json_body(response)
            message = body.get("message") or response.reason_phrase or "Request failed"
            if response.status_code == 401:
                raise UnauthenticatedError(message)
            raise ApiError(response.status_code, message, body)

        return _json_body(response)

    async def get_subscription(self) -> SubscriptionResponse:
        data = await self._request("GET", "/api/subscription")
        return SubscriptionResponse.model_validate(data)

    async def get_token_balance(self) -> TokenBalance:
        data = await self._request("GET", "/api/tokens/balance")
        return TokenBalance.model_validate(data)

    async def get_products(self) -> dict[str, Any]:
        return await self._request("GET", "/api/tokens/products", authenticated=False)

    async def check_feature(self, feature: Feature, quantity: int = 1) -> FeatureCheckResult:
        data = await self._request(
            "POST", "/api/features/check", json={"feature": feature.value, "quantity": quantity}
        )
        return FeatureCheckResult.model_validate(data)

    async def _consume(self, path: str, payload: dict | None) -> ConsumeResult:
        try:
            data = await self._request("POST", path, json=payload)
        except ApiError as e:
            if e.status_code != 402:
                raise
            # A denial is a normal outcome, not an error
            return ConsumeResult(
                success=False,
                reason=_enum_or_none(DenialReason, e.body.get("reason"))
                or DenialReason.INSUFFICIENT_ENTITLEMENT,
                remaining=e.body.get("remaining"),
                upsell=_enum_or_none(UpsellCategory, e.body.get("upsell")),
            )
        return ConsumeResult.model_validate(data)

    async def consume_feature(
        self, feature: Feature, quantity: int = 1, use_tokens: bool = False
    ) -> ConsumeResult:
        return await self._consume(
            "/api/features/consume",
            {"feature": feature.value, "quantity": quantity, "useTokens": use_tokens},
        )

    async def use_streak_shield(self) -> ConsumeResult:
        return await self._consume("/api/tokens/use-shield", None)

    async def create_checkout(
        self,
        plan: CheckoutPlan,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSession:
        data = await self._request(
            "POST",
            "/api/subscription/checkout",
            json={"plan": plan.value, "successUrl": success_url, "cancelUrl": cancel_url},
        )
        return CheckoutSession.model_validate(data)

    async def purchase_tokens(
        self,
        product_id: str,
        *,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> CheckoutSession:
        data = await self._request(
            "POST",
            "/api/tokens/purchase",
            json={"productId": product_id, "successUrl": success_url, "cancelUrl": cancel_url},
        )
        return CheckoutSession.model_validate(data)

    async def create_portal(self, return_url: str | None = None) -> str:
        data = await self._request(
            "POST", "/api/subscription/portal", json={"returnUrl": return_url}
        )
        return str(data["url"])

    async def cancel_subscription(self) -> dict[str, Any]:
        return await self._request("POST", "/api/subscription/cancel")

    async def reactivate_subscription(self) -> dict[str, Any]:
        return await self._request("POST", "/api/subscription/reactivate")
