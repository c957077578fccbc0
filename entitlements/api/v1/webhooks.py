"""Payment processor webhooks."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from entitlements.api.dependencies import EntitlementServiceDep, StripeServiceDep
from entitlements.constants import TOKEN_PRODUCTS
from entitlements.services.entitlement_service import EntitlementService
from entitlements.services.stripe_service import PURCHASE_TYPE_TOKENS, StripeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

SUBSCRIPTION_EVENTS = {"customer.subscription.created", "customer.subscription.updated"}


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _webhook_error(message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"message": message, "code": "invalid_webhook"})


async def _handle_checkout_completed(
    session: dict,
    service: EntitlementService,
    stripe_service: StripeService,
    event_id: str,
) -> None:
    metadata = session.get("metadata") or {}
    user_id = session.get("client_reference_id") or metadata.get("user_id")

    if metadata.get("type") == PURCHASE_TYPE_TOKENS:
        product = TOKEN_PRODUCTS.get(str(metadata.get("product_id", "")))
        if product is None or not user_id:
            logger.warning(
                "token_purchase_metadata_invalid",
                event_id=event_id,
                product_id=metadata.get("product_id"),
            )
            return
        if session.get("payment_status", "paid") != "paid":
            logger.info("token_purchase_unpaid", event_id=event_id, user_id=user_id)
            return
        await service.credit_product(user_id, product, reference=str(session.get("id", "")))
        return

    subscription_id = session.get("subscription")
    if subscription_id and session.get("customer"):
        try:
            update = await stripe_service.fetch_subscription_update(
                str(subscription_id), user_id=user_id
            )
        except ValueError as e:
            logger.warning("stripe_checkout_subscription_invalid", event_id=event_id, error=str(e))
            return
        await service.apply_subscription_update(update)


async def _dispatch(
    event_type: str,
    data_object: dict,
    service: EntitlementService,
    stripe_service: StripeService,
    event_id: str,
) -> None:
    if event_type == "checkout.session.completed":
        await _handle_checkout_completed(data_object, service, stripe_service, event_id)
    elif event_type in SUBSCRIPTION_EVENTS:
        try:
            update = stripe_service.subscription_update_from_object(data_object)
        except ValueError as e:
            logger.warning("stripe_subscription_invalid", event_id=event_id, error=str(e))
            return
        await service.apply_subscription_update(update)
    elif event_type == "customer.subscription.deleted":
        customer_id = data_object.get("customer")
        if customer_id:
            await service.downgrade_subscription(str(customer_id))
    elif event_type == "invoice.payment_failed":
        customer_id = data_object.get("customer")
        if customer_id:
            await service.mark_subscription_past_due(str(customer_id))
    elif event_type == "invoice.paid":
        customer_id = data_object.get("customer")
        if customer_id:
            await service.mark_subscription_recovered(str(customer_id))
    else:
        logger.debug("stripe_webhook_ignored", event_id=event_id, event_type=event_type)


@router.post("/stripe", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    service: EntitlementServiceDep,
    stripe_service: StripeServiceDep,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Verify and apply a Stripe event exactly once per event id."""
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise _webhook_error(str(e)) from e
    except Exception as e:
        logger.warning("stripe_webhook_signature_invalid", error=str(e))
        raise _webhook_error("Invalid webhook signature") from e

    event_id = str(event.get("id", ""))
    if not event_id:
        raise _webhook_error("Stripe event has no id")

    is_new = await service.process_webhook_event_id(event_id)
    if not is_new:
        logger.info("stripe_webhook_duplicate", event_id=event_id)
        return WebhookResponse(received=True, processed=False)

    event_type = str(event.get("type", ""))
    data_object = event.get("data", {}).get("object", {}) or {}

    try:
        await _dispatch(event_type, data_object, service, stripe_service, event_id)
    except Exception:
        # Free the key so Stripe's redelivery gets applied
        await service.release_webhook_event_id(event_id)
        logger.exception("stripe_webhook_failed", event_id=event_id, event_type=event_type)
        raise

    logger.info("stripe_webhook_processed", event_id=event_id, event_type=event_type)
    return WebhookResponse(received=True, processed=True)
