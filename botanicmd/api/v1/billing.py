"""Billing API endpoints: entitlement, checkout and the Stripe webhook."""

from datetime import UTC, datetime

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel, Field

from botanicmd.auth import CurrentUser
from botanicmd.constants import SUBSCRIPTION_EVENTS
from botanicmd.models.billing import (
    Entitlement,
    PlanTier,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from botanicmd.models.plant import SupportedLanguage
from botanicmd.services.entitlements import EntitlementCache
from botanicmd.services.stripe_service import StripeService
from botanicmd.services.subscription_service import SubscriptionService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    """Checkout session request."""

    plan_type: PlanType = Field(description="Requested plan")
    language: SupportedLanguage = Field(
        default=SupportedLanguage.EN, description="Decides the charge currency"
    )
    success_url: str | None = Field(default=None, description="Optional override URL")
    cancel_url: str | None = Field(default=None, description="Optional override URL")


class CheckoutResponse(BaseModel):
    """Checkout session response."""

    checkout_url: str
    session_id: str


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return service


def _get_entitlement_cache(request: Request) -> EntitlementCache:
    cache = getattr(request.app.state, "entitlement_cache", None)
    if cache is None:
        raise HTTPException(status_code=503, detail="Billing service unavailable")
    return cache


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    return service


async def _apply_record(
    record: SubscriptionRecord,
    subscriptions: SubscriptionService,
    cache: EntitlementCache | None,
) -> None:
    await subscriptions.record(record)
    if cache is not None:
        await cache.set_plan(record.user_id, PlanTier.PRO if record.is_active else PlanTier.FREE)


@router.get("/entitlement", response_model=Entitlement)
async def get_entitlement(request: Request, user: CurrentUser) -> Entitlement:
    """Plan and usage for the authenticated user, plan synced from the subscription row."""
    subscriptions = _get_subscription_service(request)
    cache = _get_entitlement_cache(request)

    plan = await subscriptions.sync_user_plan(user.id)
    await cache.set_plan(user.id, plan)
    return await cache.entitlement_for(user)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    request: Request,
    user: CurrentUser,
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a paid plan."""
    subscriptions = _get_subscription_service(request)
    stripe_service = _get_stripe_service(request)

    existing = await subscriptions.get_user_subscription(user.id)
    if existing is not None and existing.is_active and existing.plan_type == PlanType.LIFETIME:
        raise HTTPException(status_code=400, detail="Lifetime plan already active")
    customer_id = existing.stripe_customer_id if existing else None

    try:
        checkout = await stripe_service.create_checkout_session(
            user_id=user.id,
            user_email=user.email,
            plan_type=body.plan_type,
            language=body.language,
            customer_id=customer_id,
            success_url=body.success_url,
            cancel_url=body.cancel_url,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("checkout_session_created", plan_type=body.plan_type.value, session_id=checkout["id"])
    return CheckoutResponse(checkout_url=checkout["url"], session_id=checkout["id"])


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Process Stripe webhooks and write the subscription row clients poll."""
    subscriptions = _get_subscription_service(request)
    stripe_service = _get_stripe_service(request)
    cache = getattr(request.app.state, "entitlement_cache", None)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", ""))
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event without id")

    is_new = await subscriptions.process_webhook_event_id(event_id)
    if not is_new:
        return WebhookResponse(received=True, processed=False)

    event_type = str(event.get("type", ""))
    data_object = event.get("data", {}).get("object", {})

    if event_type == "checkout.session.completed":
        await _handle_checkout_completed(data_object, subscriptions, stripe_service, cache, event_id)
    elif event_type in SUBSCRIPTION_EVENTS:
        await _handle_subscription_event(
            event_type, data_object, subscriptions, stripe_service, cache, event_id
        )
    else:
        logger.info("stripe_webhook_ignored", event_id=event_id, event_type=event_type)
        return WebhookResponse(received=True, processed=False)

    logger.info("stripe_webhook_processed", event_id=event_id, event_type=event_type)
    return WebhookResponse(received=True, processed=True)


async def _handle_checkout_completed(
    session: dict,
    subscriptions: SubscriptionService,
    stripe_service: StripeService,
    cache: EntitlementCache | None,
    event_id: str,
) -> None:
    metadata = session.get("metadata", {}) or {}
    user_id = session.get("client_reference_id") or metadata.get("user_id")
    subscription_id = session.get("subscription")

    try:
        if subscription_id:
            subscription = await stripe_service.fetch_subscription(str(subscription_id))
            record = stripe_service.subscription_record_from_object(subscription, user_id=user_id)
            # A completed checkout means the first payment went through
            if record.status == SubscriptionStatus.INCOMPLETE:
                record.status = SubscriptionStatus.ACTIVE
        else:
            price_id = await stripe_service.fetch_checkout_price_id(str(session.get("id", "")))
            record = stripe_service.lifetime_record_from_checkout(session, price_id=price_id)
    except ValueError as e:
        logger.warning("stripe_checkout_record_invalid", event_id=event_id, error=str(e))
        return

    await _apply_record(record, subscriptions, cache)


async def _handle_subscription_event(
    event_type: str,
    subscription: dict,
    subscriptions: SubscriptionService,
    stripe_service: StripeService,
    cache: EntitlementCache | None,
    event_id: str,
) -> None:
    # Subscription objects only carry user_id in metadata when it was set at
    # checkout; the customer id resolves the rest.
    existing = None
    customer_id = subscription.get("customer")
    if customer_id:
        existing = await subscriptions.repository.get_by_customer_id(str(customer_id))

    try:
        record = stripe_service.subscription_record_from_object(
            subscription,
            user_id=existing.user_id if existing else None,
            plan_type=existing.plan_type if existing else None,
        )
    except ValueError as e:
        logger.warning("stripe_subscription_record_invalid", event_id=event_id, error=str(e))
        return

    if event_type == "customer.subscription.deleted":
        record.status = SubscriptionStatus.CANCELED
        record.cancel_at_period_end = False
        record.canceled_at = record.canceled_at or datetime.now(UTC)

    await _apply_record(record, subscriptions, cache)
