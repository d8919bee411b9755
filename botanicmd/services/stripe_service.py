"""Stripe API wrapper."""

import asyncio
from datetime import UTC, datetime
from typing import Any

import stripe

from botanicmd.config import StripeConfig
from botanicmd.models.billing import (
    Currency,
    PlanType,
    SubscriptionRecord,
    SubscriptionStatus,
)
from botanicmd.models.plant import SupportedLanguage


def _to_datetime(timestamp: int | None) -> datetime | None:
    if not timestamp or not isinstance(timestamp, int):
        return None
    return datetime.fromtimestamp(timestamp, tz=UTC)


def _as_dict(obj: dict | Any) -> dict:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict_recursive() if hasattr(obj, "to_dict_recursive") else dict(obj)


def currency_for_language(language: SupportedLanguage) -> Currency:
    return Currency.BRL if language == SupportedLanguage.PT else Currency.USD


class StripeService:
    """Encapsulates Stripe SDK calls used by billing routes."""

    def __init__(self, config: StripeConfig) -> None:
        if not config.secret_key:
            raise ValueError("Stripe secret key is required")

        self.config = config
        stripe.api_key = config.secret_key

    @property
    def price_mapping(self) -> dict[str, tuple[PlanType, Currency]]:
        """Configured price id -> (plan, currency). Unset prices are skipped."""
        entries = {
            self.config.price_monthly_brl: (PlanType.MONTHLY, Currency.BRL),
            self.config.price_annual_brl: (PlanType.ANNUAL, Currency.BRL),
            self.config.price_lifetime_brl: (PlanType.LIFETIME, Currency.BRL),
            self.config.price_monthly_usd: (PlanType.MONTHLY, Currency.USD),
            self.config.price_annual_usd: (PlanType.ANNUAL, Currency.USD),
            self.config.price_lifetime_usd: (PlanType.LIFETIME, Currency.USD),
        }
        return {price_id: plan for price_id, plan in entries.items() if price_id}

    def price_id_for_plan(self, plan_type: PlanType, currency: Currency) -> str | None:
        for price_id, mapped in self.price_mapping.items():
            if mapped == (plan_type, currency):
                return price_id
        return None

    async def create_checkout_session(
        self,
        *,
        user_id: str,
        user_email: str | None,
        plan_type: PlanType,
        language: SupportedLanguage = SupportedLanguage.EN,
        customer_id: str | None = None,
        success_url: str | None = None,
        cancel_url: str | None = None,
    ) -> dict[str, str]:
        currency = currency_for_language(language)
        price_id = self.price_id_for_plan(plan_type, currency)
        if not price_id:
            raise ValueError(f"No Stripe price configured for plan '{plan_type.value}' in {currency.value}")

        # One-time payment for lifetime, recurring otherwise
        mode = "payment" if plan_type == PlanType.LIFETIME else "subscription"
        metadata = {"user_id": user_id, "plan_type": plan_type.value, "currency": currency.value}

        params: dict[str, Any] = {
            "mode": mode,
            "line_items": [{"price": price_id, "quantity": 1}],
            "allow_promotion_codes": True,
            "client_reference_id": user_id,
            "metadata": metadata,
            "success_url": success_url or self.config.checkout_success_url,
            "cancel_url": cancel_url or self.config.checkout_cancel_url,
        }
        if mode == "subscription":
            params["subscription_data"] = {"metadata": metadata}

        if customer_id:
            params["customer"] = customer_id
        elif user_email:
            params["customer_email"] = user_email
            if mode == "payment":
                params["customer_creation"] = "always"

        session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        return {"id": session.id, "url": session.url}

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not self.config.webhook_secret:
            raise ValueError("Stripe webhook secret is not configured")
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _as_dict(event)

    async def fetch_subscription(self, subscription_id: str) -> dict:
        subscription = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        return _as_dict(subscription)

    async def fetch_checkout_price_id(self, session_id: str) -> str | None:
        line_items = await asyncio.to_thread(stripe.checkout.Session.list_line_items, session_id)
        items = _as_dict(line_items).get("data", [])
        if not items:
            return None
        return (items[0].get("price") or {}).get("id")

    def subscription_record_from_object(
        self,
        subscription_obj: dict | Any,
        *,
        user_id: str | None = None,
        plan_type: PlanType | None = None,
    ) -> SubscriptionRecord:
        subscription = _as_dict(subscription_obj)

        items = subscription.get("items", {}).get("data", [])
        if not items:
            raise ValueError("Stripe subscription has no items")

        price_id = items[0].get("price", {}).get("id")
        if not price_id:
            raise ValueError("Stripe subscription is missing price id")

        metadata = subscription.get("metadata", {}) or {}
        derived_user_id = user_id or metadata.get("user_id")
        if not derived_user_id:
            raise ValueError("Stripe subscription has no user_id")

        mapped = self.price_mapping.get(price_id)
        derived_plan = (mapped[0] if mapped else None) or plan_type or _plan_from_metadata(metadata)
        currency = mapped[1] if mapped else _currency_from(subscription.get("currency"))

        try:
            status = SubscriptionStatus(str(subscription.get("status", "")))
        except ValueError:
            # incomplete_expired, paused: not entitled, treat as incomplete
            status = SubscriptionStatus.INCOMPLETE

        return SubscriptionRecord(
            user_id=str(derived_user_id),
            status=status,
            plan_type=derived_plan,
            stripe_customer_id=_optional_str(subscription.get("customer")),
            stripe_subscription_id=_optional_str(subscription.get("id")),
            stripe_price_id=str(price_id),
            currency=currency,
            cancel_at_period_end=bool(subscription.get("cancel_at_period_end") or False),
            current_period_start=_to_datetime(subscription.get("current_period_start")),
            current_period_end=_to_datetime(subscription.get("current_period_end")),
            canceled_at=_to_datetime(subscription.get("canceled_at")),
        )

    def lifetime_record_from_checkout(
        self, session_obj: dict | Any, *, price_id: str | None = None
    ) -> SubscriptionRecord:
        """Record for a completed one-time (lifetime) checkout: always active."""
        session = _as_dict(session_obj)
        metadata = session.get("metadata", {}) or {}
        user_id = session.get("client_reference_id") or metadata.get("user_id")
        if not user_id:
            raise ValueError("Checkout session has no user_id")

        return SubscriptionRecord(
            user_id=str(user_id),
            status=SubscriptionStatus.ACTIVE,
            plan_type=PlanType.LIFETIME,
            stripe_customer_id=_optional_str(session.get("customer")),
            stripe_price_id=price_id or "",
            currency=_currency_from(metadata.get("currency") or session.get("currency")),
        )


def _optional_str(value: Any) -> str | None:
    return str(value) if value else None


def _plan_from_metadata(metadata: dict) -> PlanType:
    try:
        return PlanType(metadata.get("plan_type", PlanType.MONTHLY.value))
    except ValueError:
        return PlanType.MONTHLY


def _currency_from(value: Any) -> Currency:
    try:
        return Currency(str(value or "USD").upper())
    except ValueError:
        return Currency.USD
