"""Billing and entitlement models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, model_validator

# Cap value meaning "no limit" (pro tier)
UNLIMITED = -1


class PlanTier(str, Enum):
    """Plan the entitlement gate reasons about."""

    FREE = "free"
    PRO = "pro"


class PlanType(str, Enum):
    """Purchasable plans."""

    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


class Currency(str, Enum):
    BRL = "BRL"
    USD = "USD"


class SubscriptionStatus(str, Enum):
    """Stripe subscription status as written by the webhook."""

    INCOMPLETE = "incomplete"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


ACTIVE_SUBSCRIPTION_STATUSES = {SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING}


class AccessReason(str, Enum):
    """Reason for an entitlement decision."""

    UNAUTHENTICATED = "unauthenticated"
    QUOTA_EXHAUSTED = "quota_exhausted"
    FREE_TIER_AVAILABLE = "free_tier_available"
    PRO_UNLIMITED = "pro_unlimited"
    PRO_REQUIRED = "pro_required"


class UserAccount(BaseModel):
    """Persisted plan and usage for one identity."""

    user_id: str
    plan: PlanTier = PlanTier.FREE
    usage_count: int = Field(default=0, ge=0)
    updated_at: datetime | None = None


class Entitlement(BaseModel):
    """Projection of session + account used by the gate. Never persisted."""

    authenticated: bool
    plan_tier: PlanTier = PlanTier.FREE
    used: int = Field(default=0, ge=0)
    cap: int

    @model_validator(mode="after")
    def _used_within_cap(self) -> "Entitlement":
        if self.cap != UNLIMITED and self.used > self.cap:
            raise ValueError(f"used ({self.used}) exceeds cap ({self.cap})")
        return self

    @property
    def is_unlimited(self) -> bool:
        return self.cap == UNLIMITED

    @property
    def remaining(self) -> int | None:
        if self.is_unlimited:
            return None
        return self.cap - self.used


class AccessDecision(BaseModel):
    """Outcome of an entitlement gate check."""

    allowed: bool
    reason: AccessReason
    entitlement: Entitlement


class SubscriptionRecord(BaseModel):
    """Row of the ``subscriptions`` table, written asynchronously by the webhook."""

    user_id: str
    status: SubscriptionStatus
    plan_type: PlanType
    stripe_customer_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str = ""
    currency: Currency = Currency.USD
    cancel_at_period_end: bool = False
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    canceled_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SUBSCRIPTION_STATUSES


class CheckoutStatus(str, Enum):
    SUCCESS = "success"
    CANCELLED = "cancelled"


class CheckoutRedirect(BaseModel):
    """Query-parameter signature carried by the return URL from checkout."""

    status: CheckoutStatus
    session_id: str | None = None


class ReconciliationResult(BaseModel):
    """Outcome of post-checkout reconciliation."""

    plan: PlanTier
    confirmed: bool
    attempts: int = 0
    # Non-fatal notice for the user when verification could not complete
    notice: str | None = None


class CheckoutReturn(BaseModel):
    """What the client does with a return URL from checkout."""

    # URL with the checkout parameters removed (replace history with this)
    clean_url: str
    redirect: CheckoutRedirect | None = None
    result: ReconciliationResult | None = None
