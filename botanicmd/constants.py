"""
Stable constants for the BotanicMD application.

Operational parameters that vary per environment (timeouts, quotas, retry
schedules) live in config.py.
"""

# --- API metadata ---
API_TITLE = "BotanicMD API"
API_VERSION = "0.1.0"

# --- Supabase tables ---
USER_ACCOUNTS_TABLE = "user_accounts"
SUBSCRIPTIONS_TABLE = "subscriptions"
WEBHOOK_EVENTS_TABLE = "stripe_webhook_events"
PLANTS_TABLE = "plants"

# --- Stripe webhook events that carry a subscription object ---
SUBSCRIPTION_EVENTS: frozenset[str] = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
    }
)
