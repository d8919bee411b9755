"""
BotanicMD backend - FastAPI application.

Hosts the server side of the billing flow: entitlement lookups, Stripe
checkout creation, and the webhook that writes the subscription rows the
client-side reconciler polls.

Run with:
    uvicorn botanicmd.main:app --reload
"""

import os
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import acreate_client
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from botanicmd.api.v1.billing import router as billing_router
from botanicmd.config import get_settings
from botanicmd.constants import (
    API_TITLE,
    API_VERSION,
    SUBSCRIPTIONS_TABLE,
    USER_ACCOUNTS_TABLE,
    WEBHOOK_EVENTS_TABLE,
)
from botanicmd.logging_config import setup_logging
from botanicmd.middleware import RequestContextMiddleware
from botanicmd.services.entitlements import (
    EntitlementCache,
    InMemoryAccountRepository,
    SupabaseAccountRepository,
)
from botanicmd.services.stripe_service import StripeService
from botanicmd.services.subscription_service import (
    InMemorySubscriptionRepository,
    SubscriptionService,
    SupabaseSubscriptionRepository,
)

# Get settings before logging setup so we know the debug flag
settings = get_settings()

# pydantic-settings does not export .env values to os.environ, which is
# where langsmith and openai_client.py look.
if settings.langchain_tracing_v2 and settings.langsmith_api_key:
    os.environ["LANGCHAIN_TRACING_V2"] = "true"
    os.environ["LANGSMITH_API_KEY"] = settings.langsmith_api_key
    os.environ["LANGSMITH_PROJECT"] = settings.langsmith_project

setup_logging(settings.debug)

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifespan event handler for startup and shutdown."""
    logger.info("api_startup", cors_origins=settings.cors_origins)

    supabase_client: AsyncSupabaseClient | None = None
    if settings.supabase_url and settings.supabase_secret_key:
        try:
            supabase_client = await acreate_client(
                settings.supabase_url,
                settings.supabase_secret_key,
            )
            logger.info("supabase_configured")
        except Exception as e:
            logger.warning("supabase_init_failed", error=str(e))
    else:
        logger.warning("supabase_not_configured", detail="Auth endpoints will return 503")

    if supabase_client is not None:
        subscription_repository = SupabaseSubscriptionRepository(
            supabase_client, SUBSCRIPTIONS_TABLE, WEBHOOK_EVENTS_TABLE
        )
        account_repository = SupabaseAccountRepository(supabase_client, USER_ACCOUNTS_TABLE)
    else:
        logger.warning("billing_repository_in_memory", detail="State is lost on restart")
        subscription_repository = InMemorySubscriptionRepository()
        account_repository = InMemoryAccountRepository()

    stripe_service: StripeService | None = None
    if settings.stripe.secret_key:
        stripe_service = StripeService(settings.stripe)
        logger.info("stripe_configured", prices=len(stripe_service.price_mapping))
    else:
        logger.warning("stripe_not_configured", detail="Checkout and webhook will return 503")

    _app.state.supabase = supabase_client
    _app.state.subscription_service = SubscriptionService(subscription_repository)
    _app.state.entitlement_cache = EntitlementCache(account_repository, settings.quota)
    _app.state.stripe_service = stripe_service

    logger.info("services_initialized")

    yield

    logger.info("api_shutdown")


app = FastAPI(
    title=API_TITLE,
    description=(
        "Plant identification backend: entitlement lookups, Stripe checkout "
        "and the subscription webhook."
    ),
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request context middleware must come before CORS so every response gets
# the X-Request-ID header (including preflight OPTIONS responses).
app.add_middleware(RequestContextMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router, prefix="/api/v1")


@app.get("/")
async def root() -> dict:
    """Root endpoint with API info."""
    return {
        "name": API_TITLE,
        "version": API_VERSION,
        "description": "Plant identification and care backend",
        "docs": "/docs",
    }


@app.get("/health")
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "healthy"}
