"""
Client composition root.

One BotanicSession per running client: it owns the auth signal, the
entitlement cache (the only cross-attempt mutable state), the identification
workflow and the reconciler, and tears them down together.

Usage:
    session = BotanicSession.from_settings(get_settings(), supabase_client)
    await session.start()
    attempt = await session.workflow.submit_query("rose")
    outcome = await session.handle_checkout_return(current_url)
    await session.aclose()
"""

import asyncio

import structlog

from botanicmd.config import Settings
from botanicmd.constants import PLANTS_TABLE, SUBSCRIPTIONS_TABLE, USER_ACCOUNTS_TABLE, WEBHOOK_EVENTS_TABLE
from botanicmd.models.auth import AuthState
from botanicmd.models.billing import CheckoutReturn, CheckoutStatus
from botanicmd.models.plant import SupportedLanguage
from botanicmd.services.auth_session import (
    AuthBackend,
    AuthSessionBootstrapper,
    RouteGuard,
    SupabaseAuthBackend,
)
from botanicmd.services.candidate_resolver import CandidateResolver
from botanicmd.services.checkout_redirect import parse_checkout_redirect, strip_checkout_params
from botanicmd.services.entitlements import (
    AccountRepository,
    EntitlementCache,
    EntitlementGate,
    SupabaseAccountRepository,
)
from botanicmd.services.garden_service import (
    CollectionRepository,
    GardenService,
    InMemoryCollectionRepository,
    SupabaseCollectionRepository,
)
from botanicmd.services.history_service import HistoryService
from botanicmd.services.image_lookup import WikipediaImageLookup
from botanicmd.services.intake_validator import IntakeValidator
from botanicmd.services.openai_client import get_openai_client
from botanicmd.services.plant_analyzer import PlantAnalyzerService
from botanicmd.services.polling import Sleep
from botanicmd.services.subscription_reconciler import SubscriptionReconciler
from botanicmd.services.subscription_service import (
    SubscriptionRepository,
    SubscriptionService,
    SupabaseSubscriptionRepository,
)
from botanicmd.workflow.identification import IdentificationWorkflow

logger = structlog.get_logger(__name__)


class BotanicSession:
    def __init__(
        self,
        *,
        settings: Settings,
        auth_backend: AuthBackend,
        accounts: AccountRepository,
        subscriptions: SubscriptionRepository,
        analyzer: PlantAnalyzerService,
        image_lookup: WikipediaImageLookup,
        collection: CollectionRepository | None = None,
        language: SupportedLanguage = SupportedLanguage.EN,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.language = language
        self.analyzer = analyzer
        self.image_lookup = image_lookup

        self.auth = AuthSessionBootstrapper(auth_backend, settings.auth)
        self.route_guard = RouteGuard(self.auth)
        self.cache = EntitlementCache(accounts, settings.quota)
        self.gate = EntitlementGate(self.auth, self.cache)
        self.subscriptions = SubscriptionService(subscriptions)
        self.reconciler = SubscriptionReconciler(
            self.subscriptions, self.cache, settings.reconciler, sleep=sleep
        )
        self.history = HistoryService()
        self.garden = GardenService(collection or InMemoryCollectionRepository(), self.cache)
        self.workflow = IdentificationWorkflow(
            intake=IntakeValidator(settings.intake),
            gate=self.gate,
            analyzer=analyzer,
            resolver=CandidateResolver(analyzer, image_lookup),
            image_lookup=image_lookup,
            cache=self.cache,
            history=self.history,
            language=language,
        )
        self._unsubscribe_auth = self.auth.subscribe(self._on_auth_change)
        self._owns_analyzer_client = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        supabase_client,
        language: SupportedLanguage | None = None,
    ) -> "BotanicSession":
        """Wire every collaborator against Supabase and OpenAI."""
        analyzer = PlantAnalyzerService(
            get_openai_client(settings.openai_api_key), settings.openai_config
        )
        session = cls(
            settings=settings,
            auth_backend=SupabaseAuthBackend(supabase_client),
            accounts=SupabaseAccountRepository(supabase_client, USER_ACCOUNTS_TABLE),
            subscriptions=SupabaseSubscriptionRepository(
                supabase_client, SUBSCRIPTIONS_TABLE, WEBHOOK_EVENTS_TABLE
            ),
            collection=SupabaseCollectionRepository(supabase_client, PLANTS_TABLE),
            analyzer=analyzer,
            image_lookup=WikipediaImageLookup(settings.image_lookup),
            language=language or SupportedLanguage(settings.default_language),
        )
        session._owns_analyzer_client = True
        return session

    def _on_auth_change(self, state: AuthState) -> None:
        if state.is_authenticated:
            structlog.contextvars.bind_contextvars(user_id=state.user.id)
        else:
            structlog.contextvars.unbind_contextvars("user_id")
            # Signing out abandons whatever the previous user had in flight
            self.workflow.reset()
            self.history.clear()

    def set_language(self, language: SupportedLanguage) -> None:
        self.language = language
        self.workflow.language = language

    async def start(self) -> AuthState:
        return await self.auth.start()

    async def handle_checkout_return(self, url: str) -> CheckoutReturn:
        """
        React to the return from external checkout.

        The checkout parameters are always stripped from the returned URL so
        a reload cannot start a second reconciliation.
        """
        redirect = parse_checkout_redirect(url)
        if redirect is None:
            return CheckoutReturn(clean_url=url)

        clean_url = strip_checkout_params(url)
        if redirect.status == CheckoutStatus.CANCELLED:
            logger.info("checkout_cancelled")
            return CheckoutReturn(clean_url=clean_url, redirect=redirect)

        user = await self.gate.current_user()
        if user is None:
            logger.warning("checkout_return_without_user")
            return CheckoutReturn(clean_url=clean_url, redirect=redirect)

        if redirect.session_id:
            result = await self.reconciler.reconcile(user.id, redirect.session_id, self.language)
        else:
            result = await self.reconciler.sync_without_session(user.id)
        return CheckoutReturn(clean_url=clean_url, redirect=redirect, result=result)

    async def aclose(self) -> None:
        """Tear down auth listeners and owned HTTP clients."""
        self._unsubscribe_auth()
        self.auth.close()
        self.workflow.reset()
        await self.image_lookup.close()
        if self._owns_analyzer_client:
            await self.analyzer.client.close()
        logger.info("session_closed")
