"""
Auth session bootstrap: a tri-state session signal for the client.

The session starts LOADING and only ever leaves that state through evidence:
a backend event that carries a user, an explicit sign-out, or one
authoritative ``get_session`` lookup. An initial "no session" notification
from the auth library is not evidence (a persisted session may not have been
read yet), so it never commits UNAUTHENTICATED by itself.

Flow:
    start()            ->  subscribe to backend events, authoritative lookup
    handle_callback()  ->  token fragment -> set_session
                           ?code=         -> exchange (consumed code = re-check)
    wait_until_resolved(timeout)  ->  route guards / entitlement gate
    close()            ->  drop backend subscription and listeners

Usage:
    session = AuthSessionBootstrapper(SupabaseAuthBackend(client))
    await session.start()
    guard = RouteGuard(session)
    decision = await guard.check()
"""

import asyncio
from collections.abc import Callable
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

import structlog

from botanicmd.config import AuthConfig
from botanicmd.models.auth import AuthState, AuthStatus, AuthUser, CallbackResult, GuardDecision

logger = structlog.get_logger(__name__)

AuthListener = Callable[[AuthState], None]
BackendCallback = Callable[[str, AuthUser | None], None]

# Events that are explicit evidence of "no session"
SIGNED_OUT_EVENTS = {"SIGNED_OUT", "USER_DELETED"}

# Substrings of auth errors raised when a PKCE code was already exchanged
_CONSUMED_CODE_MARKERS = ("flow_state_not_found", "invalid flow state", "already used", "code verifier")


class CodeAlreadyConsumedError(Exception):
    """The callback's exchange code was already used (refresh, double mount)."""


class AuthBackend(Protocol):
    """Auth operations the bootstrapper needs."""

    async def get_session(self) -> AuthUser | None:
        """Return the user of the persisted session, if any."""

    def subscribe(self, callback: BackendCallback) -> Callable[[], None]:
        """Register for auth events; returns an unsubscribe function."""

    async def exchange_code(self, code: str) -> AuthUser | None:
        """Exchange a PKCE code. Raises CodeAlreadyConsumedError when reused."""

    async def set_session(self, access_token: str, refresh_token: str) -> AuthUser | None:
        """Adopt tokens delivered in a URL fragment."""

    async def sign_out(self) -> None:
        """End the session on the server."""


def _user_from_session(session) -> AuthUser | None:
    user = getattr(session, "user", None) if session is not None else None
    if user is None:
        return None
    email = getattr(user, "email", None)
    metadata = getattr(user, "user_metadata", None) or {}
    name = metadata.get("full_name") or (email.split("@")[0] if email else None)
    return AuthUser(id=str(user.id), email=email, name=name)


def _is_code_consumed(error: Exception) -> bool:
    text = f"{getattr(error, 'code', '')} {error}".lower()
    return any(marker in text for marker in _CONSUMED_CODE_MARKERS)


class SupabaseAuthBackend:
    """AuthBackend over the supabase async client's ``auth`` namespace."""

    def __init__(self, client) -> None:
        self.client = client

    async def get_session(self) -> AuthUser | None:
        return _user_from_session(await self.client.auth.get_session())

    def subscribe(self, callback: BackendCallback) -> Callable[[], None]:
        def _forward(event, session) -> None:
            callback(str(getattr(event, "value", event)), _user_from_session(session))

        subscription = self.client.auth.on_auth_state_change(_forward)
        return subscription.unsubscribe

    async def exchange_code(self, code: str) -> AuthUser | None:
        try:
            response = await self.client.auth.exchange_code_for_session({"auth_code": code})
        except Exception as e:
            if _is_code_consumed(e):
                raise CodeAlreadyConsumedError(str(e)) from e
            raise
        return _user_from_session(getattr(response, "session", None))

    async def set_session(self, access_token: str, refresh_token: str) -> AuthUser | None:
        response = await self.client.auth.set_session(access_token, refresh_token)
        return _user_from_session(getattr(response, "session", None))

    async def sign_out(self) -> None:
        await self.client.auth.sign_out()


class AuthSessionBootstrapper:
    """Owns the client's AuthState and notifies subscribers on every change."""

    def __init__(self, backend: AuthBackend, config: AuthConfig | None = None) -> None:
        self.backend = backend
        self.config = config or AuthConfig()
        self._state = AuthState()
        self._resolved = asyncio.Event()
        self._listeners: list[AuthListener] = []
        self._unsubscribe_backend: Callable[[], None] | None = None
        self._closed = False

    @property
    def state(self) -> AuthState:
        return self._state

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        """Register a listener; the returned function removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _commit(self, status: AuthStatus, user: AuthUser | None = None) -> None:
        if self._closed:
            return
        new_state = AuthState(status=status, user=user)
        if new_state == self._state:
            return

        self._state = new_state
        if new_state.is_resolved:
            self._resolved.set()
        logger.info("auth_state_changed", status=status.value, user_id=user.id if user else None)

        for listener in list(self._listeners):
            try:
                listener(new_state)
            except Exception:
                logger.exception("auth_listener_failed")

    def _on_backend_event(self, event: str, user: AuthUser | None) -> None:
        if self._closed:
            return
        if event in SIGNED_OUT_EVENTS:
            self._commit(AuthStatus.UNAUTHENTICATED)
        elif user is not None:
            self._commit(AuthStatus.AUTHENTICATED, user)
        else:
            # e.g. INITIAL_SESSION before storage was read: not proof of absence
            logger.debug("auth_event_ignored", auth_event=event)

    def _ensure_listening(self) -> None:
        if self._unsubscribe_backend is None and not self._closed:
            self._unsubscribe_backend = self.backend.subscribe(self._on_backend_event)

    async def _authoritative_lookup(self) -> AuthState:
        try:
            user = await self.backend.get_session()
        except Exception as e:
            logger.warning("auth_session_lookup_failed", error=str(e))
            user = None

        if user is not None:
            self._commit(AuthStatus.AUTHENTICATED, user)
        elif self._state.status == AuthStatus.LOADING:
            # A sign-in event may have landed while the lookup was pending;
            # only an unresolved state is downgraded.
            self._commit(AuthStatus.UNAUTHENTICATED)
        return self._state

    async def start(self) -> AuthState:
        """Subscribe to auth events and resolve the initial session."""
        self._ensure_listening()
        return await self._authoritative_lookup()

    async def handle_callback(self, url: str) -> CallbackResult:
        """
        Process an OAuth / magic-link return URL.

        Token fragments are adopted directly; an exchange code is traded for a
        session. A code that was already consumed is not an error: the session
        it created is usually already persisted, so the bootstrapper re-checks.
        """
        self._ensure_listening()
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        fragment = parse_qs(parts.fragment)

        redirect_to = query.get("redirect", [self.config.callback_redirect_default])[0]
        if not redirect_to.startswith("/") or redirect_to.startswith("//"):
            redirect_to = self.config.callback_redirect_default

        error = (query.get("error_description") or fragment.get("error_description") or [None])[0]
        if error:
            logger.warning("auth_callback_error", error=error)

        user: AuthUser | None = None
        access_token = fragment.get("access_token", [None])[0]
        refresh_token = fragment.get("refresh_token", [None])[0]
        code = query.get("code", [None])[0]

        try:
            if access_token and refresh_token:
                user = await self.backend.set_session(access_token, refresh_token)
            elif code:
                user = await self.backend.exchange_code(code)
        except CodeAlreadyConsumedError:
            logger.info("auth_code_already_consumed")
        except Exception as e:
            logger.warning("auth_callback_exchange_failed", error=str(e))

        if user is not None:
            self._commit(AuthStatus.AUTHENTICATED, user)
            state = self._state
        else:
            state = await self._authoritative_lookup()
        return CallbackResult(state=state, redirect_to=redirect_to)

    async def wait_until_resolved(self, timeout: float | None = None) -> AuthState:
        """
        Wait for the signal to leave LOADING, at most ``timeout`` seconds.

        On timeout the (still LOADING) state is returned; callers decide what
        an unresolved session means for them.
        """
        if self._state.is_resolved:
            return self._state
        limit = self.config.bootstrap_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._resolved.wait(), limit)
        except asyncio.TimeoutError:
            logger.warning("auth_bootstrap_timeout", timeout_seconds=limit)
        return self._state

    async def sign_out(self) -> None:
        # Local state first so the UI reacts immediately
        self._commit(AuthStatus.UNAUTHENTICATED)
        try:
            await self.backend.sign_out()
        except Exception as e:
            logger.warning("auth_sign_out_failed", error=str(e))

    def close(self) -> None:
        """Tear down: no state mutation or notification after this."""
        self._closed = True
        if self._unsubscribe_backend is not None:
            self._unsubscribe_backend()
            self._unsubscribe_backend = None
        self._listeners.clear()


class RouteGuard:
    """Gate for routes that require a signed-in user."""

    def __init__(
        self,
        session: AuthSessionBootstrapper,
        login_path: str = "/",
        timeout: float | None = None,
    ) -> None:
        self.session = session
        self.login_path = login_path
        self.timeout = timeout

    async def check(self) -> GuardDecision:
        state = await self.session.wait_until_resolved(self.timeout)
        if state.is_authenticated:
            return GuardDecision(allow=True)
        return GuardDecision(
            allow=False,
            redirect_to=self.login_path,
            timed_out=not state.is_resolved,
        )
