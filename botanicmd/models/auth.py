"""Authentication state models."""

from enum import Enum

from pydantic import BaseModel


class AuthUser(BaseModel):
    """A verified authenticated user."""

    id: str
    email: str | None = None
    name: str | None = None


class AuthStatus(str, Enum):
    """Tri-state session signal. LOADING is never a synonym for signed out."""

    LOADING = "loading"
    AUTHENTICATED = "authenticated"
    UNAUTHENTICATED = "unauthenticated"


class AuthState(BaseModel):
    status: AuthStatus = AuthStatus.LOADING
    user: AuthUser | None = None

    @property
    def is_resolved(self) -> bool:
        return self.status != AuthStatus.LOADING

    @property
    def is_authenticated(self) -> bool:
        return self.status == AuthStatus.AUTHENTICATED and self.user is not None


class CallbackResult(BaseModel):
    """Outcome of processing an OAuth / magic-link return URL."""

    state: AuthState
    redirect_to: str


class GuardDecision(BaseModel):
    """What a protected route should do once the session signal is known."""

    allow: bool
    redirect_to: str | None = None
    timed_out: bool = False
