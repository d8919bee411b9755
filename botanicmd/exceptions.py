"""
Error taxonomy shared by the identification workflow, the gate and the API.

Only the workflow and the subscription reconciler surface errors to users;
every other component either raises one of these to its caller or degrades
silently. Raw backend text is logged, never shown: ``user_message`` is the
only way a message reaches the display layer.
"""

from botanicmd.models.billing import AccessDecision
from botanicmd.models.plant import SupportedLanguage
from botanicmd.models.workflow import ClassifiedError, ErrorKind


class PlantAnalysisError(Exception):
    """A classified failure of the AI analysis collaborator."""

    def __init__(self, kind: ErrorKind, detail: str = "") -> None:
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail


class IntakeRejectedError(Exception):
    """Input failed intake validation; no attempt was started."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AccessDeniedError(Exception):
    """The entitlement gate refused a costed or pro-only operation."""

    def __init__(self, decision: AccessDecision) -> None:
        super().__init__(decision.reason.value)
        self.decision = decision


_MESSAGES: dict[ErrorKind, dict[SupportedLanguage, str]] = {
    ErrorKind.NETWORK: {
        SupportedLanguage.EN: "Connection problem. Check your internet and try again.",
        SupportedLanguage.PT: "Problema de conexão. Verifique sua internet e tente novamente.",
    },
    ErrorKind.ANALYSIS_FAILED: {
        SupportedLanguage.EN: "We couldn't analyze this plant. Try a clearer photo.",
        SupportedLanguage.PT: "Não foi possível analisar esta planta. Tente uma foto mais nítida.",
    },
    ErrorKind.MALFORMED_RESPONSE: {
        SupportedLanguage.EN: "The analysis came back incomplete. Please try again.",
        SupportedLanguage.PT: "A análise voltou incompleta. Tente novamente.",
    },
    ErrorKind.NOT_FOUND: {
        SupportedLanguage.EN: "No plant matched your search.",
        SupportedLanguage.PT: "Nenhuma planta corresponde à sua busca.",
    },
    ErrorKind.QUOTA_EXHAUSTED: {
        SupportedLanguage.EN: "You've used all free identifications. Upgrade to Pro to continue.",
        SupportedLanguage.PT: "Você usou todas as identificações gratuitas. Assine o Pro para continuar.",
    },
    ErrorKind.UNAUTHENTICATED: {
        SupportedLanguage.EN: "Please sign in to identify plants.",
        SupportedLanguage.PT: "Entre na sua conta para identificar plantas.",
    },
    ErrorKind.UNEXPECTED: {
        SupportedLanguage.EN: "Something went wrong. Please try again.",
        SupportedLanguage.PT: "Algo deu errado. Tente novamente.",
    },
}


def user_message(kind: ErrorKind, language: SupportedLanguage = SupportedLanguage.EN) -> str:
    """Localized user-facing message for an error kind (English fallback)."""
    messages = _MESSAGES[kind]
    return messages.get(language, messages[SupportedLanguage.EN])


def classify(exc: BaseException, language: SupportedLanguage = SupportedLanguage.EN) -> ClassifiedError:
    """Map any exception raised during an attempt onto the taxonomy."""
    if isinstance(exc, PlantAnalysisError):
        kind = exc.kind
    elif isinstance(exc, AccessDeniedError):
        kind = (
            ErrorKind.UNAUTHENTICATED
            if exc.decision.reason.value == ErrorKind.UNAUTHENTICATED.value
            else ErrorKind.QUOTA_EXHAUSTED
        )
    elif isinstance(exc, (ConnectionError, TimeoutError)):
        kind = ErrorKind.NETWORK
    else:
        kind = ErrorKind.UNEXPECTED
    return ClassifiedError(kind=kind, message=user_message(kind, language))
