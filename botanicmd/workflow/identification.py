"""
Identification state machine.

    IDLE --submit image--> ANALYZING --> SUCCESS | ERROR
    IDLE --submit query--> ANALYZING --> SUCCESS | ERROR | SELECTING
    SELECTING --pick candidate--> ANALYZING --> SUCCESS | ERROR
    any --reset--> IDLE

Within one submission intake validation runs first, then the entitlement
gate, and only then any paid call. An intake rejection or a gate denial
raises (IntakeRejectedError / AccessDeniedError) and the attempt never
enters ANALYZING.

At most one attempt is current. Every submission and every reset takes a
new sequence number; a completion whose sequence is no longer current is
dropped without touching shared state (attempt, usage, history).

Usage is counted exactly once per transition into SUCCESS, after the
result is in hand. A usage write that fails is logged and the attempt still
succeeds; the cached count only moves once the write is persisted.
"""

from collections.abc import Callable
from datetime import UTC, datetime

import structlog

from botanicmd.exceptions import AccessDeniedError, IntakeRejectedError, PlantAnalysisError, classify
from botanicmd.models.auth import AuthUser
from botanicmd.models.plant import Candidate, PlantRecord, SupportedLanguage
from botanicmd.models.workflow import (
    IdentificationAttempt,
    IdentificationInput,
    ImageInput,
    Phase,
    TextInput,
)
from botanicmd.services.candidate_resolver import CandidateResolver
from botanicmd.services.entitlements import EntitlementCache, EntitlementGate
from botanicmd.services.history_service import HistoryService
from botanicmd.services.image_lookup import WikipediaImageLookup
from botanicmd.services.intake_validator import IntakeValidator
from botanicmd.services.plant_analyzer import PlantAnalyzerService

logger = structlog.get_logger(__name__)

AttemptListener = Callable[[IdentificationAttempt], None]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IdentificationWorkflow:
    """Drives one identification attempt at a time from intake to result."""

    def __init__(
        self,
        *,
        intake: IntakeValidator,
        gate: EntitlementGate,
        analyzer: PlantAnalyzerService,
        resolver: CandidateResolver,
        image_lookup: WikipediaImageLookup,
        cache: EntitlementCache,
        history: HistoryService,
        language: SupportedLanguage = SupportedLanguage.EN,
        now_provider=_utcnow,
    ) -> None:
        self.intake = intake
        self.gate = gate
        self.analyzer = analyzer
        self.resolver = resolver
        self.image_lookup = image_lookup
        self.cache = cache
        self.history = history
        self.language = language
        self.now_provider = now_provider

        self._sequence = 0
        self._attempt = IdentificationAttempt()
        self._listeners: list[AttemptListener] = []

    @property
    def attempt(self) -> IdentificationAttempt:
        return self._attempt

    @property
    def phase(self) -> Phase:
        return self._attempt.phase

    def subscribe(self, listener: AttemptListener) -> Callable[[], None]:
        """Register a display-layer listener; the returned function removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # -- attempt bookkeeping -------------------------------------------------

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._attempt)
            except Exception:
                logger.exception("attempt_listener_failed", sequence=self._attempt.sequence)

    def _is_current(self, sequence: int) -> bool:
        return sequence == self._sequence

    def _begin(self, intake: IdentificationInput) -> IdentificationAttempt:
        """Discard whatever attempt exists and start a fresh IDLE one."""
        self._sequence += 1
        self._attempt = IdentificationAttempt(sequence=self._sequence, input=intake)
        self._notify()
        return self._attempt

    def _apply(self, attempt: IdentificationAttempt, **changes) -> IdentificationAttempt:
        """Mutate ``attempt`` if it is still current; otherwise drop the change."""
        if not self._is_current(attempt.sequence):
            logger.info(
                "stale_completion_ignored",
                sequence=attempt.sequence,
                current=self._sequence,
                phase=changes.get("phase", attempt.phase).value,
            )
            return attempt
        self._attempt = self._attempt.model_copy(update=changes)
        self._notify()
        return self._attempt

    def reset(self) -> IdentificationAttempt:
        """Back to IDLE. Anything still in flight becomes stale."""
        self._sequence += 1
        self._attempt = IdentificationAttempt(sequence=self._sequence)
        logger.debug("workflow_reset", sequence=self._sequence)
        self._notify()
        return self._attempt

    async def _authorize(self, attempt: IdentificationAttempt) -> AuthUser | None:
        """
        Gate check for ``attempt``.

        Returns the user to bill, or None when the attempt was superseded
        while the check was pending. Raises AccessDeniedError on denial.
        """
        user = await self.gate.current_user()
        decision = await self.gate.evaluate(user)
        if not self._is_current(attempt.sequence):
            return None
        if not decision.allowed:
            logger.info(
                "identification_denied", sequence=attempt.sequence, reason=decision.reason.value
            )
            raise AccessDeniedError(decision)
        return user

    def _validate(self, intake: IdentificationInput) -> None:
        decision = self.intake.validate(intake)
        if not decision.accepted:
            logger.info("intake_rejected", kind=intake.kind, reason=decision.reason)
            raise IntakeRejectedError(decision.reason or "rejected")

    # -- transitions ---------------------------------------------------------

    async def submit_image(self, data: bytes, mime_type: str) -> IdentificationAttempt:
        """
        Identify a plant from a photo.

        Raises:
            IntakeRejectedError: Not an acceptable image; nothing changes.
            AccessDeniedError: Gate denied; the attempt stays IDLE.
        """
        intake = ImageInput(data=data, mime_type=mime_type)
        self._validate(intake)

        attempt = self._begin(intake)
        user = await self._authorize(attempt)
        if user is None:
            return attempt

        attempt = self._apply(attempt, phase=Phase.ANALYZING, started_at=self.now_provider())
        log = logger.bind(sequence=attempt.sequence, user_id=user.id)
        log.info("identification_started", kind="image", bytes=intake.size)

        try:
            record = await self.analyzer.analyze_image(intake.data, intake.mime_type, self.language)
        except Exception as e:
            return self._fail(attempt, e)

        return await self._succeed(attempt, user, record, entry_type="image")

    async def submit_query(self, query: str) -> IdentificationAttempt:
        """
        Identify a plant from free text.

        Zero candidates falls back to a direct by-name lookup, one candidate is
        resolved straight away, several leave the attempt in SELECTING.
        """
        intake = TextInput(query=query.strip())
        self._validate(intake)

        attempt = self._begin(intake)
        user = await self._authorize(attempt)
        if user is None:
            return attempt

        attempt = self._apply(attempt, phase=Phase.ANALYZING, started_at=self.now_provider())
        log = logger.bind(sequence=attempt.sequence, user_id=user.id)
        log.info("identification_started", kind="text", query=intake.query)

        try:
            candidates = await self.resolver.resolve(intake.query, self.language)
        except Exception as e:
            return self._fail(attempt, e)
        if not self._is_current(attempt.sequence):
            log.info("stale_completion_ignored", current=self._sequence)
            return attempt

        if len(candidates) >= 2:
            log.info("candidates_presented", count=len(candidates))
            return self._apply(attempt, phase=Phase.SELECTING, candidates=candidates)

        if len(candidates) == 1:
            # Auto-selected without asking the user
            log.info("single_candidate_auto_selected", scientific_name=candidates[0].scientific_name)
            return await self._resolve_candidate(attempt, user, candidates[0])

        try:
            record = await self.analyzer.identify_by_name(intake.query, self.language)
            image_url = await self.image_lookup.find_first(record.scientific_name, record.common_name)
        except Exception as e:
            return self._fail(attempt, e)

        record = record.model_copy(update={"image_url": image_url})
        return await self._succeed(attempt, user, record, entry_type="text", query=intake.query)

    async def select_candidate(self, choice: int | Candidate) -> IdentificationAttempt:
        """
        Resolve one of the presented candidates.

        Raises:
            ValueError: Not in SELECTING, or ``choice`` is not one of the candidates.
            AccessDeniedError: Gate denied; the attempt stays in SELECTING.
        """
        attempt = self._attempt
        if attempt.phase != Phase.SELECTING:
            raise ValueError(f"no candidates to select from in phase '{attempt.phase.value}'")

        if isinstance(choice, int):
            if not 0 <= choice < len(attempt.candidates):
                raise ValueError(f"candidate index {choice} out of range")
            candidate = attempt.candidates[choice]
        elif choice in attempt.candidates:
            candidate = choice
        else:
            raise ValueError("candidate is not part of the current attempt")

        user = await self._authorize(attempt)
        if user is None or self._attempt.phase != Phase.SELECTING:
            return self._attempt
        return await self._resolve_candidate(attempt, user, candidate)

    async def _resolve_candidate(
        self, attempt: IdentificationAttempt, user: AuthUser, candidate: Candidate
    ) -> IdentificationAttempt:
        attempt = self._apply(attempt, phase=Phase.ANALYZING)
        query = attempt.input.query if isinstance(attempt.input, TextInput) else None

        try:
            record = await self.analyzer.identify_by_name(
                f"{candidate.common_name} ({candidate.scientific_name})", self.language
            )
            image_url = candidate.image_url
            if not image_url:
                image_url = await self.image_lookup.find_image(record.scientific_name)
        except Exception as e:
            return self._fail(attempt, e)

        record = record.model_copy(update={"image_url": image_url})
        return await self._succeed(attempt, user, record, entry_type="text", query=query)

    async def _succeed(
        self,
        attempt: IdentificationAttempt,
        user: AuthUser,
        record: PlantRecord,
        *,
        entry_type: str,
        query: str | None = None,
    ) -> IdentificationAttempt:
        if not self._is_current(attempt.sequence):
            logger.info("stale_completion_ignored", sequence=attempt.sequence, current=self._sequence)
            return attempt

        record = record.model_copy(update={"language": self.language})
        attempt = self._apply(attempt, phase=Phase.SUCCESS, result=record, candidates=[], error=None)

        try:
            await self.cache.record_usage(user.id)
        except Exception:
            logger.exception("usage_record_failed", sequence=attempt.sequence, user_id=user.id)
        self.history.add_entry(
            plant_name=record.common_name,
            scientific_name=record.scientific_name,
            entry_type=entry_type,
            query=query,
        )
        logger.info(
            "identification_succeeded",
            sequence=attempt.sequence,
            user_id=user.id,
            scientific_name=record.scientific_name,
        )
        return attempt

    def _fail(self, attempt: IdentificationAttempt, error: Exception) -> IdentificationAttempt:
        classified = classify(error, self.language)
        if isinstance(error, PlantAnalysisError):
            logger.warning(
                "identification_failed",
                sequence=attempt.sequence,
                kind=classified.kind.value,
                detail=error.detail,
            )
        else:
            logger.exception(
                "identification_failed", sequence=attempt.sequence, kind=classified.kind.value
            )
        return self._apply(attempt, phase=Phase.ERROR, error=classified, candidates=[], result=None)

    # -- follow-ups ----------------------------------------------------------

    async def ask_expert(self, question: str) -> str:
        """Follow-up question about the current result (not a costed identification)."""
        if self._attempt.phase != Phase.SUCCESS or self._attempt.result is None:
            raise ValueError("no identified plant to ask about")
        return await self.analyzer.ask_expert(self._attempt.result, question, self.language)

