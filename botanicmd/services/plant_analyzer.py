"""
Plant analysis service using OpenAI chat completions.

This is the only component that talks to the AI model. Every response that
claims to be a plant record is validated against PlantRecord in strict mode
before it is returned: a missing field, a wrong primitive type or a string
where an array belongs fails the whole call with MALFORMED_RESPONSE. Nothing
is coerced.

Usage:
    analyzer = PlantAnalyzerService(get_openai_client(), settings.openai_config)

    record = await analyzer.analyze_image(jpeg_bytes, "image/jpeg", SupportedLanguage.EN)
    record = await analyzer.identify_by_name("Monstera", SupportedLanguage.PT)
    options = await analyzer.search_candidates("rose", SupportedLanguage.EN)
"""

import base64
import json

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import ValidationError

from botanicmd.config import OpenAIConfig
from botanicmd.exceptions import PlantAnalysisError
from botanicmd.models.plant import (
    LANGUAGE_NAMES,
    Candidate,
    CandidateList,
    PlantRecord,
    SupportedLanguage,
)
from botanicmd.models.workflow import ErrorKind
from botanicmd.prompts.identification import (
    ANALYSIS_SYSTEM_PROMPT,
    CANDIDATE_SEARCH_PROMPT,
    ENCYCLOPEDIA_SYSTEM_PROMPT,
    EXPERT_CHAT_PROMPT,
    IMAGE_ANALYSIS_PROMPT,
    NAME_LOOKUP_PROMPT,
    PLANT_JSON_SHAPE,
)

logger = structlog.get_logger(__name__)

# Keys the client owns; a model that invents them must not influence the record
_CLIENT_OWNED_KEYS = ("imageUrl", "image_url", "language", "id", "savedAt", "saved_at")


def language_name(language: SupportedLanguage) -> str:
    return LANGUAGE_NAMES.get(language, "English")


def _load_json_object(content: str | None) -> dict:
    if not content or not content.strip():
        raise PlantAnalysisError(ErrorKind.ANALYSIS_FAILED, "model returned no content")
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise PlantAnalysisError(ErrorKind.MALFORMED_RESPONSE, f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise PlantAnalysisError(ErrorKind.MALFORMED_RESPONSE, "top-level JSON is not an object")
    return data


def parse_plant_record(content: str | None) -> PlantRecord:
    """
    Parse and structurally validate a model response as a PlantRecord.

    A {"found": false} object is the by-name lookup saying no plant matched.

    Raises:
        PlantAnalysisError: ANALYSIS_FAILED for empty output, NOT_FOUND for the
            no-match signal, MALFORMED_RESPONSE for invalid JSON or any schema
            mismatch.
    """
    data = _load_json_object(content)
    if data.pop("found", True) is False:
        raise PlantAnalysisError(ErrorKind.NOT_FOUND, "no plant matched the name")
    for key in _CLIENT_OWNED_KEYS:
        data.pop(key, None)
    try:
        return PlantRecord.model_validate_json(json.dumps(data), strict=True)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise PlantAnalysisError(
            ErrorKind.MALFORMED_RESPONSE, f"schema mismatch: {', '.join(fields)}"
        ) from e


def parse_candidates(content: str | None, limit: int) -> list[Candidate]:
    """Parse a candidate-search response. Empty output means no candidates."""
    if not content or not content.strip():
        return []
    data = _load_json_object(content)
    try:
        envelope = CandidateList.model_validate_json(json.dumps(data), strict=True)
    except ValidationError as e:
        raise PlantAnalysisError(ErrorKind.MALFORMED_RESPONSE, "invalid candidate list") from e
    # Preview images are looked up externally, never taken from the model
    return [c.model_copy(update={"image_url": None}) for c in envelope.candidates[:limit]]


def _classify_openai_error(e: openai.OpenAIError) -> PlantAnalysisError:
    if isinstance(e, (openai.APIConnectionError, openai.APITimeoutError)):
        return PlantAnalysisError(ErrorKind.NETWORK, str(e))
    if isinstance(e, openai.RateLimitError):
        return PlantAnalysisError(ErrorKind.ANALYSIS_FAILED, f"rate limited: {e}")
    if isinstance(e, openai.APIStatusError):
        return PlantAnalysisError(ErrorKind.ANALYSIS_FAILED, f"status {e.status_code}: {e}")
    return PlantAnalysisError(ErrorKind.UNEXPECTED, str(e))


class PlantAnalyzerService:
    """AI analysis collaborator: photo analysis, by-name lookup, candidate search, chat."""

    def __init__(self, client: AsyncOpenAI, config: OpenAIConfig | None = None) -> None:
        self.client = client
        self.config = config or OpenAIConfig()

    async def _complete(
        self,
        *,
        model: str,
        messages: list[dict],
        temperature: float,
        json_mode: bool = True,
    ) -> str | None:
        kwargs = {}
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        try:
            response = await self.client.chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=self.config.max_tokens,
                **kwargs,
            )
        except openai.OpenAIError as e:
            error = _classify_openai_error(e)
            logger.warning("openai_call_failed", model=model, kind=error.kind.value, error=str(e))
            raise error from e

        if not response.choices:
            return None
        return response.choices[0].message.content

    async def analyze_image(
        self,
        image: bytes,
        mime_type: str,
        language: SupportedLanguage = SupportedLanguage.EN,
    ) -> PlantRecord:
        """
        Identify a plant and diagnose its health from a photo.

        Args:
            image: Raw image bytes (already accepted by intake validation).
            mime_type: Declared MIME type, forwarded in the data URI.
            language: Response language.

        Raises:
            PlantAnalysisError: Classified failure.
        """
        lang = language_name(language)
        encoded = base64.b64encode(image).decode("ascii")
        content = await self._complete(
            model=self.config.vision_model,
            temperature=self.config.analysis_temperature,
            messages=[
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT.format(language=lang)},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "text",
                            "text": IMAGE_ANALYSIS_PROMPT.format(language=lang, shape=PLANT_JSON_SHAPE),
                        },
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:{mime_type};base64,{encoded}", "detail": "high"},
                        },
                    ],
                },
            ],
        )
        record = parse_plant_record(content)
        logger.info("plant_image_analyzed", scientific_name=record.scientific_name, bytes=len(image))
        return record

    async def identify_by_name(
        self, name: str, language: SupportedLanguage = SupportedLanguage.EN
    ) -> PlantRecord:
        """Full record for a plant known by ``name``."""
        if not name or not name.strip():
            raise PlantAnalysisError(ErrorKind.NOT_FOUND, "empty plant name")

        lang = language_name(language)
        content = await self._complete(
            model=self.config.model,
            temperature=self.config.lookup_temperature,
            messages=[
                {"role": "system", "content": ENCYCLOPEDIA_SYSTEM_PROMPT.format(language=lang)},
                {
                    "role": "user",
                    "content": NAME_LOOKUP_PROMPT.format(
                        name=name.strip(), language=lang, shape=PLANT_JSON_SHAPE
                    ),
                },
            ],
        )
        record = parse_plant_record(content)
        logger.info("plant_identified_by_name", query=name, scientific_name=record.scientific_name)
        return record

    async def search_candidates(
        self, query: str, language: SupportedLanguage = SupportedLanguage.EN
    ) -> list[Candidate]:
        """Species matching an ambiguous common name (at most ``max_candidates``)."""
        if not query or not query.strip():
            return []

        content = await self._complete(
            model=self.config.model,
            temperature=self.config.lookup_temperature,
            messages=[
                {
                    "role": "user",
                    "content": CANDIDATE_SEARCH_PROMPT.format(
                        query=query.strip(),
                        limit=self.config.max_candidates,
                        language=language_name(language),
                    ),
                }
            ],
        )
        return parse_candidates(content, self.config.max_candidates)

    async def ask_expert(
        self,
        plant: PlantRecord,
        question: str,
        language: SupportedLanguage = SupportedLanguage.EN,
    ) -> str:
        """
        Answer a follow-up question about an identified plant.

        Never raises: a failed call becomes an apology the chat can display.
        """
        if not question or not question.strip():
            return "Please ask a question about the plant."

        context = plant.model_dump_json(by_alias=True, exclude={"image_url", "id", "saved_at"})
        try:
            content = await self._complete(
                model=self.config.model,
                temperature=self.config.analysis_temperature,
                json_mode=False,
                messages=[
                    {
                        "role": "user",
                        "content": EXPERT_CHAT_PROMPT.format(
                            context=context,
                            question=question.strip(),
                            language=language_name(language),
                        ),
                    }
                ],
            )
        except PlantAnalysisError as e:
            logger.warning("expert_chat_failed", kind=e.kind.value)
            return "Sorry, an error occurred while answering. Please try again."

        return content or "Sorry, I couldn't formulate a response."
