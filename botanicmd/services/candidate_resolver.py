"""
Candidate resolution for free-text plant queries.

Name matching is delegated to the AI collaborator. When the query is
ambiguous (two or more candidates) each candidate is enriched concurrently
with a preview image, looked up by scientific name first and common name
second. Neither the search nor the enrichment ever raises: a failed search
is "no candidates" and a failed lookup is "no preview".
"""

import asyncio

import structlog

from botanicmd.exceptions import PlantAnalysisError
from botanicmd.models.plant import Candidate, SupportedLanguage
from botanicmd.services.image_lookup import WikipediaImageLookup
from botanicmd.services.plant_analyzer import PlantAnalyzerService

logger = structlog.get_logger(__name__)


class CandidateResolver:
    def __init__(self, analyzer: PlantAnalyzerService, image_lookup: WikipediaImageLookup) -> None:
        self.analyzer = analyzer
        self.image_lookup = image_lookup

    async def resolve(
        self, query: str, language: SupportedLanguage = SupportedLanguage.EN
    ) -> list[Candidate]:
        """
        Return zero, one or many candidates for ``query``.

        Only multi-candidate results are enriched with preview images; a single
        candidate is resolved straight away and gets its image later.
        """
        try:
            candidates = await self.analyzer.search_candidates(query, language)
        except PlantAnalysisError as e:
            logger.warning("candidate_search_failed", query=query, kind=e.kind.value)
            return []
        except Exception:
            logger.exception("candidate_search_failed", query=query)
            return []

        logger.info("candidate_search_complete", query=query, count=len(candidates))
        if len(candidates) < 2:
            return candidates
        return await self.enrich(candidates)

    async def enrich(self, candidates: list[Candidate]) -> list[Candidate]:
        """Attach preview images, preserving order. Missing previews stay None."""
        results = await asyncio.gather(
            *(self._preview(c) for c in candidates), return_exceptions=True
        )

        enriched: list[Candidate] = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, str):
                enriched.append(candidate.model_copy(update={"image_url": result}))
            else:
                if isinstance(result, BaseException):
                    logger.warning(
                        "candidate_preview_failed",
                        scientific_name=candidate.scientific_name,
                        error=str(result),
                    )
                enriched.append(candidate)
        return enriched

    async def _preview(self, candidate: Candidate) -> str | None:
        if candidate.image_url:
            return candidate.image_url
        return await self.image_lookup.find_first(candidate.scientific_name, candidate.common_name)
