"""
Preview image lookup against the Wikipedia (MediaWiki) API.

Two requests per query: a full-text search to find the best matching page,
then a ``pageimages`` query for that page's thumbnail. Lookups are optional
enrichment, so every failure (network, HTTP status, unexpected JSON) is
logged and reported as "no image"; nothing here ever raises to the caller.

Usage:
    lookup = WikipediaImageLookup()
    url = await lookup.find_first("Rosa gallica", "French rose")
    # -> "https://upload.wikimedia.org/..." or None
    await lookup.close()
"""

import httpx
import structlog

from botanicmd.config import ImageLookupConfig

logger = structlog.get_logger(__name__)


class WikipediaImageLookup:
    """Best-effort image URL lookup by plant name."""

    def __init__(
        self,
        config: ImageLookupConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or ImageLookupConfig()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.config.timeout_seconds),
            follow_redirects=True,
            headers={"User-Agent": "botanicmd/0.1 (plant identification)"},
        )

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def _query(self, params: dict) -> dict:
        response = await self.client.get(
            self.config.api_url, params={"action": "query", "format": "json", **params}
        )
        response.raise_for_status()
        return response.json()

    async def find_image(self, query: str) -> str | None:
        """
        Return a thumbnail URL for the best Wikipedia match, or None.

        Args:
            query: Scientific or common plant name.
        """
        if not query or not query.strip():
            return None

        try:
            search = await self._query({"list": "search", "srsearch": query.strip(), "srlimit": 1})
            results = (search.get("query") or {}).get("search") or []
            if not results:
                return None
            title = results[0]["title"]

            images = await self._query(
                {"titles": title, "prop": "pageimages", "pithumbsize": self.config.thumbnail_size}
            )
            pages = (images.get("query") or {}).get("pages") or {}
            for page in pages.values():
                source = (page.get("thumbnail") or {}).get("source")
                if source:
                    logger.debug("image_lookup_hit", query=query, title=title)
                    return source
            return None

        except (httpx.HTTPError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.warning("image_lookup_failed", query=query, error=str(e))
            return None

    async def find_first(self, *queries: str | None) -> str | None:
        """Try each query in order; first hit wins."""
        for query in queries:
            if not query:
                continue
            url = await self.find_image(query)
            if url:
                return url
        return None
