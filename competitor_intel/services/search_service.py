"""
Web search providers for competitor discovery.

The pipeline depends only on ``SearchProvider.search(query, limit)``. Two
adapters are shipped:

    - TavilyProvider: POST search API returning scored page content
    - BraveProvider: GET web search returning title/url/description

Transport errors (timeouts, connection resets) are retried with tenacity.
Everything that still fails surfaces as UpstreamError, or RateLimitError on
HTTP 429, so the SearchStep never sees httpx exceptions.

Example:
    >>> async with TavilyProvider(settings) as provider:
    ...     results = await provider.search("Widget Pro competitors pricing", limit=10)
    ...     print(len(results.hits))
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from competitor_intel.config.settings import Settings, get_settings
from competitor_intel.models.schemas import SearchHit
from competitor_intel.utils.errors import ConfigurationError, RateLimitError, UpstreamError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Result Models
# =============================================================================

class SearchResults(BaseModel):
    """Standardized search results from any provider."""
    query: str
    provider: str
    hits: list[SearchHit] = Field(default_factory=list)
    search_duration_ms: int = 0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dicts(self) -> list[dict[str, Any]]:
        """Hits as JSON-safe dicts, provider extras included."""
        return [hit.model_dump(mode="json", exclude_none=True) for hit in self.hits]


# =============================================================================
# Abstract Search Provider
# =============================================================================

class SearchProvider(ABC):
    """
    Abstract base class for search providers.

    Subclasses implement ``_fetch`` returning raw hit dicts; the base class
    owns the HTTP client, timing, error translation and logging.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider name identifier."""

    @property
    @abstractmethod
    def is_configured(self) -> bool:
        """Check if provider is properly configured with API keys."""

    async def connect(self) -> None:
        """Initialize HTTP client."""
        if self._client is None:
            timeout = float(self.settings.request_timeout_seconds)
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=10.0),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._owns_client = True

    async def disconnect(self) -> None:
        """Close HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SearchProvider":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.disconnect()

    async def search(self, query: str, limit: int = 10) -> SearchResults:
        """
        Run a web search.

        Args:
            query: Search query string
            limit: Maximum number of hits to return

        Returns:
            SearchResults, possibly with zero hits

        Raises:
            ConfigurationError: Provider has no API key
            RateLimitError: Provider answered HTTP 429
            UpstreamError: Any other transport, HTTP or envelope failure
        """
        if not self.is_configured:
            raise ConfigurationError(f"{self.name} API key not configured")

        if self._client is None:
            await self.connect()

        start_time = time.time()
        try:
            raw_hits = await self._fetch(query, limit)
        except httpx.HTTPStatusError as e:
            error_msg = f"HTTP {e.response.status_code}: {e.response.text[:200]}"
            logger.error("Search request failed", provider=self.name, error=error_msg)
            if e.response.status_code == 429:
                raise RateLimitError(f"{self.name} rate limit exceeded: {error_msg}") from e
            raise UpstreamError(f"{self.name} error: {error_msg}") from e
        except httpx.HTTPError as e:
            logger.error("Search transport error", provider=self.name, error=str(e))
            raise UpstreamError(f"{self.name} error: {e}") from e
        except ValueError as e:
            logger.error("Search response is not JSON", provider=self.name, error=str(e))
            raise UpstreamError(f"{self.name} returned a non-JSON response") from e

        hits = [SearchHit.model_validate(item) for item in raw_hits[:limit]]
        result = SearchResults(
            query=query,
            provider=self.name,
            hits=hits,
            search_duration_ms=int((time.time() - start_time) * 1000),
        )

        logger.info(
            "Search completed",
            provider=self.name,
            query=query,
            results_count=len(hits),
            duration_ms=result.search_duration_ms,
        )
        return result

    @abstractmethod
    async def _fetch(self, query: str, limit: int) -> list[dict[str, Any]]:
        """Call the provider API and return hit dicts with url/title/content/snippet/score."""

    @staticmethod
    def _require_list(data: Any, *path: str) -> list[dict[str, Any]]:
        """Walk ``path`` through a JSON envelope and return the list at its end."""
        node = data
        for key in path:
            if not isinstance(node, dict) or key not in node:
                raise UpstreamError(f"Malformed search response: missing '{key}'")
            node = node[key]
        if not isinstance(node, list):
            raise UpstreamError(f"Malformed search response: '{path[-1]}' is not a list")
        return node


# =============================================================================
# Tavily Provider
# =============================================================================

class TavilyProvider(SearchProvider):
    """Tavily search API. Hits carry extracted page content and a relevance score."""

    BASE_URL = "https://api.tavily.com/search"

    @property
    def name(self) -> str:
        return "tavily"

    @property
    def is_configured(self) -> bool:
        return self.settings.tavily_api_key is not None

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch(self, query: str, limit: int) -> list[dict[str, Any]]:
        payload = {
            "api_key": self.settings.tavily_api_key.get_secret_value(),
            "query": query,
            "max_results": limit,
            "search_depth": "advanced",
            "include_answer": False,
        }
        response = await self._client.post(self.BASE_URL, json=payload)
        response.raise_for_status()
        results = self._require_list(response.json(), "results")
        return [
            {
                "url": item.get("url") or "",
                "title": item.get("title") or "",
                "content": item.get("content"),
                "score": item.get("score"),
            }
            for item in results
            if isinstance(item, dict)
        ]


# =============================================================================
# Brave Provider
# =============================================================================

class BraveProvider(SearchProvider):
    """Brave web search. Only a short description is available, stored as snippet."""

    BASE_URL = "https://api.search.brave.com/res/v1/web/search"

    @property
    def name(self) -> str:
        return "brave"

    @property
    def is_configured(self) -> bool:
        return self.settings.brave_api_key is not None

    @retry(
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _fetch(self, query: str, limit: int) -> list[dict[str, Any]]:
        headers = {
            "Accept": "application/json",
            "X-Subscription-Token": self.settings.brave_api_key.get_secret_value(),
        }
        params = {"q": query, "count": min(limit, 20)}
        response = await self._client.get(self.BASE_URL, params=params, headers=headers)
        response.raise_for_status()
        data = response.json()

        # Brave omits the "web" block entirely when nothing matched
        if isinstance(data, dict) and "web" not in data:
            return []

        results = self._require_list(data, "web", "results")
        return [
            {
                "url": item.get("url") or "",
                "title": item.get("title") or "",
                "snippet": item.get("description"),
            }
            for item in results
            if isinstance(item, dict)
        ]


# =============================================================================
# Factory
# =============================================================================

PROVIDERS: dict[str, type[SearchProvider]] = {
    "tavily": TavilyProvider,
    "brave": BraveProvider,
}


def create_search_provider(settings: Optional[Settings] = None) -> SearchProvider:
    """Instantiate the provider selected by ``SEARCH_PROVIDER``."""
    settings = settings or get_settings()
    provider = PROVIDERS[settings.search_provider](settings)
    if not provider.is_configured:
        raise ConfigurationError(
            f"Search provider '{provider.name}' selected but no API key configured"
        )
    return provider


__all__ = [
    "SearchResults",
    "SearchProvider",
    "TavilyProvider",
    "BraveProvider",
    "PROVIDERS",
    "create_search_provider",
]
