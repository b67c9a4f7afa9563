import json
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from competitor_intel.config.settings import Settings
from competitor_intel.models.schemas import Entity, SearchHit
from competitor_intel.pipeline.orchestrator import SyncAnalysisRunner
from competitor_intel.pipeline.scheduler import PipelineScheduler
from competitor_intel.pipeline.steps import StepDependencies, build_steps
from competitor_intel.pipeline.task_queue import InMemoryTaskQueue, PipelineWorker
from competitor_intel.services.entity_service import InMemoryEntityStore
from competitor_intel.services.llm_service import AIProvider, AIResponse
from competitor_intel.services.notification_service import LogNotificationSender
from competitor_intel.services.search_service import SearchProvider
from competitor_intel.storage.analysis_store import InMemoryAnalysisStore
from competitor_intel.storage.price_history import InMemoryPriceHistoryStore


# =============================================================================
# Fakes
# =============================================================================

class FakeSearchProvider(SearchProvider):
    """Search provider returning canned hits, or raising a canned error."""

    def __init__(self, settings, hits=None, error: Exception = None):
        super().__init__(settings=settings, client=AsyncMock(spec=httpx.AsyncClient))
        self.hits = hits if hits is not None else []
        self.error = error
        self.queries: list[tuple[str, int]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def is_configured(self) -> bool:
        return True

    async def _fetch(self, query: str, limit: int) -> list[dict[str, Any]]:
        self.queries.append((query, limit))
        if self.error:
            raise self.error
        return [dict(hit) for hit in self.hits]


class FakeAIProvider(AIProvider):
    """AI provider returning canned raw text."""

    def __init__(self, settings, raw_text: str = "", model: str = "claude-sonnet-4-20250514", error: Exception = None):
        super().__init__(settings)
        self.raw_text = raw_text
        self.model = model
        self.error = error
        self.calls: list[tuple[str, dict[str, Any]]] = []

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model_name(self) -> str:
        return self.model

    async def analyze(self, prompt: str, context: dict[str, Any]) -> AIResponse:
        self.calls.append((prompt, context))
        if self.error:
            raise self.error
        return AIResponse(raw_text=self.raw_text, model=self.model, provider=self.name)


# =============================================================================
# Settings and Data
# =============================================================================

@pytest.fixture
def settings():
    """Real settings, isolated from the environment and any .env file."""
    with patch.dict("os.environ", {}, clear=True):
        yield Settings(
            _env_file=None,
            ANTHROPIC_API_KEY="sk-ant-api-test-key",
            TAVILY_API_KEY="tvly-test-key",
            BRAVE_API_KEY="brave-test-key",
            NOTIFICATION_EMAIL="alerts@example.com",
            PRICE_DROP_THRESHOLD="10",
            DEFAULT_CURRENCY="USD",
            LOG_JSON=False,
        )


@pytest.fixture
def entity():
    return Entity(
        id="42",
        name="Widget Pro",
        sku="WP-100",
        price=Decimal("100"),
        description="<p>The best widget for professionals.</p>",
        category_terms=["Tools", "Widgets"],
    )


@pytest.fixture
def search_hits():
    return [
        {"url": "https://shop-a.example/widget", "title": "Widget Pro at Shop A", "content": "Widget Pro $70", "score": 0.92},
        {"url": "https://shop-b.example/widget", "title": "Shop B Widget Pro", "snippet": "Buy Widget Pro for $85"},
        {"url": "https://reviews.example/widget", "title": "Widget Pro review", "content": "Solid, but pricey.", "score": 0.5},
    ]


@pytest.fixture
def ai_payload():
    return {
        "competitors": [
            {
                "name": "Shop A",
                "url": "https://shop-a.example/widget",
                "price": "$70.00",
                "currency": "USD",
                "stock_status": "in_stock",
                "comparison_notes": "Same model, cheaper",
            }
        ],
        "content_analysis": {"my_tone": "technical", "missing_keywords": ["warranty"]},
        "sentiment_analysis": {"competitor_weaknesses": ["slow shipping"]},
        "strategy": {"pricing_advice": "Match Shop A", "action_items": ["Review price"]},
    }


@pytest.fixture
def sample_search_hit():
    return SearchHit(url="https://shop-a.example", title="Shop A", content="Widget Pro $70", score=0.9)


# =============================================================================
# Pipeline Wiring
# =============================================================================

@pytest.fixture
def entity_store(entity):
    return InMemoryEntityStore([entity])


@pytest.fixture
def analysis_store():
    return InMemoryAnalysisStore()


@pytest.fixture
def price_history_store():
    return InMemoryPriceHistoryStore()


@pytest.fixture
def notifier():
    return LogNotificationSender()


@pytest.fixture
def make_search_provider(settings):
    def factory(hits=None, error=None):
        return FakeSearchProvider(settings, hits=hits, error=error)
    return factory


@pytest.fixture
def make_ai_provider(settings):
    def factory(raw_text="", model="claude-sonnet-4-20250514", error=None):
        return FakeAIProvider(settings, raw_text=raw_text, model=model, error=error)
    return factory


@pytest.fixture
def search_provider(make_search_provider, search_hits):
    return make_search_provider(hits=search_hits)


@pytest.fixture
def ai_provider(make_ai_provider, ai_payload):
    return make_ai_provider(raw_text=json.dumps(ai_payload))


@pytest.fixture
def deps(settings, analysis_store, entity_store, search_provider, ai_provider, price_history_store, notifier):
    return StepDependencies(
        analyses=analysis_store,
        entities=entity_store,
        search=search_provider,
        ai=ai_provider,
        price_history=price_history_store,
        notifier=notifier,
        settings=settings,
    )


@pytest.fixture
def steps(deps):
    return build_steps(deps)


@pytest.fixture
def task_queue():
    return InMemoryTaskQueue()


@pytest.fixture
def worker(task_queue, steps):
    return PipelineWorker(task_queue, steps)


@pytest.fixture
def scheduler(analysis_store, task_queue, entity_store):
    return PipelineScheduler(analysis_store, task_queue, entity_store)


@pytest.fixture
def sync_runner(analysis_store, steps):
    return SyncAnalysisRunner(analysis_store, steps)
