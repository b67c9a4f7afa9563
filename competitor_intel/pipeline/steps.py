"""
The three resumable pipeline steps: Search, Analyze, Save.

Each step is a unit of work keyed by ``analysis_id``. It loads the
AnalysisRecord fresh, marks it as in flight, performs one piece of work,
writes the result back and returns a StepOutcome naming the next step. The
queue worker (or the synchronous runner) decides how to dispatch that next
step; steps never call each other.

State transitions:

    pending ──Search──> processing/searching  [search_results]
            ──Analyze─> processing/analyzing  [ai_results]
            ──Save────> completed             [final_data]

Any PipelineError raised while a step works is recorded on the record
(message plus formatted traceback) and the record moves to failed. No step
retries on its own; retry is an explicit scheduler call.
"""

from __future__ import annotations

import re
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import ValidationError

from competitor_intel.analyzers.price_alerts import PriceAlertEvaluator
from competitor_intel.analyzers.prompts import PromptBuilder
from competitor_intel.analyzers.result_parser import ResultParser
from competitor_intel.analyzers.truncation import PayloadTruncator
from competitor_intel.config.settings import Settings, get_settings
from competitor_intel.models.schemas import (
    AnalysisError,
    AnalysisInsights,
    AnalysisRecord,
    AnalysisStatus,
    Entity,
    PipelineStep,
    PriceHistoryRecord,
)
from competitor_intel.services.entity_service import EntityStore
from competitor_intel.services.llm_service import AIProvider
from competitor_intel.services.notification_service import NotificationSender
from competitor_intel.services.search_service import SearchProvider
from competitor_intel.storage.analysis_store import AnalysisStore
from competitor_intel.storage.price_history import PriceHistoryStore
from competitor_intel.utils.errors import (
    EmptyResultError,
    InvalidStateError,
    NotFoundError,
    ParseError,
    PersistenceError,
    PipelineError,
    UpstreamError,
)
from competitor_intel.utils.logger import LogContext, get_logger

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

SEARCH_QUERY_SUFFIX = "competitors pricing features reviews"
DESCRIPTION_WORD_LIMIT = 100

_TAG_PATTERN = re.compile(r"<[^>]+>")


def build_search_query(entity: Entity) -> str:
    """Entity name, its category terms and the fixed competitor keywords."""
    parts = [entity.name, *entity.category_terms, SEARCH_QUERY_SUFFIX]
    return " ".join(" ".join(parts).split())


def summarize_description(description: str, word_limit: int = DESCRIPTION_WORD_LIMIT) -> str:
    """Strip markup and keep the first ``word_limit`` words."""
    words = _TAG_PATTERN.sub(" ", description or "").split()
    return " ".join(words[:word_limit])


def build_analysis_context(entity: Entity, search_results: list[dict[str, Any]]) -> dict[str, Any]:
    """The data object sent to the AI provider alongside the prompt."""
    return {
        "entity_name": entity.name,
        "entity_description": summarize_description(entity.description),
        "entity_price": str(entity.price),
        "entity_sku": entity.sku,
        "search_results": search_results,
    }


# =============================================================================
# Outcome and Dependencies
# =============================================================================

@dataclass(frozen=True)
class StepOutcome:
    """Result of running one step: success with the next step, or the failure."""
    analysis_id: str
    step: PipelineStep
    success: bool
    next_step: Optional[PipelineStep] = None
    error: Optional[PipelineError] = None

    @classmethod
    def succeeded(
        cls,
        analysis_id: str,
        step: PipelineStep,
        next_step: Optional[PipelineStep] = None,
    ) -> "StepOutcome":
        return cls(analysis_id=analysis_id, step=step, success=True, next_step=next_step)

    @classmethod
    def failed(cls, analysis_id: str, step: PipelineStep, error: PipelineError) -> "StepOutcome":
        return cls(analysis_id=analysis_id, step=step, success=False, error=error)

    @property
    def message(self) -> str:
        return self.error.message if self.error else ""


@dataclass
class StepDependencies:
    """Collaborators injected into every step."""
    analyses: AnalysisStore
    entities: EntityStore
    search: SearchProvider
    ai: AIProvider
    price_history: PriceHistoryStore
    notifier: NotificationSender
    settings: Settings = field(default_factory=get_settings)
    prompts: PromptBuilder = field(default_factory=PromptBuilder)
    parser: ResultParser = field(default_factory=ResultParser)
    truncator: PayloadTruncator = field(default_factory=PayloadTruncator)
    alerts: PriceAlertEvaluator = field(default_factory=PriceAlertEvaluator)


# =============================================================================
# Base Step
# =============================================================================

class Step(ABC):
    """
    Shared run loop for pipeline steps.

    Subclasses declare which ``(status, current_step)`` combinations they
    accept and implement ``_execute``. A record in any other state is left
    untouched: either another task owns it or it is already terminal.
    """

    step: PipelineStep
    progress: int
    accepted_steps: tuple[PipelineStep, ...] = ()
    accepted_statuses: tuple[AnalysisStatus, ...] = (AnalysisStatus.PROCESSING,)

    def __init__(self, deps: StepDependencies):
        self.deps = deps

    async def run(self, analysis_id: str) -> StepOutcome:
        with LogContext(analysis_id=analysis_id, step=self.step.value):
            try:
                record = await self.deps.analyses.get(analysis_id)
            except PipelineError as e:
                logger.error("Cannot load analysis", error=e.message)
                return StepOutcome.failed(analysis_id, self.step, e)
            except Exception as e:
                wrapped = PersistenceError(f"Cannot load analysis: {e}", {"exception": type(e).__name__})
                wrapped.__cause__ = e
                logger.error("Cannot load analysis", error=wrapped.message)
                return StepOutcome.failed(analysis_id, self.step, wrapped)

            rejection = self._check_preconditions(record)
            if rejection:
                logger.warning("Step skipped", reason=rejection.message, status=record.status)
                return StepOutcome.failed(analysis_id, self.step, rejection)

            logger.info("Step started")
            try:
                next_step = await self._execute(record)
            except PipelineError as e:
                await self._fail(record, e)
                return StepOutcome.failed(analysis_id, self.step, e)
            except Exception as e:
                wrapped = UpstreamError(f"Unexpected error: {e}", {"exception": type(e).__name__})
                wrapped.__cause__ = e
                await self._fail(record, wrapped)
                return StepOutcome.failed(analysis_id, self.step, wrapped)

            logger.info("Step completed", next_step=next_step.value if next_step else None)
            return StepOutcome.succeeded(analysis_id, self.step, next_step)

    def _check_preconditions(self, record: AnalysisRecord) -> Optional[InvalidStateError]:
        if record.status not in self.accepted_statuses:
            return InvalidStateError(
                f"{self.step.value} cannot run on a {record.status} analysis"
            )
        if self.accepted_steps and record.current_step not in self.accepted_steps:
            return InvalidStateError(
                f"{self.step.value} cannot run after {record.current_step}"
            )
        return None

    async def _begin(self, record: AnalysisRecord) -> None:
        """Claim the record: Processing is the single-writer marker."""
        record.status = AnalysisStatus.PROCESSING
        record.current_step = self.step
        record.progress = self.progress
        await self.deps.analyses.save(record)

    async def _fail(self, record: AnalysisRecord, error: PipelineError) -> None:
        trace = "".join(traceback.format_exception(error))
        logger.error(
            "Step failed",
            error=error.message,
            error_type=error.error_type.value,
        )
        record.status = AnalysisStatus.FAILED
        record.current_step = PipelineStep.NONE
        record.final_data = None
        record.error = AnalysisError(message=error.message, trace=trace)
        try:
            await self.deps.analyses.save(record)
        except PipelineError as e:
            logger.error("Could not record failure", error=e.message)

    @abstractmethod
    async def _execute(self, record: AnalysisRecord) -> Optional[PipelineStep]:
        """Do the work. Returns the next step, or None when the pipeline is done."""


# =============================================================================
# Search Step
# =============================================================================

class SearchStep(Step):
    """Find competitor pages for the entity via the search provider."""

    step = PipelineStep.SEARCHING
    progress = 1
    accepted_statuses = (AnalysisStatus.PENDING,)

    async def _execute(self, record: AnalysisRecord) -> Optional[PipelineStep]:
        await self._begin(record)

        entity = await self.deps.entities.get(record.target_entity_id)
        query = build_search_query(entity)
        limit = self.deps.settings.search_result_limit

        logger.info("Searching competitors", query=query, limit=limit)
        results = await self.deps.search.search(query, limit)

        hits = results.as_dicts()
        if not hits:
            raise EmptyResultError("Search returned no results", {"query": query})

        record.search_results = hits
        record.ai_results = None
        record.final_data = None
        await self.deps.analyses.save(record)

        logger.info("Search results stored", results_count=len(hits))
        return PipelineStep.ANALYZING


# =============================================================================
# Analyze Step
# =============================================================================

class AnalyzeStep(Step):
    """Send the truncated search payload to the AI provider and validate its answer."""

    step = PipelineStep.ANALYZING
    progress = 2
    accepted_steps = (PipelineStep.SEARCHING, PipelineStep.ANALYZING)

    async def _execute(self, record: AnalysisRecord) -> Optional[PipelineStep]:
        await self._begin(record)

        try:
            entity: Optional[Entity] = await self.deps.entities.get(record.target_entity_id)
        except NotFoundError:
            entity = None

        if entity is None or not record.search_results:
            raise NotFoundError("Missing entity or search results")

        truncated = self.deps.truncator.truncate(record.search_results)
        context = build_analysis_context(entity, truncated)
        model_name = self.deps.ai.model_name
        prompt = self.deps.prompts.build(model_name, self.deps.settings.enabled_modules)

        logger.info(
            "Requesting AI analysis",
            model=model_name,
            small_model=self.deps.prompts.is_small_model(model_name),
            results_count=len(truncated),
        )
        response = await self.deps.ai.analyze(prompt, context)

        if not response.raw_text or not response.raw_text.strip():
            raise UpstreamError("AI provider returned an empty response")

        parsed = self.deps.parser.parse(response.raw_text)
        try:
            insights = AnalysisInsights.model_validate(parsed)
        except ValidationError as e:
            raise ParseError(
                "AI output does not match the analysis schema",
                {"errors": e.errors(include_url=False)},
            ) from e

        record.ai_results = insights.to_storage()
        record.search_results = None
        await self.deps.analyses.save(record)

        logger.info("AI results stored", competitors=len(insights.competitors))
        return PipelineStep.SAVING


# =============================================================================
# Save Step
# =============================================================================

class SaveStep(Step):
    """
    Promote ai_results to final_data and record competitor prices.

    Price history rows and alerts are best-effort side effects written
    before the completion commit. They are not rolled back if that commit
    fails, and their own failures never fail the step.
    """

    step = PipelineStep.SAVING
    progress = 3
    accepted_steps = (PipelineStep.ANALYZING, PipelineStep.SAVING)

    async def _execute(self, record: AnalysisRecord) -> Optional[PipelineStep]:
        await self._begin(record)

        if not record.ai_results:
            raise NotFoundError("Missing AI results")

        insights = AnalysisInsights.model_validate(record.ai_results)

        try:
            entity: Optional[Entity] = await self.deps.entities.get(record.target_entity_id)
        except NotFoundError:
            logger.warning("Entity gone, price alerts skipped", entity_id=record.target_entity_id)
            entity = None

        recorded = await self._record_prices(record, insights, entity)

        record.final_data = insights.to_storage()
        record.status = AnalysisStatus.COMPLETED
        record.search_results = None
        record.ai_results = None
        record.current_step = PipelineStep.NONE
        record.progress = 0
        record.error = None
        try:
            await self.deps.analyses.save(record)
        except PipelineError as e:
            record.progress = self.progress
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Failed to save final results: {e.message}") from e

        logger.info(
            "Analysis completed",
            competitors=len(insights.competitors),
            prices_recorded=recorded,
        )
        return None

    async def _record_prices(
        self,
        record: AnalysisRecord,
        insights: AnalysisInsights,
        entity: Optional[Entity],
    ) -> int:
        settings = self.deps.settings
        recorded = 0

        for competitor in insights.competitors:
            if not competitor.name or not competitor.price:
                continue

            price = competitor.numeric_price()
            try:
                await self.deps.price_history.add_record(
                    PriceHistoryRecord(
                        target_entity_id=record.target_entity_id,
                        analysis_id=record.id,
                        competitor_name=competitor.name,
                        price=price,
                        currency=competitor.currency or settings.default_currency,
                    )
                )
                recorded += 1
            except Exception as e:
                logger.warning(
                    "Price history write failed",
                    competitor=competitor.name,
                    error=str(e),
                )

            if entity is None:
                continue

            notification = self.deps.alerts.evaluate(
                own_price=entity.price,
                competitor_name=competitor.name,
                competitor_price=price,
                threshold_pct=settings.price_drop_threshold,
                notify_email=settings.notification_email,
                entity_name=entity.name,
            )
            if notification is None:
                continue

            try:
                await self.deps.notifier.send(notification)
            except Exception as e:
                logger.warning(
                    "Price alert delivery failed",
                    competitor=competitor.name,
                    error=str(e),
                )

        return recorded


def build_steps(deps: StepDependencies) -> dict[PipelineStep, Step]:
    """All steps keyed by the PipelineStep they implement."""
    return {
        PipelineStep.SEARCHING: SearchStep(deps),
        PipelineStep.ANALYZING: AnalyzeStep(deps),
        PipelineStep.SAVING: SaveStep(deps),
    }
