"""
Synchronous analysis runner using LangGraph.

Runs Search, Analyze and Save back-to-back in one call for interactive
contexts that cannot wait for the queue. The graph nodes delegate to the very
same Step objects the worker uses, so record transitions, parsing and
truncation are identical; only the dispatch differs.

Graph structure:

    search ──ok──> analyze ──ok──> save ──> END
       │              │
       └──failed──────┴──────────────────> END
"""

import operator
import time
from dataclasses import dataclass
from typing import Annotated, Any, Callable, Literal, Mapping, Optional, TypedDict, Union

from langgraph.graph import END, StateGraph

from competitor_intel.models.schemas import (
    AnalysisRecord,
    AnalysisStatus,
    PipelineStep,
    TriggerSource,
)
from competitor_intel.pipeline.steps import Step, StepOutcome
from competitor_intel.storage.analysis_store import AnalysisStore
from competitor_intel.utils.errors import PipelineError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)

SUCCESS_MESSAGE = "Analysis completed successfully."


# =============================================================================
# Graph State
# =============================================================================

class SyncStateDict(TypedDict, total=False):
    """LangGraph state for one synchronous run."""
    analysis_id: str
    failed: bool
    error: Optional[str]
    completed_steps: Annotated[list[str], operator.add]
    step_timings: dict[str, int]


@dataclass
class SyncRunResult:
    """What the caller gets back immediately after a synchronous run."""
    success: bool
    message: str
    analysis_id: str
    competitors: int = 0
    duration_ms: int = 0


# =============================================================================
# Runner
# =============================================================================

class SyncAnalysisRunner:
    """
    Executes the whole pipeline for one analysis inside a single await.

    Example:
        >>> runner = SyncAnalysisRunner(analyses, build_steps(deps))
        >>> result = await runner.analyze_entity("42")
        >>> result.success, result.competitors
        (True, 3)
    """

    def __init__(
        self,
        analyses: AnalysisStore,
        steps: Mapping[PipelineStep, Step],
        progress_callback: Optional[Callable[[PipelineStep, int], None]] = None,
    ):
        self.analyses = analyses
        self.steps = dict(steps)
        self.progress_callback = progress_callback
        self._graph = self._build_graph()

    def _build_graph(self):
        graph = StateGraph(SyncStateDict)

        graph.add_node("search", self._node(PipelineStep.SEARCHING))
        graph.add_node("analyze", self._node(PipelineStep.ANALYZING))
        graph.add_node("save", self._node(PipelineStep.SAVING))

        graph.set_entry_point("search")
        graph.add_conditional_edges(
            "search",
            self._route_after_step,
            {"continue": "analyze", "stop": END},
        )
        graph.add_conditional_edges(
            "analyze",
            self._route_after_step,
            {"continue": "save", "stop": END},
        )
        graph.add_edge("save", END)

        return graph.compile()

    def _node(self, pipeline_step: PipelineStep) -> Callable:
        step = self.steps[pipeline_step]

        async def run_step(state: SyncStateDict) -> dict[str, Any]:
            start_time = time.time()
            outcome: StepOutcome = await step.run(state["analysis_id"])
            elapsed_ms = int((time.time() - start_time) * 1000)

            if self.progress_callback:
                self.progress_callback(pipeline_step, step.progress)

            timings = dict(state.get("step_timings") or {})
            timings[pipeline_step.value] = elapsed_ms

            if not outcome.success:
                return {
                    "failed": True,
                    "error": outcome.message,
                    "step_timings": timings,
                }
            return {
                "completed_steps": [pipeline_step.value],
                "step_timings": timings,
            }

        return run_step

    @staticmethod
    def _route_after_step(state: SyncStateDict) -> Literal["continue", "stop"]:
        return "stop" if state.get("failed") else "continue"

    # =========================================================================
    # Public API
    # =========================================================================

    async def run(self, analysis_id: str) -> SyncRunResult:
        """
        Run all three steps for an existing pending analysis.

        Returns:
            SyncRunResult; failures are reported in it, never raised.
        """
        start_time = time.time()
        logger.info("Starting synchronous analysis", analysis_id=analysis_id)

        final_state = await self._graph.ainvoke(
            {
                "analysis_id": analysis_id,
                "failed": False,
                "error": None,
                "completed_steps": [],
                "step_timings": {},
            }
        )
        duration_ms = int((time.time() - start_time) * 1000)

        if final_state.get("failed"):
            message = final_state.get("error") or "Analysis failed"
            logger.error(
                "Synchronous analysis failed",
                analysis_id=analysis_id,
                duration_ms=duration_ms,
                error=message,
            )
            return SyncRunResult(
                success=False,
                message=message,
                analysis_id=analysis_id,
                duration_ms=duration_ms,
            )

        record = await self.analyses.get(analysis_id)
        competitors = len((record.final_data or {}).get("competitors") or [])
        success = record.status == AnalysisStatus.COMPLETED

        logger.info(
            "Synchronous analysis finished",
            analysis_id=analysis_id,
            duration_ms=duration_ms,
            competitors=competitors,
            step_timings=final_state.get("step_timings"),
        )
        return SyncRunResult(
            success=success,
            message=SUCCESS_MESSAGE if success else f"Analysis ended as {record.status}",
            analysis_id=analysis_id,
            competitors=competitors,
            duration_ms=duration_ms,
        )

    async def analyze_entity(
        self,
        entity_id: str,
        trigger_source: Union[TriggerSource, str] = TriggerSource.MANUAL,
    ) -> SyncRunResult:
        """Create a pending analysis for ``entity_id`` and run it to completion."""
        record = AnalysisRecord(target_entity_id=str(entity_id), trigger_source=trigger_source)
        try:
            await self.analyses.create(record)
        except PipelineError as e:
            return SyncRunResult(success=False, message=e.message, analysis_id=record.id)
        return await self.run(record.id)
