"""
Entry points for starting, retrying and polling analyses.

The scheduler only creates records and queues the first step; everything
after that is driven by the worker. It also enforces single ownership: it
never queues work for an analysis that already has a queued or running task.
"""

from typing import Iterable, Optional, Union

from competitor_intel.models.schemas import (
    AnalysisRecord,
    AnalysisStatus,
    PipelineStep,
    ProgressReport,
    TriggerSource,
)
from competitor_intel.pipeline.task_queue import Task, TaskQueue
from competitor_intel.services.entity_service import EntityStore
from competitor_intel.storage.analysis_store import AnalysisStore
from competitor_intel.utils.errors import InvalidStateError, PipelineError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


class PipelineScheduler:
    """
    Accepts "analyze entity X" and "retry analysis Y" requests.

    Example:
        >>> scheduler = PipelineScheduler(analyses, queue, entities)
        >>> analysis_id = await scheduler.create_and_run("42")
        >>> (await scheduler.get_progress(analysis_id)).status
        'pending'
    """

    def __init__(
        self,
        analyses: AnalysisStore,
        queue: TaskQueue,
        entities: Optional[EntityStore] = None,
    ):
        self.analyses = analyses
        self.queue = queue
        self.entities = entities

    async def create_and_run(
        self,
        entity_id: str,
        trigger_source: Union[TriggerSource, str] = TriggerSource.MANUAL,
    ) -> str:
        """
        Create a pending analysis and queue its SearchStep.

        If the entity's latest analysis is still queued or running, its id is
        returned instead of starting a second one.

        Raises:
            NotFoundError: The entity does not exist (only checked when an
                EntityStore was provided).
        """
        entity_id = str(entity_id)
        if self.entities is not None:
            await self.entities.get(entity_id)

        latest = await self.analyses.latest_for_entity(entity_id)
        if latest is not None and not latest.is_terminal and self.queue.is_active(latest.id):
            logger.info(
                "Analysis already in flight",
                entity_id=entity_id,
                analysis_id=latest.id,
            )
            return latest.id

        record = AnalysisRecord(target_entity_id=entity_id, trigger_source=trigger_source)
        await self.analyses.create(record)
        await self.queue.enqueue(Task(step=PipelineStep.SEARCHING, analysis_id=record.id))

        logger.info(
            "Analysis scheduled",
            entity_id=entity_id,
            analysis_id=record.id,
            trigger_source=record.trigger_source,
        )
        return record.id

    async def retry(self, analysis_id: str) -> None:
        """
        Reset a failed analysis and queue its SearchStep again.

        Raises:
            NotFoundError: Unknown analysis id.
            InvalidStateError: The analysis is not in Failed state.
        """
        record = await self.analyses.get(analysis_id)
        if record.status != AnalysisStatus.FAILED:
            raise InvalidStateError("not in Failed state", {"status": record.status})

        if self.queue.is_active(analysis_id):
            logger.info("Retry ignored, task already active", analysis_id=analysis_id)
            return

        record.status = AnalysisStatus.PENDING
        record.current_step = PipelineStep.NONE
        record.progress = 0
        record.error = None
        record.search_results = None
        record.ai_results = None
        record.final_data = None
        await self.analyses.save(record)
        await self.queue.enqueue(Task(step=PipelineStep.SEARCHING, analysis_id=analysis_id))

        logger.info("Analysis retried", analysis_id=analysis_id)

    async def get_progress(self, analysis_id: str) -> ProgressReport:
        record = await self.analyses.get(analysis_id)
        return ProgressReport.from_record(record)

    async def run_many(
        self,
        entity_ids: Iterable[str],
        trigger_source: Union[TriggerSource, str] = TriggerSource.BULK,
    ) -> list[str]:
        """Schedule several entities. Failures are logged per entity, not raised."""
        scheduled = []
        for entity_id in entity_ids:
            try:
                scheduled.append(await self.create_and_run(entity_id, trigger_source))
            except PipelineError as e:
                logger.warning(
                    "Could not schedule analysis",
                    entity_id=entity_id,
                    error=e.message,
                )
        logger.info("Bulk analysis scheduled", requested=len(scheduled))
        return scheduled
