"""
Automatic analysis triggers.

AutoReanalysis reacts to catalog events (price, stock or product changes)
and starts a new analysis when the trigger is enabled and the entity has not
been analyzed within the cooldown window. RecurringAnalysis sweeps a batch of
entities on a fixed cadence, driven by an APScheduler interval job.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union

from apscheduler.job import Job
from apscheduler.schedulers.base import BaseScheduler

from competitor_intel.config.settings import REANALYSIS_TRIGGERS, Settings, get_settings
from competitor_intel.models.schemas import TriggerSource
from competitor_intel.pipeline.scheduler import PipelineScheduler
from competitor_intel.services.entity_service import EntityStore
from competitor_intel.storage.analysis_store import AnalysisStore
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)

FREQUENCY_SECONDS = {
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
}
DEFAULT_FREQUENCY = "weekly"
SWEEP_JOB_ID = "recurring-analysis-sweep"


def interval_seconds(frequency: Optional[str]) -> int:
    """Seconds between recurring sweeps. Unknown values fall back to weekly."""
    return FREQUENCY_SECONDS.get(frequency or DEFAULT_FREQUENCY, FREQUENCY_SECONDS[DEFAULT_FREQUENCY])


class AutoReanalysis:
    """Start re-analyses in response to catalog changes."""

    def __init__(
        self,
        scheduler: PipelineScheduler,
        analyses: AnalysisStore,
        settings: Optional[Settings] = None,
    ):
        self.scheduler = scheduler
        self.analyses = analyses
        self.settings = settings or get_settings()

    def is_trigger_enabled(self, trigger: str) -> bool:
        return trigger in self.settings.auto_reanalysis_triggers

    async def on_event(
        self,
        entity_id: str,
        trigger: Union[TriggerSource, str],
        now: Optional[datetime] = None,
    ) -> Optional[str]:
        """
        Handle a catalog event.

        Args:
            entity_id: Entity that changed
            trigger: One of price_change, stock_change, product_update
            now: Current time, injectable for tests

        Returns:
            The new analysis id, or None when the event was ignored.
        """
        trigger = TriggerSource(trigger).value
        if trigger not in REANALYSIS_TRIGGERS:
            raise ValueError(f"{trigger} is not a re-analysis trigger")

        if not self.is_trigger_enabled(trigger):
            logger.debug("Re-analysis trigger disabled", entity_id=entity_id, trigger=trigger)
            return None

        now = now or datetime.now(timezone.utc)
        cooldown = timedelta(hours=self.settings.auto_reanalysis_cooldown_hours)
        last = await self.analyses.latest_for_entity(str(entity_id))
        if last is not None and now - last.created_at < cooldown:
            logger.info(
                "Re-analysis skipped, cooldown active",
                entity_id=entity_id,
                trigger=trigger,
                last_analysis_id=last.id,
            )
            return None

        analysis_id = await self.scheduler.create_and_run(entity_id, trigger)
        logger.info(
            "Re-analysis scheduled",
            entity_id=entity_id,
            trigger=trigger,
            analysis_id=analysis_id,
        )
        return analysis_id


class RecurringAnalysis:
    """Periodic bulk analysis of the catalog."""

    def __init__(
        self,
        scheduler: PipelineScheduler,
        entities: EntityStore,
        settings: Optional[Settings] = None,
    ):
        self.scheduler = scheduler
        self.entities = entities
        self.settings = settings or get_settings()

    @property
    def interval(self) -> int:
        return interval_seconds(self.settings.scheduled_analysis_frequency)

    async def sweep(self) -> list[str]:
        """Schedule analyses for the next batch of entities."""
        categories = self.settings.scheduled_analysis_categories or None
        entity_ids = await self.entities.list_ids(
            categories=categories,
            limit=self.settings.scheduled_analysis_batch_size,
        )
        scheduled = await self.scheduler.run_many(entity_ids, TriggerSource.SCHEDULED)
        logger.info(
            "Recurring sweep finished",
            candidates=len(entity_ids),
            scheduled=len(scheduled),
            categories=categories,
        )
        return scheduled

    def schedule(self, scheduler: BaseScheduler) -> Optional[Job]:
        """
        Register the sweep as a recurring job on an APScheduler scheduler.

        When scheduled analysis is disabled any existing sweep job is removed
        and None is returned. An already registered job is returned as is.
        Otherwise the first sweep runs immediately and then every
        ``interval`` seconds.
        """
        existing = scheduler.get_job(SWEEP_JOB_ID)
        if not self.settings.scheduled_analysis_enabled:
            if existing is not None:
                scheduler.remove_job(SWEEP_JOB_ID)
            logger.info("Scheduled analysis disabled")
            return None

        if existing is not None:
            return existing

        job = scheduler.add_job(
            self.sweep,
            "interval",
            seconds=self.interval,
            id=SWEEP_JOB_ID,
            next_run_time=datetime.now(timezone.utc),
            coalesce=True,
            max_instances=1,
        )
        logger.info(
            "Recurring sweep scheduled",
            frequency=self.settings.scheduled_analysis_frequency,
            interval_seconds=self.interval,
        )
        return job
