"""
Unit tests for the task queue, worker, scheduler and automatic triggers.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.exc import OperationalError

from competitor_intel.models.schemas import (
    AnalysisError,
    AnalysisRecord,
    AnalysisStatus,
    Entity,
    PipelineStep,
)
from competitor_intel.pipeline.task_queue import InMemoryTaskQueue, PipelineWorker, Task
from competitor_intel.pipeline.triggers import (
    FREQUENCY_SECONDS,
    SWEEP_JOB_ID,
    AutoReanalysis,
    RecurringAnalysis,
    interval_seconds,
)
from competitor_intel.utils.errors import InvalidStateError, NotFoundError


async def failed_record(store, entity_id="42"):
    record = AnalysisRecord(
        target_entity_id=entity_id,
        status="failed",
        progress=1,
        error=AnalysisError(message="Search returned no results", trace="Traceback ..."),
    )
    await store.create(record)
    return record.id


async def wait_until_released(task_queue, analysis_id, attempts=200):
    for _ in range(attempts):
        if not task_queue.is_active(analysis_id):
            return
        await asyncio.sleep(0.01)


# =============================================================================
# Task Queue
# =============================================================================

class TestInMemoryTaskQueue:

    @pytest.mark.asyncio
    async def test_duplicate_enqueue_is_noop(self):
        queue = InMemoryTaskQueue()

        assert await queue.enqueue(Task(PipelineStep.SEARCHING, "a1")) is True
        assert await queue.enqueue(Task(PipelineStep.SEARCHING, "a1")) is False
        assert await queue.enqueue(Task(PipelineStep.ANALYZING, "a1")) is False
        assert len(queue) == 1

    @pytest.mark.asyncio
    async def test_complete_releases_ownership(self):
        queue = InMemoryTaskQueue()
        await queue.enqueue(Task(PipelineStep.SEARCHING, "a1"))

        task = queue.get_nowait()
        assert queue.is_active("a1")
        await queue.complete(task)

        assert not queue.is_active("a1")
        assert queue.get_nowait() is None

    @pytest.mark.asyncio
    async def test_handoff_keeps_ownership(self):
        queue = InMemoryTaskQueue()
        await queue.enqueue(Task(PipelineStep.SEARCHING, "a1"))

        task = queue.get_nowait()
        await queue.complete(task, Task(PipelineStep.ANALYZING, "a1"))

        assert queue.is_active("a1")
        assert queue.get_nowait() == Task(PipelineStep.ANALYZING, "a1")

    @pytest.mark.asyncio
    async def test_handoff_to_other_analysis_rejected(self):
        queue = InMemoryTaskQueue()
        await queue.enqueue(Task(PipelineStep.SEARCHING, "a1"))

        with pytest.raises(InvalidStateError):
            await queue.complete(queue.get_nowait(), Task(PipelineStep.ANALYZING, "a2"))


# =============================================================================
# Worker
# =============================================================================

class TestPipelineWorker:

    @pytest.mark.asyncio
    async def test_runs_all_steps(self, scheduler, worker, analysis_store, task_queue):
        analysis_id = await scheduler.create_and_run("42")

        outcomes = await worker.run_until_idle()

        assert [o.step for o in outcomes] == [
            PipelineStep.SEARCHING,
            PipelineStep.ANALYZING,
            PipelineStep.SAVING,
        ]
        assert all(o.success for o in outcomes)
        assert (await analysis_store.get(analysis_id)).status == AnalysisStatus.COMPLETED
        assert not task_queue.is_active(analysis_id)

    @pytest.mark.asyncio
    async def test_failure_stops_chain(self, scheduler, worker, deps, make_search_provider, task_queue):
        deps.search = make_search_provider(hits=[])
        analysis_id = await scheduler.create_and_run("42")

        outcomes = await worker.run_until_idle()

        assert len(outcomes) == 1
        assert outcomes[0].success is False
        assert not task_queue.is_active(analysis_id)

    @pytest.mark.asyncio
    async def test_unregistered_step(self, task_queue, steps):
        worker = PipelineWorker(task_queue, {PipelineStep.SEARCHING: steps[PipelineStep.SEARCHING]})
        await task_queue.enqueue(Task(PipelineStep.SAVING, "a1"))

        with pytest.raises(InvalidStateError):
            await worker.process(task_queue.get_nowait())
        assert not task_queue.is_active("a1")

    @pytest.mark.asyncio
    async def test_background_consumers(self, scheduler, worker, analysis_store, task_queue):
        worker.start(concurrency=2)
        try:
            analysis_id = await scheduler.create_and_run("42")
            await wait_until_released(task_queue, analysis_id)
        finally:
            await worker.stop()

        assert (await analysis_store.get(analysis_id)).status == AnalysisStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_consumer_survives_store_error(
        self, scheduler, worker, entity_store, analysis_store, task_queue
    ):
        entity_store.upsert(Entity(id="7", name="Gadget", category_terms=["Tools"]))
        real_get = analysis_store.get
        failed_loads = []

        async def flaky_get(analysis_id):
            if not failed_loads:
                failed_loads.append(analysis_id)
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return await real_get(analysis_id)

        worker.start(concurrency=1)
        try:
            with patch.object(analysis_store, "get", side_effect=flaky_get):
                first = await scheduler.create_and_run("42")
                await wait_until_released(task_queue, first)
                second = await scheduler.create_and_run("7")
                await wait_until_released(task_queue, second)
            assert not any(consumer.done() for consumer in worker._running)
        finally:
            await worker.stop()

        assert failed_loads == [first]
        assert (await analysis_store.get(first)).status == AnalysisStatus.PENDING
        assert (await analysis_store.get(second)).status == AnalysisStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_consumer_survives_crashing_step(
        self, scheduler, worker, entity_store, analysis_store, task_queue
    ):
        entity_store.upsert(Entity(id="7", name="Gadget", category_terms=["Tools"]))
        search = worker.steps[PipelineStep.SEARCHING]

        worker.start(concurrency=1)
        try:
            with patch.object(search, "run", AsyncMock(side_effect=RuntimeError("boom"))):
                first = await scheduler.create_and_run("42")
                await wait_until_released(task_queue, first)
            second = await scheduler.create_and_run("7")
            await wait_until_released(task_queue, second)
        finally:
            await worker.stop()

        assert (await analysis_store.get(second)).status == AnalysisStatus.COMPLETED


# =============================================================================
# Scheduler
# =============================================================================

class TestPipelineScheduler:

    @pytest.mark.asyncio
    async def test_create_and_run(self, scheduler, analysis_store, task_queue):
        analysis_id = await scheduler.create_and_run("42")

        record = await analysis_store.get(analysis_id)
        assert record.status == AnalysisStatus.PENDING
        assert record.current_step == PipelineStep.NONE
        assert record.trigger_source == "manual"
        assert task_queue.is_active(analysis_id)
        assert task_queue.get_nowait() == Task(PipelineStep.SEARCHING, analysis_id)

    @pytest.mark.asyncio
    async def test_unknown_entity(self, scheduler, task_queue):
        with pytest.raises(NotFoundError):
            await scheduler.create_and_run("99")
        assert len(task_queue) == 0

    @pytest.mark.asyncio
    async def test_in_flight_analysis_reused(self, scheduler, task_queue):
        first = await scheduler.create_and_run("42")
        second = await scheduler.create_and_run("42")

        assert first == second
        assert len(task_queue) == 1

    @pytest.mark.asyncio
    async def test_new_analysis_after_completion(self, scheduler, worker):
        first = await scheduler.create_and_run("42")
        await worker.run_until_idle()

        assert await scheduler.create_and_run("42") != first

    @pytest.mark.asyncio
    async def test_retry_requires_failed(self, scheduler):
        analysis_id = await scheduler.create_and_run("42")

        with pytest.raises(InvalidStateError, match="not in Failed state"):
            await scheduler.retry(analysis_id)

    @pytest.mark.asyncio
    async def test_retry_unknown(self, scheduler):
        with pytest.raises(NotFoundError):
            await scheduler.retry("missing")

    @pytest.mark.asyncio
    async def test_retry_resets_record(self, scheduler, analysis_store, task_queue):
        analysis_id = await failed_record(analysis_store)

        await scheduler.retry(analysis_id)

        record = await analysis_store.get(analysis_id)
        assert record.status == AnalysisStatus.PENDING
        assert record.current_step == PipelineStep.NONE
        assert record.progress == 0
        assert record.error is None
        assert task_queue.get_nowait() == Task(PipelineStep.SEARCHING, analysis_id)

    @pytest.mark.asyncio
    async def test_retry_while_task_active_is_noop(self, scheduler, analysis_store, task_queue):
        analysis_id = await failed_record(analysis_store)
        await task_queue.enqueue(Task(PipelineStep.SEARCHING, analysis_id))

        await scheduler.retry(analysis_id)

        record = await analysis_store.get(analysis_id)
        assert record.status == AnalysisStatus.FAILED
        assert len(task_queue) == 1

    @pytest.mark.asyncio
    async def test_get_progress(self, scheduler, analysis_store):
        analysis_id = await failed_record(analysis_store)

        report = await scheduler.get_progress(analysis_id)

        assert report.status == AnalysisStatus.FAILED
        assert report.progress == 1
        assert report.total_steps == 3
        assert report.percentage == 33
        assert report.error == "Search returned no results"

    @pytest.mark.asyncio
    async def test_run_many_skips_failures(self, scheduler, entity_store, analysis_store):
        entity_store.upsert(Entity(id="7", name="Gadget"))

        scheduled = await scheduler.run_many(["42", "99", "7"])

        assert len(scheduled) == 2
        records = [await analysis_store.get(i) for i in scheduled]
        assert [r.target_entity_id for r in records] == ["42", "7"]
        assert all(r.trigger_source == "bulk" for r in records)


# =============================================================================
# Triggers
# =============================================================================

def test_interval_seconds():
    assert interval_seconds("daily") == 86400
    assert interval_seconds("monthly") == FREQUENCY_SECONDS["monthly"]
    assert interval_seconds(None) == FREQUENCY_SECONDS["weekly"]
    assert interval_seconds("hourly") == FREQUENCY_SECONDS["weekly"]


class TestAutoReanalysis:

    @pytest.fixture
    def auto(self, scheduler, analysis_store, settings):
        settings = settings.model_copy(update={
            "auto_reanalysis_triggers": ["price_change"],
            "auto_reanalysis_cooldown_hours": 24,
        })
        return AutoReanalysis(scheduler, analysis_store, settings)

    @pytest.mark.asyncio
    async def test_enabled_trigger_schedules(self, auto, analysis_store):
        analysis_id = await auto.on_event("42", "price_change")

        record = await analysis_store.get(analysis_id)
        assert record.trigger_source == "price_change"

    @pytest.mark.asyncio
    async def test_disabled_trigger_ignored(self, auto):
        assert await auto.on_event("42", "stock_change") is None

    @pytest.mark.asyncio
    async def test_non_reanalysis_trigger_rejected(self, auto):
        with pytest.raises(ValueError):
            await auto.on_event("42", "manual")

    @pytest.mark.asyncio
    async def test_cooldown(self, auto, worker):
        first = await auto.on_event("42", "price_change")
        await worker.run_until_idle()

        assert await auto.on_event("42", "price_change") is None

        later = datetime.now(timezone.utc) + timedelta(hours=25)
        second = await auto.on_event("42", "price_change", now=later)
        assert second is not None
        assert second != first


class TestRecurringAnalysis:

    @pytest.mark.asyncio
    async def test_sweep_filters_and_batches(self, scheduler, entity_store, analysis_store, settings):
        entity_store.upsert(Entity(id="7", name="Gadget", category_terms=["Electronics"]))
        entity_store.upsert(Entity(id="8", name="Saw", category_terms=["tools"]))
        entity_store.upsert(Entity(id="9", name="Drill", category_terms=["Tools"]))
        settings = settings.model_copy(update={
            "scheduled_analysis_categories": ["Tools"],
            "scheduled_analysis_batch_size": 2,
            "scheduled_analysis_frequency": "daily",
        })
        recurring = RecurringAnalysis(scheduler, entity_store, settings)

        scheduled = await recurring.sweep()

        records = [await analysis_store.get(i) for i in scheduled]
        assert [r.target_entity_id for r in records] == ["42", "8"]
        assert all(r.trigger_source == "scheduled" for r in records)
        assert recurring.interval == 86400

    @pytest.mark.asyncio
    async def test_schedule_registers_interval_job(self, scheduler, entity_store, settings):
        settings = settings.model_copy(update={
            "scheduled_analysis_enabled": True,
            "scheduled_analysis_frequency": "daily",
        })
        recurring = RecurringAnalysis(scheduler, entity_store, settings)
        sweeper = AsyncIOScheduler()

        job = recurring.schedule(sweeper)

        assert job.id == SWEEP_JOB_ID
        assert job.func == recurring.sweep
        assert job.trigger.interval == timedelta(seconds=86400)
        assert recurring.schedule(sweeper) is job
        assert len(sweeper.get_jobs()) == 1

    @pytest.mark.asyncio
    async def test_schedule_skipped_when_disabled(self, scheduler, entity_store, settings):
        recurring = RecurringAnalysis(scheduler, entity_store, settings)
        sweeper = AsyncIOScheduler()

        assert recurring.schedule(sweeper) is None
        assert sweeper.get_jobs() == []

    @pytest.mark.asyncio
    async def test_disabling_removes_existing_job(self, scheduler, entity_store, settings):
        sweeper = AsyncIOScheduler()
        enabled = settings.model_copy(update={"scheduled_analysis_enabled": True})
        RecurringAnalysis(scheduler, entity_store, enabled).schedule(sweeper)

        RecurringAnalysis(scheduler, entity_store, settings).schedule(sweeper)

        assert sweeper.get_job(SWEEP_JOB_ID) is None
