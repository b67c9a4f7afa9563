"""Pipeline orchestration module."""

from competitor_intel.pipeline.orchestrator import SyncAnalysisRunner, SyncRunResult
from competitor_intel.pipeline.scheduler import PipelineScheduler
from competitor_intel.pipeline.steps import (
    AnalyzeStep,
    SaveStep,
    SearchStep,
    Step,
    StepDependencies,
    StepOutcome,
    build_steps,
)
from competitor_intel.pipeline.task_queue import (
    InMemoryTaskQueue,
    PipelineWorker,
    Task,
    TaskQueue,
)
from competitor_intel.pipeline.triggers import AutoReanalysis, RecurringAnalysis, interval_seconds

__all__ = [
    "Step",
    "SearchStep",
    "AnalyzeStep",
    "SaveStep",
    "StepDependencies",
    "StepOutcome",
    "build_steps",
    "Task",
    "TaskQueue",
    "InMemoryTaskQueue",
    "PipelineWorker",
    "PipelineScheduler",
    "SyncAnalysisRunner",
    "SyncRunResult",
    "AutoReanalysis",
    "RecurringAnalysis",
    "interval_seconds",
]
