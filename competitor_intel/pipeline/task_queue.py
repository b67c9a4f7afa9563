"""
Task queue and worker that drive the pipeline asynchronously.

Every hand-off between steps is a queued ``Task(step, analysis_id)``. The
queue tracks which analysis ids currently have a queued or running task and
refuses a second one, so one id is only ever processed by one task at a time.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Mapping, Optional

from competitor_intel.models.schemas import PipelineStep
from competitor_intel.pipeline.steps import Step, StepOutcome
from competitor_intel.utils.errors import InvalidStateError
from competitor_intel.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Task:
    """One unit of queued work."""
    step: PipelineStep
    analysis_id: str


# =============================================================================
# Queue Abstraction
# =============================================================================

class TaskQueue(ABC):
    """Abstract interface for step dispatch."""

    @abstractmethod
    async def enqueue(self, task: Task) -> bool:
        """Queue a task. Returns False, without queueing, if the id is already active."""

    @abstractmethod
    def is_active(self, analysis_id: str) -> bool:
        """Whether the id has a queued or running task."""

    @abstractmethod
    async def get(self) -> Task:
        """Wait for the next task."""

    @abstractmethod
    def get_nowait(self) -> Optional[Task]:
        """Next task, or None when the queue is empty."""

    @abstractmethod
    async def complete(self, task: Task, next_task: Optional[Task] = None) -> None:
        """
        Finish ``task``. When ``next_task`` is given it is queued for the
        same id without releasing ownership in between.
        """


class InMemoryTaskQueue(TaskQueue):
    """asyncio.Queue based queue for a single process."""

    def __init__(self):
        self._queue: asyncio.Queue[Task] = asyncio.Queue()
        self._active: set[str] = set()

    def __len__(self) -> int:
        return self._queue.qsize()

    async def enqueue(self, task: Task) -> bool:
        if task.analysis_id in self._active:
            logger.debug(
                "Task already active, not queued",
                analysis_id=task.analysis_id,
                step=task.step.value,
            )
            return False
        self._active.add(task.analysis_id)
        self._queue.put_nowait(task)
        logger.debug("Task queued", analysis_id=task.analysis_id, step=task.step.value)
        return True

    def is_active(self, analysis_id: str) -> bool:
        return analysis_id in self._active

    async def get(self) -> Task:
        return await self._queue.get()

    def get_nowait(self) -> Optional[Task]:
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    async def complete(self, task: Task, next_task: Optional[Task] = None) -> None:
        self._queue.task_done()
        if next_task is not None:
            if next_task.analysis_id != task.analysis_id:
                raise InvalidStateError("A step can only hand off to its own analysis")
            self._queue.put_nowait(next_task)
            logger.debug(
                "Task handed off",
                analysis_id=next_task.analysis_id,
                step=next_task.step.value,
            )
            return
        self._active.discard(task.analysis_id)


# =============================================================================
# Worker
# =============================================================================

class PipelineWorker:
    """
    Pulls tasks off the queue and runs the matching step.

    Example:
        >>> worker = PipelineWorker(queue, build_steps(deps))
        >>> await scheduler.create_and_run("42")
        >>> outcomes = await worker.run_until_idle()
    """

    def __init__(self, queue: TaskQueue, steps: Mapping[PipelineStep, Step]):
        self.queue = queue
        self.steps = dict(steps)
        self._running: list[asyncio.Task] = []

    async def process(self, task: Task) -> StepOutcome:
        """Run one task and queue its successor."""
        step = self.steps.get(task.step)
        if step is None:
            await self.queue.complete(task)
            raise InvalidStateError(f"No step registered for {task.step.value}")

        try:
            outcome = await step.run(task.analysis_id)
        except BaseException:
            await self.queue.complete(task)
            raise

        next_task = None
        if outcome.success and outcome.next_step is not None:
            next_task = Task(step=outcome.next_step, analysis_id=task.analysis_id)
        await self.queue.complete(task, next_task)
        return outcome

    async def run_until_idle(self) -> list[StepOutcome]:
        """Drain the queue, including tasks queued while draining."""
        outcomes = []
        while (task := self.queue.get_nowait()) is not None:
            outcomes.append(await self.process(task))
        return outcomes

    async def serve(self) -> None:
        """Process tasks forever. Cancel the awaiting task to stop."""
        while True:
            task = await self.queue.get()
            try:
                await self.process(task)
            except InvalidStateError as e:
                logger.error("Task dropped", analysis_id=task.analysis_id, error=e.message)
            except Exception as e:
                logger.exception(
                    "Task crashed",
                    analysis_id=task.analysis_id,
                    step=task.step.value,
                    error=str(e),
                )

    def start(self, concurrency: int = 1) -> None:
        """Spawn ``concurrency`` background consumers."""
        for _ in range(concurrency):
            self._running.append(asyncio.create_task(self.serve()))

    async def stop(self) -> None:
        for running in self._running:
            running.cancel()
        await asyncio.gather(*self._running, return_exceptions=True)
        self._running.clear()
