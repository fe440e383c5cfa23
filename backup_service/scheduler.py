"""
Bounded-concurrency scheduler for async tasks.

A fixed number of worker coroutines pull tasks from one FIFO queue, so at
most ``max_concurrent`` tasks run at any time and tasks start in the order
they were submitted.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, List, Optional, Sequence, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

ScheduledTask = Callable[[], Awaitable[T]]


@dataclass
class TaskOutcome(Generic[T]):
    """Outcome of one scheduled task.

    Attributes:
        index: Position of the task in the submitted sequence
        result: Value returned by the task
        error: Exception raised by the task, if any
    """

    index: int
    result: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class BoundedScheduler:
    """Runs async tasks with at most ``max_concurrent`` in flight.

    Usage:
        scheduler = BoundedScheduler(max_concurrent=5)
        outcomes = await scheduler.run([lambda: upload(a), lambda: upload(b)])
    """

    def __init__(self, max_concurrent: int = 5):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._active = 0
        self._peak_active = 0
        self._completed = 0
        self._total = 0

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_count(self) -> int:
        """Number of tasks currently running."""
        return self._active

    @property
    def peak_active(self) -> int:
        """Highest number of tasks that ran at the same time."""
        return self._peak_active

    @property
    def completed_count(self) -> int:
        """Number of tasks finished, successfully or not."""
        return self._completed

    async def run(self, tasks: Sequence[ScheduledTask]) -> List[TaskOutcome]:
        """Run every task and wait until all of them have finished.

        A task that raises does not stop the others; its exception is kept
        in the matching TaskOutcome.

        Args:
            tasks: Zero-argument callables returning awaitables

        Returns:
            One TaskOutcome per task, in submission order
        """
        self._active = 0
        self._peak_active = 0
        self._completed = 0
        self._total = len(tasks)
        if not tasks:
            return []

        queue: "asyncio.Queue[Tuple[int, ScheduledTask]]" = asyncio.Queue()
        for index, task in enumerate(tasks):
            queue.put_nowait((index, task))

        outcomes: List[Optional[TaskOutcome]] = [None] * len(tasks)
        worker_count = min(self._max_concurrent, len(tasks))
        workers = [
            asyncio.create_task(self._worker(queue, outcomes), name=f"scheduler-worker-{i}")
            for i in range(worker_count)
        ]
        logger.debug(f"Scheduling {len(tasks)} tasks on {worker_count} workers")

        try:
            await asyncio.gather(*workers)
        finally:
            for worker in workers:
                if not worker.done():
                    worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        return outcomes

    async def _worker(self, queue: "asyncio.Queue[Tuple[int, ScheduledTask]]",
                      outcomes: List[Optional[TaskOutcome]]) -> None:
        while True:
            try:
                index, task = queue.get_nowait()
            except asyncio.QueueEmpty:
                return

            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            try:
                result = await task()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.debug(f"Task {index} failed: {e!r}")
                outcomes[index] = TaskOutcome(index=index, error=e)
                self._completed += 1
            else:
                outcomes[index] = TaskOutcome(index=index, result=result)
                self._completed += 1
            finally:
                self._active -= 1
                queue.task_done()

            logger.debug(f"{self._completed}/{self._total} tasks finished")


async def run_bounded(tasks: Sequence[ScheduledTask],
                      max_concurrent: int = 5) -> List[TaskOutcome]:
    """Run ``tasks`` with at most ``max_concurrent`` in flight."""
    return await BoundedScheduler(max_concurrent).run(tasks)
