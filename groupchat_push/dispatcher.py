import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple

from .schemas import AggregateReport

logger = logging.getLogger(__name__)

FanoutJob = Callable[[], Awaitable[AggregateReport]]
ResultSink = Callable[[str, AggregateReport], Awaitable[None]]


async def log_report(job_id: str, report: AggregateReport) -> None:
    """Default result sink: log the aggregate counts and the invalid tokens."""
    summary = report.summary()
    if report.failure_count or report.invalid_tokens or report.errors:
        logger.warning(
            f"Fan-out {job_id} finished with failures. Success: {report.success_count}, "
            f"Failure: {report.failure_count}, Invalid Tokens: {len(report.invalid_tokens)}",
            extra=summary,
        )
    else:
        logger.info(f"Fan-out {job_id} finished. Success: {report.success_count}", extra=summary)


class NotificationDispatcher:
    """
    Bounded worker pool running fan-out jobs in the background.

    The message-creation flow submits a job and returns immediately. A fixed
    number of workers pull jobs from a bounded queue; when the queue is full
    the submission is rejected and logged. Every finished report goes to the
    result sink, so delivery results are observable even though nobody
    awaits them.
    """

    def __init__(self, workers: int = 4, queue_size: int = 100,
                 result_sink: Optional[ResultSink] = None):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self.workers = workers
        self.result_sink = result_sink or log_report
        self._queue: asyncio.Queue[Tuple[str, FanoutJob]] = asyncio.Queue(maxsize=queue_size)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"fanout-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info(f"Notification dispatcher started with {self.workers} workers")

    def submit(self, job_id: str, job: FanoutJob) -> bool:
        """
        Queue a fan-out job without waiting for it.

        Returns:
            bool: False if the dispatcher is saturated and the job was dropped
        """
        if not self._tasks:
            raise RuntimeError("Notification dispatcher is not running")
        try:
            self._queue.put_nowait((job_id, job))
        except asyncio.QueueFull:
            logger.warning(f"Notification dispatcher queue full, dropping fan-out {job_id}")
            return False
        return True

    async def _worker(self, n: int) -> None:
        while True:
            job_id, job = await self._queue.get()
            try:
                report = await job()
                await self.result_sink(job_id, report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Fan-out {job_id} failed in worker {n}: {str(e)}")
            finally:
                self._queue.task_done()

    async def stop(self, drain: bool = True) -> None:
        """Stop the workers, by default after every queued job has finished."""
        if not self._tasks:
            return
        if drain:
            await self._queue.join()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Notification dispatcher stopped")
