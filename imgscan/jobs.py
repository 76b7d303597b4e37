"""In-process job queue decoupling scan submission from execution."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt, wait_exponential

from .config import ScanConfig
from .errors import NotFoundError
from .models import PRIORITIES, Job, JobState, ScanRequest, ScanResult

logger = logging.getLogger("imgscan")

JobHandler = Callable[[ScanRequest, Callable[[int], None]], Awaitable[ScanResult]]


class JobQueue:
    """Priority queue of scan jobs drained by a fixed pool of worker tasks.

    Each job runs the handler up to ``job_attempts`` times with exponential
    backoff between attempts. Finished jobs stay inspectable.
    """

    def __init__(
        self,
        config: ScanConfig,
        handler: JobHandler,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.handler = handler
        self._sleep = sleep
        self._jobs: Dict[str, Job] = {}
        self._done: Dict[str, asyncio.Event] = {}
        self._queue: Optional["asyncio.PriorityQueue[Tuple[int, int, str]]"] = None
        self._sequence = itertools.count()
        self._workers: List["asyncio.Task[None]"] = []

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self, workers: Optional[int] = None) -> None:
        if self._workers:
            return
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        count = max(1, workers or self.config.job_workers)
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"imgscan-worker-{index}")
            for index in range(count)
        ]
        logger.debug("Started %d queue workers", count)

    async def stop(self) -> None:
        workers, self._workers = self._workers, []
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def add(self, request: ScanRequest) -> Job:
        if self._queue is None:
            self._queue = asyncio.PriorityQueue()
        job = Job(id=uuid.uuid4().hex, request=request, created_at=time.time())
        self._jobs[job.id] = job
        self._done[job.id] = asyncio.Event()
        rank = PRIORITIES.get(request.options.priority, PRIORITIES["normal"])
        await self._queue.put((rank, next(self._sequence), job.id))
        logger.info("Job %s queued for %s", job.id, request.url)
        return job

    def get(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def get_status(self, job_id: str) -> Dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            return {"id": job_id, "status": JobState.NOT_FOUND.value}
        return job.status()

    async def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        await asyncio.wait_for(self._done[job_id].wait(), timeout)
        return job

    async def join(self) -> None:
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            _rank, _seq, job_id = await self._queue.get()
            try:
                await self._execute(self._jobs[job_id])
            finally:
                self._queue.task_done()

    async def _execute(self, job: Job) -> None:
        job.state = JobState.ACTIVE
        job.started_at = time.time()

        def progress(value: int) -> None:
            job.progress = value

        max_attempts = max(1, self.config.job_attempts)

        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "Job %s attempt %d/%d failed: %s",
                job.id,
                state.attempt_number,
                max_attempts,
                state.outcome.exception() if state.outcome else None,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=self.config.job_backoff),
            sleep=self._sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    job.attempts += 1
                    job.result = await self.handler(job.request, progress)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            job.state = JobState.FAILED
            job.error = f"{type(exc).__name__}: {exc}"
            logger.error("Job %s failed after %d attempts: %s", job.id, job.attempts, job.error)
        else:
            job.state = JobState.COMPLETED
            job.progress = 100
            logger.info("Job %s completed", job.id)
        job.finished_at = time.time()
        self._done[job.id].set()
