"""Worker pool executing ingestion jobs concurrently."""

import asyncio
from typing import Dict, List, Optional

from ..core.errors import ErrorKind, IngestError, InvariantViolation
from ..utils.logging import get_logger
from .error_handler import ErrorHandler
from .models import IngestionJob, JobKind
from .pipelines import JobHandler
from .queue import JobQueue

logger = get_logger(__name__)


def describe_error(error: BaseException, kind: ErrorKind) -> str:
    """Caller-facing ``kind: message`` text stored on a failed job."""
    if isinstance(error, IngestError):
        return error.describe()
    return f"{kind.value}: {str(error) or type(error).__name__}"


class Worker:
    """
    Single worker that takes jobs from the queue and runs them to completion.

    Transient failures (provider, network, rate limit) are retried with
    backoff up to ``max_attempts``; anything else fails the job on the first
    attempt. A job is only ever transitioned by the worker that dequeued it.

    Attributes:
        worker_id: Unique worker identifier
        queue: Job queue to pull from
        handlers: Handler per job kind
        error_handler: Shared error classifier and circuit breakers
        current_job: Currently executing job
    """

    def __init__(
        self,
        worker_id: int,
        queue: JobQueue,
        handlers: Dict[JobKind, JobHandler],
        error_handler: ErrorHandler,
        max_attempts: int = 3,
        poll_interval: float = 1.0,
    ):
        self.worker_id = worker_id
        self.queue = queue
        self.handlers = handlers
        self.error_handler = error_handler
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.current_job: Optional[IngestionJob] = None
        self._stop_event = asyncio.Event()

    async def run(self) -> None:
        """Worker main loop."""
        logger.info(f"Worker {self.worker_id} started")

        while not self._stop_event.is_set():
            try:
                job = await self.queue.dequeue(timeout=self.poll_interval)
                if job is None:
                    continue

                self.current_job = job
                await self._execute_job(job)
                self.current_job = None

            except asyncio.CancelledError:
                logger.info(f"Worker {self.worker_id} cancelled")
                break
            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}", exc_info=True)
                if self.current_job and not self.current_job.is_terminal:
                    await self.queue.fail(
                        self.current_job.job_id, f"unknown: worker error: {e}", ErrorKind.UNKNOWN
                    )
                self.current_job = None

        logger.info(f"Worker {self.worker_id} stopped")

    async def _execute_job(self, job: IngestionJob) -> None:
        handler = self.handlers.get(job.kind)
        if handler is None:
            await self.queue.fail(job.job_id, f"validation: no handler for {job.kind.value} jobs", ErrorKind.VALIDATION)
            return

        async def checkpoint(step: str, pct: int) -> None:
            await self.queue.checkpoint(job.job_id, step, pct)

        logger.info(
            f"Worker {self.worker_id} executing job {job.job_id[:8]} ({job.kind.value})",
            extra={"job_id": job.job_id, "project_id": job.project_id},
        )

        while True:
            attempt = await self.queue.record_attempt(job.job_id)
            try:
                result = await handler.run(job, checkpoint)
            except InvariantViolation as e:
                logger.critical(
                    f"Job {job.job_id[:8]} hit an internal invariant violation: {e}",
                    extra={"job_id": job.job_id, "context": e.details},
                    exc_info=True,
                )
                await self._fail(job, handler, e, ErrorKind.INVARIANT)
                return
            except Exception as e:
                kind = self.error_handler.classify_error(e)
                logger.warning(
                    f"Job {job.job_id[:8]} attempt {attempt}/{self.max_attempts} failed: "
                    f"{kind.value} - {str(e)[:200]}",
                    extra={"job_id": job.job_id, "error_kind": kind.value},
                )
                if not self.error_handler.should_retry(kind, attempt, self.max_attempts):
                    await self._fail(job, handler, e, kind)
                    return
                backoff = self.error_handler.calculate_backoff(kind, attempt)
                logger.info(
                    f"Job {job.job_id[:8]} retrying in {backoff:.1f}s "
                    f"(attempt {attempt + 1}/{self.max_attempts})"
                )
                await asyncio.sleep(backoff)
                continue

            await self.queue.complete(job.job_id, result)
            logger.info(
                f"Job {job.job_id[:8]} completed (attempt {attempt}/{self.max_attempts})",
                extra={"job_id": job.job_id},
            )
            return

    async def _fail(self, job: IngestionJob, handler: JobHandler, error: Exception, kind: ErrorKind) -> None:
        message = describe_error(error, kind)
        await self.queue.fail(job.job_id, message, kind)
        try:
            await handler.on_failure(job, message, kind)
        except Exception as e:
            logger.error(f"Failed to record failure audit for job {job.job_id[:8]}: {e}", exc_info=True)

    def stop(self) -> None:
        """Signal worker to stop."""
        self._stop_event.set()


class WorkerPool:
    """
    Pool of workers that process jobs concurrently.

    Concurrency across jobs is bounded by ``num_workers``, which should be
    tuned to the providers' rate limits rather than CPU count.

    Example:
        >>> pool = WorkerPool(queue, handlers, ErrorHandler(), num_workers=2)
        >>> await pool.start()
        >>> await pool.wait_until_complete()
        >>> await pool.stop()
    """

    def __init__(
        self,
        queue: JobQueue,
        handlers: Dict[JobKind, JobHandler],
        error_handler: ErrorHandler,
        num_workers: int = 2,
        max_attempts: int = 3,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.handlers = handlers
        self.error_handler = error_handler
        self.num_workers = num_workers
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval

        self.workers: List[Worker] = []
        self.worker_tasks: List[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        """Start all workers."""
        if self._running:
            logger.warning("Worker pool already running")
            return

        logger.info(f"Starting worker pool with {self.num_workers} workers")
        for i in range(self.num_workers):
            worker = Worker(
                worker_id=i,
                queue=self.queue,
                handlers=self.handlers,
                error_handler=self.error_handler,
                max_attempts=self.max_attempts,
                poll_interval=self.poll_interval,
            )
            self.workers.append(worker)
            self.worker_tasks.append(asyncio.create_task(worker.run()))

        self._running = True
        logger.info("Worker pool started")

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop all workers, cancelling any still busy after ``timeout`` seconds."""
        if not self._running:
            return

        logger.info("Stopping worker pool...")
        for worker in self.workers:
            worker.stop()

        try:
            await asyncio.wait_for(
                asyncio.gather(*self.worker_tasks, return_exceptions=True),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Worker pool stop timed out, cancelling tasks")
            for task in self.worker_tasks:
                task.cancel()

        self.workers = []
        self.worker_tasks = []
        self._running = False
        logger.info("Worker pool stopped")

    def is_running(self) -> bool:
        return self._running

    def busy_workers(self) -> int:
        return sum(1 for w in self.workers if w.current_job is not None)

    async def wait_until_complete(self, check_interval: float = 0.05) -> None:
        """Wait until no job is pending and no worker is busy."""
        while True:
            if await self.queue.size() == 0 and self.busy_workers() == 0:
                logger.info("All jobs completed")
                return
            await asyncio.sleep(check_interval)
