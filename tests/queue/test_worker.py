import asyncio
from typing import Any, Dict, List

import pytest

from litingest.core.errors import (
    ErrorKind,
    InvariantViolation,
    OperationTimeoutError,
    ProviderError,
)
from litingest.io.store import InMemoryProjectStore
from litingest.jobs.error_handler import ErrorHandler
from litingest.jobs.models import IngestionJob, JobKind, JobState, SearchRequest
from litingest.jobs.pipelines import Checkpoint, JobHandler
from litingest.jobs.queue import JobQueue
from litingest.jobs.worker import Worker, WorkerPool, describe_error


class ScriptedHandler(JobHandler):
    """Raises the queued errors in order, then succeeds."""

    failure_action = "search_run_failed"

    def __init__(self, errors: List[Exception]) -> None:
        super().__init__(InMemoryProjectStore())
        self.errors = list(errors)
        self.calls = 0

    async def run(self, job: IngestionJob, checkpoint: Checkpoint) -> Dict[str, Any]:
        self.calls += 1
        await checkpoint("searching", 10)
        if self.errors:
            raise self.errors.pop(0)
        await checkpoint("persisting", 90)
        return {"imported": 1}


def search_job() -> IngestionJob:
    return IngestionJob(kind=JobKind.SEARCH, request=SearchRequest(project_id="p1", query="q"))


async def run_one(handler: JobHandler, max_attempts: int = 3) -> IngestionJob:
    queue = JobQueue()
    job = search_job()
    await queue.enqueue(job)
    worker = Worker(0, queue, {JobKind.SEARCH: handler}, ErrorHandler(base_delay=0.0), max_attempts=max_attempts)
    await worker._execute_job(await queue.dequeue())
    return queue.get(job.job_id)


@pytest.mark.asyncio
async def test_worker_success():
    handler = ScriptedHandler([])
    job = await run_one(handler)
    assert job.state is JobState.COMPLETED
    assert job.result == {"imported": 1}
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_transient_error_retried_then_succeeds():
    handler = ScriptedHandler([ProviderError("flaky"), ProviderError("flaky again")])
    job = await run_one(handler, max_attempts=3)
    assert job.state is JobState.COMPLETED
    assert handler.calls == 3
    assert job.attempts == 3


@pytest.mark.asyncio
async def test_retries_exhausted():
    handler = ScriptedHandler([ProviderError("down")] * 5)
    job = await run_one(handler, max_attempts=2)
    assert job.state is JobState.FAILED
    assert job.error == "provider: down"
    assert job.error_kind == "provider"
    assert handler.calls == 2

    audit = await handler.store.audit_log("p1")
    assert [e.action for e in audit] == ["search_run_failed"]
    assert audit[0].details["error_kind"] == "provider"


@pytest.mark.asyncio
async def test_timeout_not_retried():
    handler = ScriptedHandler([OperationTimeoutError("PDF parsing timeout after 30s")])
    job = await run_one(handler)
    assert job.state is JobState.FAILED
    assert job.error_kind == "timeout"
    assert "timeout" in job.error
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_invariant_violation_fails_job():
    handler = ScriptedHandler([InvariantViolation("two unique records share a canonical hash")])
    job = await run_one(handler)
    assert job.state is JobState.FAILED
    assert job.error_kind == "invariant"
    assert handler.calls == 1


@pytest.mark.asyncio
async def test_unexpected_error_message_never_empty():
    handler = ScriptedHandler([RuntimeError()])
    job = await run_one(handler)
    assert job.state is JobState.FAILED
    assert job.error == "unknown: RuntimeError"


@pytest.mark.asyncio
async def test_missing_handler_fails_job():
    queue = JobQueue()
    job = search_job()
    await queue.enqueue(job)
    worker = Worker(0, queue, {}, ErrorHandler())
    await worker._execute_job(await queue.dequeue())
    assert queue.get(job.job_id).error_kind == "validation"


def test_describe_error():
    assert describe_error(ProviderError("x"), ErrorKind.PROVIDER) == "provider: x"
    assert describe_error(ValueError("bad"), ErrorKind.VALIDATION) == "validation: bad"


@pytest.mark.asyncio
async def test_pool_processes_all_jobs():
    queue = JobQueue()
    handler = ScriptedHandler([])
    ids = [await queue.enqueue(search_job()) for _ in range(4)]
    pool = WorkerPool(queue, {JobKind.SEARCH: handler}, ErrorHandler(base_delay=0.0), num_workers=2, poll_interval=0.05)

    await pool.start()
    assert pool.is_running()
    await asyncio.wait_for(pool.wait_until_complete(), timeout=5)
    await pool.stop(timeout=1)

    assert all(queue.get(i).state is JobState.COMPLETED for i in ids)
    assert not pool.is_running()
    assert handler.calls == 4
