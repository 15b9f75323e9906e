"""
Asynchronous ingestion jobs: provider searches and file imports.

A job moves ``pending -> running -> completed | failed``; a failed job may be
resubmitted, which puts it back to ``pending``. Callers only ever poll a
snapshot of the job.

Basic Usage:
    >>> from litingest.jobs import build_ingestion_service
    >>>
    >>> service = build_ingestion_service(settings)
    >>> async with service:
    ...     job_id = await service.submit_search("proj-1", "asthma", limit=50)
    ...     await service.wait_until_complete()
    ...     snapshot = service.poll(job_id)

Error Handling:
    - Provider, network and rate-limit failures are retried with backoff
    - A provider failing alongside a healthy one is recorded, not fatal
    - Timeouts, size limits and invalid input fail the job immediately
"""

from .error_handler import CircuitBreaker, ErrorHandler
from .models import (
    FileImportRequest,
    IngestionJob,
    JobKind,
    JobSnapshot,
    JobState,
    SearchRequest,
)
from .pipelines import FileImportJobHandler, JobHandler, SearchJobHandler
from .progress import ProgressTracker, QueueStats
from .queue import JobQueue
from .service import IngestionService, build_ingestion_service
from .worker import Worker, WorkerPool

__all__ = [
    "CircuitBreaker",
    "ErrorHandler",
    "FileImportRequest",
    "IngestionJob",
    "JobKind",
    "JobSnapshot",
    "JobState",
    "SearchRequest",
    "FileImportJobHandler",
    "JobHandler",
    "SearchJobHandler",
    "ProgressTracker",
    "QueueStats",
    "JobQueue",
    "IngestionService",
    "build_ingestion_service",
    "Worker",
    "WorkerPool",
]
