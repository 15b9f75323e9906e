"""High-level API for submitting and polling ingestion jobs.

Example:
    >>> service = build_ingestion_service(settings)
    >>> async with service:
    ...     job_id = await service.submit_search("proj-1", "asthma AND children", limit=100)
    ...     await service.wait_until_complete()
    ...     print(service.poll(job_id).state)
"""

from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import ValidationError

from ..config.settings import Settings
from ..core.errors import InvalidInputError, JobStateError
from ..extraction.documents import DocumentReferenceExtractor, TextExtractor
from ..io.cache import CacheBackend, InMemoryCache
from ..io.parsers import detect_format
from ..io.store import InMemoryProjectStore, ProjectStore
from ..search.base import SearchFilters, SearchProvider
from ..search.registry import build_providers
from ..utils.logging import get_logger
from .error_handler import ErrorHandler
from .models import FileImportRequest, IngestionJob, JobKind, JobSnapshot, SearchRequest
from .pipelines import FileImportJobHandler, JobHandler, SearchJobHandler
from .queue import JobQueue
from .worker import WorkerPool

logger = get_logger(__name__)


class IngestionService:
    """Owns the job queue and worker pool; every collaborator is passed in."""

    def __init__(
        self,
        settings: Settings,
        queue: JobQueue,
        handlers: Dict[JobKind, JobHandler],
        error_handler: ErrorHandler,
        providers: Sequence[SearchProvider] = (),
        cache: Optional[CacheBackend] = None,
        store: Optional[ProjectStore] = None,
    ) -> None:
        self.settings = settings
        self.queue = queue
        self.handlers = handlers
        self.error_handler = error_handler
        self.providers = list(providers)
        self.cache = cache
        self.store = store
        self.pool = WorkerPool(
            queue=queue,
            handlers=handlers,
            error_handler=error_handler,
            num_workers=settings.worker_count,
            max_attempts=settings.job_max_attempts,
            poll_interval=settings.worker_poll_interval,
        )

    async def submit_search(
        self,
        project_id: str,
        query: str,
        limit: int = 50,
        filters: Optional[SearchFilters] = None,
        providers: Optional[List[str]] = None,
    ) -> str:
        """Queue a provider search and return its job id."""
        try:
            request = SearchRequest(
                project_id=project_id, query=query, limit=limit, filters=filters, providers=providers
            )
        except ValidationError as e:
            raise InvalidInputError(f"Invalid search request: {e}") from e
        return await self.queue.enqueue(IngestionJob(kind=JobKind.SEARCH, request=request))

    async def submit_file_import(self, project_id: str, filename: str, content: bytes) -> str:
        """Queue a file import; unsupported extensions are rejected immediately."""
        detect_format(filename)
        try:
            request = FileImportRequest(project_id=project_id, filename=filename, content=content)
        except ValidationError as e:
            raise InvalidInputError(f"Invalid import request: {e}") from e
        return await self.queue.enqueue(IngestionJob(kind=JobKind.FILE_IMPORT, request=request))

    def poll(self, job_id: str) -> JobSnapshot:
        snapshot = self.queue.snapshot(job_id)
        if snapshot is None:
            raise JobStateError(f"Unknown job {job_id}")
        return snapshot

    async def resubmit(self, job_id: str) -> None:
        await self.queue.resubmit(job_id)

    def stale_jobs(self) -> List[JobSnapshot]:
        return [job.snapshot() for job in self.queue.find_stale()]

    async def start(self) -> None:
        await self.pool.start()

    async def stop(self, timeout: float = 30.0) -> None:
        await self.pool.stop(timeout=timeout)

    async def wait_until_complete(self) -> None:
        await self.pool.wait_until_complete()

    async def close(self) -> None:
        """Stop workers and release providers, cache and store."""
        await self.stop()
        for provider in self.providers:
            await provider.close()
        if self.cache is not None:
            await self.cache.close()
        if self.store is not None:
            await self.store.close()

    async def __aenter__(self) -> "IngestionService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


def build_ingestion_service(
    settings: Settings,
    providers: Optional[Mapping[str, SearchProvider]] = None,
    store: Optional[ProjectStore] = None,
    cache: Optional[CacheBackend] = None,
    pdf_text: Optional[TextExtractor] = None,
    docx_text: Optional[TextExtractor] = None,
    state_file: Optional[Path] = None,
) -> IngestionService:
    """Wire a service from settings, building defaults for any collaborator not given."""
    if providers is None:
        providers = {p.name: p for p in build_providers(settings.search_providers, settings)}
    store = store or InMemoryProjectStore()
    cache = cache or InMemoryCache()
    error_handler = ErrorHandler(settings.retry_base_delay, settings.retry_max_delay)
    extractor = DocumentReferenceExtractor(settings, pdf_text=pdf_text, docx_text=docx_text)
    handlers: Dict[JobKind, JobHandler] = {
        JobKind.SEARCH: SearchJobHandler(settings, providers, store, cache, error_handler),
        JobKind.FILE_IMPORT: FileImportJobHandler(settings, store, extractor),
    }
    queue = JobQueue(state_file=state_file, stale_after_seconds=settings.job_stale_after_seconds)
    logger.info(
        "Ingestion service configured",
        extra={"providers": sorted(providers), "workers": settings.worker_count},
    )
    return IngestionService(
        settings,
        queue,
        handlers,
        error_handler,
        providers=list(providers.values()),
        cache=cache,
        store=store,
    )
