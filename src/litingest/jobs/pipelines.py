"""Job handlers: provider search and file import.

Each handler turns one job request into records, deduplicates them, drops
those already in the project, and persists the rest, reporting progress
through ordered checkpoints. Handlers raise on job-level failure; the worker
owning the job translates the exception into the job's ``failed`` state.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..config.settings import Settings
from ..core.errors import ErrorKind, InvalidInputError, OperationTimeoutError, ProviderError
from ..core.models import NormalizedRef
from ..dedup.deduplicator import Deduplicator
from ..dedup.matcher import CandidateMatcher
from ..extraction.documents import DocumentReferenceExtractor
from ..io.cache import CacheBackend, ProviderRecordCache
from ..io.parsers import STRUCTURED_FORMATS, detect_format, parse_import_file
from ..io.store import ProjectStore
from ..search.base import ProviderSearchResult, SearchProvider
from ..utils.logging import get_logger
from .error_handler import ErrorHandler
from .models import FileImportRequest, IngestionJob, SearchRequest

logger = get_logger(__name__)

MB = 1024 * 1024

# (step name, percent) -> awaited durable write
Checkpoint = Callable[[str, int], Awaitable[None]]


class JobHandler(ABC):
    """Runs one kind of job end to end."""

    failure_action: str = "job_failed"

    def __init__(
        self,
        store: ProjectStore,
        deduplicator: Optional[Deduplicator] = None,
        matcher: Optional[CandidateMatcher] = None,
    ) -> None:
        self.store = store
        self.deduplicator = deduplicator or Deduplicator()
        self.matcher = matcher or CandidateMatcher()

    @abstractmethod
    async def run(self, job: IngestionJob, checkpoint: Checkpoint) -> Dict[str, Any]:
        raise NotImplementedError

    async def on_failure(self, job: IngestionJob, message: str, kind: ErrorKind) -> None:
        """Record a permanent failure in the project's audit log."""
        await self.store.append_audit(
            job.project_id,
            self.failure_action,
            {"job_id": job.job_id, "error": message, "error_kind": kind.value, "attempts": job.attempts},
        )

    async def _match_existing(
        self, project_id: str, unique: Sequence[NormalizedRef]
    ) -> Tuple[List[NormalizedRef], List[NormalizedRef]]:
        """Split records into ``(to_add, already_present)`` against the project."""
        existing = await self.store.existing_candidates(project_id)
        return self.matcher.split(unique, existing)

    async def _insert(self, project_id: str, to_add: Sequence[NormalizedRef]) -> Tuple[int, int]:
        """Return ``(inserted, skipped)``; skipped records were stored concurrently."""
        inserted = await self.store.upsert_candidates(project_id, to_add)
        return inserted, len(to_add) - inserted


class SearchJobHandler(JobHandler):
    """
    Query every selected provider concurrently and merge the results.

    One provider failing does not fail the job: its error is recorded and
    the job completes with the surviving providers' records. Only when every
    provider fails does the job fail, with an aggregated cause.
    """

    failure_action = "search_run_failed"

    def __init__(
        self,
        settings: Settings,
        providers: Mapping[str, SearchProvider],
        store: ProjectStore,
        cache: CacheBackend,
        error_handler: Optional[ErrorHandler] = None,
        deduplicator: Optional[Deduplicator] = None,
        matcher: Optional[CandidateMatcher] = None,
    ) -> None:
        super().__init__(store, deduplicator, matcher)
        self.settings = settings
        self.providers = dict(providers)
        self.cache = cache
        self.error_handler = error_handler or ErrorHandler(
            settings.retry_base_delay, settings.retry_max_delay
        )

    def _select(self, request: SearchRequest) -> List[SearchProvider]:
        names = request.providers or list(self.providers)
        unknown = [n for n in names if n.lower() not in self.providers]
        if unknown:
            raise InvalidInputError(
                f"Unknown provider(s): {', '.join(unknown)}",
                details={"available": sorted(self.providers)},
            )
        if not names:
            raise InvalidInputError("No search providers configured")
        return [self.providers[n.lower()] for n in dict.fromkeys(names)]

    async def _search_with_ceiling(
        self, provider: SearchProvider, request: SearchRequest
    ) -> ProviderSearchResult:
        ceiling = self.settings.provider_call_ceiling
        try:
            return await asyncio.wait_for(
                provider.search(request.query, request.limit, request.filters), timeout=ceiling
            )
        except asyncio.TimeoutError as e:
            raise OperationTimeoutError(
                f"{provider.name} search timed out after {ceiling}s", details={"provider": provider.name}
            ) from e

    async def _run_provider(
        self, provider: SearchProvider, request: SearchRequest
    ) -> Tuple[str, Optional[ProviderSearchResult], Optional[Exception]]:
        breaker = self.error_handler.get_circuit_breaker(provider.name)
        try:
            result = await breaker.call(self._search_with_ceiling, provider, request)
        except Exception as e:
            logger.warning(
                f"Provider {provider.name} failed: {e}",
                extra={"provider": provider.name, "error_kind": self.error_handler.classify_error(e).value},
            )
            return provider.name, None, e
        return provider.name, result, None

    def _aggregate_failure(self, errors: Dict[str, Exception]) -> Exception:
        summary = "; ".join(f"{name}: {err}" for name, err in errors.items())
        kinds = {self.error_handler.classify_error(e) for e in errors.values()}
        details = {"provider_errors": {name: str(err) for name, err in errors.items()}}
        if kinds == {ErrorKind.TIMEOUT}:
            return OperationTimeoutError(f"All providers timed out: {summary}", details=details)
        return ProviderError(f"All providers failed: {summary}", details=details)

    async def _fill_cache(
        self, by_provider: Mapping[str, Sequence[NormalizedRef]]
    ) -> Dict[str, Dict[str, int]]:
        stats: Dict[str, Dict[str, int]] = {}
        for name, refs in by_provider.items():
            record_cache = ProviderRecordCache(self.cache, name, self.settings.record_cache_ttl_seconds)
            stats[name] = (await record_cache.check_and_fill(refs)).model_dump()
        return stats

    async def run(self, job: IngestionJob, checkpoint: Checkpoint) -> Dict[str, Any]:
        request = job.request
        if not isinstance(request, SearchRequest):
            raise InvalidInputError(f"Job {job.job_id} is not a search job")
        providers = self._select(request)

        await checkpoint("searching", 10)
        outcomes = await asyncio.gather(*(self._run_provider(p, request) for p in providers))

        provider_stats: Dict[str, Dict[str, Any]] = {}
        errors: Dict[str, Exception] = {}
        records: List[NormalizedRef] = []
        by_provider: Dict[str, List[NormalizedRef]] = {}
        for name, result, error in outcomes:
            if error is not None:
                errors[name] = error
                provider_stats[name] = {"count": 0, "total_found": 0, "errors": [str(error)]}
                continue
            provider_stats[name] = {"count": len(result.records), "total_found": result.total_found, "errors": []}
            by_provider[name] = result.records
            records.extend(result.records)
        if len(errors) == len(providers):
            raise self._aggregate_failure(errors)
        await checkpoint("fetching", 40)

        await checkpoint("deduplicating", 50)
        dedup = self.deduplicator.dedupe(records)

        await checkpoint("caching", 70)
        cache_stats = await self._fill_cache(by_provider)
        await checkpoint("caching", 80)
        to_add, present = await self._match_existing(request.project_id, dedup.unique)

        await checkpoint("persisting", 90)
        inserted, skipped = await self._insert(request.project_id, to_add)
        duplicates = dedup.stats.duplicates + len(present) + skipped
        await self.store.increment_counters(
            request.project_id, {"identified": inserted, "duplicates": duplicates}
        )
        details = {
            "job_id": job.job_id,
            "query": request.query,
            "provider_stats": provider_stats,
            "dedupe_stats": dedup.stats.model_dump(),
            "total_records": len(records),
            "unique_records": len(dedup.unique),
            "imported": inserted,
        }
        await self.store.append_audit(request.project_id, "search_run_completed", details)

        return {
            "imported": inserted,
            "duplicates": duplicates,
            "total_records": len(records),
            "unique_records": len(dedup.unique),
            "provider_stats": provider_stats,
            "provider_errors": {name: str(err) for name, err in errors.items()},
            "dedupe_stats": dedup.stats.model_dump(),
            "cache": cache_stats,
        }


class FileImportJobHandler(JobHandler):
    """Import an RIS, BibTeX, PDF or DOCX upload into a project."""

    failure_action = "import_failed"

    def __init__(
        self,
        settings: Settings,
        store: ProjectStore,
        extractor: DocumentReferenceExtractor,
        deduplicator: Optional[Deduplicator] = None,
        matcher: Optional[CandidateMatcher] = None,
    ) -> None:
        super().__init__(store, deduplicator, matcher)
        self.settings = settings
        self.extractor = extractor

    async def run(self, job: IngestionJob, checkpoint: Checkpoint) -> Dict[str, Any]:
        request = job.request
        if not isinstance(request, FileImportRequest):
            raise InvalidInputError(f"Job {job.job_id} is not a file import job")

        await checkpoint("parsing", 10)
        fmt = detect_format(request.filename)
        warning: Optional[str] = None
        metadata: Dict[str, Any] = {"format": fmt.value, "filename": request.filename}
        if fmt in STRUCTURED_FORMATS:
            refs = parse_import_file(
                request.content,
                request.filename,
                max_bytes=int(self.settings.structured_max_size_mb * MB),
            )
            confidence = "high"
        else:
            extraction = await self.extractor.extract(request.content, fmt)
            refs = extraction.refs
            confidence = extraction.metadata.confidence
            warning = extraction.metadata.warning
            metadata.update(extraction.metadata.model_dump(exclude={"confidence", "warning"}))
        await checkpoint("extracting", 40)

        await checkpoint("deduplicating", 50)
        dedup = self.deduplicator.dedupe(refs)

        await checkpoint("matching", 70)
        to_add, present = await self._match_existing(request.project_id, dedup.unique)

        await checkpoint("persisting", 90)
        inserted, skipped = await self._insert(request.project_id, to_add)
        duplicates = dedup.stats.duplicates + len(present) + skipped
        await self.store.increment_counters(
            request.project_id, {"identified": inserted, "duplicates": duplicates}
        )
        await self.store.append_audit(
            request.project_id,
            "import_completed",
            {
                "job_id": job.job_id,
                "added": inserted,
                "duplicates": duplicates,
                "file_type": fmt.value,
                "confidence": confidence,
                "dedupe_stats": dedup.stats.model_dump(),
            },
        )

        result: Dict[str, Any] = {
            "imported": inserted,
            "duplicates": duplicates,
            "confidence": confidence,
            "metadata": metadata,
            "dedupe_stats": dedup.stats.model_dump(),
        }
        if warning:
            result["warning"] = warning
        return result
