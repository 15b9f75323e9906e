"""FIFO job queue with state transitions, checkpoints and persistence."""

import asyncio
import json
from collections import deque
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional

from ..core.errors import ErrorKind, JobStateError
from ..utils.logging import get_logger
from .models import FileImportRequest, IngestionJob, JobSnapshot, JobState, utcnow

logger = get_logger(__name__)


class JobQueue:
    """
    Queue of ingestion jobs and the single source of truth for their state.

    A dequeued job is handed to exactly one caller. Every transition and
    checkpoint is written to ``state_file`` (when set) before the call
    returns, so a crash leaves each job at its last recorded checkpoint.
    Pending jobs are restored on restart; running jobs keep their state and
    surface through ``find_stale`` once their last checkpoint is too old.
    """

    def __init__(self, state_file: Optional[Path] = None, stale_after_seconds: float = 900.0):
        self.state_file = state_file
        self.uploads_dir: Optional[Path] = None
        if self.state_file is not None:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.uploads_dir = self.state_file.parent / f"{self.state_file.stem}_uploads"
        self.stale_after = timedelta(seconds=stale_after_seconds)

        self.jobs: Dict[str, IngestionJob] = {}
        self.pending_queue: Deque[str] = deque()

        self._load_state()
        self._lock = asyncio.Lock()
        self._not_empty = asyncio.Condition(self._lock)

    async def enqueue(self, job: IngestionJob) -> str:
        """Add a pending job; never waits on external I/O."""
        async with self._lock:
            if job.job_id in self.jobs:
                raise JobStateError(f"Job {job.job_id} already exists")
            self._store_upload(job)
            self.jobs[job.job_id] = job
            self.pending_queue.append(job.job_id)
            logger.info(
                f"Enqueued job {job.job_id[:8]}",
                extra={"job_id": job.job_id, "kind": job.kind.value, "project_id": job.project_id},
            )
            self._save_state()
            self._not_empty.notify()
            return job.job_id

    async def dequeue(self, timeout: Optional[float] = None) -> Optional[IngestionJob]:
        """Take the oldest pending job and mark it running; ``None`` on timeout."""
        async with self._not_empty:
            while not self.pending_queue:
                try:
                    await asyncio.wait_for(self._not_empty.wait(), timeout=timeout)
                except asyncio.TimeoutError:
                    return None

            job = self.jobs[self.pending_queue.popleft()]
            job.state = JobState.RUNNING
            job.started_at = job.updated_at = utcnow()
            job.progress_step = "starting"
            self._save_state()
            return job

    def _running(self, job_id: str) -> IngestionJob:
        job = self.jobs.get(job_id)
        if job is None:
            raise JobStateError(f"Unknown job {job_id}")
        if job.state is not JobState.RUNNING:
            raise JobStateError(
                f"Job {job_id} is {job.state.value}, expected running",
                details={"job_id": job_id, "state": job.state.value},
            )
        return job

    async def checkpoint(self, job_id: str, step: str, pct: int) -> None:
        """Record a progress marker; percentages never move backwards."""
        async with self._lock:
            job = self._running(job_id)
            pct = max(0, min(100, pct))
            if pct < job.progress_pct:
                raise JobStateError(
                    f"Checkpoint {step} ({pct}%) is behind current progress ({job.progress_pct}%)"
                )
            job.progress_step = step
            job.progress_pct = pct
            job.updated_at = utcnow()
            logger.debug(f"Job {job_id[:8]} checkpoint {step} {pct}%", extra={"job_id": job_id})
            self._save_state()

    async def record_attempt(self, job_id: str) -> int:
        async with self._lock:
            job = self._running(job_id)
            job.attempts += 1
            # Each attempt starts over from the first checkpoint
            job.progress_step = "starting"
            job.progress_pct = 0
            job.updated_at = utcnow()
            self._save_state()
            return job.attempts

    async def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        async with self._lock:
            job = self._running(job_id)
            job.state = JobState.COMPLETED
            job.result = result
            job.progress_step = "completed"
            job.progress_pct = 100
            job.completed_at = job.updated_at = utcnow()
            logger.info(f"Job {job_id[:8]} completed", extra={"job_id": job_id})
            self._save_state()

    async def fail(self, job_id: str, message: str, kind: ErrorKind = ErrorKind.UNKNOWN) -> None:
        async with self._lock:
            job = self._running(job_id)
            job.state = JobState.FAILED
            job.error = message or "unknown error"
            job.error_kind = kind.value
            job.completed_at = job.updated_at = utcnow()
            logger.error(
                f"Job {job_id[:8]} failed: {job.error}",
                extra={"job_id": job_id, "error_kind": kind.value, "attempts": job.attempts},
            )
            self._save_state()

    async def resubmit(self, job_id: str) -> None:
        """Reset a failed job to pending with cleared error and zeroed progress."""
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None:
                raise JobStateError(f"Unknown job {job_id}")
            if job.state is not JobState.FAILED:
                raise JobStateError(
                    f"Only failed jobs can be resubmitted; job {job_id} is {job.state.value}",
                    details={"job_id": job_id, "state": job.state.value},
                )
            job.state = JobState.PENDING
            job.error = None
            job.error_kind = None
            job.result = None
            job.progress_step = "queued"
            job.progress_pct = 0
            job.attempts = 0
            job.started_at = None
            job.completed_at = None
            job.updated_at = utcnow()
            self.pending_queue.append(job_id)
            logger.info(f"Job {job_id[:8]} resubmitted", extra={"job_id": job_id})
            self._save_state()
            self._not_empty.notify()

    def get(self, job_id: str) -> Optional[IngestionJob]:
        return self.jobs.get(job_id)

    def snapshot(self, job_id: str) -> Optional[JobSnapshot]:
        job = self.jobs.get(job_id)
        return job.snapshot() if job else None

    def jobs_by_state(self, state: JobState) -> List[IngestionJob]:
        return [j for j in self.jobs.values() if j.state is state]

    def find_stale(self, now: Optional[datetime] = None) -> List[IngestionJob]:
        """Running jobs whose last checkpoint is older than the staleness threshold."""
        now = now or utcnow()
        return [
            j for j in self.jobs.values()
            if j.state is JobState.RUNNING and now - j.updated_at > self.stale_after
        ]

    async def size(self) -> int:
        """Number of pending jobs."""
        async with self._lock:
            return len(self.pending_queue)

    def _upload_ref(self, job: IngestionJob) -> Optional[str]:
        if self.uploads_dir is None or not isinstance(job.request, FileImportRequest):
            return None
        return f"{job.job_id}.bin"

    def _store_upload(self, job: IngestionJob) -> None:
        """Write an upload's bytes once; checkpoints then only reference the file."""
        ref = self._upload_ref(job)
        if ref is None:
            return
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        (self.uploads_dir / ref).write_bytes(job.request.content)

    def _save_state(self) -> None:
        if self.state_file is None:
            return
        state = {
            "jobs": {jid: job.to_dict(self._upload_ref(job)) for jid, job in self.jobs.items()},
            "pending_queue": list(self.pending_queue),
            "saved_at": utcnow().isoformat(),
        }
        tmp = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        tmp.write_text(json.dumps(state, indent=2))
        tmp.replace(self.state_file)

    def _load_state(self) -> None:
        if self.state_file is None or not self.state_file.exists():
            return
        try:
            state = json.loads(self.state_file.read_text())
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load queue state: {e}")
            return

        for job_id, job_data in state.get("jobs", {}).items():
            try:
                self.jobs[job_id] = IngestionJob.from_dict(job_data, self.uploads_dir)
                if "content_b64" in job_data.get("request", {}):
                    self._store_upload(self.jobs[job_id])
            except (OSError, ValueError) as e:
                logger.error(f"Dropping job {job_id[:8]} from restored state: {e}", extra={"job_id": job_id})
        for job_id in state.get("pending_queue", []):
            job = self.jobs.get(job_id)
            if job is not None and job.state is JobState.PENDING and job_id not in self.pending_queue:
                self.pending_queue.append(job_id)
        logger.info(
            f"Restored {len(self.jobs)} jobs from state ({len(self.pending_queue)} pending)"
        )
