"""Job records, inbound requests and caller-facing snapshots."""

import base64
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ..search.base import SearchFilters


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(Enum):
    """Job execution states; ``completed`` and ``failed`` are terminal."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobKind(Enum):
    SEARCH = "search"
    FILE_IMPORT = "file_import"


class SearchRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1)
    limit: int = Field(50, ge=1, le=200)
    filters: Optional[SearchFilters] = None
    # Provider names; ``None`` means the configured defaults
    providers: Optional[List[str]] = None


class FileImportRequest(BaseModel):
    project_id: str = Field(..., min_length=1)
    filename: str = Field(..., min_length=1)
    content: bytes


JobRequest = Union[SearchRequest, FileImportRequest]


def request_to_dict(request: JobRequest, upload_ref: Optional[str] = None) -> Dict[str, Any]:
    """Serialize a request; with ``upload_ref`` the file bytes are referenced, not inlined."""
    if isinstance(request, FileImportRequest):
        data = {"project_id": request.project_id, "filename": request.filename}
        if upload_ref is not None:
            data["upload_ref"] = upload_ref
        else:
            data["content_b64"] = base64.b64encode(request.content).decode("ascii")
        return data
    return request.model_dump(mode="json")


def request_from_dict(
    kind: JobKind, data: Dict[str, Any], uploads_dir: Optional[Path] = None
) -> JobRequest:
    if kind is JobKind.FILE_IMPORT:
        if "upload_ref" in data:
            if uploads_dir is None:
                raise ValueError(f"No uploads directory to resolve {data['upload_ref']}")
            content = (uploads_dir / data["upload_ref"]).read_bytes()
        else:
            content = base64.b64decode(data["content_b64"])
        return FileImportRequest(
            project_id=data["project_id"], filename=data["filename"], content=content
        )
    return SearchRequest.model_validate(data)


@dataclass
class IngestionJob:
    """A single provider search or file import with its progress and outcome."""

    kind: JobKind
    request: JobRequest

    # Identity
    job_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # State
    state: JobState = JobState.PENDING
    progress_step: str = "queued"
    progress_pct: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Outcome
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0

    @property
    def project_id(self) -> str:
        return self.request.project_id

    @property
    def is_terminal(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def to_dict(self, upload_ref: Optional[str] = None) -> Dict[str, Any]:
        """Serialize to dict for persistence."""
        return {
            "job_id": self.job_id,
            "kind": self.kind.value,
            "request": request_to_dict(self.request, upload_ref),
            "state": self.state.value,
            "progress_step": self.progress_step,
            "progress_pct": self.progress_pct,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "updated_at": self.updated_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "result": self.result,
            "error": self.error,
            "error_kind": self.error_kind,
            "attempts": self.attempts,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], uploads_dir: Optional[Path] = None) -> "IngestionJob":
        """Deserialize from dict."""
        kind = JobKind(data["kind"])
        job = cls(
            kind=kind,
            request=request_from_dict(kind, data["request"], uploads_dir),
            job_id=data["job_id"],
            state=JobState(data["state"]),
            progress_step=data.get("progress_step", "queued"),
            progress_pct=data.get("progress_pct", 0),
            result=data.get("result"),
            error=data.get("error"),
            error_kind=data.get("error_kind"),
            attempts=data.get("attempts", 0),
        )
        job.created_at = datetime.fromisoformat(data["created_at"])
        job.updated_at = datetime.fromisoformat(data["updated_at"])
        if data.get("started_at"):
            job.started_at = datetime.fromisoformat(data["started_at"])
        if data.get("completed_at"):
            job.completed_at = datetime.fromisoformat(data["completed_at"])
        return job

    def snapshot(self) -> "JobSnapshot":
        return JobSnapshot(
            job_id=self.job_id,
            kind=self.kind.value,
            state=self.state.value,
            progress_step=self.progress_step,
            progress_pct=self.progress_pct,
            result=copy.deepcopy(self.result),
            error=self.error,
            error_kind=self.error_kind,
            attempts=self.attempts,
            updated_at=self.updated_at,
        )


class JobSnapshot(BaseModel):
    """Point-in-time copy of a job returned to pollers."""
    job_id: str
    kind: str
    state: str
    progress_step: str
    progress_pct: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    attempts: int = 0
    updated_at: datetime
