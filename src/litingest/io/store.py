"""Project persistence: candidate records, running counters and the audit log."""

import asyncio
import json
import sqlite3
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence, TypeVar

from pydantic import BaseModel, Field

from ..core.ids import storage_key
from ..core.models import NormalizedRef
from ..utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class AuditEntry(BaseModel):
    project_id: str
    action: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ProjectStore(ABC):
    """
    Persistence boundary for ingestion jobs.

    Counter updates must be atomic increments: two jobs for the same project
    may finish in either order.
    """

    @abstractmethod
    async def existing_candidates(self, project_id: str) -> List[NormalizedRef]:
        raise NotImplementedError

    @abstractmethod
    async def upsert_candidates(self, project_id: str, refs: Sequence[NormalizedRef]) -> int:
        """Insert records not stored yet (by ``storage_key``); return how many were inserted."""
        raise NotImplementedError

    @abstractmethod
    async def increment_counters(self, project_id: str, deltas: Dict[str, int]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def counters(self, project_id: str) -> Dict[str, int]:
        raise NotImplementedError

    @abstractmethod
    async def append_audit(self, project_id: str, action: str, details: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    async def audit_log(self, project_id: str) -> List[AuditEntry]:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryProjectStore(ProjectStore):
    """Dict-backed store for tests and one-shot CLI runs."""

    def __init__(self) -> None:
        self._candidates: Dict[str, Dict[str, NormalizedRef]] = defaultdict(dict)
        self._counters: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._audit: List[AuditEntry] = []
        self._lock = asyncio.Lock()

    async def existing_candidates(self, project_id: str) -> List[NormalizedRef]:
        return list(self._candidates[project_id].values())

    async def upsert_candidates(self, project_id: str, refs: Sequence[NormalizedRef]) -> int:
        inserted = 0
        async with self._lock:
            stored = self._candidates[project_id]
            for ref in refs:
                digest = storage_key(ref)
                if digest not in stored:
                    stored[digest] = ref
                    inserted += 1
        return inserted

    async def increment_counters(self, project_id: str, deltas: Dict[str, int]) -> None:
        async with self._lock:
            for name, delta in deltas.items():
                self._counters[project_id][name] += delta

    async def counters(self, project_id: str) -> Dict[str, int]:
        return dict(self._counters[project_id])

    async def append_audit(self, project_id: str, action: str, details: Dict[str, Any]) -> None:
        self._audit.append(AuditEntry(project_id=project_id, action=action, details=details))

    async def audit_log(self, project_id: str) -> List[AuditEntry]:
        return [e for e in self._audit if e.project_id == project_id]


class SQLiteProjectStore(ProjectStore):
    """
    SQLite-backed store; counters use ``value = value + ?`` upserts.

    Statements run in a worker thread so the event loop keeps serving other
    jobs; a lock keeps one statement or transaction on the connection at a
    time.
    """

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = data_dir
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.db_path = data_dir / "projects.db"
        self.conn = sqlite3.connect(
            str(self.db_path), isolation_level="DEFERRED", check_same_thread=False
        )
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")
        self._lock = asyncio.Lock()
        self._init_schema()

    def _init_schema(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS candidates (
                project_id TEXT NOT NULL,
                record_key TEXT NOT NULL,
                record TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (project_id, record_key)
            );

            CREATE TABLE IF NOT EXISTS counters (
                project_id TEXT NOT NULL,
                name TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (project_id, name)
            );

            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                project_id TEXT NOT NULL,
                action TEXT NOT NULL,
                details TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_audit_project ON audit_log(project_id);
            """
        )
        self.conn.commit()

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    def _existing_sync(self, project_id: str) -> List[NormalizedRef]:
        cur = self.conn.execute(
            "SELECT record FROM candidates WHERE project_id = ? ORDER BY created_at, rowid",
            (project_id,),
        )
        return [NormalizedRef.model_validate_json(row[0]) for row in cur]

    def _upsert_sync(self, project_id: str, refs: Sequence[NormalizedRef]) -> int:
        now = datetime.now(timezone.utc).isoformat()
        inserted = 0
        with self.conn:
            for ref in refs:
                cur = self.conn.execute(
                    """INSERT OR IGNORE INTO candidates
                    (project_id, record_key, record, created_at)
                    VALUES (?, ?, ?, ?)""",
                    (project_id, storage_key(ref), ref.model_dump_json(), now),
                )
                inserted += cur.rowcount
        return inserted

    def _increment_sync(self, project_id: str, deltas: Dict[str, int]) -> None:
        with self.conn:
            self.conn.executemany(
                """INSERT INTO counters (project_id, name, value) VALUES (?, ?, ?)
                ON CONFLICT(project_id, name) DO UPDATE SET value = value + excluded.value""",
                [(project_id, name, delta) for name, delta in deltas.items()],
            )

    def _counters_sync(self, project_id: str) -> Dict[str, int]:
        cur = self.conn.execute(
            "SELECT name, value FROM counters WHERE project_id = ?", (project_id,)
        )
        return dict(cur.fetchall())

    def _append_audit_sync(self, entry: AuditEntry) -> None:
        with self.conn:
            self.conn.execute(
                "INSERT INTO audit_log (project_id, action, details, created_at) VALUES (?, ?, ?, ?)",
                (
                    entry.project_id,
                    entry.action,
                    json.dumps(entry.details, default=str),
                    entry.created_at.isoformat(),
                ),
            )

    def _audit_log_sync(self, project_id: str) -> List[AuditEntry]:
        cur = self.conn.execute(
            "SELECT action, details, created_at FROM audit_log WHERE project_id = ? ORDER BY id",
            (project_id,),
        )
        return [
            AuditEntry(
                project_id=project_id,
                action=action,
                details=json.loads(details),
                created_at=datetime.fromisoformat(created_at),
            )
            for action, details, created_at in cur
        ]

    async def existing_candidates(self, project_id: str) -> List[NormalizedRef]:
        return await self._run(self._existing_sync, project_id)

    async def upsert_candidates(self, project_id: str, refs: Sequence[NormalizedRef]) -> int:
        return await self._run(self._upsert_sync, project_id, list(refs))

    async def increment_counters(self, project_id: str, deltas: Dict[str, int]) -> None:
        await self._run(self._increment_sync, project_id, dict(deltas))

    async def counters(self, project_id: str) -> Dict[str, int]:
        return await self._run(self._counters_sync, project_id)

    async def append_audit(self, project_id: str, action: str, details: Dict[str, Any]) -> None:
        entry = AuditEntry(project_id=project_id, action=action, details=details)
        await self._run(self._append_audit_sync, entry)

    async def audit_log(self, project_id: str) -> List[AuditEntry]:
        return await self._run(self._audit_log_sync, project_id)

    async def close(self) -> None:
        async with self._lock:
            self.conn.close()
