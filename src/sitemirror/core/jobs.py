"""Clone job state machine and job stores."""

import asyncio
import copy
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from ..database.connection import DatabaseManager, get_database_manager
from ..database.models import CloneJobRow
from ..foundation.errors import InvalidTransitionError, StorageError
from ..foundation.logging import get_logger
from ..foundation.metrics import timer
from ..models.options import CloneOptions
from ..models.records import FrontierEntry, JobRecord, VerificationReport


class JobStatus(str, Enum):
    """Lifecycle states of a clone job."""
    PENDING = "pending"
    CRAWLING = "crawling"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.CRAWLING, JobStatus.DOWNLOADING, JobStatus.VERIFYING})

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.PENDING: frozenset({JobStatus.CRAWLING, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.CRAWLING: frozenset({
        JobStatus.DOWNLOADING, JobStatus.VERIFYING, JobStatus.PAUSED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    JobStatus.DOWNLOADING: frozenset({
        JobStatus.VERIFYING, JobStatus.PAUSED, JobStatus.FAILED, JobStatus.CANCELLED,
    }),
    # A crash during verification leaves the job here; pausing it makes it resumable
    JobStatus.VERIFYING: frozenset({
        JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.PAUSED, JobStatus.CANCELLED,
    }),
    JobStatus.PAUSED: frozenset({JobStatus.CRAWLING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass
class Checkpoint:
    """Everything needed to continue a crawl without re-fetching visited pages."""
    frontier: List[FrontierEntry] = field(default_factory=list)
    seen_keys: List[str] = field(default_factory=list)
    visited_keys: List[str] = field(default_factory=list)
    pages: List[Dict[str, Any]] = field(default_factory=list)
    failed_urls: List[str] = field(default_factory=list)
    asset_map: Dict[str, str] = field(default_factory=dict)
    sequence: int = 0
    saved_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "frontier": [entry.to_dict() for entry in self.frontier],
            "seen_keys": list(self.seen_keys),
            "visited_keys": list(self.visited_keys),
            "pages": copy.deepcopy(self.pages),
            "failed_urls": list(self.failed_urls),
            "asset_map": dict(self.asset_map),
            "sequence": self.sequence,
            "saved_at": self.saved_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        saved_at = data.get("saved_at")
        return cls(
            frontier=[FrontierEntry.from_dict(entry) for entry in data.get("frontier", [])],
            seen_keys=list(data.get("seen_keys", [])),
            visited_keys=list(data.get("visited_keys", [])),
            pages=copy.deepcopy(data.get("pages", [])),
            failed_urls=list(data.get("failed_urls", [])),
            asset_map=dict(data.get("asset_map", {})),
            sequence=data.get("sequence", 0),
            saved_at=datetime.fromisoformat(saved_at) if saved_at else datetime.utcnow(),
        )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class CloneJob:
    """One crawl run, owned by a single orchestrator while it runs."""
    job_id: str
    url: str
    options: CloneOptions
    output_dir: str
    status: JobStatus = JobStatus.PENDING
    pages_cloned: int = 0
    pages_cached: int = 0
    pages_failed: int = 0
    assets_captured: int = 0
    errors: List[Dict[str, Any]] = field(default_factory=list)
    verification: Optional[VerificationReport] = None
    checkpoint: Optional[Checkpoint] = None
    cancel_requested: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def can_transition(self, new_status: JobStatus) -> bool:
        return new_status in ALLOWED_TRANSITIONS[self.status]

    def transition(self, new_status: JobStatus) -> None:
        """Move to ``new_status``.

        Raises:
            InvalidTransitionError: If the state machine does not allow the move
        """
        new_status = JobStatus(new_status)
        if not self.can_transition(new_status):
            raise InvalidTransitionError(
                f"Job {self.job_id} cannot go from {self.status.value} to {new_status.value}",
                details={"job_id": self.job_id, "from": self.status.value, "to": new_status.value},
            )
        self.status = new_status
        if new_status in TERMINAL_STATUSES:
            self.completed_at = datetime.utcnow()

    def add_error(self, kind: str, message: str, url: Optional[str] = None, **extra: Any) -> None:
        """Record a non-fatal error; every one of them ends up in the job record."""
        entry = {"kind": kind, "message": message, "url": url, "timestamp": datetime.utcnow().isoformat()}
        entry.update(extra)
        self.errors.append(entry)

    def to_record(self) -> JobRecord:
        return JobRecord(
            id=self.job_id,
            url=self.url,
            status=self.status.value,
            pages_cloned=self.pages_cloned,
            pages_cached=self.pages_cached,
            pages_failed=self.pages_failed,
            assets_captured=self.assets_captured,
            errors=copy.deepcopy(self.errors),
            verification=self.verification,
            output_dir=self.output_dir,
            created_at=self.created_at,
            completed_at=self.completed_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "url": self.url,
            "options": self.options.to_contract(),
            "output_dir": self.output_dir,
            "status": self.status.value,
            "pages_cloned": self.pages_cloned,
            "pages_cached": self.pages_cached,
            "pages_failed": self.pages_failed,
            "assets_captured": self.assets_captured,
            "errors": copy.deepcopy(self.errors),
            "verification": self.verification.to_contract() if self.verification else None,
            "checkpoint": self.checkpoint.to_dict() if self.checkpoint else None,
            "cancel_requested": self.cancel_requested,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CloneJob":
        verification = data.get("verification")
        checkpoint = data.get("checkpoint")
        return cls(
            job_id=data["job_id"],
            url=data["url"],
            options=CloneOptions.model_validate(data.get("options") or {}),
            output_dir=data["output_dir"],
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            pages_cloned=data.get("pages_cloned", 0),
            pages_cached=data.get("pages_cached", 0),
            pages_failed=data.get("pages_failed", 0),
            assets_captured=data.get("assets_captured", 0),
            errors=copy.deepcopy(data.get("errors") or []),
            verification=VerificationReport.model_validate(verification) if verification else None,
            checkpoint=Checkpoint.from_dict(checkpoint) if checkpoint else None,
            cancel_requested=bool(data.get("cancel_requested", False)),
            created_at=_parse_datetime(data.get("created_at")) or datetime.utcnow(),
            completed_at=_parse_datetime(data.get("completed_at")),
        )


class JobStore(ABC):
    """Where clone jobs live between and across runs."""

    @abstractmethod
    async def save(self, job: CloneJob) -> None:
        """Insert or update ``job``. A pending cancel request is never cleared."""

    @abstractmethod
    async def get(self, job_id: str) -> Optional[CloneJob]:
        """Load a job, or None if unknown."""

    @abstractmethod
    async def list(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[CloneJob]:
        """Newest first."""

    @abstractmethod
    async def request_cancel(self, job_id: str) -> bool:
        """Flag a non-terminal job for cancellation; False if unknown or already finished."""

    @abstractmethod
    async def is_cancel_requested(self, job_id: str) -> bool:
        ...


class InMemoryJobStore(JobStore):
    """Dict-backed store; jobs are copied in and out like a real persistence layer."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def save(self, job: CloneJob) -> None:
        async with self._lock:
            data = job.to_dict()
            existing = self._jobs.get(job.job_id)
            if existing and existing.get("cancel_requested"):
                data["cancel_requested"] = True
            self._jobs[job.job_id] = data

    async def get(self, job_id: str) -> Optional[CloneJob]:
        async with self._lock:
            data = self._jobs.get(job_id)
            return CloneJob.from_dict(data) if data else None

    async def list(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[CloneJob]:
        async with self._lock:
            jobs = [CloneJob.from_dict(data) for data in self._jobs.values()]
        if status is not None:
            jobs = [job for job in jobs if job.status == JobStatus(status)]
        jobs.sort(key=lambda job: job.created_at, reverse=True)
        return jobs[:limit]

    async def request_cancel(self, job_id: str) -> bool:
        async with self._lock:
            data = self._jobs.get(job_id)
            if data is None or JobStatus(data["status"]) in TERMINAL_STATUSES:
                return False
            data["cancel_requested"] = True
            return True

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self._lock:
            data = self._jobs.get(job_id)
            return bool(data and data.get("cancel_requested"))


class SqlJobStore(JobStore):
    """Jobs persisted in the ``clone_jobs`` table, shared by every process."""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or get_database_manager()
        self.logger = get_logger(__name__)

    @staticmethod
    def _to_job(row: CloneJobRow) -> CloneJob:
        return CloneJob.from_dict({
            "job_id": row.job_id,
            "url": row.url,
            "options": row.options,
            "output_dir": row.output_dir,
            "status": row.status,
            "pages_cloned": row.pages_cloned,
            "pages_cached": row.pages_cached,
            "pages_failed": row.pages_failed,
            "assets_captured": row.assets_captured,
            "errors": row.errors,
            "verification": row.verification,
            "checkpoint": row.checkpoint,
            "cancel_requested": row.cancel_requested,
            "created_at": row.created_at,
            "completed_at": row.completed_at,
        })

    async def save(self, job: CloneJob) -> None:
        data = job.to_dict()
        with timer("jobs.save"):
            try:
                async with self.db_manager.get_session() as session:
                    result = await session.execute(select(CloneJobRow).where(CloneJobRow.job_id == job.job_id))
                    row = result.scalar_one_or_none()
                    if row is None:
                        row = CloneJobRow(job_id=job.job_id, created_at=job.created_at)
                        session.add(row)
                    row.url = data["url"]
                    row.options = data["options"]
                    row.output_dir = data["output_dir"]
                    row.status = data["status"]
                    row.pages_cloned = data["pages_cloned"]
                    row.pages_cached = data["pages_cached"]
                    row.pages_failed = data["pages_failed"]
                    row.assets_captured = data["assets_captured"]
                    row.errors = data["errors"]
                    row.verification = data["verification"]
                    row.checkpoint = data["checkpoint"]
                    row.cancel_requested = bool(row.cancel_requested) or job.cancel_requested
                    row.completed_at = job.completed_at
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to save job {job.job_id}: {e}") from e

    async def get(self, job_id: str) -> Optional[CloneJob]:
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(select(CloneJobRow).where(CloneJobRow.job_id == job_id))
                row = result.scalar_one_or_none()
                return self._to_job(row) if row else None
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to load job {job_id}: {e}") from e

    async def list(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[CloneJob]:
        stmt = select(CloneJobRow)
        if status is not None:
            stmt = stmt.where(CloneJobRow.status == JobStatus(status).value)
        stmt = stmt.order_by(CloneJobRow.created_at.desc()).limit(limit)
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(stmt)
                return [self._to_job(row) for row in result.scalars().all()]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to list jobs: {e}") from e

    async def request_cancel(self, job_id: str) -> bool:
        terminal = [status.value for status in TERMINAL_STATUSES]
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                update(CloneJobRow)
                .where(CloneJobRow.job_id == job_id, CloneJobRow.status.not_in(terminal))
                .values(cancel_requested=True)
            )
            requested = (result.rowcount or 0) > 0
        if requested:
            self.logger.info(f"Cancellation requested for job {job_id}")
        return requested

    async def is_cancel_requested(self, job_id: str) -> bool:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(CloneJobRow.cancel_requested).where(CloneJobRow.job_id == job_id)
            )
            return bool(result.scalar_one_or_none())
