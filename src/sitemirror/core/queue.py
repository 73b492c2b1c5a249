"""Persistent work queue shared by orchestrators and remote workers."""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Set

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from ..database.connection import DatabaseManager, get_database_manager
from ..database.models import QueueTask
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import ErrorKind, NetworkError, StorageError, TimeoutError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.records import FetchOutcome, FrontierEntry, PageRecord
from .cache import ContentCache
from .urls import dedup_key

PAGE_TASK = "page"
ASSET_TASK = "asset"


class TaskStatus:
    QUEUED = "queued"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class LeasedTask:
    """A task claimed by one worker until its lease expires."""
    task_id: str
    job_id: str
    kind: str
    url: str
    depth: int
    attempts: int
    max_attempts: int
    lease_owner: str
    lease_expires_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskResult:
    """A finished task as seen by the orchestrator."""
    task_id: str
    job_id: str
    kind: str
    url: str
    status: str
    result: Dict[str, Any] = field(default_factory=dict)


def outcome_to_result(outcome: FetchOutcome) -> Dict[str, Any]:
    """Serialize a page fetch outcome; the HTML travels through the content cache."""
    if outcome.ok:
        return {
            "ok": True,
            "page": outcome.page.summary(),
            "content_hash": outcome.page.content_hash,
            "proxy_key": outcome.proxy_key,
        }
    return {
        "ok": False,
        "error_kind": outcome.error_kind.value if outcome.error_kind else ErrorKind.NETWORK.value,
        "message": outcome.message,
        "status_code": outcome.status_code,
        "retry_after": outcome.retry_after,
        "retryable": outcome.retryable,
        "proxy_key": outcome.proxy_key,
    }


def result_to_outcome(url: str, result: Dict[str, Any], html: Optional[str] = None) -> FetchOutcome:
    if result.get("ok"):
        page = PageRecord.from_summary(result["page"], html=html)
        return FetchOutcome.success(page, proxy_key=result.get("proxy_key"))
    return FetchOutcome.failure(
        url,
        ErrorKind(result.get("error_kind") or ErrorKind.NETWORK.value),
        result.get("message") or "remote fetch failed",
        status_code=result.get("status_code"),
        retry_after=result.get("retry_after"),
        retryable=bool(result.get("retryable", False)),
        proxy_key=result.get("proxy_key"),
    )


class TaskQueue:
    """At-least-once task queue on the shared SQLite database.

    Leases are claimed with a conditional UPDATE, so two workers never hold
    the same task at once. A lease that expires puts the task back in the
    queue until its attempts run out.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        config_manager: Optional[ConfigManager] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.db_manager = db_manager or get_database_manager()
        self.lease_timeout = self.config_manager.get_setting("queue.lease_timeout", 300)
        self.max_attempts = self.config_manager.get_setting("queue.max_attempts", 3)
        self.completed_retention = self.config_manager.get_setting("queue.completed_retention", 3600)
        self.failed_retention = self.config_manager.get_setting("queue.failed_retention", 86400)
        self.clock = clock
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    async def enqueue(
        self,
        job_id: str,
        kind: str,
        url: str,
        depth: int = 0,
        payload: Optional[Dict[str, Any]] = None,
        max_attempts: Optional[int] = None,
    ) -> str:
        """Add a task; an identical task still waiting or leased is reused.

        Returns:
            Task id
        """
        key = dedup_key(url)
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(QueueTask.task_id).where(
                        QueueTask.job_id == job_id,
                        QueueTask.kind == kind,
                        QueueTask.dedup_key == key,
                        QueueTask.status.in_([TaskStatus.QUEUED, TaskStatus.LEASED]),
                    )
                )
                existing = result.scalars().first()
                if existing:
                    return existing

                task_id = uuid.uuid4().hex
                session.add(QueueTask(
                    task_id=task_id,
                    job_id=job_id,
                    kind=kind,
                    url=url,
                    dedup_key=key,
                    depth=depth,
                    payload=payload or {},
                    status=TaskStatus.QUEUED,
                    attempts=0,
                    max_attempts=max_attempts or self.max_attempts,
                ))
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to enqueue {kind} task for {url}: {e}") from e

        self.metrics.increment_counter(f"queue.{kind}.enqueued")
        return task_id

    async def requeue_expired(self) -> int:
        """Return expired leases to the queue, or fail them once attempts are exhausted."""
        now = self.clock()
        expired = and_(QueueTask.status == TaskStatus.LEASED, QueueTask.lease_expires_at < now)
        async with self.db_manager.get_session() as session:
            failed = await session.execute(
                update(QueueTask)
                .where(expired, QueueTask.attempts >= QueueTask.max_attempts)
                .values(
                    status=TaskStatus.FAILED,
                    lease_owner=None,
                    finished_at=now,
                    result={
                        "ok": False,
                        "error_kind": ErrorKind.TIMEOUT.value,
                        "message": "lease expired on every attempt",
                        "retryable": False,
                    },
                )
            )
            requeued = await session.execute(
                update(QueueTask)
                .where(expired, QueueTask.attempts < QueueTask.max_attempts)
                .values(status=TaskStatus.QUEUED, lease_owner=None, lease_expires_at=None)
            )
        count = (requeued.rowcount or 0) + (failed.rowcount or 0)
        if count:
            self.logger.info(f"Recovered {count} expired queue leases ({failed.rowcount or 0} exhausted)")
            self.metrics.increment_counter("queue.leases.expired", count)
        return count

    async def lease(self, worker_id: str, kinds: Optional[List[str]] = None) -> Optional[LeasedTask]:
        """Claim the oldest waiting task for ``worker_id``."""
        await self.requeue_expired()

        for _ in range(5):
            now = self.clock()
            expires = now + timedelta(seconds=self.lease_timeout)
            async with self.db_manager.get_session() as session:
                stmt = select(QueueTask).where(QueueTask.status == TaskStatus.QUEUED)
                if kinds:
                    stmt = stmt.where(QueueTask.kind.in_(kinds))
                stmt = stmt.order_by(QueueTask.depth.asc(), QueueTask.created_at.asc()).limit(1)
                candidate = (await session.execute(stmt)).scalar_one_or_none()
                if candidate is None:
                    return None

                claimed = await session.execute(
                    update(QueueTask)
                    .where(QueueTask.task_id == candidate.task_id, QueueTask.status == TaskStatus.QUEUED)
                    .values(
                        status=TaskStatus.LEASED,
                        lease_owner=worker_id,
                        lease_expires_at=expires,
                        attempts=QueueTask.attempts + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount != 1:
                    # Another worker won the claim; try the next task
                    continue

                self.metrics.increment_counter("queue.leased")
                return LeasedTask(
                    task_id=candidate.task_id,
                    job_id=candidate.job_id,
                    kind=candidate.kind,
                    url=candidate.url,
                    depth=candidate.depth,
                    attempts=candidate.attempts + 1,
                    max_attempts=candidate.max_attempts,
                    lease_owner=worker_id,
                    lease_expires_at=expires,
                    payload=dict(candidate.payload or {}),
                )
        return None

    async def ack(self, task_id: str, worker_id: str, result: Dict[str, Any]) -> bool:
        """Record a completion. Only the first completion of a task counts."""
        async with self.db_manager.get_session() as session:
            updated = await session.execute(
                update(QueueTask)
                .where(
                    QueueTask.task_id == task_id,
                    QueueTask.status.in_([TaskStatus.QUEUED, TaskStatus.LEASED]),
                )
                .values(
                    status=TaskStatus.COMPLETED,
                    result=result,
                    lease_owner=worker_id,
                    lease_expires_at=None,
                    finished_at=self.clock(),
                )
            )
        accepted = updated.rowcount == 1
        if accepted:
            self.metrics.increment_counter("queue.completed")
        else:
            self.logger.debug(f"Ignored duplicate completion of task {task_id} from {worker_id}")
        return accepted

    async def nack(self, task_id: str, worker_id: str, error: str) -> bool:
        """Give a leased task back after a worker-side failure."""
        now = self.clock()
        async with self.db_manager.get_session() as session:
            task = (await session.execute(
                select(QueueTask).where(
                    QueueTask.task_id == task_id,
                    QueueTask.status == TaskStatus.LEASED,
                    QueueTask.lease_owner == worker_id,
                )
            )).scalar_one_or_none()
            if task is None:
                return False
            task.lease_owner = None
            task.lease_expires_at = None
            if task.attempts >= task.max_attempts:
                task.status = TaskStatus.FAILED
                task.finished_at = now
                task.result = {"ok": False, "error_kind": ErrorKind.NETWORK.value, "message": error, "retryable": False}
                self.metrics.increment_counter("queue.failed")
            else:
                task.status = TaskStatus.QUEUED
        return True

    async def extend_lease(self, task_id: str, worker_id: str) -> bool:
        async with self.db_manager.get_session() as session:
            updated = await session.execute(
                update(QueueTask)
                .where(
                    QueueTask.task_id == task_id,
                    QueueTask.status == TaskStatus.LEASED,
                    QueueTask.lease_owner == worker_id,
                )
                .values(lease_expires_at=self.clock() + timedelta(seconds=self.lease_timeout))
            )
        return updated.rowcount == 1

    async def poll_completed(self, job_id: Optional[str] = None, limit: int = 100) -> List[TaskResult]:
        """Finished tasks not yet handed out; each is returned once."""
        async with self.db_manager.get_session() as session:
            stmt = select(QueueTask).where(
                QueueTask.status.in_([TaskStatus.COMPLETED, TaskStatus.FAILED]),
                QueueTask.consumed.is_(False),
            )
            if job_id is not None:
                stmt = stmt.where(QueueTask.job_id == job_id)
            stmt = stmt.order_by(QueueTask.finished_at.asc()).limit(limit)
            tasks = (await session.execute(stmt)).scalars().all()
            results = []
            for task in tasks:
                task.consumed = True
                results.append(TaskResult(
                    task_id=task.task_id,
                    job_id=task.job_id,
                    kind=task.kind,
                    url=task.url,
                    status=task.status,
                    result=dict(task.result or {}),
                ))
        return results

    async def cancel_job(self, job_id: str) -> int:
        """Drop every waiting task of a job; leased ones finish and are ignored."""
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                delete(QueueTask).where(QueueTask.job_id == job_id, QueueTask.status == TaskStatus.QUEUED)
            )
        removed = result.rowcount or 0
        if removed:
            self.logger.info(f"Removed {removed} queued tasks of cancelled job {job_id}")
        return removed

    async def stats(self, job_id: Optional[str] = None) -> Dict[str, int]:
        stmt = select(QueueTask.status, func.count(QueueTask.task_id)).group_by(QueueTask.status)
        if job_id is not None:
            stmt = stmt.where(QueueTask.job_id == job_id)
        async with self.db_manager.get_session() as session:
            counts = dict((await session.execute(stmt)).all())
        return {
            "waiting": counts.get(TaskStatus.QUEUED, 0),
            "active": counts.get(TaskStatus.LEASED, 0),
            "completed": counts.get(TaskStatus.COMPLETED, 0),
            "failed": counts.get(TaskStatus.FAILED, 0),
        }

    async def purge_completed(self) -> int:
        """Delete consumed completed and failed tasks older than their retention."""
        now = self.clock()
        with timer("queue.purge_completed"):
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    delete(QueueTask).where(
                        QueueTask.consumed.is_(True),
                        or_(
                            and_(
                                QueueTask.status == TaskStatus.COMPLETED,
                                QueueTask.finished_at < now - timedelta(seconds=self.completed_retention),
                            ),
                            and_(
                                QueueTask.status == TaskStatus.FAILED,
                                QueueTask.finished_at < now - timedelta(seconds=self.failed_retention),
                            ),
                        ),
                    )
                )
        removed = result.rowcount or 0
        if removed:
            self.logger.info(f"Purged {removed} finished queue tasks")
        return removed


@dataclass
class DownloadedAsset:
    """Raw bytes of a downloaded asset."""
    url: str
    content: bytes
    content_type: Optional[str] = None
    status_code: int = 200


class QueueDispatcher:
    """Orchestrator side of the queue: enqueue, then await the matching completion.

    One poller task per process routes completion events to the futures
    waiting for them. Page bodies and asset bytes come back through the
    shared content cache.
    """

    def __init__(
        self,
        queue: TaskQueue,
        cache: ContentCache,
        poll_interval: Optional[float] = None,
        result_timeout: Optional[float] = None,
    ):
        self.queue = queue
        self.cache = cache
        self.poll_interval = poll_interval if poll_interval is not None else queue.config_manager.get_setting(
            "queue.poll_interval", 1.0
        )
        self.result_timeout = result_timeout or queue.lease_timeout * (queue.max_attempts + 1)
        self.logger = get_logger(__name__)

        self._waiters: Dict[str, asyncio.Future] = {}
        self._waiter_jobs: Dict[str, str] = {}
        # Completions polled before their waiter registered
        self._unclaimed: Dict[str, TaskResult] = {}
        self._poller: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._poller is None or self._poller.done():
            self._poller = asyncio.create_task(self._poll_loop())

    async def close(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        for future in self._waiters.values():
            if not future.done():
                future.cancel()
        self._waiters.clear()
        self._waiter_jobs.clear()
        self._unclaimed.clear()

    async def _poll_loop(self) -> None:
        while True:
            try:
                await self.poll_once()
            except StorageError as e:
                self.logger.warning(f"Queue poll failed: {e}")
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self) -> int:
        """Deliver finished tasks to their waiters; returns how many were delivered."""
        delivered = 0
        for job_id in set(self._waiter_jobs.values()):
            for finished in await self.queue.poll_completed(job_id):
                future = self._waiters.pop(finished.task_id, None)
                self._waiter_jobs.pop(finished.task_id, None)
                if future is None:
                    self._unclaimed[finished.task_id] = finished
                elif not future.done():
                    future.set_result(finished)
                    delivered += 1
        return delivered

    async def _submit_and_wait(self, job_id: str, kind: str, url: str, depth: int = 0) -> TaskResult:
        self.start()
        task_id = await self.queue.enqueue(job_id, kind, url, depth=depth)
        if task_id in self._unclaimed:
            return self._unclaimed.pop(task_id)
        future = self._waiters.get(task_id)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._waiters[task_id] = future
            self._waiter_jobs[task_id] = job_id
        return await asyncio.wait_for(asyncio.shield(future), timeout=self.result_timeout)

    async def fetch_page(self, job_id: str, entry: FrontierEntry) -> FetchOutcome:
        """Have a remote worker fetch ``entry``."""
        try:
            finished = await self._submit_and_wait(job_id, PAGE_TASK, entry.url, depth=entry.depth)
        except asyncio.TimeoutError:
            return FetchOutcome.failure(
                entry.url, ErrorKind.TIMEOUT, f"No worker result for {entry.url} within {self.result_timeout:.0f}s",
                retryable=True,
            )

        html = None
        if finished.result.get("ok"):
            cached = await self.cache.get(finished.result["content_hash"])
            if cached is None:
                return FetchOutcome.failure(
                    entry.url, ErrorKind.NETWORK, f"Worker result for {entry.url} is missing from the cache",
                    retryable=True,
                )
            html = cached.text
        outcome = result_to_outcome(entry.url, finished.result, html=html)
        if outcome.page is not None:
            outcome.page.depth = entry.depth
        return outcome

    async def download_asset(self, job_id: str, url: str) -> DownloadedAsset:
        """Have a remote worker download ``url``.

        Raises:
            NetworkError: If the download failed
            TimeoutError: If no worker answered in time
        """
        try:
            finished = await self._submit_and_wait(job_id, ASSET_TASK, url)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"No worker result for asset {url}", timeout_duration=self.result_timeout) from e

        result = finished.result
        if not result.get("ok"):
            raise NetworkError(
                result.get("message") or f"Remote download of {url} failed",
                status_code=result.get("status_code"),
                url=url,
            )
        cached = await self.cache.get(result["content_hash"])
        if cached is None:
            raise NetworkError(f"Downloaded asset {url} is missing from the cache", url=url)
        return DownloadedAsset(
            url=url,
            content=cached.payload,
            content_type=result.get("content_type"),
            status_code=result.get("status_code") or 200,
        )

    async def cancel_job(self, job_id: str) -> int:
        removed = await self.queue.cancel_job(job_id)
        for task_id, owner in list(self._waiter_jobs.items()):
            if owner == job_id:
                future = self._waiters.pop(task_id, None)
                self._waiter_jobs.pop(task_id, None)
                if future is not None and not future.done():
                    future.cancel()
        return removed

    @property
    def pending(self) -> Set[str]:
        return set(self._waiters)
