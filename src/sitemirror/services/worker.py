"""Queue worker: performs page and asset tasks for jobs run elsewhere."""

import asyncio
import os
import socket
import uuid
from typing import Any, Dict, Optional

import httpx

from ..core.browser import BrowserSessionPool
from ..core.cache import ContentCache
from ..core.fetcher import PageFetcher
from ..core.jobs import JobStore, SqlJobStore
from ..core.queue import ASSET_TASK, PAGE_TASK, LeasedTask, TaskQueue, outcome_to_result
from ..core.urls import dedup_key
from ..database.connection import DatabaseManager, get_database_manager
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import ErrorContext, ErrorKind, MirrorError, StorageError, handle_error
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.records import FetchOutcome, FrontierEntry
from .assets import AssetDownloader
from .orchestrator import build_page_fetcher


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


class QueueWorker:
    """Leases tasks from the shared queue and acks their results.

    Fetched bodies go into the shared content cache; results carry only
    their content hash. Per-page failures are acked as error outcomes so
    the orchestrator can apply its retry policy; only failures of the
    worker itself are nacked back to the queue.
    """

    def __init__(
        self,
        queue: Optional[TaskQueue] = None,
        cache: Optional[ContentCache] = None,
        job_store: Optional[JobStore] = None,
        session_pool: Optional[BrowserSessionPool] = None,
        config_manager: Optional[ConfigManager] = None,
        db_manager: Optional[DatabaseManager] = None,
        worker_id: Optional[str] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        poll_interval: Optional[float] = None,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.db_manager = db_manager or get_database_manager()
        self.queue = queue or TaskQueue(self.db_manager, self.config_manager)
        self.cache = cache or ContentCache(self.db_manager, self.config_manager)
        self.job_store = job_store or SqlJobStore(self.db_manager)
        self.session_pool = session_pool or BrowserSessionPool(config_manager=self.config_manager)
        self.worker_id = worker_id or default_worker_id()
        self.poll_interval = poll_interval if poll_interval is not None else self.config_manager.get_setting(
            "queue.poll_interval", 1.0
        )
        self.http_transport = http_transport
        self.downloader = self._new_downloader()
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

        self._fetchers: Dict[str, PageFetcher] = {}
        self._downloaders: Dict[str, AssetDownloader] = {}
        self._stopping = asyncio.Event()
        self.processed = 0

    def _new_downloader(self, proxy_pool=None) -> AssetDownloader:
        return AssetDownloader(
            timeout=self.config_manager.get_setting("assets.download_timeout", 30.0),
            max_bytes=self.config_manager.get_setting("assets.max_asset_bytes", 50 * 1024 * 1024),
            user_agent=self.config_manager.get_setting("browser.user_agent"),
            transport=self.http_transport,
            proxy_pool=proxy_pool,
        )

    def stop(self) -> None:
        self._stopping.set()

    async def run(self, max_tasks: Optional[int] = None) -> int:
        """Work until stopped (or ``max_tasks`` are done); returns the number processed."""
        self.logger.info(f"Worker {self.worker_id} started")
        try:
            while not self._stopping.is_set():
                if max_tasks is not None and self.processed >= max_tasks:
                    break
                try:
                    worked = await self.run_once()
                except StorageError as e:
                    handle_error(e, ErrorContext(operation="lease", worker_id=self.worker_id))
                    worked = False
                if not worked:
                    try:
                        await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                    except asyncio.TimeoutError:
                        pass
        finally:
            await self.close()
        self.logger.info(f"Worker {self.worker_id} stopped after {self.processed} tasks")
        return self.processed

    async def run_once(self) -> bool:
        """Lease and perform a single task; False when the queue had nothing to give."""
        task = await self.queue.lease(self.worker_id)
        if task is None:
            return False

        heartbeat = asyncio.create_task(self._keep_lease(task))
        try:
            with timer(f"worker.{task.kind}"):
                if task.kind == PAGE_TASK:
                    result = await self._handle_page(task)
                elif task.kind == ASSET_TASK:
                    result = await self._handle_asset(task)
                else:
                    result = {"ok": False, "message": f"Unknown task kind {task.kind}", "retryable": False}
        except Exception as e:
            handle_error(e, ErrorContext(
                operation=f"worker_{task.kind}", url=task.url, job_id=task.job_id, worker_id=self.worker_id,
            ))
            await self.queue.nack(task.task_id, self.worker_id, str(e))
            self.metrics.increment_counter("worker.tasks.nacked")
            self.processed += 1
            return True
        finally:
            heartbeat.cancel()

        if await self.queue.ack(task.task_id, self.worker_id, result):
            self.metrics.increment_counter("worker.tasks.completed")
        else:
            self.logger.info(f"Result for task {task.task_id} was already delivered; dropping ours")
        self.processed += 1
        return True

    async def _keep_lease(self, task: LeasedTask) -> None:
        interval = max(1.0, self.queue.lease_timeout / 3)
        while True:
            await asyncio.sleep(interval)
            if not await self.queue.extend_lease(task.task_id, self.worker_id):
                self.logger.warning(f"Lost the lease on task {task.task_id}")
                return

    async def _fetcher_for(self, job_id: str) -> Optional[PageFetcher]:
        fetcher = self._fetchers.get(job_id)
        if fetcher is None:
            job = await self.job_store.get(job_id)
            if job is None or job.is_terminal:
                return None
            fetcher = self._fetchers[job_id] = build_page_fetcher(self.session_pool, job.options, self.config_manager)
        return fetcher

    async def _downloader_for(self, job_id: str) -> AssetDownloader:
        """Asset downloads share the proxy pool of the job's page fetches."""
        fetcher = await self._fetcher_for(job_id)
        if fetcher is None or fetcher.proxy_pool is None:
            return self.downloader
        downloader = self._downloaders.get(job_id)
        if downloader is None:
            downloader = self._downloaders[job_id] = self._new_downloader(fetcher.proxy_pool)
        return downloader

    async def _handle_page(self, task: LeasedTask) -> Dict[str, Any]:
        fetcher = await self._fetcher_for(task.job_id)
        if fetcher is None:
            self._fetchers.pop(task.job_id, None)
            return outcome_to_result(FetchOutcome.failure(
                task.url, ErrorKind.STORAGE, f"Job {task.job_id} is no longer active",
            ))

        entry = FrontierEntry(url=task.url, depth=task.depth, dedup_key=dedup_key(task.url))
        outcome = await fetcher.fetch(entry)
        if outcome.ok:
            await self.cache.put(
                outcome.page.content_hash,
                outcome.page.html.encode("utf-8"),
                content_type="text/html",
            )
        return outcome_to_result(outcome)

    async def _handle_asset(self, task: LeasedTask) -> Dict[str, Any]:
        try:
            downloader = await self._downloader_for(task.job_id)
            downloaded = await downloader.download(task.url)
        except MirrorError as e:
            return {
                "ok": False,
                "message": e.message,
                "status_code": getattr(e, "status_code", None),
                "retryable": e.retryable,
            }
        hash_ = await self.cache.store(downloaded.content, content_type=downloaded.content_type)
        return {
            "ok": True,
            "content_hash": hash_,
            "content_type": downloaded.content_type,
            "status_code": downloaded.status_code,
            "byte_size": len(downloaded.content),
        }

    async def close(self) -> None:
        for downloader in [self.downloader, *self._downloaders.values()]:
            await downloader.close()
        self._downloaders.clear()
        await self.session_pool.close_all()
