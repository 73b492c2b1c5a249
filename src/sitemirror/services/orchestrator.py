"""Crawl orchestration: frontier, retries, checkpoints and the job state machine."""

import asyncio
import heapq
import itertools
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple
from urllib.parse import urlsplit

import httpx

from ..core.browser import BrowserSessionPool
from ..core.cache import ContentCache, IncrementalUpdater, content_hash
from ..core.fetcher import PageFetcher
from ..core.html import MirrorLayout, extract_anchor_links, extract_asset_urls, parse_html, sanitize_segment
from ..core.jobs import ACTIVE_STATUSES, Checkpoint, CloneJob, JobStatus, JobStore, SqlJobStore
from ..core.queue import QueueDispatcher
from ..core.urls import Resolver, ScopePolicy, dedup_key, strip_fragment, validate_target_url
from ..database.connection import DatabaseManager, get_database_manager
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import (
    ConfigurationError,
    ErrorContext,
    ErrorKind,
    InvalidTransitionError,
    RetryConfig,
    StorageError,
    ValidationError,
    VerificationError,
    calculate_retry_delay,
    handle_error,
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.options import CloneOptions
from ..models.records import FetchOutcome, FrontierEntry, JobRecord, PageRecord, ProgressEvent, VerificationReport
from .assets import AssetDownloader, AssetPipeline, write_file_atomic
from .challenge import ChallengeBypass
from .progress import ProgressHub, ProgressStream
from .proxy import ProxyPool
from .verification import JsChecker, VerificationScorer, browser_js_checker

FetchFn = Callable[[FrontierEntry], Awaitable[FetchOutcome]]


def build_page_fetcher(
    session_pool: BrowserSessionPool,
    options: CloneOptions,
    config_manager: Optional[ConfigManager] = None,
    proxy_pool: Optional[ProxyPool] = None,
) -> PageFetcher:
    """Fetcher for one job: its own proxy pool and challenge policy over a shared session pool.

    Challenge pages are classified whether or not bypass is enabled; with
    bypass off they fail as blocked instead of being mirrored.
    """
    if proxy_pool is None:
        proxy_pool = ProxyPool.from_options(options.proxy, config_manager)
    return PageFetcher(
        session_pool,
        options,
        proxy_pool=proxy_pool if proxy_pool.enabled else None,
        bypass=ChallengeBypass(options.cloudflare_bypass),
    )


@dataclass
class CrawlState:
    """Everything one run of a job needs; lives only while the job runs in this process."""
    job: CloneJob
    layout: MirrorLayout
    scope: ScopePolicy
    pipeline: AssetPipeline
    fetch: FetchFn
    cache: Optional[ContentCache] = None
    updater: Optional[IncrementalUpdater] = None
    proxy_pool: Optional[ProxyPool] = None
    health_checks: Optional[asyncio.Future] = None
    root_key: str = ""
    frontier: List[Tuple[int, int, FrontierEntry]] = field(default_factory=list)
    seen: Set[str] = field(default_factory=set)
    visited: Set[str] = field(default_factory=set)
    in_flight: Dict[str, FrontierEntry] = field(default_factory=dict)
    pages: Dict[str, PageRecord] = field(default_factory=dict)
    page_keys: Dict[str, str] = field(default_factory=dict)
    failed_urls: List[str] = field(default_factory=list)
    asset_tasks: List[asyncio.Future] = field(default_factory=list)
    sequence: "itertools.count" = field(default_factory=itertools.count)
    since_checkpoint: int = 0
    cancel: bool = False
    pause: bool = False
    root_failed: bool = False

    @property
    def options(self) -> CloneOptions:
        return self.job.options

    @property
    def stopping(self) -> bool:
        return self.cancel or self.pause or self.root_failed

    @property
    def dispatched(self) -> int:
        """Pages taken off the frontier so far, fetched or served from cache."""
        return len(self.visited) + len(self.in_flight)

    def push(self, entry: FrontierEntry) -> None:
        heapq.heappush(self.frontier, (entry.depth, next(self.sequence), entry))

    def pop(self) -> FrontierEntry:
        return heapq.heappop(self.frontier)[2]

    def snapshot(self) -> Checkpoint:
        """Resumable state; in-flight entries go back to the front of the frontier."""
        pending = list(self.in_flight.values()) + [entry for _, _, entry in sorted(self.frontier)]
        return Checkpoint(
            frontier=pending,
            seen_keys=sorted(self.seen),
            visited_keys=sorted(self.visited),
            pages=[page.summary() for page in self.pages.values()],
            failed_urls=list(self.failed_urls),
            asset_map=self.pipeline.asset_map(),
            sequence=len(self.visited),
        )


class CloneOrchestrator:
    """Owns clone jobs from submission to the final job record.

    Pages are fetched locally through a browser session pool or, for
    distributed jobs, through the queue dispatcher. Jobs persist in the
    injected job store so they can be resumed by any process.
    """

    def __init__(
        self,
        job_store: Optional[JobStore] = None,
        config_manager: Optional[ConfigManager] = None,
        db_manager: Optional[DatabaseManager] = None,
        session_pool: Optional[BrowserSessionPool] = None,
        dispatcher: Optional[QueueDispatcher] = None,
        progress_hub: Optional[ProgressHub] = None,
        resolver: Optional[Resolver] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
        js_checker: Optional[JsChecker] = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.db_manager = db_manager or get_database_manager()
        self.job_store = job_store or SqlJobStore(self.db_manager)
        self.session_pool = session_pool
        self.dispatcher = dispatcher
        self.progress = progress_hub or ProgressHub()
        self.resolver = resolver
        self.http_transport = http_transport
        self.js_checker = js_checker
        self._sleep = sleep
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()
        self._active: Dict[str, CrawlState] = {}

    async def initialize(self) -> None:
        await self.db_manager.initialize()

    async def close(self) -> None:
        """Release browser sessions and stop the queue poller."""
        if self.session_pool is not None:
            await self.session_pool.close_all()
        if self.dispatcher is not None:
            await self.dispatcher.close()

    def _get_session_pool(self) -> BrowserSessionPool:
        if self.session_pool is None:
            self.session_pool = BrowserSessionPool(config_manager=self.config_manager)
        return self.session_pool

    # Job lifecycle

    async def submit(self, url: str, options: Optional[CloneOptions] = None) -> str:
        """Validate the target and persist a new pending job.

        Args:
            url: Site to mirror
            options: Job options; unset values come from the crawl config

        Returns:
            The new job id

        Raises:
            ValidationError: If the URL is malformed, unresolvable or internal
        """
        context = ErrorContext(operation="submit", url=url)
        with timer("orchestrator.submit"):
            try:
                target = await validate_target_url(url, resolver=self.resolver)
            except ValidationError as e:
                self.metrics.increment_counter("jobs.rejected")
                handle_error(e, context)
                raise

            options = options or CloneOptions.from_config(self.config_manager)
            for warning in options.consistency_warnings():
                self.logger.warning(f"Options for {target}: {warning}")
            if options.distributed and self.dispatcher is None:
                raise ValidationError("Distributed jobs need a queue dispatcher", field="distributed")

            job = CloneJob(
                job_id=CloneJob.new_id(),
                url=target,
                options=options,
                output_dir=str(self._output_dir_for(target, options)),
            )
            await self.job_store.save(job)

        self.metrics.increment_counter("jobs.submitted")
        self.logger.info(f"Submitted job {job.job_id} for {target} -> {job.output_dir}")
        return job.job_id

    def _output_dir_for(self, url: str, options: CloneOptions) -> Path:
        if options.output_dir:
            return Path(options.output_dir).expanduser()
        root = Path(self.config_manager.get_setting("storage.output_root", "~/.sitemirror/mirrors")).expanduser()
        host = urlsplit(url).netloc.lower().replace(":", "_")
        # Stable per target so incremental runs land on the previous mirror
        return root / sanitize_segment(host)

    async def _load(self, job_id: str) -> CloneJob:
        job = await self.job_store.get(job_id)
        if job is None:
            raise ValidationError(f"Unknown job {job_id}", field="job_id")
        return job

    async def run(self, job_id: str) -> CloneJob:
        """Crawl, download, verify and finish a pending job.

        Returns:
            The job in its final (or paused) state

        Raises:
            InvalidTransitionError: If the job is not pending
        """
        job = await self._load(job_id)
        if job.status != JobStatus.PENDING:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status.value}; only pending jobs can be run",
                details={"job_id": job_id, "status": job.status.value},
            )
        return await self._execute(job, None)

    async def resume(self, job_id: str) -> CloneJob:
        """Continue a paused job from its last checkpoint.

        A job stuck in an active status has lost its process and is
        paused first.

        Raises:
            InvalidTransitionError: If the job is running here or cannot resume
        """
        if job_id in self._active:
            raise InvalidTransitionError(f"Job {job_id} is already running", details={"job_id": job_id})
        job = await self._load(job_id)
        if job.status in ACTIVE_STATUSES:
            self.logger.warning(f"Job {job_id} was left {job.status.value}; resuming from its checkpoint")
            job.transition(JobStatus.PAUSED)
        if job.status != JobStatus.PAUSED:
            raise InvalidTransitionError(
                f"Job {job_id} is {job.status.value}; only paused jobs can be resumed",
                details={"job_id": job_id, "status": job.status.value},
            )
        self.metrics.increment_counter("jobs.resumed")
        return await self._execute(job, job.checkpoint)

    async def cancel(self, job_id: str) -> bool:
        """Request cancellation; honoured at the next safe point of the run.

        Returns:
            True if the job was cancelled or flagged for cancellation
        """
        state = self._active.get(job_id)
        if state is not None:
            state.cancel = True
            await self.job_store.request_cancel(job_id)
            self.logger.info(f"Cancellation requested for running job {job_id}")
            return True

        job = await self.job_store.get(job_id)
        if job is None or job.is_terminal:
            return False
        if job.status in (JobStatus.PENDING, JobStatus.PAUSED):
            job.cancel_requested = True
            job.transition(JobStatus.CANCELLED)
            await self.job_store.save(job)
            if self.dispatcher is not None:
                await self.dispatcher.cancel_job(job_id)
            self._publish_job(job, "Cancelled")
            self.progress.close(job_id)
            self.metrics.increment_counter("jobs.cancelled")
            return True

        # Running in another process; it re-reads the flag at its next checkpoint
        return await self.job_store.request_cancel(job_id)

    async def pause(self, job_id: str) -> bool:
        """Checkpoint and pause a job running in this process."""
        state = self._active.get(job_id)
        if state is None or state.job.status not in (JobStatus.CRAWLING, JobStatus.DOWNLOADING):
            return False
        state.pause = True
        self.logger.info(f"Pause requested for job {job_id}")
        return True

    async def get_job(self, job_id: str) -> Optional[JobRecord]:
        state = self._active.get(job_id)
        if state is not None:
            state.job.assets_captured = state.pipeline.assets_captured
            return state.job.to_record()
        job = await self.job_store.get(job_id)
        return job.to_record() if job else None

    async def list_jobs(self, status: Optional[JobStatus] = None, limit: int = 100) -> List[JobRecord]:
        return [job.to_record() for job in await self.job_store.list(status=status, limit=limit)]

    def subscribe(self, job_id: str) -> ProgressStream:
        return self.progress.subscribe(job_id)

    # Run

    async def _prepare(self, job: CloneJob, checkpoint: Optional[Checkpoint]) -> CrawlState:
        options = job.options
        layout = MirrorLayout(Path(job.output_dir), job.url, ignore_query=options.ignore_query)
        try:
            layout.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Output directory {layout.output_dir} is not writable: {e}", path=str(layout.output_dir)) from e

        scope = ScopePolicy(
            job.url,
            scope=options.scope,
            allowed_domains=options.allowed_domains,
            include_patterns=options.include_patterns,
            exclude_patterns=options.exclude_patterns,
        )
        retry = RetryConfig(
            max_attempts=options.retry.max_attempts,
            base_delay=options.retry.initial_backoff,
            max_delay=options.retry.max_backoff,
            blocked_max_attempts=options.retry.blocked_max_attempts,
        )

        proxy_pool = ProxyPool.from_options(options.proxy, self.config_manager)
        cache = updater = None
        if options.cache.enabled:
            cache = ContentCache(
                self.db_manager,
                self.config_manager,
                default_ttl=options.cache.ttl_seconds,
                ignore_query=options.ignore_query,
            )
            await cache.cleanup_expired()
            if options.incremental:
                updater = IncrementalUpdater(
                    cache,
                    transport=self.http_transport,
                    user_agent=options.user_agent,
                    proxy_pool=proxy_pool if proxy_pool.enabled else None,
                )

        if options.distributed:
            dispatcher = self.dispatcher
            if dispatcher is None:
                raise ConfigurationError(
                    f"Job {job.job_id} is distributed but no queue dispatcher is configured", config_key="queue"
                )

            async def fetch(entry: FrontierEntry) -> FetchOutcome:
                return await dispatcher.fetch_page(job.job_id, entry)

            async def downloader(url: str):
                return await dispatcher.download_asset(job.job_id, url)
        else:
            fetch = build_page_fetcher(self._get_session_pool(), options, self.config_manager, proxy_pool).fetch
            downloader = AssetDownloader(
                timeout=self.config_manager.get_setting("assets.download_timeout", 30.0),
                max_bytes=self.config_manager.get_setting("assets.max_asset_bytes", 50 * 1024 * 1024),
                user_agent=options.user_agent or self.config_manager.get_setting("browser.user_agent"),
                transport=self.http_transport,
                proxy_pool=proxy_pool if proxy_pool.enabled else None,
            )

        pipeline = AssetPipeline(
            layout,
            downloader=downloader,
            db_manager=self.db_manager,
            config_manager=self.config_manager,
            concurrency=options.asset_concurrency,
            optimize_media=options.optimize_media,
            retry=retry,
            job_id=job.job_id,
            sleep=self._sleep,
        )
        state = CrawlState(
            job=job,
            layout=layout,
            scope=scope,
            pipeline=pipeline,
            fetch=fetch,
            cache=cache,
            updater=updater,
            proxy_pool=proxy_pool,
            root_key=dedup_key(job.url, options.ignore_query),
        )
        state.cancel = job.cancel_requested

        if options.incremental and updater is not None:
            previous = await self._previous_capture(job)
            if previous is not None and previous.checkpoint is not None:
                pipeline.seed_previous(previous.checkpoint.asset_map)
                self.logger.info(f"Incremental run of {job.url} reuses assets of job {previous.job_id}")

        if checkpoint is None:
            state.seen.add(state.root_key)
            state.push(FrontierEntry(url=job.url, depth=0, dedup_key=state.root_key))
        else:
            self._restore(state, checkpoint)
        return state

    def _restore(self, state: CrawlState, checkpoint: Checkpoint) -> None:
        state.seen.update(checkpoint.seen_keys)
        state.visited.update(checkpoint.visited_keys)
        state.failed_urls.extend(checkpoint.failed_urls)
        for entry in checkpoint.frontier:
            if entry.dedup_key not in state.visited:
                state.push(entry)
        restored = state.pipeline.restore(checkpoint.asset_map)
        for summary in checkpoint.pages:
            page = PageRecord.from_summary(summary)
            self._register_page(state, dedup_key(page.url, state.options.ignore_query), page)
            state.asset_tasks.append(asyncio.ensure_future(self._resolve_assets(state, page)))
        self.logger.info(
            f"Restored job {state.job.job_id}: {len(state.visited)} visited, "
            f"{len(state.frontier)} queued, {restored} assets on disk"
        )

    async def _previous_capture(self, job: CloneJob) -> Optional[CloneJob]:
        for candidate in await self.job_store.list(status=JobStatus.COMPLETED):
            if candidate.job_id != job.job_id and candidate.url == job.url and candidate.output_dir == job.output_dir:
                return candidate
        return None

    def _start_health_checks(self, state: CrawlState) -> None:
        """Check the job's proxies in the background for as long as the run lasts."""
        check_url = self.config_manager.get_setting("proxy.check_url")
        interval = self.config_manager.get_setting("proxy.check_interval", 60.0)
        if state.proxy_pool is None or not state.proxy_pool.enabled or not check_url or not interval:
            return
        state.health_checks = asyncio.ensure_future(state.proxy_pool.monitor.run_checks(
            check_url,
            interval=interval,
            timeout=self.config_manager.get_setting("proxy.check_timeout", 10.0),
        ))

    async def _execute(self, job: CloneJob, checkpoint: Optional[Checkpoint]) -> CloneJob:
        context = ErrorContext(operation="run", url=job.url, job_id=job.job_id)
        state: Optional[CrawlState] = None
        try:
            state = await self._prepare(job, checkpoint)
            self._start_health_checks(state)
            self._active[job.job_id] = state
            job.transition(JobStatus.CRAWLING)
            await self.job_store.save(job)
            self._publish(state, "Crawl started" if checkpoint is None else "Crawl resumed")

            with timer("orchestrator.crawl"):
                await self._crawl(state)
            await self._finish(state)
        except (StorageError, OSError) as e:
            error = e if isinstance(e, StorageError) else StorageError(f"Output write failed: {e}")
            handle_error(error, context)
            job.add_error(ErrorKind.STORAGE.value, str(error), url=job.url)
            if job.can_transition(JobStatus.FAILED):
                job.transition(JobStatus.FAILED)
            self.metrics.increment_counter("jobs.failed")
            if state is not None:
                await self._save_final(state)
            else:
                await self.job_store.save(job)
        finally:
            if state is not None:
                for task in state.asset_tasks:
                    if not task.done():
                        task.cancel()
                if state.health_checks is not None:
                    state.health_checks.cancel()
                await state.pipeline.close()
            self._active.pop(job.job_id, None)
            if job.is_terminal or job.status == JobStatus.PAUSED:
                self._publish_job(job, f"Job {job.status.value}")
                self.progress.close(job.job_id)
        return job

    async def _crawl(self, state: CrawlState) -> None:
        """Dispatch the frontier breadth-first until it is exhausted, bounded or stopped."""
        options = state.options
        interval = self.config_manager.get_setting("crawl.checkpoint_interval", 5)
        running: Dict[asyncio.Future, FrontierEntry] = {}
        try:
            while True:
                while (
                    not state.stopping
                    and state.frontier
                    and len(running) < options.concurrency
                    and state.dispatched < options.max_pages
                ):
                    entry = state.pop()
                    state.in_flight[entry.dedup_key] = entry
                    running[asyncio.ensure_future(self._process(state, entry))] = entry

                if not running:
                    break
                done, _ = await asyncio.wait(list(running), return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    running.pop(task)
                    task.result()
                    state.since_checkpoint += 1

                self._publish(state)
                if state.since_checkpoint >= interval:
                    await self._checkpoint(state)
        finally:
            for task in running:
                task.cancel()
            if running:
                await asyncio.gather(*running, return_exceptions=True)

    async def _process(self, state: CrawlState, entry: FrontierEntry) -> None:
        job = state.job
        page = None
        if state.options.incremental and state.updater is not None:
            page = await self._from_cache(state, entry)

        if page is not None:
            job.pages_cached += 1
            self.metrics.increment_counter("pages.cached")
        else:
            outcome = await self._fetch_with_retry(state, entry)
            if not outcome.ok:
                self._record_failure(state, entry, outcome)
                state.in_flight.pop(entry.dedup_key, None)
                state.visited.add(entry.dedup_key)
                return
            page = outcome.page
            page.depth = entry.depth
            await self._store_page(state, page)
            job.pages_cloned += 1

        write_file_atomic(state.layout.staged_page_path(page.content_hash), page.html.encode("utf-8"))
        page.html = None
        self._register_page(state, entry.dedup_key, page)
        state.asset_tasks.append(asyncio.ensure_future(self._resolve_assets(state, page)))
        self._expand(state, page)
        state.in_flight.pop(entry.dedup_key, None)
        state.visited.add(entry.dedup_key)

    async def _fetch_with_retry(self, state: CrawlState, entry: FrontierEntry) -> FetchOutcome:
        """Fetch with the retry policy of the outcome's error kind."""
        retry = state.options.retry
        config = RetryConfig(
            max_attempts=retry.max_attempts,
            base_delay=retry.initial_backoff,
            max_delay=retry.max_backoff,
        )
        attempt = 0
        while True:
            attempt += 1
            outcome = await state.fetch(entry)
            if outcome.ok:
                return outcome

            if outcome.error_kind == ErrorKind.BLOCKED:
                limit = retry.blocked_max_attempts
            elif outcome.error_kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
                limit = retry.max_attempts
            else:
                return outcome
            if not outcome.retryable or attempt >= limit or state.cancel:
                return outcome

            delay = calculate_retry_delay(attempt, config)
            if outcome.retry_after:
                delay = max(delay, outcome.retry_after)
            self.metrics.increment_counter("pages.retried")
            self.logger.info(
                f"Retrying {entry.url} in {delay:.1f}s after {outcome.error_kind.value} "
                f"(attempt {attempt}/{limit}): {outcome.message}"
            )
            await self._sleep(delay)

    async def _from_cache(self, state: CrawlState, entry: FrontierEntry) -> Optional[PageRecord]:
        """The cached page for ``entry`` if the live one has not changed."""
        decision = await state.updater.check(entry.url)
        if decision.changed:
            self.logger.debug(f"{entry.url} needs fetching ({decision.reason.value})")
            return None
        html = decision.cached.text
        soup = parse_html(html)
        return PageRecord(
            url=entry.url,
            status_code=200,
            content_hash=content_hash(html),
            depth=entry.depth,
            html=html,
            title=soup.title.get_text(strip=True) if soup.title else None,
            links=sorted(extract_anchor_links(soup, entry.url)),
            assets=sorted(extract_asset_urls(soup, entry.url)),
            from_cache=True,
            etag=decision.etag,
            last_modified=decision.last_modified,
        )

    async def _store_page(self, state: CrawlState, page: PageRecord) -> None:
        """Keep a freshly fetched body in the content cache along with its change validators."""
        if state.cache is None:
            return
        await state.cache.put(
            page.content_hash,
            page.html.encode("utf-8"),
            ttl=state.options.cache.ttl_seconds,
            content_type="text/html",
        )
        if state.updater is not None:
            headers = {"etag": page.etag, "last-modified": page.last_modified}
            await state.updater.remember(page.url, page.content_hash, {k: v for k, v in headers.items() if v})
        else:
            await state.cache.index_url(
                page.url, page.content_hash, etag=page.etag, last_modified=page.last_modified
            )

    def _register_page(self, state: CrawlState, key: str, page: PageRecord) -> None:
        state.pages[key] = page
        state.page_keys[key] = key
        if page.final_url and page.final_url != page.url:
            final_key = dedup_key(page.final_url, state.options.ignore_query)
            state.page_keys.setdefault(final_key, key)
            # A redirect target is the same page; never fetch it again
            state.seen.add(final_key)

    def _expand(self, state: CrawlState, page: PageRecord) -> None:
        """Queue the page's in-scope links that were never seen before."""
        depth = page.depth + 1
        if depth > state.options.max_depth or state.dispatched >= state.options.max_pages:
            return
        for link in page.links:
            if not state.scope.in_scope(link):
                continue
            key = dedup_key(link, state.options.ignore_query)
            if key in state.seen:
                continue
            state.seen.add(key)
            state.push(FrontierEntry(url=strip_fragment(link), depth=depth, dedup_key=key, parent_url=page.url))

    async def _resolve_assets(self, state: CrawlState, page: PageRecord) -> None:
        await state.pipeline.resolve(page.assets, referrer=page.url, reuse_previous=page.from_cache)

    def _record_failure(self, state: CrawlState, entry: FrontierEntry, outcome: FetchOutcome) -> None:
        job = state.job
        kind = outcome.error_kind or ErrorKind.NETWORK
        job.pages_failed += 1
        job.add_error(
            kind.value,
            outcome.message or f"Fetch of {entry.url} failed",
            url=entry.url,
            status_code=outcome.status_code,
            depth=entry.depth,
        )
        state.failed_urls.append(entry.url)
        self.metrics.increment_counter("pages.failed")
        self.logger.warning(f"Giving up on {entry.url} ({kind.value}): {outcome.message}")
        if entry.dedup_key == state.root_key:
            state.root_failed = True

    # Completion

    async def _finish(self, state: CrawlState) -> None:
        job = state.job
        if state.root_failed:
            job.transition(JobStatus.FAILED)
            self.metrics.increment_counter("jobs.failed")
            self.logger.error(f"Job {job.job_id} failed: root page {job.url} could not be fetched")
            await self._save_final(state)
            return
        if await self._stop_if_requested(state):
            return

        if any(not task.done() for task in state.asset_tasks):
            job.transition(JobStatus.DOWNLOADING)
            await self._checkpoint(state)
            self._publish(state, "Downloading assets")
        with timer("orchestrator.assets"):
            await asyncio.gather(*state.asset_tasks)
        for url, message in sorted(state.pipeline.failed.items()):
            job.add_error(ErrorKind.NETWORK.value, message, url=url, asset=True)
        state.pipeline.failed.clear()
        if await self._stop_if_requested(state):
            return

        self._write_pages(state)
        job.assets_captured = state.pipeline.assets_captured
        job.transition(JobStatus.VERIFYING)
        await self._checkpoint(state)
        self._publish(state, "Verifying mirror")

        job.verification = await self._verify(state)
        job.transition(JobStatus.COMPLETED)
        self.metrics.increment_counter("jobs.completed")
        await self._save_final(state)
        self.logger.info(
            f"Job {job.job_id} completed: {job.pages_cloned} pages cloned, {job.pages_cached} cached, "
            f"{job.pages_failed} failed, {job.assets_captured} assets"
        )

    async def _stop_if_requested(self, state: CrawlState) -> bool:
        job = state.job
        if state.cancel:
            job.cancel_requested = True
            job.transition(JobStatus.CANCELLED)
            if job.options.distributed and self.dispatcher is not None:
                await self.dispatcher.cancel_job(job.job_id)
            self.metrics.increment_counter("jobs.cancelled")
        elif state.pause:
            job.transition(JobStatus.PAUSED)
            self.metrics.increment_counter("jobs.paused")
        else:
            return False
        self.logger.info(f"Job {job.job_id} {job.status.value} after {len(state.visited)} pages")
        await self._save_final(state)
        return True

    def _write_pages(self, state: CrawlState) -> None:
        """Rewrite every captured page now that the full page and asset maps are known."""
        ignore_query = state.options.ignore_query

        def page_for_url(url: str) -> Optional[Path]:
            key = state.page_keys.get(dedup_key(url, ignore_query))
            if key is None:
                return None
            return state.layout.page_path(state.pages[key].url)

        with timer("orchestrator.write_pages"):
            for page in state.pages.values():
                staged = state.layout.staged_page_path(page.content_hash)
                page.html = staged.read_text(encoding="utf-8")
                try:
                    state.pipeline.write_page(page, page_for_url)
                finally:
                    page.html = None

    async def _verify(self, state: CrawlState) -> Optional[VerificationReport]:
        job = state.job
        js_checker = self.js_checker
        if js_checker is None and job.options.verify_js:
            js_checker = browser_js_checker(self._get_session_pool())
        scorer = VerificationScorer(self.config_manager, js_checker=js_checker)
        try:
            return await scorer.score(
                state.layout,
                list(state.pages.values()),
                state.pipeline.asset_for_url,
                await state.pipeline.load_integrity_targets(),
                state.scope,
                set(state.visited),
                ignore_query=job.options.ignore_query,
                check_js=job.options.verify_js,
            )
        except VerificationError as e:
            handle_error(e, ErrorContext(operation="verify", url=job.url, job_id=job.job_id))
            job.add_error(ErrorKind.VERIFICATION.value, e.message, url=job.url)
            return None

    # Persistence and progress

    async def _checkpoint(self, state: CrawlState) -> None:
        job = state.job
        job.checkpoint = state.snapshot()
        job.assets_captured = state.pipeline.assets_captured
        state.since_checkpoint = 0
        await self.job_store.save(job)
        if not state.cancel and await self.job_store.is_cancel_requested(job.job_id):
            self.logger.info(f"Job {job.job_id} was cancelled from another process")
            state.cancel = True

    async def _save_final(self, state: CrawlState) -> None:
        state.job.checkpoint = state.snapshot()
        state.job.assets_captured = state.pipeline.assets_captured
        await self.job_store.save(state.job)

    def _publish(self, state: CrawlState, message: str = "") -> None:
        total = min(state.options.max_pages, state.dispatched + len(state.frontier))
        self.progress.publish(ProgressEvent(
            job_id=state.job.job_id,
            current_page=len(state.visited),
            total_pages=total,
            status=state.job.status.value,
            message=message,
        ))

    def _publish_job(self, job: CloneJob, message: str) -> None:
        done = job.pages_cloned + job.pages_cached + job.pages_failed
        self.progress.publish(ProgressEvent(
            job_id=job.job_id,
            current_page=done,
            total_pages=done,
            status=job.status.value,
            message=message,
        ))


_orchestrator: Optional[CloneOrchestrator] = None


def get_orchestrator() -> CloneOrchestrator:
    """Process-wide orchestrator backed by the configured database."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = CloneOrchestrator()
    return _orchestrator


def set_orchestrator(orchestrator: Optional[CloneOrchestrator]) -> None:
    global _orchestrator
    _orchestrator = orchestrator
