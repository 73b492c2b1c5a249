"""End-to-end clones of in-memory fixture sites."""

import asyncio
from pathlib import Path

import pytest

from conftest import FakeSession, FakeSite
from sitemirror.core.browser import BrowserSessionPool
from sitemirror.core.cache import ContentCache
from sitemirror.core.jobs import JobStatus, SqlJobStore
from sitemirror.core.queue import QueueDispatcher, TaskQueue
from sitemirror.models.options import CloneOptions
from sitemirror.services.challenge import CHALLENGE_CLEARED_JS
from sitemirror.services.worker import QueueWorker

pytestmark = [pytest.mark.integration, pytest.mark.timeout(120)]

ROOT = "https://example.com/"

INTERSTITIAL = (
    "<html><head><title>Just a moment...</title></head>"
    '<body><form id="challenge-form" action="/cdn-cgi/l/chk_jschl"></form></body></html>'
)
PLAIN_PAGE = "<html><head><title>Plain</title></head><body><p>Hello</p></body></html>"


def snapshot_tree(root: Path) -> dict:
    return {
        path.relative_to(root).as_posix(): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestFullClone:
    """Complete runs against the three-page fixture site."""

    async def test_clone_produces_complete_mirror(self, make_orchestrator, three_page_site):
        """Test a full clone captures every page and asset and scores 100."""
        orchestrator = make_orchestrator(three_page_site)
        job_id = await orchestrator.submit(ROOT, CloneOptions(max_pages=10, max_depth=2))
        stream = orchestrator.subscribe(job_id)

        job = await orchestrator.run(job_id)

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 3
        assert job.pages_failed == 0
        assert job.assets_captured == 3
        assert job.verification is not None
        assert job.verification.score == 100.0
        assert job.verification.passed is True
        assert job.verification.asset_stats.missing == 0
        assert job.verification.link_stats.broken == 0

        output = Path(job.output_dir)
        assert (output / "index.html").is_file()
        assert (output / "about" / "index.html").is_file()
        assert (output / "blog" / "index.html").is_file()

        index = (output / "index.html").read_text()
        assert 'href="about/index.html"' in index
        assert 'href="blog/index.html"' in index
        assert "https://other.org/x" in index
        assert "assets/css/" in index
        assert "/static/site.css" not in index

        # The shared stylesheet and logo are downloaded once
        assert sorted(three_page_site.asset_requests) == sorted(set(three_page_site.asset_requests))
        assert len(three_page_site.asset_requests) == 3

        events = stream.drain()
        assert stream.closed
        assert events[-1].status == "completed"

    async def test_job_record_uses_contract_names(self, make_orchestrator, three_page_site):
        """Test the finished job record serializes with camelCase names."""
        orchestrator = make_orchestrator(three_page_site)
        job_id = await orchestrator.submit(ROOT, CloneOptions(max_depth=1))
        await orchestrator.run(job_id)

        record = (await orchestrator.get_job(job_id)).to_contract()
        assert record["status"] == "completed"
        assert record["pagesCloned"] == 3
        assert record["verification"]["linkStats"]["broken"] == 0
        assert record["verification"]["score"] == 100.0

    async def test_incremental_rerun_is_idempotent(self, make_orchestrator, three_page_site):
        """Test a second incremental run serves every page from cache and changes nothing."""
        orchestrator = make_orchestrator(three_page_site)
        options = CloneOptions(incremental=True)

        first = await orchestrator.run(await orchestrator.submit(ROOT, options))
        assert first.status == JobStatus.COMPLETED
        assert first.pages_cloned == 3
        before = snapshot_tree(Path(first.output_dir))
        navigations = len(three_page_site.navigations)
        downloads = len(three_page_site.asset_requests)

        second = await orchestrator.run(await orchestrator.submit(ROOT, options))

        assert second.status == JobStatus.COMPLETED
        assert second.output_dir == first.output_dir
        assert second.pages_cached == 3
        assert second.pages_cloned == 0
        assert len(three_page_site.navigations) == navigations
        assert len(three_page_site.asset_requests) == downloads
        assert second.verification.score == 100.0
        assert snapshot_tree(Path(second.output_dir)) == before

    async def test_changed_page_is_refetched(self, make_orchestrator, three_page_site):
        """Test an incremental run re-fetches only the page whose body changed."""
        orchestrator = make_orchestrator(three_page_site)
        options = CloneOptions(incremental=True)
        await orchestrator.run(await orchestrator.submit(ROOT, options))

        three_page_site.add_page(
            "https://example.com/about",
            "<html><head><title>About us</title></head><body><a href=\"/\">Home</a></body></html>",
        )
        second = await orchestrator.run(await orchestrator.submit(ROOT, options))

        assert second.pages_cloned == 1
        assert second.pages_cached == 2
        assert three_page_site.navigation_count("https://example.com/about") == 2
        about = (Path(second.output_dir) / "about" / "index.html").read_text()
        assert "About us" in about


class TestCrawlBounds:
    """Depth and page limits."""

    async def test_max_depth_zero_captures_only_root(self, make_orchestrator, three_page_site):
        """Test maxDepth=0 fetches the root page and nothing else."""
        orchestrator = make_orchestrator(three_page_site)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions(max_depth=0, max_pages=1)))

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 1
        assert three_page_site.navigations == [ROOT]
        index = (Path(job.output_dir) / "index.html").read_text()
        # Pages outside the crawl keep their absolute URL
        assert 'href="https://example.com/about"' in index

    async def test_max_pages_bounds_the_crawl(self, make_orchestrator, three_page_site):
        """Test maxPages caps the number of fetched pages."""
        orchestrator = make_orchestrator(three_page_site)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions(max_pages=2)))

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 2
        assert len(three_page_site.navigations) == 2

    async def test_missing_page_is_recorded_not_fatal(self, make_orchestrator):
        """Test a 404 below the root is counted as a failed page."""
        site = FakeSite(pages={
            ROOT: '<html><body><a href="/gone">Gone</a></body></html>',
        })
        orchestrator = make_orchestrator(site)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions()))

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 1
        assert job.pages_failed == 1
        assert job.errors[0]["kind"] == "network"
        assert job.errors[0]["status_code"] == 404
        # The link to the failed page cannot be rewritten
        assert job.verification.link_stats.broken == 1


class TestPauseAndResume:
    """Checkpointed pause and resume."""

    async def test_resume_continues_without_refetching(self, make_orchestrator, three_page_site):
        """Test a paused job resumes from its checkpoint and fetches only the remaining pages."""
        orchestrator = make_orchestrator(three_page_site)
        job_id = await orchestrator.submit(ROOT, CloneOptions(concurrency=1))

        async def pause_on_second_page(url):
            if len(three_page_site.navigations) == 2:
                await orchestrator.pause(job_id)

        three_page_site.on_navigate = pause_on_second_page
        paused = await orchestrator.run(job_id)

        assert paused.status == JobStatus.PAUSED
        assert paused.pages_cloned == 2
        assert paused.checkpoint is not None
        assert [entry.url for entry in paused.checkpoint.frontier] == ["https://example.com/blog/"]

        three_page_site.on_navigate = None
        resumed = await orchestrator.resume(job_id)

        assert resumed.status == JobStatus.COMPLETED
        assert resumed.pages_cloned == 3
        assert len(three_page_site.navigations) == 3
        for url in (ROOT, "https://example.com/about", "https://example.com/blog/"):
            assert three_page_site.navigation_count(url) == 1
        assert resumed.verification.score == 100.0

    async def test_cancel_pending_job(self, make_orchestrator, three_page_site):
        """Test cancelling a job that never started."""
        orchestrator = make_orchestrator(three_page_site)
        job_id = await orchestrator.submit(ROOT, CloneOptions())

        assert await orchestrator.cancel(job_id) is True
        record = await orchestrator.get_job(job_id)
        assert record.status == "cancelled"
        assert three_page_site.navigations == []
        assert await orchestrator.cancel(job_id) is False

    async def test_cancel_during_crawl(self, make_orchestrator, three_page_site):
        """Test a cancel request stops the crawl at the next safe point."""
        orchestrator = make_orchestrator(three_page_site)
        job_id = await orchestrator.submit(ROOT, CloneOptions(concurrency=1))

        async def cancel_on_first_page(url):
            await orchestrator.cancel(job_id)

        three_page_site.on_navigate = cancel_on_first_page
        job = await orchestrator.run(job_id)

        assert job.status == JobStatus.CANCELLED
        assert job.pages_cloned == 1
        assert three_page_site.navigations == [ROOT]


class TestFailureHandling:
    """Retries, rate limits and anti-bot challenges."""

    async def test_rate_limit_waits_for_retry_after(self, make_orchestrator, sleep):
        """Test a 429 is retried after the server's Retry-After delay."""
        site = FakeSite(pages={ROOT: [("", 429, {"Retry-After": "7"}), PLAIN_PAGE]})
        orchestrator = make_orchestrator(site)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions(max_depth=0)))

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 1
        assert sleep.delays == [7.0]
        assert site.navigation_count(ROOT) == 2

    async def test_script_challenge_is_bypassed(self, make_orchestrator, sleep):
        """Test a script challenge is waited out inside the same session."""
        site = FakeSite(pages={ROOT: [INTERSTITIAL, PLAIN_PAGE]})
        pool = BrowserSessionPool(max_size=1, session_factory=lambda proxy: FakeSession(site, proxy))
        orchestrator = make_orchestrator(site, session_pool=pool)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions(max_depth=0)))

        assert job.status == JobStatus.COMPLETED
        assert sleep.delays == []
        challenge = job.checkpoint.pages[0]["challenge"]
        assert challenge["detected"] == "script-challenge"
        assert challenge["bypassed"] is True
        session = pool._idle[0]
        assert session.calls[1]["wait_for"] == CHALLENGE_CLEARED_JS

    async def test_blocked_root_fails_job(self, make_orchestrator, sleep):
        """Test a root page that stays behind a challenge fails the job."""
        site = FakeSite(pages={ROOT: INTERSTITIAL})
        orchestrator = make_orchestrator(site)
        job = await orchestrator.run(await orchestrator.submit(ROOT, CloneOptions()))

        assert job.status == JobStatus.FAILED
        assert job.pages_failed == 1
        assert job.errors[0]["kind"] == "blocked"
        # Two fetch attempts, each with the initial navigation and two bypass reloads
        assert site.navigation_count(ROOT) == 6
        assert len(sleep.delays) == 1


class TestDistributedClone:
    """Clones whose fetches run on a queue worker."""

    async def test_distributed_clone_matches_local(
        self, make_orchestrator, three_page_site, config_manager, database_manager
    ):
        """Test a distributed job produces the same mirror through the queue."""
        queue = TaskQueue(database_manager, config_manager)
        cache = ContentCache(database_manager, config_manager)
        dispatcher = QueueDispatcher(queue, cache, poll_interval=0.01, result_timeout=30)
        orchestrator = make_orchestrator(three_page_site, dispatcher=dispatcher)
        worker = QueueWorker(
            queue=queue,
            cache=cache,
            job_store=SqlJobStore(database_manager),
            session_pool=BrowserSessionPool(
                max_size=2,
                session_factory=lambda proxy: FakeSession(three_page_site, proxy),
                config_manager=config_manager,
            ),
            config_manager=config_manager,
            db_manager=database_manager,
            worker_id="worker-1",
            http_transport=three_page_site.transport(),
            poll_interval=0.01,
        )
        worker_task = asyncio.create_task(worker.run())
        try:
            job_id = await orchestrator.submit(ROOT, CloneOptions(distributed=True))
            job = await asyncio.wait_for(orchestrator.run(job_id), timeout=60)
        finally:
            worker.stop()
            await worker_task

        assert job.status == JobStatus.COMPLETED
        assert job.pages_cloned == 3
        assert job.assets_captured == 3
        assert job.verification.score == 100.0
        assert worker.processed == 6
        stats = await queue.stats(job_id)
        assert stats["waiting"] == 0
        assert stats["active"] == 0
