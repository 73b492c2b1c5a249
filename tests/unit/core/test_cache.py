"""Tests for the content cache and incremental change detection."""

import asyncio
from datetime import datetime, timedelta

import httpx
import pytest

from sitemirror.core.cache import ChangeReason, ContentCache, IncrementalUpdater, KeyedLock, content_hash
from sitemirror.models.options import ProxyEndpoint
from sitemirror.services.proxy import ProxyPool


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class LiveDocument:
    """Mutable server-side state for a single URL."""

    def __init__(self, body=b"<html>v1</html>", etag=None, last_modified=None, status=200):
        self.body = body
        self.etag = etag
        self.last_modified = last_modified
        self.status = status
        self.requests = []
        self.fail = False

    def handler(self, request):
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        headers = {}
        if self.etag:
            headers["etag"] = self.etag
            if request.headers.get("if-none-match") == self.etag:
                return httpx.Response(304, headers=headers)
        if self.last_modified:
            headers["last-modified"] = self.last_modified
        return httpx.Response(self.status, content=self.body, headers=headers)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(database_manager, config_manager, clock):
    return ContentCache(db_manager=database_manager, config_manager=config_manager, default_ttl=60, clock=clock)


class TestContentCache:
    """Test suite for ContentCache."""

    async def test_store_and_get(self, cache):
        """Test payloads are stored under their sha256."""
        hash_ = await cache.store(b"body { color: red }", content_type="text/css")
        assert hash_ == content_hash(b"body { color: red }")

        cached = await cache.get(hash_)
        assert cached.payload == b"body { color: red }"
        assert cached.content_type == "text/css"
        assert cached.byte_size == 19
        assert cache.hits == 1

    async def test_put_rejects_wrong_hash(self, cache):
        """Test a payload must match the hash it is stored under."""
        with pytest.raises(ValueError):
            await cache.put("0" * 64, b"not that")

    async def test_concurrent_stores_leave_no_locks(self, cache):
        """Test per-hash locks are dropped once concurrent writers finish."""
        hashes = await asyncio.gather(*(cache.store(f"body {i % 3}") for i in range(9)))

        assert len(set(hashes)) == 3
        assert len(cache._locks) == 0

    async def test_same_content_stored_once(self, cache):
        """Test identical payloads converge on one entry."""
        first = await cache.store("same")
        second = await cache.store(b"same")
        assert first == second
        assert (await cache.stats())["entries"] == 1

    async def test_unknown_hash_is_miss(self, cache):
        """Test lookups of unknown content are misses."""
        assert await cache.get("a" * 64) is None
        assert await cache.get("https://example.com/never") is None
        assert cache.misses == 2

    async def test_get_by_url(self, cache):
        """Test URL lookups go through the canonical URL index."""
        hash_ = await cache.store("<html>home</html>")
        await cache.index_url("https://Example.com/about/", hash_, etag='"abc"')

        cached = await cache.get("https://example.com/about")
        assert cached.text == "<html>home</html>"
        indexed = await cache.lookup_url("https://example.com/about#team")
        assert indexed.etag == '"abc"'

    async def test_reindex_overwrites(self, cache):
        """Test a later capture replaces the URL's index entry."""
        first = await cache.store("v1")
        second = await cache.store("v2")
        await cache.index_url("https://example.com/", first)
        await cache.index_url("https://example.com/", second)
        assert (await cache.lookup_url("https://example.com/")).content_hash == second

    async def test_expired_entry_is_miss(self, cache, clock):
        """Test entries past their TTL are misses and are removed."""
        hash_ = await cache.store(b"short lived")
        clock.advance(61)
        assert await cache.get(hash_) is None
        assert (await cache.stats())["entries"] == 0

    async def test_non_positive_ttl_never_expires(self, cache, clock):
        """Test a zero TTL stores an entry without expiry."""
        hash_ = await cache.store(b"forever", ttl=0)
        clock.advance(10 ** 6)
        assert (await cache.get(hash_)).expires_at is None

    async def test_touch_extends_lifetime(self, cache, clock):
        """Test touching an entry pushes its expiry out."""
        hash_ = await cache.store(b"refreshed")
        clock.advance(50)
        await cache.touch(hash_)
        clock.advance(50)
        assert await cache.get(hash_) is not None

    async def test_cleanup_expired(self, cache, clock):
        """Test cleanup removes only expired entries."""
        await cache.store(b"one")
        await cache.store(b"two")
        await cache.store(b"keep", ttl=3600)
        clock.advance(120)

        assert await cache.cleanup_expired() == 2
        stats = await cache.stats()
        assert stats["entries"] == 1
        assert stats["total_bytes"] == 4

    async def test_stats_hit_rate(self, cache):
        """Test hit rate reflects lookups."""
        hash_ = await cache.store(b"x")
        await cache.get(hash_)
        await cache.get("b" * 64)
        stats = await cache.stats()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["hit_rate"] == 0.5


class TestIncrementalUpdater:
    """Test suite for change detection on incremental runs."""

    URL = "https://example.com/page"

    async def _captured(self, cache, document, headers=None):
        updater = IncrementalUpdater(cache, transport=httpx.MockTransport(document.handler))
        hash_ = await cache.store(document.body)
        await updater.remember(self.URL, hash_, headers=headers)
        return updater

    async def test_new_url(self, cache):
        """Test a URL never captured is new."""
        updater = IncrementalUpdater(cache, transport=httpx.MockTransport(LiveDocument().handler))
        decision = await updater.check(self.URL)
        assert decision.changed is True
        assert decision.reason == ChangeReason.NEW

    async def test_unchanged_body(self, cache):
        """Test an identical raw body is unchanged and returns the cached copy."""
        document = LiveDocument()
        updater = await self._captured(cache, document)

        decision = await updater.check(self.URL)

        assert decision.changed is False
        assert decision.reason == ChangeReason.UNCHANGED
        assert decision.cached.payload == document.body

    async def test_changed_body(self, cache):
        """Test a different raw body is a content change."""
        document = LiveDocument()
        updater = await self._captured(cache, document)
        document.body = b"<html>v2</html>"

        decision = await updater.check(self.URL)

        assert decision.changed is True
        assert decision.reason == ChangeReason.CONTENT_HASH
        assert decision.cached is None
        assert decision.raw_hash == content_hash(b"<html>v2</html>")

    async def test_etag_not_modified(self, cache):
        """Test a 304 to a conditional request means unchanged."""
        document = LiveDocument(etag='"v1"')
        updater = await self._captured(cache, document, headers={"etag": '"v1"'})

        decision = await updater.check(self.URL)

        assert decision.changed is False
        assert document.requests[-1].headers["if-none-match"] == '"v1"'

    async def test_etag_changed(self, cache):
        """Test a new ETag means changed."""
        document = LiveDocument(etag='"v1"')
        updater = await self._captured(cache, document)
        document.etag = '"v2"'

        decision = await updater.check(self.URL)

        assert decision.changed is True
        assert decision.reason == ChangeReason.ETAG
        assert decision.etag == '"v2"'

    async def test_last_modified_changed(self, cache):
        """Test a new Last-Modified means changed."""
        document = LiveDocument(last_modified="Mon, 01 Jan 2024 00:00:00 GMT")
        updater = await self._captured(cache, document)
        document.last_modified = "Tue, 02 Jan 2024 00:00:00 GMT"

        decision = await updater.check(self.URL)

        assert decision.changed is True
        assert decision.reason == ChangeReason.LAST_MODIFIED

    async def test_check_failure_refetches(self, cache):
        """Test an unreachable or erroring change check forces a re-fetch."""
        document = LiveDocument()
        updater = await self._captured(cache, document)

        document.fail = True
        decision = await updater.check(self.URL)
        assert decision.changed is True
        assert decision.reason == ChangeReason.CHECK_FAILED

        document.fail = False
        document.status = 500
        decision = await updater.check(self.URL)
        assert decision.reason == ChangeReason.CHECK_FAILED

    async def test_expired_cache_is_new(self, cache, clock):
        """Test an index entry whose content expired counts as new."""
        document = LiveDocument()
        updater = await self._captured(cache, document)
        clock.advance(3600)

        decision = await updater.check(self.URL)

        assert decision.reason == ChangeReason.NEW

    async def test_remember_survives_check_failure(self, cache):
        """Test the capture is indexed even if the baseline request fails."""
        document = LiveDocument()
        document.fail = True
        updater = IncrementalUpdater(cache, transport=httpx.MockTransport(document.handler))
        hash_ = await cache.store(document.body)

        await updater.remember(self.URL, hash_, headers={"etag": '"x"'})

        indexed = await cache.lookup_url(self.URL)
        assert indexed.content_hash == hash_
        assert indexed.raw_hash is None
        assert indexed.etag == '"x"'

    async def test_change_checks_use_proxy_pool(self, cache):
        """Test change checks go out through the proxy pool and report to it."""
        proxy = ProxyEndpoint(host="10.0.0.7", port=8080)
        pool = ProxyPool([proxy])
        document = LiveDocument(etag='"v1"')
        updater = IncrementalUpdater(cache, transport=httpx.MockTransport(document.handler), proxy_pool=pool)
        hash_ = await cache.store(document.body)
        await updater.remember(self.URL, hash_)

        decision = await updater.check(self.URL)

        assert decision.reason == ChangeReason.UNCHANGED
        node = pool.monitor.nodes[proxy.key]
        assert node.total_successes == 2
        assert node.total_failures == 0

    async def test_failed_change_check_charges_proxy(self, cache):
        """Test a refused change check counts against the proxy that carried it."""
        proxy = ProxyEndpoint(host="10.0.0.7", port=8080)
        pool = ProxyPool([proxy])
        document = LiveDocument()
        updater = IncrementalUpdater(cache, transport=httpx.MockTransport(document.handler), proxy_pool=pool)
        hash_ = await cache.store(document.body)
        await updater.remember(self.URL, hash_)
        document.fail = True

        decision = await updater.check(self.URL)

        assert decision.reason == ChangeReason.CHECK_FAILED
        assert pool.monitor.nodes[proxy.key].consecutive_failures == 1


class TestKeyedLock:
    """Test suite for per-key locks."""

    async def test_same_key_is_serialized(self):
        """Test holders of one key run one at a time while other keys proceed."""
        locks = KeyedLock()
        order = []

        async def hold(key, label, delay):
            async with locks.hold(key):
                order.append(f"{label}-in")
                await asyncio.sleep(delay)
                order.append(f"{label}-out")

        await asyncio.gather(hold("a", "first", 0.02), hold("a", "second", 0), hold("b", "other", 0))

        assert order.index("first-out") < order.index("second-in")
        assert order.index("other-in") < order.index("first-out")
        assert len(locks) == 0

    async def test_released_after_error(self):
        """Test a holder that raises still releases and forgets the key."""
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("a"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        async with locks.hold("a"):
            assert len(locks) == 1
