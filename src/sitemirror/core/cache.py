"""Content-addressed cache and incremental change detection."""

import asyncio
import hashlib
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, Optional, Union

import httpx
from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError

from ..database.connection import DatabaseManager, get_database_manager
from ..database.models import CacheEntry, UrlIndexEntry
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import StorageError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from .urls import canonicalize_url

HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def content_hash(data: Union[bytes, str]) -> str:
    """sha256 hex digest of ``data`` (str is hashed as UTF-8)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


class KeyedLock:
    """One asyncio lock per key, kept only while a task holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]


@dataclass
class CachedContent:
    """A cache hit."""
    content_hash: str
    payload: bytes
    content_type: Optional[str] = None
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    @property
    def byte_size(self) -> int:
        return len(self.payload)

    @property
    def text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")


@dataclass
class UrlIndexRecord:
    """What the cache remembers about a URL's last capture."""
    url: str
    content_hash: str
    raw_hash: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    fetched_at: Optional[datetime] = None


class ContentCache:
    """Stores payloads under the sha256 of their bytes, with TTL expiry.

    Concurrent writes of the same hash converge on one row; the payload is
    identical by construction, so the last write wins harmlessly.
    """

    def __init__(
        self,
        db_manager: Optional[DatabaseManager] = None,
        config_manager: Optional[ConfigManager] = None,
        default_ttl: Optional[int] = None,
        ignore_query: bool = False,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.db_manager = db_manager or get_database_manager()
        self.default_ttl = default_ttl if default_ttl is not None else self.config_manager.get_setting(
            "cache.ttl", 86400
        )
        self.ignore_query = ignore_query
        self.clock = clock
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

        self._locks = KeyedLock()
        self.hits = 0
        self.misses = 0

    def _expiry(self, ttl: Optional[int]) -> Optional[datetime]:
        ttl = self.default_ttl if ttl is None else ttl
        # A non-positive TTL means the entry never expires
        if not ttl or ttl <= 0:
            return None
        return self.clock() + timedelta(seconds=ttl)

    def _record_hit(self) -> None:
        self.hits += 1
        self.metrics.increment_counter("cache.hits")

    def _record_miss(self) -> None:
        self.misses += 1
        self.metrics.increment_counter("cache.misses")

    async def put(
        self,
        hash_: str,
        payload: bytes,
        ttl: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Store ``payload`` under ``hash_``.

        Raises:
            ValueError: If ``hash_`` is not the sha256 of ``payload``
            StorageError: If the database write fails
        """
        if content_hash(payload) != hash_:
            raise ValueError(f"Payload does not match content hash {hash_[:12]}")

        now = self.clock()
        expires_at = self._expiry(ttl)
        async with self._locks.hold(hash_):
            with timer("cache.put"):
                try:
                    async with self.db_manager.get_session() as session:
                        stmt = sqlite_insert(CacheEntry).values(
                            content_hash=hash_,
                            payload=payload,
                            content_type=content_type,
                            byte_size=len(payload),
                            ttl_seconds=ttl if ttl is not None else self.default_ttl,
                            expires_at=expires_at,
                            access_count=0,
                            last_accessed=now,
                        )
                        stmt = stmt.on_conflict_do_update(
                            index_elements=[CacheEntry.content_hash],
                            set_={
                                "expires_at": stmt.excluded.expires_at,
                                "ttl_seconds": stmt.excluded.ttl_seconds,
                                "content_type": stmt.excluded.content_type,
                                "updated_at": func.now(),
                            },
                        )
                        await session.execute(stmt)
                except SQLAlchemyError as e:
                    raise StorageError(f"Failed to store cache entry {hash_[:12]}: {e}") from e

        self.metrics.increment_counter("cache.stored")
        return hash_

    async def store(
        self,
        payload: Union[bytes, str],
        ttl: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Hash and store ``payload``; returns the content hash."""
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        return await self.put(content_hash(payload), payload, ttl=ttl, content_type=content_type)

    async def get(self, url_or_hash: str) -> Optional[CachedContent]:
        """Look up by content hash, or by URL through the URL index.

        Entries past their TTL are misses and are removed.
        """
        if HASH_RE.match(url_or_hash):
            hash_ = url_or_hash
        else:
            indexed = await self.lookup_url(url_or_hash)
            if indexed is None:
                self._record_miss()
                return None
            hash_ = indexed.content_hash

        now = self.clock()
        async with self._locks.hold(hash_):
            try:
                async with self.db_manager.get_session() as session:
                    result = await session.execute(select(CacheEntry).where(CacheEntry.content_hash == hash_))
                    entry = result.scalar_one_or_none()
                    if entry is None:
                        self._record_miss()
                        return None
                    if entry.is_expired(now):
                        await session.delete(entry)
                        self.metrics.increment_counter("cache.expired")
                        self._record_miss()
                        return None

                    entry.access_count += 1
                    entry.last_accessed = now
                    cached = CachedContent(
                        content_hash=entry.content_hash,
                        payload=entry.payload,
                        content_type=entry.content_type,
                        created_at=entry.created_at,
                        expires_at=entry.expires_at,
                    )
            except SQLAlchemyError as e:
                raise StorageError(f"Failed to read cache entry {hash_[:12]}: {e}") from e

        self._record_hit()
        return cached

    async def index_url(
        self,
        url: str,
        hash_: str,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
        raw_hash: Optional[str] = None,
    ) -> None:
        """Remember that ``url`` last produced ``hash_``."""
        key = canonicalize_url(url, ignore_query=self.ignore_query)
        values = {
            "content_hash": hash_,
            "etag": etag,
            "last_modified": last_modified,
            "raw_hash": raw_hash,
            "fetched_at": self.clock(),
        }
        try:
            async with self.db_manager.get_session() as session:
                stmt = sqlite_insert(UrlIndexEntry).values(url=key, **values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[UrlIndexEntry.url],
                    set_={**values, "updated_at": func.now()},
                )
                await session.execute(stmt)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to index {url}: {e}") from e

    async def lookup_url(self, url: str) -> Optional[UrlIndexRecord]:
        key = canonicalize_url(url, ignore_query=self.ignore_query)
        try:
            async with self.db_manager.get_session() as session:
                result = await session.execute(select(UrlIndexEntry).where(UrlIndexEntry.url == key))
                row = result.scalar_one_or_none()
                if row is None:
                    return None
                return UrlIndexRecord(
                    url=row.url,
                    content_hash=row.content_hash,
                    raw_hash=row.raw_hash,
                    etag=row.etag,
                    last_modified=row.last_modified,
                    fetched_at=row.fetched_at,
                )
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to look up {url} in the cache index: {e}") from e

    async def touch(self, hash_: str, ttl: Optional[int] = None) -> None:
        """Extend the lifetime of an entry that was found unchanged."""
        async with self.db_manager.get_session() as session:
            await session.execute(
                update(CacheEntry)
                .where(CacheEntry.content_hash == hash_)
                .values(expires_at=self._expiry(ttl), last_accessed=self.clock())
            )

    async def cleanup_expired(self) -> int:
        """Delete every entry past its TTL.

        Returns:
            Number of entries removed
        """
        with timer("cache.cleanup_expired"):
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    delete(CacheEntry).where(
                        and_(
                            CacheEntry.expires_at.isnot(None),
                            CacheEntry.expires_at <= self.clock(),
                        )
                    )
                )
                removed = result.rowcount or 0

        if removed:
            self.logger.info(f"Removed {removed} expired cache entries")
            self.metrics.increment_counter("cache.cleaned", removed)
        return removed

    async def stats(self) -> Dict[str, Any]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(func.count(CacheEntry.content_hash), func.coalesce(func.sum(CacheEntry.byte_size), 0))
            )
            entries, total_bytes = result.one()
            url_result = await session.execute(select(func.count(UrlIndexEntry.url)))
            indexed_urls = url_result.scalar_one()

        lookups = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": self.hits / lookups if lookups else 0.0,
            "entries": entries,
            "total_bytes": int(total_bytes),
            "indexed_urls": indexed_urls,
        }


class ChangeReason(str, Enum):
    """Why an incremental run does or does not re-fetch a URL."""
    NEW = "new"
    ETAG = "etag"
    LAST_MODIFIED = "last-modified"
    CONTENT_HASH = "content-hash"
    UNCHANGED = "unchanged"
    CHECK_FAILED = "check-failed"


@dataclass
class ChangeDecision:
    url: str
    changed: bool
    reason: ChangeReason
    cached: Optional[CachedContent] = None
    raw_hash: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None


@dataclass
class RevalidationResult:
    status_code: int
    body_hash: Optional[str]
    etag: Optional[str]
    last_modified: Optional[str]


class IncrementalUpdater:
    """Decides cheaply whether a previously captured page changed.

    A plain HTTP request stands in for the browser: conditional headers
    first, then validators, then a hash of the raw response body.
    """

    def __init__(
        self,
        cache: ContentCache,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        user_agent: Optional[str] = None,
        proxy_pool=None,
    ):
        self.cache = cache
        self.timeout = timeout if timeout is not None else cache.config_manager.get_setting(
            "cache.check_timeout", 10.0
        )
        self.transport = transport
        self.user_agent = user_agent
        self.proxy_pool = proxy_pool
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    def _client(self, proxy_url: Optional[str] = None) -> httpx.AsyncClient:
        headers = {"User-Agent": self.user_agent} if self.user_agent else None
        # An injected transport carries every route itself
        route = {"transport": self.transport} if self.transport is not None else {"proxy": proxy_url}
        return httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            headers=headers,
            **route,
        )

    async def revalidate(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> RevalidationResult:
        """Raw GET of ``url``, conditional when validators are given.

        Goes out through the job's proxy pool when it has one.

        Raises:
            httpx.HTTPError: If the request fails
        """
        headers = {}
        if etag:
            headers["If-None-Match"] = etag
        if last_modified:
            headers["If-Modified-Since"] = last_modified
        proxy = self.proxy_pool.select(url) if self.proxy_pool is not None else None
        try:
            async with self._client(proxy.url if proxy is not None else None) as client:
                response = await client.get(url, headers=headers)
        except httpx.HTTPError as e:
            if proxy is not None:
                self.proxy_pool.report_failure(proxy.key, str(e) or e.__class__.__name__)
            raise
        if proxy is not None:
            self.proxy_pool.report_response(proxy.key, response.status_code)
        body_hash = content_hash(response.content) if response.status_code == 200 else None
        return RevalidationResult(
            status_code=response.status_code,
            body_hash=body_hash,
            etag=response.headers.get("etag"),
            last_modified=response.headers.get("last-modified"),
        )

    async def check(self, url: str) -> ChangeDecision:
        """Compare the live page against what the cache holds for ``url``."""
        indexed = await self.cache.lookup_url(url)
        if indexed is None:
            return ChangeDecision(url=url, changed=True, reason=ChangeReason.NEW)

        cached = await self.cache.get(indexed.content_hash)
        if cached is None:
            return ChangeDecision(url=url, changed=True, reason=ChangeReason.NEW)

        try:
            fresh = await self.revalidate(url, etag=indexed.etag, last_modified=indexed.last_modified)
        except httpx.HTTPError as e:
            self.logger.debug(f"Change check for {url} failed: {e}")
            self.metrics.increment_counter("cache.revalidation_failures")
            return ChangeDecision(url=url, changed=True, reason=ChangeReason.CHECK_FAILED)

        def decision(changed: bool, reason: ChangeReason) -> ChangeDecision:
            return ChangeDecision(
                url=url,
                changed=changed,
                reason=reason,
                cached=None if changed else cached,
                raw_hash=fresh.body_hash or indexed.raw_hash,
                etag=fresh.etag or indexed.etag,
                last_modified=fresh.last_modified or indexed.last_modified,
            )

        if fresh.status_code == 304:
            return decision(False, ChangeReason.UNCHANGED)
        if fresh.status_code >= 400:
            return ChangeDecision(url=url, changed=True, reason=ChangeReason.CHECK_FAILED)

        if indexed.etag and fresh.etag:
            if indexed.etag != fresh.etag:
                return decision(True, ChangeReason.ETAG)
            return decision(False, ChangeReason.UNCHANGED)
        if indexed.last_modified and fresh.last_modified:
            if indexed.last_modified != fresh.last_modified:
                return decision(True, ChangeReason.LAST_MODIFIED)
            return decision(False, ChangeReason.UNCHANGED)
        if indexed.raw_hash and fresh.body_hash == indexed.raw_hash:
            return decision(False, ChangeReason.UNCHANGED)
        return decision(True, ChangeReason.CONTENT_HASH)

    async def remember(
        self,
        url: str,
        hash_: str,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        """Index a fresh capture together with the validators a later check compares against."""
        headers = headers or {}
        etag = headers.get("etag")
        last_modified = headers.get("last-modified")
        raw_hash = None
        try:
            fresh = await self.revalidate(url)
        except httpx.HTTPError as e:
            self.logger.debug(f"Baseline request for {url} failed: {e}")
        else:
            raw_hash = fresh.body_hash
            etag = etag or fresh.etag
            last_modified = last_modified or fresh.last_modified
        await self.cache.index_url(url, hash_, etag=etag, last_modified=last_modified, raw_hash=raw_hash)
