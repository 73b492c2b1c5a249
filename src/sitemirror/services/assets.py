"""Asset download, content-hash deduplication, media optimization and page writing."""

import asyncio
import hashlib
import io
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple
from urllib.parse import urljoin

import httpx
from PIL import Image
from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from ..core.cache import KeyedLock
from ..core.fetcher import parse_retry_after
from ..core.html import MirrorLayout, parse_css_urls, rewrite_css_text, rewrite_page_html
from ..core.queue import DownloadedAsset
from ..core.urls import strip_fragment
from ..database.connection import DatabaseManager, get_database_manager
from ..database.models import AssetRecord
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import (
    ErrorContext,
    MirrorError,
    NetworkError,
    RateLimitError,
    RetryConfig,
    StorageError,
    TimeoutError,
    calculate_retry_delay,
    handle_error,
    should_retry,
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.records import PageRecord

MAX_CSS_NESTING = 3

Downloader = Callable[[str], Awaitable[DownloadedAsset]]


def write_file_atomic(path: Path, data: bytes) -> None:
    """Write via a temp file and rename so readers never see a partial file.

    Raises:
        StorageError: If the output directory is not writable
    """
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(data)
        os.replace(tmp, path)
    except OSError as e:
        raise StorageError(f"Failed to write {path}: {e}", path=str(path)) from e


class AssetDownloader:
    """Plain HTTP download of asset bytes, through the job's proxies when it has any."""

    def __init__(
        self,
        timeout: float = 30.0,
        max_bytes: int = 50 * 1024 * 1024,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        proxy_pool=None,
    ):
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.user_agent = user_agent
        self.transport = transport
        self.proxy_pool = proxy_pool
        self._clients: Dict[Optional[str], httpx.AsyncClient] = {}

    def client_for(self, proxy_url: Optional[str] = None) -> httpx.AsyncClient:
        """The shared client for one egress route; None is a direct connection."""
        client = self._clients.get(proxy_url)
        if client is None:
            headers = {"User-Agent": self.user_agent} if self.user_agent else None
            # An injected transport carries every route itself
            route = {"transport": self.transport} if self.transport is not None else {"proxy": proxy_url}
            client = self._clients[proxy_url] = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                headers=headers,
                **route,
            )
        return client

    async def __call__(self, url: str) -> DownloadedAsset:
        return await self.download(url)

    async def download(self, url: str) -> DownloadedAsset:
        """Fetch ``url`` and report the outcome to the proxy that carried it.

        Raises:
            RateLimitError: On HTTP 429
            NetworkError: On connection failure, HTTP errors or oversized bodies
            TimeoutError: If the request exceeds the timeout
        """
        proxy = self.proxy_pool.select(url) if self.proxy_pool is not None else None
        start = time.monotonic()
        try:
            asset = await self._get(url, self.client_for(proxy.url if proxy is not None else None))
        except MirrorError as e:
            if proxy is not None:
                self.proxy_pool.report_error(proxy.key, e)
            raise
        if proxy is not None:
            self.proxy_pool.report_success(proxy.key, time.monotonic() - start)
        return asset

    async def _get(self, url: str, client: httpx.AsyncClient) -> DownloadedAsset:
        try:
            async with client.stream("GET", url) as response:
                if response.status_code == 429:
                    raise RateLimitError(
                        f"Rate limited on asset {url}",
                        retry_after=parse_retry_after(response.headers.get("retry-after")),
                        url=url,
                    )
                if response.status_code >= 400:
                    error = NetworkError(
                        f"HTTP {response.status_code} for asset {url}",
                        status_code=response.status_code,
                        url=url,
                    )
                    error.retryable = response.status_code >= 500 or response.status_code == 408
                    raise error

                chunks = []
                size = 0
                async for chunk in response.aiter_bytes():
                    size += len(chunk)
                    if size > self.max_bytes:
                        error = NetworkError(
                            f"Asset {url} exceeds {self.max_bytes} bytes",
                            status_code=response.status_code,
                            url=url,
                        )
                        error.retryable = False
                        raise error
                    chunks.append(chunk)
                return DownloadedAsset(
                    url=url,
                    content=b"".join(chunks),
                    content_type=response.headers.get("content-type"),
                    status_code=response.status_code,
                )
        except httpx.TimeoutException as e:
            raise TimeoutError(f"Download of {url} timed out", timeout_duration=self.timeout) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Download of {url} failed: {e}", url=url) from e

    async def close(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            await client.aclose()


class ImageOptimizer:
    """Lossy JPEG and lossless PNG re-encoding with optional downscaling."""

    def __init__(self, jpeg_quality: int = 85, max_width: int = 2560):
        self.jpeg_quality = jpeg_quality
        self.max_width = max_width
        self.logger = get_logger(__name__)

    def optimize(self, data: bytes) -> Optional[bytes]:
        """Return smaller bytes in the same format, or None to keep the original."""
        try:
            with Image.open(io.BytesIO(data)) as image:
                fmt = image.format
                if fmt not in ("JPEG", "PNG"):
                    return None
                image.load()
                out_image = image
                if self.max_width and image.width > self.max_width:
                    height = max(1, round(image.height * self.max_width / image.width))
                    out_image = image.resize((self.max_width, height), Image.LANCZOS)

                buffer = io.BytesIO()
                if fmt == "JPEG":
                    if out_image.mode not in ("RGB", "L"):
                        out_image = out_image.convert("RGB")
                    out_image.save(buffer, "JPEG", quality=self.jpeg_quality, optimize=True, progressive=True)
                else:
                    out_image.save(buffer, "PNG", optimize=True)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            self.logger.debug(f"Image optimization skipped: {e}")
            return None

        optimized = buffer.getvalue()
        return optimized if len(optimized) < len(data) else None


@dataclass
class StoredAsset:
    """One asset file in this job's mirror."""
    content_hash: str
    path: Path
    stored_hash: str
    byte_size: int
    stored_size: int
    content_type: Optional[str] = None
    optimized: bool = False


class AssetPipeline:
    """Downloads a job's assets, stores each distinct payload once and rewrites pages.

    Reference counts live in ``asset_records`` and are shared across jobs;
    increments happen under a per-hash lock and as a single SQL update.
    """

    def __init__(
        self,
        layout: MirrorLayout,
        downloader: Optional[Downloader] = None,
        db_manager: Optional[DatabaseManager] = None,
        config_manager: Optional[ConfigManager] = None,
        concurrency: Optional[int] = None,
        optimize_media: bool = True,
        retry: Optional[RetryConfig] = None,
        job_id: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.layout = layout
        self.config_manager = config_manager or get_config_manager()
        self.db_manager = db_manager or get_database_manager()
        self.downloader = downloader or AssetDownloader(
            timeout=self.config_manager.get_setting("assets.download_timeout", 30.0),
            max_bytes=self.config_manager.get_setting("assets.max_asset_bytes", 50 * 1024 * 1024),
            user_agent=self.config_manager.get_setting("browser.user_agent"),
        )
        self.optimizer = ImageOptimizer(
            jpeg_quality=self.config_manager.get_setting("assets.jpeg_quality", 85),
            max_width=self.config_manager.get_setting("assets.max_image_width", 2560),
        ) if optimize_media else None
        self.retry = retry or RetryConfig()
        self.job_id = job_id
        self._sleep = sleep
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

        limit = concurrency or self.config_manager.get_setting("assets.concurrency") or 8
        self._semaphore = asyncio.Semaphore(limit)
        self._hash_locks = KeyedLock()
        self._inflight: Dict[str, asyncio.Task] = {}

        self.url_map: Dict[str, Path] = {}
        self.stored: Dict[str, StoredAsset] = {}
        self.failed: Dict[str, str] = {}
        self.downloads = 0
        self._previous: Dict[str, Path] = {}
        self._counted: Set[Tuple[str, str]] = set()
        self._url_hashes: Dict[str, str] = {}
        self._awaiting: Dict[str, Set[str]] = {}

    # Lookups used by link rewriting

    def asset_for_url(self, url: str) -> Optional[Path]:
        return self.url_map.get(strip_fragment(url))

    def asset_map(self) -> Dict[str, str]:
        """URL -> path relative to the output directory, for checkpoints."""
        return {
            url: path.relative_to(self.layout.output_dir).as_posix()
            for url, path in self.url_map.items()
        }

    def restore(self, asset_map: Dict[str, str]) -> int:
        """Re-adopt assets recorded in a checkpoint whose files are still on disk."""
        restored = 0
        for url, rel in asset_map.items():
            path = self.layout.output_dir / rel
            if path.is_file():
                self.url_map[url] = path
                restored += 1
        return restored

    def seed_previous(self, asset_map: Dict[str, str]) -> None:
        """Assets of an earlier run, reusable for pages found unchanged."""
        for url, rel in asset_map.items():
            self._previous[url] = self.layout.output_dir / rel

    # Download and store

    async def resolve(
        self,
        urls: Iterable[str],
        referrer: str,
        reuse_previous: bool = False,
    ) -> Dict[str, Path]:
        """Make every URL in ``urls`` available in the mirror.

        Failed downloads are recorded in ``failed`` and left out of the result.
        """
        wanted = sorted({strip_fragment(u) for u in urls})
        results = await asyncio.gather(
            *(self._resolve_one(url, referrer, reuse_previous, frozenset()) for url in wanted)
        )
        return {url: path for url, path in zip(wanted, results) if path is not None}

    async def _resolve_one(
        self,
        url: str,
        referrer: str,
        reuse_previous: bool,
        ancestors: FrozenSet[str],
    ) -> Optional[Path]:
        if url in ancestors:
            return self.url_map.get(url)

        path = self.url_map.get(url)
        if path is None and reuse_previous:
            previous = self._previous.get(url)
            if previous is not None and previous.is_file():
                self.url_map[url] = previous
                path = previous

        if path is None:
            task = self._inflight.get(url)
            if task is None:
                task = asyncio.ensure_future(self._fetch_and_store(url, ancestors | {url}))
                self._inflight[url] = task
            elif ancestors and not task.done() and self._waits_on(url, ancestors):
                # Stylesheets importing each other from concurrent pages
                return self.url_map.get(url)
            if ancestors:
                self._awaiting.setdefault(referrer, set()).add(url)
            try:
                path = await task
            finally:
                if ancestors:
                    self._awaiting.get(referrer, set()).discard(url)

        hash_ = self._url_hashes.get(url)
        if path is not None and hash_ is not None:
            await self._add_reference(hash_, referrer)
        return path

    def _waits_on(self, url: str, targets: FrozenSet[str]) -> bool:
        """Whether the task for ``url`` is, transitively, waiting on one of ``targets``."""
        stack, seen = [url], set()
        while stack:
            current = stack.pop()
            if current in targets:
                return True
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._awaiting.get(current, ()))
        return False

    async def _download_with_retry(self, url: str) -> Optional[DownloadedAsset]:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self._semaphore:
                    downloaded = await self.downloader(url)
                self.downloads += 1
                return downloaded
            except MirrorError as e:
                if should_retry(e, attempt, self.retry.max_attempts):
                    delay = calculate_retry_delay(attempt, self.retry, e)
                    self.logger.debug(f"Retrying asset {url} in {delay:.1f}s (attempt {attempt}): {e}")
                    await self._sleep(delay)
                    continue
                self.failed[url] = e.message
                self.metrics.increment_counter("assets.failed")
                handle_error(e, ErrorContext(operation="download_asset", url=url, job_id=self.job_id))
                return None

    async def _fetch_and_store(self, url: str, ancestors: FrozenSet[str]) -> Optional[Path]:
        downloaded = await self._download_with_retry(url)
        if downloaded is None:
            return None

        original = downloaded.content
        hash_ = hashlib.sha256(original).hexdigest()
        path = self.layout.asset_path(url, hash_, downloaded.content_type)

        payload = original
        optimized = False
        if path.suffix.lower() == ".css" or (downloaded.content_type or "").startswith("text/css"):
            payload = await self._rewrite_stylesheet(url, path, original, ancestors)
        elif self.optimizer is not None and path.suffix.lower() in (".jpg", ".jpeg", ".png"):
            smaller = await asyncio.to_thread(self.optimizer.optimize, original)
            if smaller is not None:
                payload, optimized = smaller, True
                self.metrics.increment_counter("assets.optimized")

        stored = await self._store(hash_, url, path, original, payload, downloaded.content_type, optimized)
        self._url_hashes[url] = hash_
        self.url_map[url] = stored.path
        return stored.path

    async def _rewrite_stylesheet(self, url: str, path: Path, original: bytes, ancestors: FrozenSet[str]) -> bytes:
        text = original.decode("utf-8", errors="replace")
        nested = {strip_fragment(urljoin(url, ref)) for ref in parse_css_urls(text)}
        nested = {n for n in nested if n.startswith(("http://", "https://"))}
        if nested and len(ancestors) <= MAX_CSS_NESTING:
            await asyncio.gather(
                *(self._resolve_one(n, url, False, ancestors) for n in sorted(nested))
            )
        return rewrite_css_text(text, url, path, self.asset_for_url).encode("utf-8")

    async def _store(
        self,
        hash_: str,
        url: str,
        path: Path,
        original: bytes,
        payload: bytes,
        content_type: Optional[str],
        optimized: bool,
    ) -> StoredAsset:
        async with self._hash_locks.hold(hash_):
            existing = self.stored.get(hash_)
            if existing is not None:
                self.metrics.increment_counter("assets.deduplicated")
                return existing

            with timer("assets.store"):
                async with self.db_manager.get_session() as session:
                    record = (await session.execute(
                        select(AssetRecord).where(AssetRecord.content_hash == hash_)
                    )).scalar_one_or_none()

                    if record is not None and (self.layout.output_dir / record.local_path).is_file():
                        path = self.layout.output_dir / record.local_path
                        stored_hash = record.stored_hash
                        stored_size = record.stored_size
                        optimized = record.optimized
                        self.metrics.increment_counter("assets.deduplicated")
                    else:
                        write_file_atomic(path, payload)
                        stored_hash = hashlib.sha256(payload).hexdigest()
                        stored_size = len(payload)
                        stmt = sqlite_insert(AssetRecord).values(
                            content_hash=hash_,
                            source_url=url,
                            local_path=path.relative_to(self.layout.output_dir).as_posix(),
                            content_type=content_type,
                            byte_size=len(original),
                            stored_hash=stored_hash,
                            stored_size=stored_size,
                            optimized=optimized,
                            reference_count=0,
                        )
                        stmt = stmt.on_conflict_do_update(
                            index_elements=[AssetRecord.content_hash],
                            set_={
                                "local_path": stmt.excluded.local_path,
                                "stored_hash": stmt.excluded.stored_hash,
                                "stored_size": stmt.excluded.stored_size,
                                "optimized": stmt.excluded.optimized,
                                "updated_at": func.now(),
                            },
                        )
                        await session.execute(stmt)
                        self.metrics.increment_counter("assets.stored")

            stored = StoredAsset(
                content_hash=hash_,
                path=path,
                stored_hash=stored_hash,
                byte_size=len(original),
                stored_size=stored_size,
                content_type=content_type,
                optimized=optimized,
            )
            self.stored[hash_] = stored
            return stored

    async def _add_reference(self, hash_: str, referrer: str) -> None:
        """Count ``referrer`` once as a user of the asset ``hash_``."""
        key = (referrer, hash_)
        async with self._hash_locks.hold(hash_):
            if key in self._counted:
                return
            self._counted.add(key)
            async with self.db_manager.get_session() as session:
                await session.execute(
                    update(AssetRecord)
                    .where(AssetRecord.content_hash == hash_)
                    .values(reference_count=AssetRecord.reference_count + 1)
                )

    # Pages

    def write_page(self, page: PageRecord, page_for_url: Callable[[str], Optional[Path]]) -> Path:
        """Write the rewritten page and stage its original HTML.

        Raises:
            StorageError: If the output directory is not writable
        """
        if page.html is None:
            raise ValueError(f"Page {page.url} has no HTML to write")
        target = self.layout.page_path(page.url)
        rewritten = rewrite_page_html(
            page.html,
            page.final_url or page.url,
            target,
            self.asset_for_url,
            page_for_url,
        )
        write_file_atomic(target, rewritten.encode("utf-8"))
        write_file_atomic(self.layout.staged_page_path(page.content_hash), page.html.encode("utf-8"))
        return target

    @property
    def assets_captured(self) -> int:
        """Distinct asset files this job's pages use."""
        return len(set(self.url_map.values()))

    def integrity_targets(self) -> Dict[Path, str]:
        """On-disk file -> expected sha256 for every asset this job stored or adopted."""
        return {asset.path: asset.stored_hash for asset in self.stored.values()}

    async def load_integrity_targets(self) -> Dict[Path, str]:
        """Like ``integrity_targets`` but also covering restored and reused assets."""
        targets = self.integrity_targets()
        rel_paths = {
            path.relative_to(self.layout.output_dir).as_posix(): path
            for path in self.url_map.values()
            if path not in targets
        }
        if rel_paths:
            async with self.db_manager.get_session() as session:
                result = await session.execute(
                    select(AssetRecord.local_path, AssetRecord.stored_hash).where(
                        AssetRecord.local_path.in_(list(rel_paths))
                    )
                )
                for local_path, stored_hash in result.all():
                    targets[rel_paths[local_path]] = stored_hash
        return targets

    async def close(self) -> None:
        close = getattr(self.downloader, "close", None)
        if close is not None:
            await close()


async def dedup_stats(db_manager: Optional[DatabaseManager] = None) -> Dict[str, Any]:
    """Deduplication across every stored asset."""
    db_manager = db_manager or get_database_manager()
    async with db_manager.get_session() as session:
        result = await session.execute(
            select(
                func.count(AssetRecord.content_hash),
                func.coalesce(func.sum(AssetRecord.reference_count), 0),
                func.coalesce(
                    func.sum(
                        func.max(AssetRecord.reference_count - 1, 0) * AssetRecord.stored_size
                    ),
                    0,
                ),
                func.coalesce(func.sum(AssetRecord.stored_size), 0),
            )
        )
        unique, references, saved, total_bytes = result.one()

    references = int(references)
    return {
        "unique_files": unique,
        "total_references": references,
        "stored_bytes": int(total_bytes),
        "saved_bytes": int(saved),
        "dedup_ratio": 1 - unique / references if references else 0.0,
    }
