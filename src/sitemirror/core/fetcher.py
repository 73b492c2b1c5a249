"""Single-page fetch through a pooled browser session."""

import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional

from ..foundation.errors import (
    BlockedError,
    ErrorHandler,
    ErrorKind,
    MirrorError,
    NetworkError,
    ParseError,
    RateLimitError,
    error_kind_for,
)
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.options import CloneOptions
from ..models.records import FetchOutcome, FrontierEntry, PageRecord
from .browser import BrowserSessionPool, NavigationResult
from .cache import content_hash
from .html import extract_anchor_links, extract_asset_urls, parse_html


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if not dt.tzinfo:
        dt = dt.replace(tzinfo=timezone.utc)
    return max(0.0, (dt - datetime.now(tz=timezone.utc)).total_seconds())


class PageFetcher:
    """Fetches one frontier entry and reports the result as a FetchOutcome.

    Per-page failures are never raised; they come back as an error kind
    the orchestrator branches on.
    """

    def __init__(
        self,
        session_pool: BrowserSessionPool,
        options: CloneOptions,
        proxy_pool=None,
        bypass=None,
    ):
        self.session_pool = session_pool
        self.options = options
        self.proxy_pool = proxy_pool
        self.bypass = bypass
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    async def fetch(self, entry: FrontierEntry) -> FetchOutcome:
        url = entry.url
        proxy = self.proxy_pool.select(url) if self.proxy_pool is not None else None
        proxy_key = proxy.key if proxy is not None else None
        start = time.monotonic()

        try:
            async with self.session_pool.session(proxy) as session:
                try:
                    navigation = await session.navigate(
                        url,
                        timeout=self.options.timeout,
                        wait_for=self.options.wait_for,
                        geolocation=self.options.geolocation,
                        capture_console=self.options.verify_js,
                    )
                    challenge = None
                    if self.bypass is not None:
                        navigation, challenge = await self.bypass.resolve(
                            session, url, navigation, timeout=self.options.timeout,
                            geolocation=self.options.geolocation,
                        )
                except BlockedError:
                    # The next attempt must not inherit this session's cookies or fingerprint
                    self.session_pool.discard(session)
                    raise
            self._check_status(url, navigation)
            page = self._build_record(entry, navigation, challenge, time.monotonic() - start)
        except MirrorError as e:
            return self._failure(url, e, proxy_key)
        except Exception as e:
            self.logger.warning(f"Unexpected browser failure on {url}: {e}")
            return self._failure(url, NetworkError(f"Browser failure on {url}: {e}", url=url), proxy_key)

        if self.proxy_pool is not None:
            self.proxy_pool.report_success(proxy_key, navigation.duration)
        self.metrics.increment_counter("pages.fetched")
        self.metrics.record_timing("pages.fetch_duration", page.fetch_duration)
        return FetchOutcome.success(page, proxy_key=proxy_key)

    def _check_status(self, url: str, navigation: NavigationResult) -> None:
        status = navigation.status_code
        if status == 429:
            raise RateLimitError(
                f"Rate limited on {url}",
                retry_after=parse_retry_after(navigation.headers.get("retry-after")),
                url=url,
            )
        if status >= 400:
            error = NetworkError(f"HTTP {status} for {url}", status_code=status, url=url)
            error.retryable = status in ErrorHandler.RETRYABLE_STATUS
            raise error

    def _build_record(self, entry: FrontierEntry, navigation: NavigationResult, challenge, duration: float) -> PageRecord:
        html = navigation.html
        if not html or not html.strip():
            raise ParseError(f"Empty document returned for {entry.url}")
        base_url = navigation.final_url or entry.url
        try:
            soup = parse_html(html)
            links = sorted(extract_anchor_links(soup, base_url))
            assets = sorted(extract_asset_urls(soup, base_url))
        except (ValueError, AssertionError, RecursionError) as e:
            raise ParseError(f"Could not parse {entry.url}: {e}") from e

        return PageRecord(
            url=entry.url,
            status_code=navigation.status_code,
            content_hash=content_hash(html),
            depth=entry.depth,
            final_url=navigation.final_url,
            html=html,
            title=navigation.title or (soup.title.get_text(strip=True) if soup.title else None),
            links=links,
            assets=assets,
            fetch_duration=duration,
            challenge=challenge,
            etag=navigation.headers.get("etag"),
            last_modified=navigation.headers.get("last-modified"),
            console_errors=list(navigation.console_errors),
        )

    def _failure(self, url: str, error: MirrorError, proxy_key: Optional[str]) -> FetchOutcome:
        kind = error_kind_for(error)
        if self.proxy_pool is not None:
            self.proxy_pool.report_error(proxy_key, error)
        if kind == ErrorKind.BLOCKED:
            retryable = True
        elif kind in (ErrorKind.NETWORK, ErrorKind.TIMEOUT):
            retryable = error.retryable
        else:
            retryable = False
        return FetchOutcome.failure(
            url,
            kind,
            error.message,
            status_code=getattr(error, "status_code", None),
            retry_after=error.retry_after,
            retryable=retryable,
            proxy_key=proxy_key,
        )
