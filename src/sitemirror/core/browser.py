"""Pooled crawl4ai browser sessions."""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

from crawl4ai import AsyncWebCrawler, CacheMode
from crawl4ai.async_configs import BrowserConfig, CrawlerRunConfig, GeolocationConfig, ProxyConfig

from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import MirrorError, NetworkError, TimeoutError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.options import GeolocationOptions, ProxyEndpoint

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


@dataclass
class NavigationResult:
    """What a browser session saw after navigating to a URL."""
    url: str
    html: str
    status_code: int
    final_url: Optional[str] = None
    title: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    console_errors: List[str] = field(default_factory=list)
    duration: float = 0.0


class BrowserSession:
    """One crawl4ai browser, optionally bound to a proxy."""

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        proxy: Optional[ProxyEndpoint] = None,
    ):
        self.settings = settings or {}
        self.proxy = proxy
        self.session_id = f"sm-{uuid.uuid4().hex[:12]}"
        self.logger = get_logger(__name__)
        self.last_used = time.monotonic()
        self._crawler: Optional[AsyncWebCrawler] = None

    @property
    def proxy_key(self) -> Optional[str]:
        return self.proxy.key if self.proxy else None

    def _proxy_config(self) -> Optional[ProxyConfig]:
        if self.proxy is None:
            return None
        server = f"{self.proxy.protocol}://{self.proxy.host}:{self.proxy.port}"
        return ProxyConfig(server=server, username=self.proxy.username, password=self.proxy.password)

    async def start(self) -> None:
        if self._crawler is not None:
            return
        browser_config = BrowserConfig(
            browser_type=self.settings.get("browser_type", "chromium"),
            headless=self.settings.get("headless", True),
            user_agent=self.settings.get("user_agent") or DEFAULT_USER_AGENT,
            viewport_width=self.settings.get("viewport_width", 1920),
            viewport_height=self.settings.get("viewport_height", 1080),
            proxy_config=self._proxy_config(),
            extra_args=self.settings.get("extra_args") or None,
            verbose=False,
        )
        crawler = AsyncWebCrawler(config=browser_config)
        await crawler.start()
        self._crawler = crawler
        self.logger.debug(f"Started browser session {self.session_id} (proxy: {self.proxy_key or 'direct'})")

    async def navigate(
        self,
        url: str,
        timeout: float = 30.0,
        wait_for: Optional[str] = None,
        wait_seconds: float = 0.0,
        js_code: Optional[List[str]] = None,
        geolocation: Optional[GeolocationOptions] = None,
        capture_console: bool = False,
    ) -> NavigationResult:
        """Navigate and return the rendered HTML.

        Raises:
            TimeoutError: If navigation exceeds ``timeout``
            NetworkError: If the browser could not load the page
        """
        await self.start()
        self.last_used = time.monotonic()

        run_kwargs: Dict[str, Any] = {
            "cache_mode": CacheMode.BYPASS,
            "session_id": self.session_id,
            "page_timeout": int(timeout * 1000),
            "delay_before_return_html": wait_seconds,
            "capture_console_messages": capture_console,
            "verbose": False,
        }
        if wait_for:
            run_kwargs["wait_for"] = wait_for
        if js_code:
            run_kwargs["js_code"] = js_code
        if geolocation is not None:
            run_kwargs["geolocation"] = GeolocationConfig(
                latitude=geolocation.latitude,
                longitude=geolocation.longitude,
                accuracy=geolocation.accuracy,
            )

        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._crawler.arun(url=url, config=CrawlerRunConfig(**run_kwargs)),
                timeout=timeout + wait_seconds + 5.0,
            )
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Navigation to {url} timed out", timeout_duration=timeout) from e
        duration = time.monotonic() - start

        if result is None or not result.success:
            message = getattr(result, "error_message", None) or "no result returned"
            if "timeout" in message.lower():
                raise TimeoutError(f"Navigation to {url} timed out: {message}", timeout_duration=timeout)
            raise NetworkError(
                f"Navigation to {url} failed: {message}",
                status_code=getattr(result, "status_code", None),
                url=url,
            )

        console_errors = [
            str(message.get("text", ""))
            for message in (getattr(result, "console_messages", None) or [])
            if isinstance(message, dict) and message.get("type") in ("error", "pageerror")
        ]
        metadata = result.metadata or {}
        return NavigationResult(
            url=url,
            html=result.html or "",
            status_code=result.status_code or 200,
            final_url=getattr(result, "redirected_url", None) or url,
            title=metadata.get("title"),
            headers={k.lower(): v for k, v in (result.response_headers or {}).items()},
            console_errors=console_errors,
            duration=duration,
        )

    async def close(self) -> None:
        if self._crawler is not None:
            crawler, self._crawler = self._crawler, None
            await crawler.close()
            self.logger.debug(f"Closed browser session {self.session_id}")


SessionFactory = Callable[[Optional[ProxyEndpoint]], Any]


class BrowserSessionPool:
    """Bounded set of reusable browser sessions.

    Idle sessions are reused only for the same proxy, so a session's egress
    never changes under a caller. Waiting for capacity is the only point at
    which acquiring a session suspends.
    """

    def __init__(
        self,
        max_size: Optional[int] = None,
        session_factory: Optional[SessionFactory] = None,
        idle_timeout: Optional[float] = None,
        config_manager: Optional[ConfigManager] = None,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.max_size = max_size or self.config_manager.get_setting("browser.pool_size", 4)
        self.idle_timeout = idle_timeout if idle_timeout is not None else self.config_manager.get_setting(
            "browser.idle_timeout", 300.0
        )
        self._session_factory = session_factory or self._default_factory
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

        self._semaphore = asyncio.Semaphore(self.max_size)
        self._lock = asyncio.Lock()
        self._idle: List[Any] = []
        self._in_use: set = set()
        self._discarded: set = set()
        self._total_created = 0

    def _default_factory(self, proxy: Optional[ProxyEndpoint]) -> BrowserSession:
        settings = {
            "browser_type": self.config_manager.get_setting("browser.browser_type", "chromium"),
            "headless": self.config_manager.get_setting("browser.headless", True),
            "user_agent": self.config_manager.get_setting("browser.user_agent"),
            "viewport_width": self.config_manager.get_setting("browser.viewport_width", 1920),
            "viewport_height": self.config_manager.get_setting("browser.viewport_height", 1080),
            "extra_args": self.config_manager.get_setting("browser.extra_args", []),
        }
        return BrowserSession(settings=settings, proxy=proxy)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def total_created(self) -> int:
        return self._total_created

    @staticmethod
    def _key(proxy: Optional[ProxyEndpoint]) -> Optional[str]:
        return proxy.key if proxy else None

    async def _checkout(self, proxy: Optional[ProxyEndpoint]) -> Any:
        key = self._key(proxy)
        to_close = []
        async with self._lock:
            now = time.monotonic()
            fresh = []
            for idle in self._idle:
                if now - getattr(idle, "last_used", now) > self.idle_timeout:
                    to_close.append(idle)
                else:
                    fresh.append(idle)
            self._idle = fresh

            session = None
            for idle in self._idle:
                if getattr(idle, "proxy_key", None) == key:
                    session = idle
                    break
            if session is not None:
                self._idle.remove(session)
            elif self._idle and len(self._idle) + len(self._in_use) >= self.max_size:
                # Full: evict the least recently used idle session of another proxy
                victim = min(self._idle, key=lambda s: getattr(s, "last_used", 0.0))
                self._idle.remove(victim)
                to_close.append(victim)

            if session is None:
                session = self._session_factory(proxy)
                self._total_created += 1
                self.metrics.increment_counter("browser.sessions.created")
            self._in_use.add(session)

        for stale in to_close:
            await self._close_quietly(stale)
        return session

    async def _checkin(self, session: Any) -> None:
        async with self._lock:
            self._in_use.discard(session)
            if session in self._discarded:
                self._discarded.discard(session)
                close = True
            else:
                self._idle.append(session)
                close = False
        if close:
            await self._close_quietly(session)

    async def _close_quietly(self, session: Any) -> None:
        try:
            await session.close()
        except Exception as e:
            # A session that fails to close is already unusable
            self.logger.warning(f"Failed to close browser session: {e}")
        self.metrics.increment_counter("browser.sessions.closed")

    def discard(self, session: Any) -> None:
        """Close ``session`` on release instead of returning it to the pool."""
        self._discarded.add(session)

    @asynccontextmanager
    async def session(self, proxy: Optional[ProxyEndpoint] = None) -> AsyncIterator[Any]:
        """Borrow a session bound to ``proxy`` (None for a direct connection)."""
        await self._semaphore.acquire()
        session = None
        try:
            session = await self._checkout(proxy)
            yield session
        except MirrorError:
            raise
        except Exception:
            # Unclassified failures may leave the browser in a broken state
            if session is not None:
                self.discard(session)
            raise
        finally:
            try:
                if session is not None:
                    await self._checkin(session)
            finally:
                self._semaphore.release()

    async def close_all(self) -> None:
        """Close every idle and in-use session."""
        async with self._lock:
            sessions = list(self._idle) + list(self._in_use)
            self._idle.clear()
            self._in_use.clear()
            self._discarded.clear()
        for session in sessions:
            await self._close_quietly(session)

    def stats(self) -> Dict[str, int]:
        return {
            "max_size": self.max_size,
            "in_use": self.in_use_count,
            "idle": self.idle_count,
            "total_created": self._total_created,
        }
