"""Pytest configuration and shared fixtures."""

import inspect
import io
import logging
import tempfile
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest
from PIL import Image

from sitemirror.core.browser import BrowserSessionPool, NavigationResult
from sitemirror.core.jobs import SqlJobStore
from sitemirror.core.urls import canonicalize_url
from sitemirror.database.connection import DatabaseManager, set_database_manager
from sitemirror.foundation.config import ConfigManager, set_config_manager
from sitemirror.services.orchestrator import CloneOrchestrator
from sitemirror.services.progress import ProgressHub

PageValue = Union[str, Tuple[str, int, Dict[str, str]], List[Any]]

NOT_FOUND_HTML = "<html><head><title>Not Found</title></head><body>Not found</body></html>"


class FakeSite:
    """In-memory website served to fake browser sessions and to httpx.

    Pages map a URL to HTML, to ``(html, status, headers)``, or to a list of
    those served one per navigation (the last one repeats). Assets map a
    URL to ``(bytes, content_type)``.
    """

    def __init__(
        self,
        pages: Optional[Dict[str, PageValue]] = None,
        assets: Optional[Dict[str, Tuple[bytes, str]]] = None,
    ):
        self.pages: Dict[str, PageValue] = {}
        self.assets: Dict[str, Tuple[bytes, str]] = {}
        for url, value in (pages or {}).items():
            self.add_page(url, value)
        for url, value in (assets or {}).items():
            self.add_asset(url, *value)
        self.navigations: List[str] = []
        self.asset_requests: List[str] = []
        self.page_requests: List[str] = []
        self.on_navigate: Optional[Callable[[str], Any]] = None
        self._served: Dict[str, int] = {}

    def add_page(self, url: str, value: PageValue) -> None:
        self.pages[canonicalize_url(url)] = value

    def add_asset(self, url: str, content: bytes, content_type: str) -> None:
        self.assets[canonicalize_url(url)] = (content, content_type)

    def _page_response(self, url: str, advance: bool) -> Optional[Tuple[str, int, Dict[str, str]]]:
        key = canonicalize_url(url)
        value = self.pages.get(key)
        if value is None:
            return None
        if isinstance(value, list):
            if advance:
                index = self._served.get(key, 0)
                self._served[key] = index + 1
            else:
                index = len(value) - 1
            value = value[min(index, len(value) - 1)]
        if isinstance(value, str):
            return value, 200, {}
        html, status, headers = value
        return html, status, {k.lower(): v for k, v in headers.items()}

    async def navigate(self, url: str) -> NavigationResult:
        self.navigations.append(url)
        if self.on_navigate is not None:
            result = self.on_navigate(url)
            if inspect.isawaitable(result):
                await result
        response = self._page_response(url, advance=True)
        if response is None:
            return NavigationResult(url=url, html=NOT_FOUND_HTML, status_code=404, final_url=url)
        html, status, headers = response
        return NavigationResult(url=url, html=html, status_code=status, final_url=url, headers=headers)

    def navigation_count(self, url: str) -> int:
        key = canonicalize_url(url)
        return sum(1 for visited in self.navigations if canonicalize_url(visited) == key)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        key = canonicalize_url(url)
        if key in self.assets:
            self.asset_requests.append(url)
            content, content_type = self.assets[key]
            return httpx.Response(200, content=content, headers={"content-type": content_type})
        self.page_requests.append(url)
        response = self._page_response(url, advance=False)
        if response is None:
            return httpx.Response(404, text="not found")
        html, status, headers = response
        return httpx.Response(status, text=html, headers={"content-type": "text/html", **headers})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._handle)


class FakeSession:
    """Browser session stand-in that reads pages from a FakeSite."""

    def __init__(self, site: FakeSite, proxy=None):
        self.site = site
        self.proxy = proxy
        self.last_used = time.monotonic()
        self.closed = False
        self.calls: List[Dict[str, Any]] = []

    @property
    def proxy_key(self) -> Optional[str]:
        return self.proxy.key if self.proxy else None

    async def navigate(
        self,
        url: str,
        timeout: float = 30.0,
        wait_for: Optional[str] = None,
        wait_seconds: float = 0.0,
        js_code: Optional[List[str]] = None,
        geolocation=None,
        capture_console: bool = False,
    ) -> NavigationResult:
        self.last_used = time.monotonic()
        self.calls.append({"url": url, "wait_for": wait_for, "wait_seconds": wait_seconds})
        return await self.site.navigate(url)

    async def close(self) -> None:
        self.closed = True


class SleepRecorder:
    """Async sleep replacement that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def public_resolver(host: str) -> List[str]:
    return ["93.184.216.34"]


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def config_manager(temp_dir):
    """Create a test configuration manager backed by an in-memory database."""
    config_manager = ConfigManager(config_path=temp_dir / "config.yaml")
    config_manager.set_setting("storage.database_path", ":memory:")
    config_manager.set_setting("storage.output_root", str(temp_dir / "mirrors"))
    config_manager.set_setting("global.log_file", None)
    config_manager.set_setting("crawl.checkpoint_interval", 2)
    set_config_manager(config_manager)
    return config_manager


@pytest.fixture
async def database_manager(config_manager):
    """Create an initialized in-memory database manager."""
    db_manager = DatabaseManager(config_manager=config_manager)
    await db_manager.initialize()
    set_database_manager(db_manager)
    try:
        yield db_manager
    finally:
        await db_manager.close()


@pytest.fixture
def sleep():
    """Recording replacement for asyncio.sleep."""
    return SleepRecorder()


@pytest.fixture
def site_css():
    return b"body { color: #333; }\n"


@pytest.fixture
def png_bytes():
    """A small but real PNG image."""
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 30, 30)).save(buffer, "PNG")
    return buffer.getvalue()


@pytest.fixture
def three_page_site(site_css, png_bytes):
    """Root, about and blog pages sharing a stylesheet and a logo."""
    team_png = png_bytes + b"\x00team"
    return FakeSite(
        pages={
            "https://example.com/": (
                "<html><head><title>Home</title>"
                '<link rel="stylesheet" href="/static/site.css"></head>'
                '<body><img src="/img/logo.png">'
                '<a href="/about">About</a> <a href="/blog/">Blog</a> '
                '<a href="https://other.org/x">Elsewhere</a></body></html>'
            ),
            "https://example.com/about": (
                "<html><head><title>About</title></head>"
                '<body><img src="/img/logo.png"><img src="/img/team.png">'
                '<a href="/">Home</a></body></html>'
            ),
            "https://example.com/blog/": (
                "<html><head><title>Blog</title>"
                '<link rel="stylesheet" href="/static/site.css"></head>'
                '<body><a href="/about">About</a></body></html>'
            ),
        },
        assets={
            "https://example.com/static/site.css": (site_css, "text/css"),
            "https://example.com/img/logo.png": (png_bytes, "image/png"),
            "https://example.com/img/team.png": (team_png, "image/png"),
        },
    )


@pytest.fixture
async def make_orchestrator(config_manager, database_manager, sleep):
    """Factory for orchestrators whose browser sessions read from a FakeSite."""
    created: List[CloneOrchestrator] = []

    def _create(site: FakeSite, **kwargs) -> CloneOrchestrator:
        kwargs.setdefault(
            "session_pool",
            BrowserSessionPool(
                max_size=4,
                session_factory=lambda proxy: FakeSession(site, proxy),
                config_manager=config_manager,
            ),
        )
        kwargs.setdefault("job_store", SqlJobStore(database_manager))
        kwargs.setdefault("progress_hub", ProgressHub())
        orchestrator = CloneOrchestrator(
            config_manager=config_manager,
            db_manager=database_manager,
            resolver=public_resolver,
            http_transport=site.transport(),
            sleep=sleep,
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield _create
    for orchestrator in created:
        await orchestrator.close()


@pytest.fixture
def cli_runner():
    """Create a Click CLI runner for testing."""
    from click.testing import CliRunner

    class TestingCliRunner(CliRunner):
        def invoke(self, cli, args=None, **kwargs):
            kwargs.setdefault('catch_exceptions', False)
            if kwargs.get('obj') is None:
                kwargs['obj'] = {}
            return super().invoke(cli, args, **kwargs)

    return TestingCliRunner()


@pytest.fixture
def cli_env(temp_dir, monkeypatch):
    """Point the CLI's configuration, database and output at a temporary directory."""
    monkeypatch.setenv("HOME", str(temp_dir / "home"))
    monkeypatch.setenv("SITEMIRROR_CONFIG_PATH", str(temp_dir / "config.yaml"))
    monkeypatch.setenv("SITEMIRROR_STORAGE__DATABASE_PATH", str(temp_dir / "mirror.db"))
    monkeypatch.setenv("SITEMIRROR_STORAGE__OUTPUT_ROOT", str(temp_dir / "mirrors"))
    monkeypatch.setenv("SITEMIRROR_GLOBAL__LOG_FILE", "")

    # The CLI installs handlers on the root logger bound to the runner's streams
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield temp_dir
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Reset singleton instances before and after each test."""
    from sitemirror.database import connection
    from sitemirror.foundation import config, errors, logging, metrics
    from sitemirror.services import orchestrator

    def _reset():
        config._config_manager = None
        metrics._metrics_collector = None
        errors._error_handler = None
        logging._mirror_logger = None
        connection._db_manager = None
        orchestrator._orchestrator = None

    _reset()
    yield
    _reset()
