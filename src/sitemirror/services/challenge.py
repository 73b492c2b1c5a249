"""Detection and bypass of anti-bot interstitials."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from bs4 import BeautifulSoup

from ..core.browser import NavigationResult
from ..foundation.errors import BlockedError, ConfigurationError, NetworkError, TimeoutError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.options import BypassOptions, GeolocationOptions
from ..models.records import ChallengeOutcome


class ChallengeKind(str, Enum):
    """Page classification, in increasing order of difficulty."""
    NORMAL = "normal"
    SCRIPT_CHALLENGE = "script-challenge"
    MANAGED_CAPTCHA = "managed-captcha"
    INTERACTIVE_WIDGET = "interactive-widget"


_LEVELS = {
    ChallengeKind.NORMAL: 0,
    ChallengeKind.SCRIPT_CHALLENGE: 1,
    ChallengeKind.MANAGED_CAPTCHA: 2,
    ChallengeKind.INTERACTIVE_WIDGET: 3,
}

URL_TOKENS = ("__cf_chl_tk", "__cf_chl_j_tk", "__cf_chl_jschl_tk__", "__cf_chl_captcha_tk__", "__cf_chl_rt_tk")
INTERSTITIAL_TITLES = ("just a moment", "checking your browser", "attention required")
SCRIPT_MARKERS = (
    "#challenge-form",
    "input[name=jschl_vc]",
    "input[name=jschl_answer]",
    "#cf-browser-verification",
    ".cf-browser-verification",
    "#cf-spinner-please-wait",
    "#cf-challenge-running",
    "#challenge-running",
)
CAPTCHA_MARKERS = ("#cf_captcha_kind", ".cf_captcha", ".g-recaptcha", ".h-captcha", "iframe[src*=hcaptcha]", "iframe[src*=recaptcha]")
WIDGET_MARKERS = (".cf-turnstile", "script[src*='challenges.cloudflare.com/turnstile']")
PLATFORM_SCRIPT = "/cdn-cgi/challenge-platform/"

# Keeps the browser waiting until the challenge page has navigated itself away
CHALLENGE_CLEARED_JS = (
    "js:() => !document.querySelector('#challenge-form') && "
    "!/just a moment|checking your browser/i.test(document.title)"
)


def classify_page(html: str, url: Optional[str] = None, title: Optional[str] = None) -> ChallengeKind:
    """Classify a fetched page by its interstitial markers; the hardest kind wins.

    Captcha and widget markers only count on an interstitial page, so a
    normal page with a captcha-protected form is still ``normal``.
    """
    if not html:
        return ChallengeKind.NORMAL

    soup = BeautifulSoup(html, "html.parser")
    page_title = (title or (soup.title.get_text() if soup.title else "") or "").strip().lower()

    url_token = bool(url) and any(token in url for token in URL_TOKENS)
    title_marker = any(page_title.startswith(t) for t in INTERSTITIAL_TITLES)
    platform_script = any(
        PLATFORM_SCRIPT in (script.get("src") or "") or PLATFORM_SCRIPT in (script.string or "")
        for script in soup.find_all("script")
    )
    script_marker = any(soup.select_one(selector) is not None for selector in SCRIPT_MARKERS)

    interstitial = url_token or title_marker or platform_script or script_marker
    if not interstitial:
        return ChallengeKind.NORMAL

    kind = ChallengeKind.SCRIPT_CHALLENGE
    if any(soup.select_one(selector) is not None for selector in CAPTCHA_MARKERS) or (
        url and "__cf_chl_captcha_tk__" in url
    ):
        kind = ChallengeKind.MANAGED_CAPTCHA
    if any(soup.select_one(selector) is not None for selector in WIDGET_MARKERS):
        kind = ChallengeKind.INTERACTIVE_WIDGET
    return kind


def harder(a: ChallengeKind, b: ChallengeKind) -> ChallengeKind:
    return a if _LEVELS[a] >= _LEVELS[b] else b


class ChallengeSolver(ABC):
    """Pluggable external solver for captcha and widget challenges."""

    name = "solver"

    @abstractmethod
    async def solve(self, kind: ChallengeKind, session: Any, url: str, html: str) -> bool:
        """Solve the challenge inside ``session``; True when the page should now load."""


_solver_registry: Dict[str, Callable[[], ChallengeSolver]] = {}


def register_solver(name: str, factory: Callable[[], ChallengeSolver]) -> None:
    """Make a solver available under ``name`` for job options and config."""
    _solver_registry[name] = factory


def unregister_solver(name: str) -> None:
    _solver_registry.pop(name, None)


def get_solver(name: Optional[str]) -> Optional[ChallengeSolver]:
    """Instantiate a registered solver, or None when ``name`` is empty.

    Raises:
        ConfigurationError: If no solver is registered under ``name``
    """
    if not name:
        return None
    factory = _solver_registry.get(name)
    if factory is None:
        raise ConfigurationError(f"Unknown challenge solver: {name}", config_key="challenge.solver")
    return factory()


class ChallengeBypass:
    """Turns a fetched interstitial into the real page, or raises BlockedError."""

    def __init__(self, options: Optional[BypassOptions] = None, solver: Optional[ChallengeSolver] = None):
        self.options = options or BypassOptions()
        self.solver = solver if solver is not None else get_solver(self.options.solver)
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    async def resolve(
        self,
        session: Any,
        url: str,
        navigation: NavigationResult,
        timeout: float = 30.0,
        geolocation: Optional[GeolocationOptions] = None,
    ) -> Tuple[NavigationResult, Optional[ChallengeOutcome]]:
        """Return a challenge-free navigation result for ``url``.

        Raises:
            BlockedError: If the challenge cannot be bypassed
        """
        kind = classify_page(navigation.html, navigation.final_url, navigation.title)
        if kind == ChallengeKind.NORMAL:
            return navigation, None

        detected = kind
        self.logger.info(f"Detected {kind.value} on {url}")
        if not self.options.enabled:
            self.metrics.increment_counter("challenge.blocked")
            raise BlockedError(f"{kind.value} on {url} and bypass is disabled", challenge_kind=kind.value)

        attempts = 0
        if kind == ChallengeKind.SCRIPT_CHALLENGE:
            while attempts < self.options.max_attempts:
                attempts += 1
                try:
                    navigation = await session.navigate(
                        url,
                        timeout=timeout,
                        wait_for=CHALLENGE_CLEARED_JS,
                        wait_seconds=self.options.wait_seconds * attempts,
                        geolocation=geolocation,
                    )
                except (TimeoutError, NetworkError) as e:
                    self.logger.debug(f"Challenge attempt {attempts} for {url} failed: {e}")
                    continue
                kind = classify_page(navigation.html, navigation.final_url, navigation.title)
                if kind == ChallengeKind.NORMAL:
                    return navigation, self._bypassed(detected, attempts)
                if kind != ChallengeKind.SCRIPT_CHALLENGE:
                    break

            if kind == ChallengeKind.SCRIPT_CHALLENGE:
                self.metrics.increment_counter("challenge.blocked")
                raise BlockedError(
                    f"Script challenge on {url} persisted after {attempts} attempts",
                    challenge_kind=kind.value,
                )
            detected = harder(detected, kind)

        if self.solver is None:
            self.metrics.increment_counter("challenge.blocked")
            raise BlockedError(f"{kind.value} on {url} and no solver is configured", challenge_kind=kind.value)

        attempts += 1
        try:
            solved = await asyncio.wait_for(
                self.solver.solve(kind, session, url, navigation.html),
                timeout=self.options.solver_timeout,
            )
        except asyncio.TimeoutError as e:
            self.metrics.increment_counter("challenge.blocked")
            raise BlockedError(
                f"Solver {self.solver.name} timed out on {url}", challenge_kind=kind.value
            ) from e
        if not solved:
            self.metrics.increment_counter("challenge.blocked")
            raise BlockedError(f"Solver {self.solver.name} could not solve {kind.value} on {url}", challenge_kind=kind.value)

        try:
            navigation = await session.navigate(url, timeout=timeout, geolocation=geolocation)
        except (TimeoutError, NetworkError) as e:
            raise BlockedError(f"Reload after solving {kind.value} on {url} failed: {e}", challenge_kind=kind.value) from e
        kind = classify_page(navigation.html, navigation.final_url, navigation.title)
        if kind != ChallengeKind.NORMAL:
            self.metrics.increment_counter("challenge.blocked")
            raise BlockedError(f"{kind.value} on {url} remained after solving", challenge_kind=kind.value)

        outcome = self._bypassed(detected, attempts)
        outcome.solver = self.solver.name
        return navigation, outcome

    def _bypassed(self, detected: ChallengeKind, attempts: int) -> ChallengeOutcome:
        self.metrics.increment_counter("challenge.bypassed")
        return ChallengeOutcome(detected=detected.value, attempts=attempts, bypassed=True)
