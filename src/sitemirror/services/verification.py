"""Post-capture quality scoring of a mirror."""

import hashlib
from datetime import datetime
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set
from urllib.parse import urlsplit

from ..core.html import (
    MirrorLayout,
    extract_anchor_links,
    extract_asset_urls,
    parse_html,
    resolve_href,
)
from ..core.urls import ScopePolicy, can_fetch_url, dedup_key, strip_fragment
from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import VerificationError
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector, timer
from ..models.records import (
    AssetStats,
    JsCheckResult,
    LinkStats,
    PageRecord,
    VerificationIssue,
    VerificationReport,
)

JsChecker = Callable[[Path], Awaitable[List[str]]]

COMPONENTS = ("links", "assets", "integrity", "js")


def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


def browser_js_checker(session_pool) -> JsChecker:
    """JS check that opens a mirrored file in a pooled browser and collects uncaught errors."""

    async def check(path: Path) -> List[str]:
        async with session_pool.session(None) as session:
            result = await session.navigate(path.resolve().as_uri(), timeout=30.0, capture_console=True)
        return list(result.console_errors)

    return check


class VerificationScorer:
    """Recomputes the expected link and asset graph and checks it against the mirror."""

    def __init__(
        self,
        config_manager: Optional[ConfigManager] = None,
        weights: Optional[Dict[str, float]] = None,
        pass_threshold: Optional[float] = None,
        js_checker: Optional[JsChecker] = None,
        js_sample_pages: Optional[int] = None,
    ):
        self.config_manager = config_manager or get_config_manager()
        self.weights = weights or {
            "links": self.config_manager.get_setting("verification.link_weight", 0.35),
            "assets": self.config_manager.get_setting("verification.asset_weight", 0.35),
            "integrity": self.config_manager.get_setting("verification.integrity_weight", 0.20),
            "js": self.config_manager.get_setting("verification.js_weight", 0.10),
        }
        self.pass_threshold = pass_threshold if pass_threshold is not None else self.config_manager.get_setting(
            "verification.pass_threshold", 70.0
        )
        self.js_checker = js_checker
        self.js_sample_pages = js_sample_pages or self.config_manager.get_setting("verification.js_sample_pages", 5)
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

    def effective_weights(self, js_enabled: bool) -> Dict[str, float]:
        """Configured weights, without JS when it is not checked, normalised to sum to 1."""
        weights = {name: float(self.weights.get(name, 0.0)) for name in COMPONENTS}
        if not js_enabled:
            weights.pop("js")
        total = sum(weights.values())
        if total <= 0:
            raise VerificationError("Verification weights must not all be zero")
        return {name: round(value / total, 6) for name, value in weights.items()}

    def _original_html(self, page: PageRecord, layout: MirrorLayout) -> Optional[str]:
        staged = layout.staged_page_path(page.content_hash)
        if staged.is_file():
            return staged.read_text(encoding="utf-8", errors="replace")
        return page.html

    def _check_links(
        self,
        page: PageRecord,
        original: str,
        output_file: Path,
        scope: ScopePolicy,
        attempted: Set[str],
        ignore_query: bool,
        issues: List[VerificationIssue],
    ) -> LinkStats:
        """Every expected internal link must appear rewritten and resolve to a file."""
        expected = {
            link for link in extract_anchor_links(parse_html(original), page.final_url or page.url)
            if scope.in_scope(link) and dedup_key(link, ignore_query) in attempted
        }
        if not expected:
            return LinkStats()
        if not output_file.is_file():
            for link in sorted(expected):
                issues.append(VerificationIssue(
                    category="broken-link", severity="error", page=page.url, target=link,
                    message="page file is missing from the mirror",
                ))
            return LinkStats(total=len(expected), valid=0, broken=len(expected))

        soup = parse_html(output_file.read_text(encoding="utf-8", errors="replace"))
        total = valid = 0
        checked: Set[str] = set()
        for a in soup.select("a[href], area[href]"):
            href = (a.get("href") or "").strip()
            if not can_fetch_url(href):
                continue
            parts = urlsplit(href)
            if parts.scheme or parts.netloc:
                target_url = strip_fragment(href)
                if target_url not in expected or target_url in checked:
                    continue
                checked.add(target_url)
                total += 1
                issues.append(VerificationIssue(
                    category="broken-link", severity="error", page=page.url, target=target_url,
                    message="internal link was not rewritten to a mirrored page",
                ))
                continue
            if not parts.path:
                continue
            total += 1
            target = resolve_href(href, output_file)
            if target.is_dir():
                target = target / "index.html"
            if target.is_file():
                valid += 1
            else:
                issues.append(VerificationIssue(
                    category="broken-link", severity="error", page=page.url, target=href,
                    message="relative link does not resolve to a file in the mirror",
                ))
        return LinkStats(total=total, valid=valid, broken=total - valid)

    def _check_assets(
        self,
        page: PageRecord,
        original: str,
        asset_for_url: Callable[[str], Optional[Path]],
        issues: List[VerificationIssue],
    ) -> AssetStats:
        expected = extract_asset_urls(parse_html(original), page.final_url or page.url)
        found = 0
        for url in sorted(expected):
            path = asset_for_url(url)
            if path is not None and path.is_file():
                found += 1
            else:
                issues.append(VerificationIssue(
                    category="missing-asset", severity="error", page=page.url, target=url,
                    message="referenced asset is not present in the mirror",
                ))
        return AssetStats(expected=len(expected), found=found, missing=len(expected) - found)

    def _check_integrity(self, targets: Dict[Path, str], output_dir: Path, issues: List[VerificationIssue]) -> List[str]:
        mismatches = []
        for path, expected_hash in sorted(targets.items()):
            if not path.is_file():
                continue
            if file_sha256(path) != expected_hash:
                rel = path.relative_to(output_dir).as_posix() if path.is_relative_to(output_dir) else str(path)
                mismatches.append(rel)
                issues.append(VerificationIssue(
                    category="integrity", severity="error", target=rel,
                    message="file content does not match the recorded hash",
                ))
        return mismatches

    async def _check_js(self, files: List[Path], output_dir: Path, issues: List[VerificationIssue]) -> JsCheckResult:
        sample = files[: self.js_sample_pages]
        errors: List[str] = []
        with_errors = 0
        for path in sample:
            page_errors = await self.js_checker(path)
            if page_errors:
                with_errors += 1
                rel = path.relative_to(output_dir).as_posix()
                for message in page_errors:
                    errors.append(f"{rel}: {message}")
                    issues.append(VerificationIssue(
                        category="js-error", severity="warning", page=rel, message=message,
                    ))
        return JsCheckResult(enabled=True, pages_checked=len(sample), pages_with_errors=with_errors, errors=errors)

    async def score(
        self,
        layout: MirrorLayout,
        pages: Iterable[PageRecord],
        asset_for_url: Callable[[str], Optional[Path]],
        integrity_targets: Dict[Path, str],
        scope: ScopePolicy,
        attempted_keys: Set[str],
        ignore_query: bool = False,
        check_js: bool = False,
    ) -> VerificationReport:
        """Score the mirror in ``layout.output_dir``.

        Args:
            layout: Output layout of the job
            pages: Captured pages, including ones served from cache
            asset_for_url: Asset URL -> mirrored file lookup
            integrity_targets: Mirrored asset file -> hash recorded when it was stored
            scope: Crawl scope, to tell internal links from external ones
            attempted_keys: Dedup keys of every page the crawl dispatched
            ignore_query: Whether query strings were ignored for dedup
            check_js: Run the JS execution check (needs a js_checker)

        Raises:
            VerificationError: If the output directory does not exist
        """
        output_dir = layout.output_dir
        if not output_dir.is_dir():
            raise VerificationError(f"Output directory {output_dir} does not exist")

        js_enabled = check_js and self.js_checker is not None
        weights = self.effective_weights(js_enabled)
        issues: List[VerificationIssue] = []
        links = LinkStats()
        assets = AssetStats()
        page_files: List[Path] = []

        with timer("verification.score"):
            for page in pages:
                original = self._original_html(page, layout)
                if original is None:
                    issues.append(VerificationIssue(
                        category="missing-page", severity="error", page=page.url,
                        message="original HTML is not available for verification",
                    ))
                    continue
                output_file = layout.page_path(page.url)
                if output_file.is_file():
                    page_files.append(output_file)
                else:
                    issues.append(VerificationIssue(
                        category="missing-page", severity="error", page=page.url,
                        message="page file is missing from the mirror",
                    ))

                page_links = self._check_links(
                    page, original, output_file, scope, attempted_keys, ignore_query, issues
                )
                page_assets = self._check_assets(page, original, asset_for_url, issues)
                links = LinkStats(
                    total=links.total + page_links.total,
                    valid=links.valid + page_links.valid,
                    broken=links.broken + page_links.broken,
                )
                assets = AssetStats(
                    expected=assets.expected + page_assets.expected,
                    found=assets.found + page_assets.found,
                    missing=assets.missing + page_assets.missing,
                )

            mismatches = self._check_integrity(integrity_targets, output_dir, issues)
            js_result = JsCheckResult()
            if js_enabled:
                js_result = await self._check_js(sorted(page_files), output_dir, issues)

        checked_files = sum(1 for path in integrity_targets if path.is_file())
        components = {
            "links": links.valid / links.total if links.total else 1.0,
            "assets": assets.found / assets.expected if assets.expected else 1.0,
            "integrity": (checked_files - len(mismatches)) / checked_files if checked_files else 1.0,
        }
        if js_enabled:
            checked = js_result.pages_checked
            components["js"] = (checked - js_result.pages_with_errors) / checked if checked else 1.0

        score = round(100.0 * sum(weights[name] * components[name] for name in weights), 1)
        passed = score >= self.pass_threshold
        summary = (
            f"Score {score:.1f}/100 ({'passed' if passed else 'failed'}): "
            f"{links.valid}/{links.total} links valid, {assets.found}/{assets.expected} assets found, "
            f"{len(mismatches)} integrity mismatches"
        )
        if js_enabled:
            summary += f", {js_result.pages_with_errors}/{js_result.pages_checked} pages with JS errors"

        self.metrics.set_gauge("verification.last_score", score)
        self.logger.info(summary)
        return VerificationReport(
            link_stats=links,
            asset_stats=assets,
            js_check=js_result,
            integrity_mismatches=mismatches,
            component_scores={name: round(value, 4) for name, value in components.items()},
            weights=weights,
            score=score,
            passed=passed,
            summary=summary,
            issues=issues,
            generated_at=datetime.utcnow(),
        )
