"""HTML and CSS link extraction, mirror layout and link rewriting."""

import hashlib
import mimetypes
import os
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set
from urllib.parse import quote, unquote, urljoin, urlsplit

from bs4 import BeautifulSoup

from .urls import can_fetch_url, canonicalize_url, strip_fragment

CSS_URL_RE = re.compile(r"url\(\s*([\"']?)([^)\"']+)\1\s*\)", re.IGNORECASE)
CSS_IMPORT_RE = re.compile(
    r"@import\s+([\"'])([^\"';]+)\1\s*;",
    re.IGNORECASE,
)
SRCSET_SPLIT_RE = re.compile(r"\s*,\s*")
WS_RE = re.compile(r"\s+")
INVALID_FILENAME_CHARS_RE = re.compile(r'[<>:"\\|?*\x00-\x1f]')
SAFE_EXT_RE = re.compile(r"^\.[a-z0-9]{1,8}$")

HTML_EXTS = {".html", ".htm"}
SERVER_PAGE_EXTS = {".php", ".asp", ".aspx", ".jsp", ".jspx", ".cfm", ".shtml", ".xhtml"}
STRIPPED_ATTRS = ("integrity", "crossorigin")
ASSET_ATTRS = {
    "img": ["src"],
    "source": ["src"],
    "video": ["src", "poster"],
    "audio": ["src"],
    "track": ["src"],
    "script": ["src"],
    "link": ["href"],
    "input": ["src"],
}
ASSET_LINK_RELS = {"stylesheet", "icon", "shortcut icon", "apple-touch-icon", "manifest", "mask-icon"}
PRELOAD_TYPES = {"style", "image", "font", "script"}

UrlToPath = Callable[[str], Optional[Path]]


def parse_html(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def effective_base_url(soup: BeautifulSoup, fallback: str) -> str:
    tag = soup.find("base", href=True)
    if tag and tag.get("href"):
        return urljoin(fallback, tag["href"])
    return fallback


def _http(url: str) -> bool:
    return urlsplit(url).scheme in ("http", "https")


def parse_srcset(value: str) -> List[str]:
    urls: List[str] = []
    for candidate in SRCSET_SPLIT_RE.split((value or "").strip()):
        if not candidate:
            continue
        parts = WS_RE.split(candidate.strip())
        if parts and parts[0]:
            urls.append(parts[0])
    return urls


def parse_css_urls(text: str) -> Set[str]:
    """Every url() and quoted @import target in a stylesheet."""
    urls: Set[str] = set()
    for m in CSS_URL_RE.finditer(text or ""):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.add(u)
    for m in CSS_IMPORT_RE.finditer(text or ""):
        u = m.group(2).strip()
        if can_fetch_url(u):
            urls.add(u)
    return urls


def _is_asset_link(link) -> bool:
    rels = {r.lower() for r in (link.get("rel") or [])}
    if rels & ASSET_LINK_RELS or " ".join(sorted(rels)) in ASSET_LINK_RELS:
        return True
    if "preload" in rels or "modulepreload" in rels:
        return (link.get("as") or "script").lower() in PRELOAD_TYPES
    return False


def extract_asset_urls(soup: BeautifulSoup, page_url: str) -> Set[str]:
    """Absolute URLs of stylesheets, images, scripts, fonts and media a page uses."""
    base = effective_base_url(soup, page_url)
    found: Set[str] = set()

    def add(value: Optional[str]) -> None:
        if can_fetch_url(value):
            absolute = strip_fragment(urljoin(base, value.strip()))
            if _http(absolute):
                found.add(absolute)

    for link in soup.select("link[href]"):
        if _is_asset_link(link):
            add(link.get("href"))
    for tag in soup.select(
        "img[src], source[src], video[src], audio[src], track[src], input[type=image][src], script[src]"
    ):
        add(tag.get("src"))
    for tag in soup.select("video[poster]"):
        add(tag.get("poster"))
    for tag in soup.select("img[srcset], source[srcset]"):
        for u in parse_srcset(tag.get("srcset", "")):
            add(u)
    for tag in soup.select("[style]"):
        for u in parse_css_urls(tag.get("style") or ""):
            add(u)
    for style in soup.find_all("style"):
        for u in parse_css_urls(style.string or ""):
            add(u)
    return found


def extract_anchor_links(soup: BeautifulSoup, page_url: str) -> Set[str]:
    """Absolute http(s) targets of anchors, fragments removed."""
    base = effective_base_url(soup, page_url)
    urls: Set[str] = set()
    for a in soup.select("a[href], area[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        absolute = strip_fragment(urljoin(base, href.strip()))
        if _http(absolute):
            urls.add(absolute)
    return urls


def guess_ext_from_type(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    ct = content_type.split(";")[0].strip().lower()
    if ct in ("application/javascript", "text/javascript"):
        return ".js"
    if ct == "image/svg+xml":
        return ".svg"
    if ct == "image/jpeg":
        return ".jpg"
    if ct == "font/woff2":
        return ".woff2"
    if ct == "font/woff":
        return ".woff"
    if ct == "application/manifest+json":
        return ".webmanifest"
    return mimetypes.guess_extension(ct)


def category_for(path: str, content_type: Optional[str]) -> str:
    ext = (os.path.splitext(path)[1] or "").lower()
    ct = (content_type or "").lower()
    if ct.startswith("image/") or ext in {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".ico", ".bmp", ".avif"}:
        return "img"
    if ct.startswith("text/css") or ext == ".css":
        return "css"
    if "javascript" in ct or ext in {".js", ".mjs"}:
        return "js"
    if ct.startswith("font/") or ext in {".woff", ".woff2", ".ttf", ".otf", ".eot"}:
        return "font"
    if ct.startswith(("audio/", "video/")) or ext in {".mp4", ".webm", ".mp3", ".ogg", ".wav", ".m4a"}:
        return "media"
    if "json" in ct or ext in {".json", ".webmanifest", ".map"}:
        return "data"
    return "other"


def sanitize_segment(segment: str) -> str:
    name = INVALID_FILENAME_CHARS_RE.sub("_", unquote(segment))
    if name in ("", ".", ".."):
        name = "_"
    return name[:200]


def relative_href(target: Path, from_file: Path) -> str:
    """URL-quoted path from the directory of ``from_file`` to ``target``."""
    rel = Path(os.path.relpath(target, from_file.parent)).as_posix()
    return quote(rel, safe="/-._~!$&'()+,;=@")


def resolve_href(href: str, from_file: Path) -> Path:
    """Inverse of ``relative_href``: the file a relative href points at."""
    path = unquote(urlsplit(href).path)
    return (from_file.parent / path).resolve()


class MirrorLayout:
    """Where each page and asset of a job lives in the output directory."""

    ASSETS_DIR = "assets"
    SITES_DIR = "_sites"
    STAGING_DIR = ".mirror"

    def __init__(self, output_dir: Path, root_url: str, ignore_query: bool = False):
        self.output_dir = Path(output_dir)
        self.root_url = root_url
        self.root_netloc = urlsplit(canonicalize_url(root_url)).netloc
        self.ignore_query = ignore_query

    def page_path(self, url: str) -> Path:
        """File that holds the page at ``url``; directory roots map to index.html."""
        canonical = canonicalize_url(url, ignore_query=self.ignore_query)
        parts = urlsplit(canonical)

        base = self.output_dir
        if parts.netloc != self.root_netloc:
            base = base / self.SITES_DIR / sanitize_segment(parts.netloc.replace(":", "_"))

        segments = [sanitize_segment(s) for s in parts.path.split("/") if s]
        name = "index.html"
        if segments:
            last_ext = os.path.splitext(segments[-1])[1].lower()
            if last_ext in HTML_EXTS:
                name = segments.pop()
            elif last_ext in SERVER_PAGE_EXTS:
                name = f"{segments.pop()}.html"

        if parts.query:
            stem, ext = os.path.splitext(name)
            digest = hashlib.sha256(parts.query.encode("utf-8")).hexdigest()[:8]
            name = f"{stem}-q{digest}{ext}"

        return base.joinpath(*segments, name)

    def asset_path(self, url: str, content_hash: str, content_type: Optional[str] = None) -> Path:
        """Content-addressed location: identical bytes share one file."""
        path = urlsplit(url).path
        ext = os.path.splitext(path)[1].lower()
        if not SAFE_EXT_RE.match(ext):
            ext = guess_ext_from_type(content_type) or ""
        category = category_for(path, content_type)
        return self.output_dir / self.ASSETS_DIR / category / f"{content_hash[:16]}{ext}"

    def staged_page_path(self, content_hash: str) -> Path:
        """Original (un-rewritten) HTML kept for re-verification and resume."""
        return self.output_dir / self.STAGING_DIR / "pages" / f"{content_hash}.html"


def rewrite_css_text(css_text: str, css_url: str, css_file: Path, asset_for_url: UrlToPath) -> str:
    """Point url() and @import references at mirrored files, relative to ``css_file``."""

    def map_url(u: str) -> Optional[str]:
        target = asset_for_url(strip_fragment(urljoin(css_url, u)))
        return relative_href(target, css_file) if target is not None else None

    def repl_url(m: re.Match) -> str:
        new = map_url(m.group(2).strip())
        if new is None:
            return m.group(0)
        q = m.group(1) or ""
        return f"url({q}{new}{q})"

    def repl_import(m: re.Match) -> str:
        new = map_url(m.group(2).strip())
        if new is None:
            return m.group(0)
        q = m.group(1)
        return f"@import {q}{new}{q};"

    text = CSS_URL_RE.sub(repl_url, css_text)
    return CSS_IMPORT_RE.sub(repl_import, text)


def rewrite_page_html(
    html: str,
    page_url: str,
    page_file: Path,
    asset_for_url: UrlToPath,
    page_for_url: UrlToPath,
) -> str:
    """Rewrite a captured page so every mirrored reference resolves locally.

    References that have no mirrored counterpart keep their absolute URL.
    """
    soup = parse_html(html)
    base = effective_base_url(soup, page_url)
    for base_tag in soup.find_all("base"):
        base_tag.decompose()

    def local(value: str, lookup: UrlToPath) -> Optional[str]:
        target = lookup(strip_fragment(urljoin(base, value.strip())))
        return relative_href(target, page_file) if target is not None else None

    for tag_name, attrs in ASSET_ATTRS.items():
        for tag in soup.find_all(tag_name):
            for attr in attrs:
                value = tag.get(attr)
                if not can_fetch_url(value):
                    continue
                new = local(value, asset_for_url)
                if new is None:
                    tag[attr] = urljoin(base, value.strip())
                    continue
                tag[attr] = new
                for stripped in STRIPPED_ATTRS:
                    if stripped in tag.attrs:
                        del tag.attrs[stripped]

    for tag in soup.select("img[srcset], source[srcset]"):
        parts = []
        for candidate in SRCSET_SPLIT_RE.split(tag.get("srcset", "").strip()):
            comp = WS_RE.split(candidate.strip()) if candidate else []
            if not comp or not comp[0]:
                continue
            url = comp[0]
            if can_fetch_url(url):
                url = local(url, asset_for_url) or urljoin(base, url)
            parts.append(" ".join([url] + comp[1:]))
        tag["srcset"] = ", ".join(parts)

    for tag in soup.select("[style]"):
        css = tag.get("style") or ""
        new_css = rewrite_css_text(css, base, page_file, asset_for_url)
        if new_css != css:
            tag["style"] = new_css
    for style in soup.find_all("style"):
        if style.string:
            new_text = rewrite_css_text(style.string, base, page_file, asset_for_url)
            if new_text != style.string:
                style.string.replace_with(new_text)

    for a in soup.select("a[href], area[href]"):
        href = a.get("href")
        if not can_fetch_url(href):
            continue
        absolute = urljoin(base, href.strip())
        new = local(absolute, page_for_url)
        if new is None:
            if _http(absolute):
                a["href"] = absolute
            continue
        fragment = urlsplit(absolute).fragment
        a["href"] = f"{new}#{fragment}" if fragment else new

    return str(soup)
