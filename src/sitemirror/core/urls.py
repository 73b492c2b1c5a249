"""URL canonicalization, crawl scope and target validation."""

import asyncio
import hashlib
import ipaddress
import re
import socket
from typing import Awaitable, Callable, Iterable, List, Optional
from urllib.parse import urlsplit, urlunsplit

import tldextract

from ..foundation.errors import ValidationError
from ..models.options import CrawlScope

DEFAULT_PORTS = {"http": 80, "https": 443}
NON_FETCHABLE_PREFIXES = ("#", "mailto:", "tel:", "javascript:", "data:", "blob:", "about:")

# Bundled public-suffix snapshot only; never fetch the list at runtime.
_tld_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)

Resolver = Callable[[str], Awaitable[List[str]]]


def can_fetch_url(u: Optional[str]) -> bool:
    """Whether an href/src value names something retrievable."""
    if not u:
        return False
    u = u.strip()
    return bool(u) and not u.lower().startswith(NON_FETCHABLE_PREFIXES)


def canonicalize_url(url: str, ignore_query: bool = False) -> str:
    """Canonical form used for dedup and for mapping pages onto the mirror.

    Lowercases scheme and host, drops default ports, userinfo and the
    fragment, and strips trailing slashes. The query string is kept
    unless ``ignore_query`` is set.
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    try:
        port = parts.port
    except ValueError:
        port = None

    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"

    path = re.sub(r"/{2,}", "/", parts.path or "/")
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = "" if ignore_query else parts.query
    return urlunsplit((scheme, netloc, path, query, ""))


def dedup_key(url: str, ignore_query: bool = False) -> str:
    """Hash of the canonical URL; one frontier entry per key."""
    canonical = canonicalize_url(url, ignore_query=ignore_query)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:32]


def strip_fragment(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))


def registrable_domain(host: str) -> str:
    """eTLD+1 for a host; IPs and single-label hosts are returned unchanged."""
    host = host.lower().strip(".")
    extracted = _tld_extract(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return host


class ScopePolicy:
    """Decides which discovered URLs belong to a crawl."""

    def __init__(
        self,
        root_url: str,
        scope: CrawlScope = CrawlScope.REGISTRABLE_DOMAIN,
        allowed_domains: Optional[Iterable[str]] = None,
        include_patterns: Optional[Iterable[str]] = None,
        exclude_patterns: Optional[Iterable[str]] = None,
    ):
        self.root_url = root_url
        self.root_host = (urlsplit(root_url).hostname or "").lower()
        self.root_domain = registrable_domain(self.root_host)
        self.scope = CrawlScope(scope)
        self.allowed_domains = [d.lower().lstrip(".") for d in (allowed_domains or [])]
        self.include = [re.compile(p) for p in (include_patterns or [])]
        self.exclude = [re.compile(p) for p in (exclude_patterns or [])]

    def _host_in_scope(self, host: str) -> bool:
        if any(host == d or host.endswith(f".{d}") for d in self.allowed_domains):
            return True
        if self.scope == CrawlScope.ANY:
            return True
        if self.scope == CrawlScope.HOST:
            return host == self.root_host
        return registrable_domain(host) == self.root_domain

    def in_scope(self, url: str) -> bool:
        parts = urlsplit(url)
        if parts.scheme.lower() not in DEFAULT_PORTS:
            return False
        host = (parts.hostname or "").lower()
        if not host or not self._host_in_scope(host):
            return False
        if self.include and not any(p.search(url) for p in self.include):
            return False
        if any(p.search(url) for p in self.exclude):
            return False
        return True


def is_public_address(address: str) -> bool:
    """False for private, loopback, link-local, multicast, reserved or unspecified IPs."""
    ip = ipaddress.ip_address(address.split("%", 1)[0])
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


async def _system_resolver(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({info[4][0] for info in infos})


async def validate_target_url(url: str, resolver: Optional[Resolver] = None) -> str:
    """Check that a clone target is a public http(s) URL.

    Args:
        url: Target URL as submitted
        resolver: Async host -> addresses lookup (defaults to the system resolver)

    Returns:
        The URL with its fragment removed

    Raises:
        ValidationError: If the URL is malformed, unresolvable or internal
    """
    parts = urlsplit(url.strip())
    if parts.scheme.lower() not in DEFAULT_PORTS:
        raise ValidationError(f"Unsupported URL scheme: {parts.scheme or '(none)'}", field="url")
    host = parts.hostname
    if not host:
        raise ValidationError(f"URL has no host: {url}", field="url")
    try:
        parts.port
    except ValueError as e:
        raise ValidationError(f"Invalid port in URL: {url}", field="url") from e

    resolver = resolver or _system_resolver
    try:
        addresses = await resolver(host)
    except (OSError, UnicodeError) as e:
        raise ValidationError(f"Cannot resolve host {host}: {e}", field="url") from e
    if not addresses:
        raise ValidationError(f"Host {host} did not resolve to any address", field="url")

    for address in addresses:
        try:
            public = is_public_address(address)
        except ValueError as e:
            raise ValidationError(f"Host {host} resolved to an invalid address {address}", field="url") from e
        if not public:
            raise ValidationError(
                f"Refusing internal-network target {host} ({address})", field="url"
            )

    return strip_fragment(url.strip())
