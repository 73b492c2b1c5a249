"""Tests for URL canonicalization, scope and target validation."""

import pytest

from sitemirror.core.urls import (
    ScopePolicy, can_fetch_url, canonicalize_url, dedup_key, is_public_address,
    registrable_domain, strip_fragment, validate_target_url,
)
from sitemirror.foundation.errors import ValidationError
from sitemirror.models.options import CrawlScope


def resolver_for(*addresses):
    async def _resolve(host):
        return list(addresses)
    return _resolve


class TestCanonicalizeUrl:
    """Test suite for URL canonicalization."""

    @pytest.mark.parametrize("url,expected", [
        ("HTTPS://Example.COM:443/a//b/?q=1#frag", "https://example.com/a/b?q=1"),
        ("http://example.com", "http://example.com/"),
        ("http://example.com/", "http://example.com/"),
        ("http://user:pw@example.com:8080/x", "http://example.com:8080/x"),
        ("http://[::1]:80/", "http://[::1]/"),
        ("  https://example.com/about/  ", "https://example.com/about"),
    ])
    def test_canonical_forms(self, url, expected):
        """Test equivalent spellings collapse to one canonical URL."""
        assert canonicalize_url(url) == expected

    def test_ignore_query(self):
        """Test the query is dropped only when asked."""
        assert canonicalize_url("https://example.com/p?a=1") == "https://example.com/p?a=1"
        assert canonicalize_url("https://example.com/p?a=1", ignore_query=True) == "https://example.com/p"

    def test_dedup_key(self):
        """Test equivalent URLs share a dedup key."""
        key = dedup_key("https://Example.com/about/#top")
        assert key == dedup_key("https://example.com:443/about")
        assert key != dedup_key("https://example.com/contact")
        assert len(key) == 32

    def test_strip_fragment(self):
        """Test only the fragment is removed."""
        assert strip_fragment("https://example.com/a?b=1#c") == "https://example.com/a?b=1"

    @pytest.mark.parametrize("value,expected", [
        ("/about", True),
        ("https://example.com/", True),
        ("#top", False),
        ("mailto:someone@example.com", False),
        ("JavaScript:void(0)", False),
        ("data:image/png;base64,AAAA", False),
        ("   ", False),
        (None, False),
    ])
    def test_can_fetch_url(self, value, expected):
        """Test non-retrievable references are filtered."""
        assert can_fetch_url(value) is expected


class TestScopePolicy:
    """Test suite for crawl scope decisions."""

    def test_registrable_domain(self):
        """Test eTLD+1 extraction from the bundled suffix list."""
        assert registrable_domain("blog.example.co.uk") == "example.co.uk"
        assert registrable_domain("WWW.Example.com.") == "example.com"
        assert registrable_domain("localhost") == "localhost"

    def test_registrable_domain_scope(self):
        """Test subdomains of the root's registrable domain are in scope."""
        policy = ScopePolicy("https://www.example.com/")
        assert policy.in_scope("https://cdn.example.com/x")
        assert policy.in_scope("http://example.com/")
        assert not policy.in_scope("https://other.org/")
        assert not policy.in_scope("ftp://www.example.com/file")

    def test_host_scope(self):
        """Test host scope admits only the exact root host."""
        policy = ScopePolicy("https://www.example.com/", scope=CrawlScope.HOST)
        assert policy.in_scope("https://www.example.com/about")
        assert not policy.in_scope("https://cdn.example.com/x")

    def test_any_scope(self):
        """Test any scope admits every http(s) host."""
        policy = ScopePolicy("https://example.com/", scope="any")
        assert policy.in_scope("https://other.org/")
        assert not policy.in_scope("mailto:x@example.com")

    def test_allowed_domains(self):
        """Test allowed domains extend a narrow scope."""
        policy = ScopePolicy("https://example.com/", scope=CrawlScope.HOST, allowed_domains=[".Other.org"])
        assert policy.in_scope("https://sub.other.org/page")
        assert policy.in_scope("https://other.org/")
        assert not policy.in_scope("https://notother.org/")

    def test_include_and_exclude_patterns(self):
        """Test include patterns restrict and exclude patterns remove."""
        policy = ScopePolicy(
            "https://example.com/",
            include_patterns=[r"/docs/"],
            exclude_patterns=[r"/docs/private/"],
        )
        assert policy.in_scope("https://example.com/docs/intro")
        assert not policy.in_scope("https://example.com/blog/")
        assert not policy.in_scope("https://example.com/docs/private/key")


class TestTargetValidation:
    """Test suite for clone target validation."""

    @pytest.mark.parametrize("address,public", [
        ("93.184.216.34", True),
        ("2606:4700::1111", True),
        ("10.0.0.1", False),
        ("192.168.1.20", False),
        ("127.0.0.1", False),
        ("169.254.169.254", False),
        ("0.0.0.0", False),
        ("::1", False),
        ("::ffff:10.0.0.1", False),
        ("fe80::1%eth0", False),
    ])
    def test_is_public_address(self, address, public):
        """Test internal address ranges are recognised."""
        assert is_public_address(address) is public

    async def test_valid_target(self):
        """Test a public URL passes with its fragment removed."""
        url = await validate_target_url("https://example.com/start#top", resolver=resolver_for("93.184.216.34"))
        assert url == "https://example.com/start"

    @pytest.mark.parametrize("url", ["ftp://example.com/", "example.com/path", "http:///path", "http://example.com:99999/"])
    async def test_malformed_targets(self, url):
        """Test unsupported schemes, missing hosts and bad ports are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            await validate_target_url(url, resolver=resolver_for("93.184.216.34"))
        assert exc_info.value.field == "url"

    async def test_internal_target_rejected(self):
        """Test a host resolving to any private address is refused."""
        with pytest.raises(ValidationError, match="internal-network"):
            await validate_target_url(
                "http://intranet.example.com/",
                resolver=resolver_for("93.184.216.34", "10.1.2.3"),
            )

    async def test_unresolvable_target(self):
        """Test resolution failures and empty answers are rejected."""
        async def failing(host):
            raise OSError("Name or service not known")

        with pytest.raises(ValidationError, match="Cannot resolve"):
            await validate_target_url("https://nowhere.invalid/", resolver=failing)
        with pytest.raises(ValidationError, match="did not resolve"):
            await validate_target_url("https://nowhere.invalid/", resolver=resolver_for())
