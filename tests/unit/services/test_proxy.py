"""Tests for the proxy pool and health monitor."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from sitemirror.foundation.errors import BlockedError, NetworkError, ParseError, RateLimitError, TimeoutError
from sitemirror.models.options import ProxyEndpoint, ProxyOptions, RotationPolicy
from sitemirror.services.proxy import ProxyHealth, ProxyHealthMonitor, ProxyPool


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def endpoints(count=3, **tags):
    return [ProxyEndpoint(host=f"10.0.0.{i}", port=8080, **tags) for i in range(1, count + 1)]


def keys(count=3):
    return [f"10.0.0.{i}:8080" for i in range(1, count + 1)]


@pytest.fixture
def clock():
    return FakeClock()


def make_pool(policy=RotationPolicy.ROUND_ROBIN, count=3, clock=None, country=None, proxies=None, **monitor_kwargs):
    monitor_kwargs.setdefault("failure_threshold", 3)
    monitor_kwargs.setdefault("cooldown_seconds", 60.0)
    monitor = ProxyHealthMonitor(proxies or endpoints(count), clock=clock or FakeClock(), **monitor_kwargs)
    return ProxyPool(policy=policy, country=country, monitor=monitor, rng=random.Random(7))


class TestProxyHealthMonitor:
    """Test suite for proxy health transitions."""

    def test_cools_down_after_consecutive_failures(self, clock):
        """Test a node cools down at the failure threshold and recovers on success."""
        pool = make_pool(clock=clock)
        monitor = pool.monitor
        for _ in range(3):
            monitor.record_failure("10.0.0.1:8080", "connect timeout")

        node = monitor.nodes["10.0.0.1:8080"]
        assert node.health == ProxyHealth.COOLING_DOWN
        assert node.cooldown_until == 1060.0
        assert node.last_error == "connect timeout"
        assert not node.is_available(clock())

        clock.now = 1060.0
        assert node.is_available(clock())
        monitor.record_success("10.0.0.1:8080", 0.2)
        assert node.health == ProxyHealth.HEALTHY
        assert node.consecutive_failures == 0

    def test_failed_trial_recools(self, clock):
        """Test a node that fails its trial cools down again at once."""
        pool = make_pool(clock=clock)
        monitor = pool.monitor
        for _ in range(3):
            monitor.record_failure("10.0.0.1:8080")
        clock.now = 1100.0
        monitor.record_failure("10.0.0.1:8080")

        node = monitor.nodes["10.0.0.1:8080"]
        assert node.health == ProxyHealth.COOLING_DOWN
        assert node.cooldown_until == 1160.0

    def test_marked_dead_and_reset(self, clock):
        """Test a mostly failing node is dead until reset."""
        pool = make_pool(clock=clock, failure_threshold=10, dead_min_requests=4, dead_failure_ratio=0.5)
        monitor = pool.monitor
        for _ in range(4):
            monitor.record_failure("10.0.0.1:8080")

        node = monitor.nodes["10.0.0.1:8080"]
        assert node.health == ProxyHealth.DEAD
        clock.now += 10 ** 6
        assert not node.is_available(clock())

        assert monitor.reset("10.0.0.1:8080") is True
        assert monitor.nodes["10.0.0.1:8080"].health == ProxyHealth.HEALTHY
        assert monitor.nodes["10.0.0.1:8080"].total_requests == 0
        assert monitor.reset("unknown:1") is False

    def test_unknown_keys_ignored(self):
        """Test reports for unknown proxies are no-ops."""
        monitor = ProxyHealthMonitor(endpoints(1))
        monitor.record_success("nope:1")
        monitor.record_failure("nope:1")
        assert monitor.nodes["10.0.0.1:8080"].total_requests == 0

    def test_health_summary(self, clock):
        """Test the summary counts nodes per state."""
        pool = make_pool(clock=clock)
        for _ in range(3):
            pool.report_failure("10.0.0.2:8080", "refused")
        pool.report_success("10.0.0.1:8080", 0.5)

        summary = pool.stats()
        assert summary["policy"] == "round-robin"
        assert summary["total"] == 3
        assert summary["healthy"] == 2
        assert summary["cooling-down"] == 1
        first = next(n for n in summary["nodes"] if n["key"] == "10.0.0.1:8080")
        assert first["success_rate"] == 1.0
        assert first["avg_response_time"] == 0.5

    async def test_run_checks_skips_dead_nodes(self):
        """Test the periodic checker visits live nodes until stopped."""
        monitor = ProxyHealthMonitor(endpoints(2), dead_min_requests=1, dead_failure_ratio=0.5)
        monitor.record_failure("10.0.0.2:8080")
        stop = asyncio.Event()

        async def check(key, url, timeout):
            stop.set()
            return True

        monitor.check = AsyncMock(side_effect=check)
        await asyncio.wait_for(monitor.run_checks("https://fresh.example/ip", interval=5, stop_event=stop), 2)

        monitor.check.assert_awaited_once_with("10.0.0.1:8080", "https://fresh.example/ip", 10.0)


class TestRotationPolicies:
    """Test suite for proxy selection."""

    def test_round_robin(self):
        """Test proxies are used in turn."""
        pool = make_pool()
        assert [pool.select().key for _ in range(4)] == keys() + keys()[:1]

    def test_round_robin_skips_unavailable(self, clock):
        """Test cooling nodes are skipped."""
        pool = make_pool(clock=clock)
        for _ in range(3):
            pool.report_failure("10.0.0.2:8080")
        selected = {pool.select().key for _ in range(6)}
        assert selected == {"10.0.0.1:8080", "10.0.0.3:8080"}

    def test_per_request_avoids_repeats(self):
        """Test consecutive requests never reuse the previous proxy."""
        pool = make_pool(RotationPolicy.PER_REQUEST, count=2)
        picks = [pool.select().key for _ in range(6)]
        assert all(a != b for a, b in zip(picks, picks[1:]))

    def test_per_domain_is_stable(self):
        """Test each target host keeps its proxy."""
        pool = make_pool(RotationPolicy.PER_DOMAIN)
        first = pool.select("https://a.example/1").key
        other = pool.select("https://b.example/").key
        assert pool.select("https://a.example/2").key == first
        assert first != other

    def test_per_domain_fails_over_at_default_threshold(self, config_manager):
        """Test a domain keeps its proxy through four failures and moves on at the fifth."""
        options = ProxyOptions(
            enabled=True,
            proxies=["http://10.0.0.1:8080", "http://10.0.0.2:8080"],
            policy="per-domain",
        )
        pool = ProxyPool.from_options(options, config_manager)
        first = pool.select("https://a.example/").key

        for attempt in range(4):
            pool.report_failure(first, "connect timeout")
            assert pool.select(f"https://a.example/{attempt}").key == first

        pool.report_failure(first, "connect timeout")
        replacement = pool.select("https://a.example/next").key

        assert pool.monitor.failure_threshold == 5
        assert pool.monitor.nodes[first].health == ProxyHealth.COOLING_DOWN
        assert replacement != first
        assert pool.select("https://a.example/again").key == replacement

    def test_sticky_switches_only_when_unavailable(self, clock):
        """Test sticky selection holds until the proxy goes down."""
        pool = make_pool(RotationPolicy.STICKY, clock=clock)
        first = pool.select().key
        assert {pool.select().key for _ in range(3)} == {first}

        for _ in range(3):
            pool.report_failure(first)
        replacement = pool.select().key
        assert replacement != first
        assert pool.select().key == replacement

    def test_speed_based(self):
        """Test unmeasured proxies are tried before the fastest one is preferred."""
        pool = make_pool(RotationPolicy.SPEED_BASED)
        pool.report_success("10.0.0.1:8080", 0.9)
        pool.report_success("10.0.0.2:8080", 0.1)
        assert pool.select().key == "10.0.0.3:8080"
        pool.report_success("10.0.0.3:8080", 0.5)
        assert pool.select().key == "10.0.0.2:8080"

    def test_success_based(self):
        """Test the proxy with the best recent success rate wins."""
        pool = make_pool(RotationPolicy.SUCCESS_BASED, count=2, failure_threshold=10)
        pool.report_success("10.0.0.1:8080")
        pool.report_failure("10.0.0.1:8080")
        pool.report_success("10.0.0.2:8080")
        assert pool.select().key == "10.0.0.2:8080"

    def test_country_filter_with_fallback(self):
        """Test country preference, falling back to any proxy."""
        proxies = [
            ProxyEndpoint(host="10.0.0.1", port=8080, country="us"),
            ProxyEndpoint(host="10.0.0.2", port=8080, country="DE"),
        ]
        assert make_pool(country="de", proxies=proxies).select().key == "10.0.0.2:8080"
        fallback = make_pool(country="fr", proxies=proxies)
        assert {fallback.select().key for _ in range(2)} == {"10.0.0.1:8080", "10.0.0.2:8080"}

    def test_direct_when_nothing_available(self, clock):
        """Test selection falls back to a direct connection."""
        assert ProxyPool().select() is None
        pool = make_pool(count=1, clock=clock)
        for _ in range(3):
            pool.report_failure("10.0.0.1:8080")
        assert pool.select() is None
        pool.report_failure(None)

    def test_from_options(self, config_manager):
        """Test pools built from job options honour the enabled flag."""
        config_manager.set_setting("proxy.failure_threshold", 2)
        options = ProxyOptions(enabled=True, proxies=["http://10.0.0.1:8080"], policy="sticky")
        pool = ProxyPool.from_options(options, config_manager)
        assert pool.enabled
        assert pool.policy == RotationPolicy.STICKY
        assert pool.monitor.failure_threshold == 2

        disabled = ProxyPool.from_options(ProxyOptions(enabled=False, proxies=["http://10.0.0.1:8080"]))
        assert not disabled.enabled
        assert disabled.select() is None


class TestOutcomeReporting:
    """Test which request outcomes count against a proxy."""

    @pytest.mark.parametrize("error", [
        NetworkError("connection refused"),
        NetworkError("proxy auth required", status_code=407),
        RateLimitError("slow down"),
        TimeoutError("navigation timed out"),
        BlockedError("challenge persisted"),
    ])
    def test_proxy_faults(self, error):
        """Test failures of the proxy path are charged to the proxy."""
        pool = make_pool()
        pool.report_error("10.0.0.1:8080", error)

        node = pool.monitor.nodes["10.0.0.1:8080"]
        assert node.consecutive_failures == 1
        assert node.last_error == error.message

    @pytest.mark.parametrize("error", [
        NetworkError("HTTP 404", status_code=404),
        NetworkError("HTTP 503", status_code=503),
        ParseError("empty document"),
    ])
    def test_target_answers(self, error):
        """Test answers from the target site count as proxy successes."""
        pool = make_pool()
        pool.report_failure("10.0.0.1:8080", "earlier")
        pool.report_error("10.0.0.1:8080", error)

        node = pool.monitor.nodes["10.0.0.1:8080"]
        assert node.consecutive_failures == 0
        assert node.total_successes == 1

    def test_raw_responses(self):
        """Test raw responses are judged by status alone."""
        pool = make_pool()
        pool.report_response("10.0.0.1:8080", 404)
        pool.report_response("10.0.0.1:8080", 407)

        node = pool.monitor.nodes["10.0.0.1:8080"]
        assert node.total_successes == 1
        assert node.total_failures == 1
        assert node.last_error == "HTTP 407"

    def test_direct_connections_ignored(self):
        """Test outcomes without a proxy key are dropped."""
        pool = make_pool()
        pool.report_error(None, NetworkError("refused"))
        assert all(node.total_requests == 0 for node in pool.monitor.snapshot())
