"""Proxy pool with health tracking and rotation policies."""

import asyncio
import random
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional
from urllib.parse import urlsplit

import httpx

from ..foundation.config import ConfigManager, get_config_manager
from ..foundation.errors import ErrorKind, error_kind_for
from ..foundation.logging import get_logger
from ..foundation.metrics import get_metrics_collector
from ..models.options import ProxyEndpoint, ProxyOptions, RotationPolicy

# Statuses the proxy itself answers with, or that penalize its exit address
PROXY_FAULT_STATUS = (407, 429)


class ProxyHealth(str, Enum):
    """Health states of a proxy node."""
    HEALTHY = "healthy"
    COOLING_DOWN = "cooling-down"
    DEAD = "dead"


@dataclass
class ProxyNode:
    """One egress endpoint and its health counters."""
    endpoint: ProxyEndpoint
    health: ProxyHealth = ProxyHealth.HEALTHY
    consecutive_failures: int = 0
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    cooldown_until: Optional[float] = None
    last_used: Optional[float] = None
    last_error: Optional[str] = None
    response_times: Deque[float] = field(default_factory=lambda: deque(maxlen=20))
    recent_results: Deque[bool] = field(default_factory=lambda: deque(maxlen=50))
    check_history: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=100))

    @property
    def key(self) -> str:
        return self.endpoint.key

    @property
    def country(self) -> Optional[str]:
        return self.endpoint.country

    @property
    def avg_response_time(self) -> Optional[float]:
        if not self.response_times:
            return None
        return sum(self.response_times) / len(self.response_times)

    @property
    def success_rate(self) -> Optional[float]:
        """Success rate over recent uses, None before first use."""
        if not self.recent_results:
            return None
        return sum(1 for ok in self.recent_results if ok) / len(self.recent_results)

    @property
    def failure_ratio(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_failures / self.total_requests

    def is_available(self, now: float) -> bool:
        if self.health == ProxyHealth.HEALTHY:
            return True
        if self.health == ProxyHealth.COOLING_DOWN:
            # Past the window the node is a trial candidate again
            return self.cooldown_until is not None and now >= self.cooldown_until
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "country": self.country,
            "type": self.endpoint.type,
            "health": self.health.value,
            "consecutive_failures": self.consecutive_failures,
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "success_rate": self.success_rate,
            "avg_response_time": self.avg_response_time,
            "last_error": self.last_error,
        }


class ProxyHealthMonitor:
    """Owns every ProxyNode and is the only writer of their health state."""

    def __init__(
        self,
        endpoints: Iterable[ProxyEndpoint] = (),
        failure_threshold: int = 5,
        cooldown_seconds: float = 60.0,
        dead_failure_ratio: float = 0.8,
        dead_min_requests: int = 20,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self.dead_failure_ratio = dead_failure_ratio
        self.dead_min_requests = dead_min_requests
        self.clock = clock
        self.logger = get_logger(__name__)
        self.metrics = get_metrics_collector()

        self.lock = threading.Lock()
        self.nodes: Dict[str, ProxyNode] = {}
        for endpoint in endpoints:
            self.nodes[endpoint.key] = ProxyNode(endpoint=endpoint)

    def record_success(self, key: str, response_time: Optional[float] = None) -> None:
        with self.lock:
            node = self.nodes.get(key)
            if node is None:
                return
            node.total_requests += 1
            node.total_successes += 1
            node.consecutive_failures = 0
            node.recent_results.append(True)
            node.last_used = self.clock()
            if response_time is not None:
                node.response_times.append(response_time)
            if node.health == ProxyHealth.COOLING_DOWN:
                self.logger.info(f"Proxy {key} recovered after cool-down")
                node.health = ProxyHealth.HEALTHY
                node.cooldown_until = None

    def record_failure(self, key: str, reason: Optional[str] = None) -> None:
        with self.lock:
            node = self.nodes.get(key)
            if node is None:
                return
            now = self.clock()
            node.total_requests += 1
            node.total_failures += 1
            node.consecutive_failures += 1
            node.recent_results.append(False)
            node.last_used = now
            node.last_error = reason

            if node.health == ProxyHealth.DEAD:
                return
            if (
                node.total_requests >= self.dead_min_requests
                and node.failure_ratio > self.dead_failure_ratio
            ):
                node.health = ProxyHealth.DEAD
                node.cooldown_until = None
                self.logger.warning(
                    f"Proxy {key} marked dead (failure ratio {node.failure_ratio:.2f} "
                    f"over {node.total_requests} requests)"
                )
            elif node.consecutive_failures >= self.failure_threshold:
                # A failed trial after cool-down re-cools straight away
                node.health = ProxyHealth.COOLING_DOWN
                node.cooldown_until = now + self.cooldown_seconds
                self.logger.warning(
                    f"Proxy {key} cooling down for {self.cooldown_seconds:.0f}s after "
                    f"{node.consecutive_failures} consecutive failures"
                )
        self.metrics.increment_counter("proxy.failures")

    def reset(self, key: str) -> bool:
        """Manually restore a node, including a dead one, to a clean healthy state."""
        with self.lock:
            node = self.nodes.get(key)
            if node is None:
                return False
            self.nodes[key] = ProxyNode(endpoint=node.endpoint)
        self.logger.info(f"Proxy {key} reset")
        return True

    def snapshot(self) -> List[ProxyNode]:
        with self.lock:
            return list(self.nodes.values())

    async def check(self, key: str, check_url: str, timeout: float = 10.0) -> bool:
        """Check a node with a request routed through it."""
        node = self.nodes.get(key)
        if node is None:
            return False
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(proxy=node.endpoint.url, timeout=timeout) as client:
                response = await client.get(check_url)
            ok = response.status_code < 400
            error = None if ok else f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            ok = False
            error = str(e) or e.__class__.__name__
        elapsed = time.monotonic() - start

        with self.lock:
            node.check_history.append({
                "timestamp": datetime.utcnow().isoformat(),
                "ok": ok,
                "response_time": elapsed,
                "error": error,
            })
        if ok:
            self.record_success(key, elapsed)
        else:
            self.record_failure(key, error)
        return ok

    async def run_checks(
        self,
        check_url: str,
        interval: float = 60.0,
        timeout: float = 10.0,
        stop_event: Optional[asyncio.Event] = None,
    ) -> None:
        """Check every non-dead node each ``interval`` seconds until stopped."""
        stop_event = stop_event or asyncio.Event()
        while not stop_event.is_set():
            keys = [node.key for node in self.snapshot() if node.health != ProxyHealth.DEAD]
            await asyncio.gather(*(self.check(key, check_url, timeout) for key in keys))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue

    def health_summary(self) -> Dict[str, Any]:
        nodes = self.snapshot()
        by_state = {state.value: 0 for state in ProxyHealth}
        for node in nodes:
            by_state[node.health.value] += 1
        return {
            "total": len(nodes),
            **by_state,
            "nodes": [node.to_dict() for node in nodes],
        }


class ProxyPool:
    """Selects an egress proxy per request under a rotation policy."""

    def __init__(
        self,
        endpoints: Iterable[ProxyEndpoint] = (),
        policy: RotationPolicy = RotationPolicy.ROUND_ROBIN,
        country: Optional[str] = None,
        monitor: Optional[ProxyHealthMonitor] = None,
        rng: Optional[random.Random] = None,
    ):
        self.policy = RotationPolicy(policy)
        self.country = country.upper() if country else None
        self.monitor = monitor or ProxyHealthMonitor(endpoints)
        self.logger = get_logger(__name__)
        self._rng = rng or random.Random()
        self._rr_index = 0
        self._domain_map: Dict[str, str] = {}
        self._sticky_key: Optional[str] = None
        self._last_key: Optional[str] = None

    @classmethod
    def from_options(
        cls,
        options: ProxyOptions,
        config_manager: Optional[ConfigManager] = None,
    ) -> "ProxyPool":
        config_manager = config_manager or get_config_manager()
        endpoints = options.proxies if options.enabled else []
        monitor = ProxyHealthMonitor(
            endpoints,
            failure_threshold=config_manager.get_setting("proxy.failure_threshold", 5),
            cooldown_seconds=config_manager.get_setting("proxy.cooldown_seconds", 60.0),
            dead_failure_ratio=config_manager.get_setting("proxy.dead_failure_ratio", 0.8),
            dead_min_requests=config_manager.get_setting("proxy.dead_min_requests", 20),
        )
        return cls(policy=options.policy, country=options.country, monitor=monitor)

    @property
    def enabled(self) -> bool:
        return bool(self.monitor.nodes)

    def _candidates(self, now: float) -> List[ProxyNode]:
        nodes = list(self.monitor.nodes.values())
        if self.country:
            matching = [n for n in nodes if (n.country or "").upper() == self.country]
            # No node in the requested country: fall back to the whole pool
            if matching:
                nodes = matching
        return [n for n in nodes if n.is_available(now)]

    def _next_round_robin(self, candidates: List[ProxyNode]) -> ProxyNode:
        node = candidates[self._rr_index % len(candidates)]
        self._rr_index += 1
        return node

    def select(self, target_url: Optional[str] = None) -> Optional[ProxyEndpoint]:
        """Pick a proxy for a request to ``target_url``.

        Returns:
            The endpoint to use, or None to connect directly
        """
        if not self.monitor.nodes:
            return None

        with self.monitor.lock:
            candidates = self._candidates(self.monitor.clock())
            if not candidates:
                self.logger.warning("No proxy available; falling back to a direct connection")
                return None
            by_key = {n.key: n for n in candidates}

            if self.policy == RotationPolicy.ROUND_ROBIN:
                node = self._next_round_robin(candidates)
            elif self.policy == RotationPolicy.PER_REQUEST:
                pool = [n for n in candidates if n.key != self._last_key] or candidates
                node = self._rng.choice(pool)
            elif self.policy == RotationPolicy.PER_DOMAIN:
                host = (urlsplit(target_url).hostname or "") if target_url else ""
                node = by_key.get(self._domain_map.get(host, ""))
                if node is None:
                    node = self._next_round_robin(candidates)
                    self._domain_map[host] = node.key
            elif self.policy == RotationPolicy.STICKY:
                node = by_key.get(self._sticky_key or "")
                if node is None:
                    node = self._next_round_robin(candidates)
                    self._sticky_key = node.key
            elif self.policy == RotationPolicy.SPEED_BASED:
                unmeasured = [n for n in candidates if n.avg_response_time is None]
                node = unmeasured[0] if unmeasured else min(candidates, key=lambda n: n.avg_response_time)
            else:
                unmeasured = [n for n in candidates if n.success_rate is None]
                node = unmeasured[0] if unmeasured else max(candidates, key=lambda n: n.success_rate)

            self._last_key = node.key
            return node.endpoint

    def report_success(self, key: Optional[str], response_time: Optional[float] = None) -> None:
        if key:
            self.monitor.record_success(key, response_time)

    def report_failure(self, key: Optional[str], reason: Optional[str] = None) -> None:
        if key:
            self.monitor.record_failure(key, reason)

    def report_response(self, key: Optional[str], status_code: int, response_time: Optional[float] = None) -> None:
        """Record a response that came back through the proxy."""
        if status_code in PROXY_FAULT_STATUS:
            self.report_failure(key, f"HTTP {status_code}")
        else:
            self.report_success(key, response_time)

    def report_error(self, key: Optional[str], error: Exception) -> None:
        """Charge a failed request to the proxy unless the target site answered it.

        Connection failures, timeouts and blocks count against the proxy.
        Any other HTTP status from the target means the proxy delivered
        the response.
        """
        if not key:
            return
        status = getattr(error, "status_code", None)
        kind = error_kind_for(error)
        if kind in (ErrorKind.TIMEOUT, ErrorKind.BLOCKED) or (
            kind == ErrorKind.NETWORK and (status is None or status in PROXY_FAULT_STATUS)
        ):
            self.report_failure(key, getattr(error, "message", None) or str(error))
        else:
            self.report_success(key)

    def stats(self) -> Dict[str, Any]:
        return {"policy": self.policy.value, **self.monitor.health_summary()}
