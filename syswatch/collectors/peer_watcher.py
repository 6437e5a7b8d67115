"""Peer server reachability watcher."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

import httpx

from ..config.models import PeerConfig, PeersConfig
from ..utils.metrics import CollectorResult, Domain, MetricSample
from ..utils.status import PeerState
from .base import BaseCollector, safe_collect

# Client setup and teardown around one bounded request
CHECK_OVERHEAD = 1.0

# Fraction of the base interval a check may fire early, absorbing tick jitter
DUE_TOLERANCE = 0.5


@dataclass
class PeerStatus:
    """Health state of one configured peer."""

    peer_address: str
    url: str
    state: PeerState = PeerState.UNKNOWN
    consecutive_failures: int = 0
    last_latency: Optional[float] = None
    last_error: Optional[str] = None
    next_retry_at: float = 0.0
    retry_delay: float = 0.0

    def is_due(self, now: float, tolerance: float = 0.0) -> bool:
        return now + tolerance >= self.next_retry_at

    def record_success(self, latency: float, now: float, interval: float) -> None:
        """Any success returns the peer to Up."""
        self.state = PeerState.UP
        self.consecutive_failures = 0
        self.last_latency = latency
        self.last_error = None
        self.retry_delay = interval
        self.next_retry_at = now + interval

    def record_failure(
        self,
        error: str,
        now: float,
        interval: float,
        threshold: int,
        backoff_cap: float
    ) -> None:
        """
        Apply one failed check.

        Up and Unknown drop to Degraded with a fresh failure count. Reaching
        the threshold marks the peer Down, after which the retry delay
        doubles per failure up to backoff_cap.
        """
        if self.state in (PeerState.UP, PeerState.UNKNOWN):
            self.state = PeerState.DEGRADED
            self.consecutive_failures = 1
        else:
            self.consecutive_failures += 1

        if self.consecutive_failures >= threshold:
            self.state = PeerState.DOWN

        self.last_latency = None
        self.last_error = error

        if self.state is PeerState.DOWN:
            exponent = self.consecutive_failures - threshold
            delay = max(interval, min(interval * (2 ** exponent), backoff_cap))
        else:
            delay = interval
        self.retry_delay = delay
        self.next_retry_at = now + delay


class PeerWatcher(BaseCollector):
    """
    Collector polling the health endpoint of every configured peer.

    Due peers are checked concurrently, each with its own timeout, so a
    peer that hangs never delays another. Peers backing off are not
    contacted; their current state is re-emitted as is.
    """

    domain = Domain.PEER

    def __init__(
        self,
        config: PeersConfig,
        logger: logging.Logger,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize peer watcher.

        Args:
            config: Peers configuration
            logger: Logger instance
            transport: httpx transport override, used by tests
            clock: Time source for retry scheduling
        """
        super().__init__(config, logger)
        self._transport = transport
        self._clock = clock
        self.statuses = {
            peer.hostname: PeerStatus(peer_address=peer.hostname, url=peer.url)
            for peer in config.targets
        }

    def interval_for(self, peer: PeerConfig) -> float:
        return peer.interval or self.config.interval

    @property
    def cycle_timeout(self) -> float:
        """Time one cycle may take: every check is bounded by its own peer timeout."""
        longest = max((peer.timeout for peer in self.config.targets), default=0.0)
        return max(self.config.interval, longest + CHECK_OVERHEAD)

    @safe_collect
    async def collect(self) -> CollectorResult:
        """
        Check every due peer and report all peers' state.

        Results are applied as each check finishes, so a cancelled cycle
        still keeps the outcome of every peer that answered in time.

        Returns:
            CollectorResult: Peer domain samples
        """
        if not self.config.targets:
            return CollectorResult(domain=self.domain)

        # Retry times count from the cycle start so request time never delays the next tick
        now = self._clock()
        tolerance = self.config.interval * DUE_TOLERANCE
        due = [
            peer for peer in self.config.targets
            if self.statuses[peer.hostname].is_due(now, tolerance)
        ]

        if due:
            self.logger.debug(f"Checking {len(due)} of {len(self.config.targets)} peers")
            checks = [asyncio.ensure_future(self._guarded_check(peer)) for peer in due]
            try:
                for finished in asyncio.as_completed(checks):
                    peer, outcome = await finished
                    self._apply(peer, now, *outcome)
            finally:
                for check in checks:
                    check.cancel()

        return CollectorResult(domain=self.domain, samples=self._samples(self._clock()))

    def fallback(self, error: str) -> CollectorResult:
        """Current peer states, including checks applied before the cycle was cut short."""
        return CollectorResult(domain=self.domain, samples=self._samples(self._clock()), error=error)

    async def _guarded_check(self, peer: PeerConfig):
        try:
            return peer, await self._check_peer(peer)
        except Exception as e:
            return peer, (False, None, f"Check failed: {e}")

    async def _check_peer(self, peer: PeerConfig):
        """
        Run one bounded health request.

        Returns:
            Tuple of (success, latency seconds, error text)
        """
        start_time = time.monotonic()

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await asyncio.wait_for(
                    client.request(peer.method, peer.url, timeout=peer.timeout),
                    timeout=peer.timeout
                )
            latency = time.monotonic() - start_time

            if not response.is_success:
                return False, latency, f"HTTP {response.status_code}"
            return True, latency, None

        except (asyncio.TimeoutError, httpx.TimeoutException):
            return False, None, f"Request timeout after {peer.timeout:g}s"

        except httpx.RequestError as e:
            return False, None, f"Request error: {e}"

    def _apply(
        self,
        peer: PeerConfig,
        now: float,
        success: bool,
        latency: Optional[float],
        error: Optional[str]
    ) -> None:
        status = self.statuses[peer.hostname]
        previous = status.state

        if success:
            status.record_success(latency, now, self.interval_for(peer))
        else:
            status.record_failure(
                error,
                now,
                self.interval_for(peer),
                peer.failure_threshold,
                peer.backoff_cap,
            )

        if status.state is not previous:
            self.logger.info(
                f"Peer {peer.hostname} {previous.value} -> {status.state.value}",
                extra={"peer": peer.hostname, "error": status.last_error}
            )
        elif status.state is PeerState.DOWN:
            self.logger.debug(
                f"Peer {peer.hostname} still down, next retry in {status.retry_delay:.0f}s"
            )

    def _samples(self, now: float) -> List[MetricSample]:
        samples = []
        for status in self.statuses.values():
            labels = {"hostname": status.peer_address, "url": status.url}
            samples.append(MetricSample(
                "node_alive_status", 1 if status.state.is_alive else 0,
                labels=labels, collected_at=now,
                documentation="Alive status of machine",
            ))
            samples.append(MetricSample(
                "node_alive_consecutive_failures", status.consecutive_failures,
                labels=labels, collected_at=now,
                documentation="Consecutive failed health checks of machine",
            ))
            if status.last_latency is not None:
                samples.append(MetricSample(
                    "node_alive_latency_seconds", status.last_latency,
                    labels=labels, collected_at=now,
                    documentation="Latency of the last successful health check",
                ))
            for state in PeerState:
                samples.append(MetricSample(
                    "node_alive_state", 1 if status.state is state else 0,
                    labels={**labels, "state": state.value}, collected_at=now,
                    documentation="Health state of machine",
                ))
        return samples
