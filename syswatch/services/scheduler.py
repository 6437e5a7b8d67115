"""Periodic collector scheduling on APScheduler."""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional, Set

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..errors import EXIT_NO_COLLECTORS, StartupError
from ..utils.metrics import CollectorResult, Domain
from .snapshot_store import SnapshotStore


@dataclass
class ScheduledCollector:
    """A collector together with its cadence and the domain it owns."""

    collector: Any  # anything with `async collect() -> CollectorResult`
    interval: float
    domain: Domain
    timeout: Optional[float] = None

    @property
    def collect_timeout(self) -> float:
        return self.timeout or self.interval


class CollectorScheduler:
    """
    Run each collector on its own jittered interval and publish its results.

    Every collector is a separate APScheduler job, so a slow or failing
    collector only ever delays itself. Each firing is bounded by a timeout
    and its outcome, success or failure, is handed to the snapshot store
    under the collector's domain. A firing that times out publishes the
    collector's fallback, stale samples where it keeps any.
    """

    def __init__(
        self,
        store: SnapshotStore,
        logger: logging.Logger,
        jitter_ratio: float = 0.1,
        grace_timeout: float = 5.0
    ):
        """
        Initialize scheduler.

        Args:
            store: Snapshot store receiving collector results
            logger: Logger instance
            jitter_ratio: Maximum jitter as a fraction of each interval
            grace_timeout: Seconds in-flight collections get to finish at shutdown
        """
        self.store = store
        self.logger = logger.getChild("CollectorScheduler")
        self.jitter_ratio = jitter_ratio
        self.grace_timeout = grace_timeout
        self.entries: List[ScheduledCollector] = []
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._stopping = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    async def run(self, entries: Iterable[ScheduledCollector], shutdown: asyncio.Event) -> None:
        """
        Schedule all collectors and block until shutdown is set.

        Raises:
            StartupError: If there is no collector to run
        """
        self.start(entries)
        try:
            await shutdown.wait()
        finally:
            await self.stop()

    def start(self, entries: Iterable[ScheduledCollector]) -> None:
        self.entries = list(entries)
        if not self.entries:
            raise StartupError("No collector could be started", EXIT_NO_COLLECTORS)

        self._stopping.clear()
        self._scheduler = AsyncIOScheduler(event_loop=asyncio.get_running_loop())
        now = datetime.now(timezone.utc)

        for entry in self.entries:
            self._scheduler.add_job(
                self._run_cycle,
                trigger=IntervalTrigger(
                    seconds=entry.interval,
                    jitter=entry.interval * self.jitter_ratio
                ),
                args=[entry],
                id=f"collect_{entry.domain.value}",
                name=f"{entry.domain.value} collection",
                max_instances=1,  # A slow cycle skips its next tick instead of piling up
                coalesce=True,
                misfire_grace_time=max(1, int(entry.interval)),
                next_run_time=now,
            )
            self.logger.info(
                f"Scheduled {entry.domain.value} collector every {entry.interval:g}s"
            )

        self._scheduler.start()

    async def stop(self) -> None:
        """
        Stop scheduling and wait up to the grace timeout for in-flight cycles.

        Cycles still running after the grace period are cancelled.
        """
        self._stopping.set()
        running = self._scheduler is not None and self._scheduler.running
        if running:
            # Executor shutdown cancels running jobs, so drain them while paused
            self._scheduler.pause()

        inflight = [task for task in self._inflight if not task.done()]
        if inflight:
            self.logger.info(f"Waiting up to {self.grace_timeout:g}s for {len(inflight)} collection(s)")
            _, pending = await asyncio.wait(inflight, timeout=self.grace_timeout)
            for task in pending:
                task.cancel()
            if pending:
                self.logger.warning(f"Abandoned {len(pending)} collection(s) after grace timeout")
                await asyncio.gather(*pending, return_exceptions=True)

        if running:
            self._scheduler.shutdown(wait=False)
        self.logger.info("Scheduler stopped")

    async def _run_cycle(self, entry: ScheduledCollector) -> None:
        if self._stopping.is_set():
            return

        task = asyncio.current_task()
        self._inflight.add(task)
        try:
            result = await self.collect_once(entry)
            if result is None:
                return
            self.store.update(entry.domain, result)
        finally:
            self._inflight.discard(task)

    async def collect_once(self, entry: ScheduledCollector) -> Optional[CollectorResult]:
        """
        Invoke one collector with a timeout and normalize its outcome.

        Returns:
            Optional[CollectorResult]: The result to publish, or None when the
            cycle timed out after shutdown began
        """
        try:
            result = await asyncio.wait_for(entry.collector.collect(), timeout=entry.collect_timeout)
        except asyncio.TimeoutError:
            if self._stopping.is_set():
                return None
            error = f"Collection timed out after {entry.collect_timeout:g}s"
            self.logger.warning(f"{entry.domain.value} collection timed out after {entry.collect_timeout:g}s")
            fallback = getattr(entry.collector, "fallback", None)
            if fallback is None:
                return CollectorResult.failed(entry.domain, error)
            return self._checked(entry, fallback(error))
        except Exception as e:
            self.logger.error(f"{entry.domain.value} collection failed: {e}", exc_info=True)
            return CollectorResult.failed(entry.domain, f"Collection error: {e}")

        return self._checked(entry, result)

    def _checked(self, entry: ScheduledCollector, result: Any) -> CollectorResult:
        """Replace a result that is not a CollectorResult for the entry's domain."""
        if not isinstance(result, CollectorResult):
            self.logger.error(f"{entry.domain.value} collector returned {type(result).__name__}")
            return CollectorResult.failed(entry.domain, "Collector returned no result")
        if result.domain is not entry.domain:
            self.logger.error(
                f"Collector scheduled for {entry.domain.value} produced {result.domain.value} samples"
            )
            return CollectorResult.failed(entry.domain, "Collector produced samples for another domain")
        return result
