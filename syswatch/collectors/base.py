"""Base collector abstract class for all telemetry collectors."""

import asyncio
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from functools import wraps
from typing import Any, Callable

from ..utils.metrics import CollectorResult, Domain
from .staleness import StaleSampleCache


class BaseCollector(ABC):
    """Abstract base class for all collectors."""

    domain: Domain

    def __init__(self, config: Any, logger: logging.Logger):
        """
        Initialize base collector.

        Args:
            config: Collector-specific configuration
            logger: Logger instance
        """
        self.config = config
        self.logger = logger.getChild(self.__class__.__name__)

    @abstractmethod
    async def collect(self) -> CollectorResult:
        """
        Collect one batch of samples for this collector's domain.

        Returns:
            CollectorResult: Samples plus an optional error description

        Note:
            Implementations should use @safe_collect so that an unexpected
            exception becomes a failed result instead of reaching the scheduler.
        """
        pass

    async def close(self) -> None:
        """Release resources held by the collector."""
        return None

    def fallback(self, error: str) -> CollectorResult:
        """Result to publish when a collection cannot complete."""
        return CollectorResult.failed(self.domain, error)


def safe_collect(func):
    """
    Decorator to handle collector exceptions gracefully.

    Args:
        func: Collector method to wrap

    Returns:
        Wrapped function that converts exceptions into a failed CollectorResult
    """
    @wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except Exception as e:
            self.logger.error(f"Collection failed: {e}", exc_info=True)
            return CollectorResult.failed(self.domain, f"Collection error: {e}")
    return wrapper


class ThreadedCollector(BaseCollector):
    """
    Collector whose sweep makes blocking calls on a dedicated worker thread.

    Only one sweep runs at a time. A sweep still stuck in a driver or procfs
    call when the next cycle fires is left alone; that cycle serves the
    last good samples marked stale instead. The same fallback is published
    when the scheduler gives up waiting on a sweep.
    """

    def __init__(
        self,
        config: Any,
        logger: logging.Logger,
        staleness_window: float,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize threaded collector.

        Args:
            config: Collector-specific configuration
            logger: Logger instance
            staleness_window: Seconds a last-good sample may be re-served
            clock: Time source, injectable for tests
        """
        super().__init__(config, logger)
        self._clock = clock
        self.cache = StaleSampleCache(staleness_window, clock)
        self._sweep_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=1,
            thread_name_prefix=f"syswatch-{self.domain.value}"
        )

    @property
    def sweeping(self) -> bool:
        return self._sweep_lock.locked()

    @safe_collect
    async def collect(self) -> CollectorResult:
        """
        Run one sweep on the worker thread.

        Returns:
            CollectorResult: Sweep result, or stale samples if the previous
            sweep has not returned yet
        """
        if not self._sweep_lock.acquire(blocking=False):
            self.logger.warning("Previous sweep still running, serving stale samples")
            return self.fallback("Previous sweep still running")

        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(self._executor, self._locked_sweep)
        except BaseException:
            self._sweep_lock.release()
            raise
        return await future

    def _locked_sweep(self) -> CollectorResult:
        # Released by the worker so an abandoned sweep keeps the lock until it returns
        try:
            return self._sweep()
        finally:
            self._sweep_lock.release()

    @abstractmethod
    def _sweep(self) -> CollectorResult:
        """Blocking collection body, run on the worker thread."""

    def fallback(self, error: str) -> CollectorResult:
        """Result to publish when a sweep cannot complete: cached samples marked stale."""
        return CollectorResult(domain=self.domain, samples=self.cache.recall_all(), error=error)

    async def close(self) -> None:
        # A hung call keeps its thread; nothing waits for it
        self._executor.shutdown(wait=False, cancel_futures=True)
