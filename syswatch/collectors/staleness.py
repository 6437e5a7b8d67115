"""Last-known-good sample cache used to serve stale values during source outages."""

import threading
import time
from typing import Callable, Dict, Hashable, List, Sequence

from ..utils.metrics import MetricSample


class StaleSampleCache:
    """
    Remember the last successful samples per key and re-serve them marked stale.

    A key is whatever unit fails together: a (device, counter) pair for the
    device collector, a metric family for the host collector. Entries older
    than the staleness window are evicted on lookup, after which the key
    yields nothing until a fresh success is recorded.
    """

    def __init__(self, window: float, clock: Callable[[], float] = time.time):
        if window <= 0:
            raise ValueError("Staleness window must be positive")
        self.window = window
        self._clock = clock
        self._entries: Dict[Hashable, List[MetricSample]] = {}
        self._lock = threading.Lock()

    def remember(self, key: Hashable, samples: Sequence[MetricSample]) -> List[MetricSample]:
        """Record a fresh success for key and return the samples unchanged."""
        samples = list(samples)
        with self._lock:
            self._entries[key] = samples
        return samples

    def recall(self, key: Hashable) -> List[MetricSample]:
        """
        Return the last good samples for key marked stale, or [] once expired.

        Args:
            key: Cache key

        Returns:
            List[MetricSample]: Stale copies, empty if unknown or older than the window
        """
        now = self._clock()
        with self._lock:
            samples = self._entries.get(key)
            if not samples:
                return []
            if any(now - s.collected_at >= self.window for s in samples):
                del self._entries[key]
                return []
        return [s.as_stale() for s in samples]

    def recall_all(self) -> List[MetricSample]:
        """Stale copies of every entry still inside the window; expired entries are evicted."""
        now = self._clock()
        recalled = []
        with self._lock:
            for key, samples in list(self._entries.items()):
                if any(now - s.collected_at >= self.window for s in samples):
                    del self._entries[key]
                    continue
                recalled.extend(samples)
        return [s.as_stale() for s in recalled]

    def forget(self, predicate: Callable[[Hashable], bool]) -> int:
        """Drop every key matching predicate; returns how many were removed."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
