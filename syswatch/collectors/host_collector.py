"""Host and process level telemetry collector."""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from ..config.models import HostConfig
from ..utils.metrics import CollectorResult, Domain, MetricSample
from .base import ThreadedCollector

# (metric name, help text, value)
Reading = Tuple[str, str, float]
Reader = Callable[[], List[Reading]]


def read_cpu() -> List[Reading]:
    # Non-blocking: measured since the previous call
    return [("node_syswatch_cpu_usage_ratio", "Host CPU utilization",
             psutil.cpu_percent(interval=None) / 100.0)]


def read_memory() -> List[Reading]:
    memory = psutil.virtual_memory()
    return [
        ("node_syswatch_memory_total_bytes", "Total host memory", memory.total),
        ("node_syswatch_memory_used_bytes", "Used host memory", memory.used),
        ("node_syswatch_memory_usage_ratio", "Host memory utilization", memory.percent / 100.0),
    ]


def read_load() -> List[Reading]:
    load1, load5, load15 = psutil.getloadavg()
    return [
        ("node_syswatch_load1", "1 minute load average", load1),
        ("node_syswatch_load5", "5 minute load average", load5),
        ("node_syswatch_load15", "15 minute load average", load15),
    ]


def read_process() -> List[Reading]:
    return [("node_syswatch_process_resident_memory_bytes", "Resident memory of the exporter process",
             psutil.Process().memory_info().rss)]


DEFAULT_READERS: Dict[str, Reader] = {
    "cpu": read_cpu,
    "memory": read_memory,
    "load": read_load,
    "process": read_process,
}


class HostCollector(ThreadedCollector):
    """
    Collector for a fixed set of host counters.

    Each reader covers one metric family and fails independently; a failed
    family is re-served stale from its last good reading until the
    staleness window runs out.
    """

    domain = Domain.HOST

    def __init__(
        self,
        config: HostConfig,
        staleness_window: float,
        logger: logging.Logger,
        readers: Optional[Dict[str, Reader]] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize host collector.

        Args:
            config: Host collector configuration
            staleness_window: Seconds a last-good sample may be re-served
            logger: Logger instance
            readers: Family name to reader mapping (defaults to psutil readers)
            clock: Time source, injectable for tests
        """
        super().__init__(config, logger, staleness_window, clock)
        self.readers = dict(readers if readers is not None else DEFAULT_READERS)
        self.consecutive_failures: Dict[str, int] = {family: 0 for family in self.readers}

        if readers is None:
            # First cpu_percent(None) call only sets the baseline
            psutil.cpu_percent(interval=None)

    def _sweep(self) -> CollectorResult:
        now = self._clock()
        samples: List[MetricSample] = []
        failed = []

        for family, reader in self.readers.items():
            try:
                readings = reader()
            except Exception as e:
                failed.append(family)
                self.consecutive_failures[family] = self.consecutive_failures.get(family, 0) + 1
                self.logger.warning(
                    f"Host counter '{family}' unavailable "
                    f"({self.consecutive_failures[family]} consecutive): {e}"
                )
                samples.extend(self.cache.recall(family))
                continue

            self.consecutive_failures[family] = 0
            fresh = [
                MetricSample(name, value, collected_at=now, documentation=documentation)
                for name, documentation, value in readings
            ]
            samples.extend(self.cache.remember(family, fresh))

        return CollectorResult(
            domain=self.domain,
            samples=samples,
            error=f"Host counters unavailable: {', '.join(failed)}" if failed else None,
        )
