"""Accelerator device telemetry collector."""

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..config.models import DeviceConfig
from ..errors import CounterNotSupportedError, DeviceQueryError, SourceUnavailableError
from ..utils.metrics import CollectorResult, Domain, MetricSample
from .base import ThreadedCollector
from .nvml_source import DeviceIdentity, NvmlSource
from .user_map import UserDirectory

# A device absent from this many consecutive enumerations is forgotten
MISSING_ENUMERATIONS_LIMIT = 2


@dataclass(frozen=True)
class DeviceCounter:
    """One per-device counter and how it is exported."""

    key: str
    metric: str
    documentation: str
    scale: float = 1.0


DEVICE_COUNTERS = (
    DeviceCounter("utilization_gpu", "node_nvidia_utilization_gpu_ratio",
                  "GPU Utilization of NVIDIA GPU", 0.01),
    DeviceCounter("utilization_memory", "node_nvidia_utilization_memory_ratio",
                  "Memory utilization of NVIDIA GPU", 0.01),
    DeviceCounter("memory_total", "node_nvidia_total_memory_bytes",
                  "Total memory size of NVIDIA GPU"),
    DeviceCounter("memory_used", "node_nvidia_used_memory_bytes",
                  "Used memory size of NVIDIA GPU"),
    DeviceCounter("temperature", "node_nvidia_temperature_celsius",
                  "Temperature of NVIDIA GPU"),
    DeviceCounter("power_usage", "node_nvidia_power_usage",
                  "Power usage of NVIDIA GPU in milliwatts"),
    DeviceCounter("fan_speed", "node_nvidia_fan_speed",
                  "Fan speed of NVIDIA GPU in percent"),
)


@dataclass
class DeviceState:
    """Collector-side bookkeeping for one physical device."""

    device_id: str
    identity: DeviceIdentity
    samples: List[MetricSample] = field(default_factory=list)
    last_success: Optional[float] = None
    consecutive_failures: int = 0
    missed_enumerations: int = 0


class DeviceCollector(ThreadedCollector):
    """
    Collector for per-device accelerator counters.

    Devices are enumerated on every cycle so hot-plugged cards appear and
    removed cards disappear. A failed counter query re-serves the last good
    value marked stale until the staleness window runs out. An unavailable
    driver is a steady state, reported as node_nvidia_driver_status 0 with
    no devices rather than as an error.
    """

    domain = Domain.DEVICE

    def __init__(
        self,
        config: DeviceConfig,
        staleness_window: float,
        logger: logging.Logger,
        source=None,
        users: Optional[UserDirectory] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize device collector.

        Args:
            config: Device collector configuration
            staleness_window: Seconds a last-good sample may be re-served
            logger: Logger instance
            source: Device query backend (defaults to NVML)
            users: Account directory for per-user memory attribution
            clock: Time source, injectable for tests
        """
        super().__init__(config, logger, staleness_window, clock)
        self.source = source or NvmlSource(self.logger)
        self._users = users
        self.states: Dict[str, DeviceState] = {}

    @property
    def users(self) -> UserDirectory:
        if self._users is None:
            self._users = UserDirectory(logger=self.logger)
        return self._users

    def check_available(self) -> int:
        """
        Check that the device subsystem answers.

        Returns:
            int: Number of devices currently visible

        Raises:
            SourceUnavailableError: If the subsystem is absent
        """
        return len(self.source.enumerate())

    async def close(self) -> None:
        await super().close()
        shutdown = getattr(self.source, "shutdown", None)
        if shutdown is None:
            return
        if not self._sweep_lock.acquire(blocking=False):
            self.logger.warning("Sweep still running, leaving NVML initialized")
            return
        try:
            shutdown()
        finally:
            self._sweep_lock.release()

    def _sweep(self) -> CollectorResult:
        now = self._clock()

        try:
            devices = self.source.enumerate()
        except SourceUnavailableError as e:
            self.logger.debug(f"Device subsystem unavailable: {e}")
            return CollectorResult(domain=self.domain, samples=[self._driver_status(0, now)])

        samples: List[MetricSample] = []
        errors: List[str] = []

        if devices:
            samples.append(self._driver_status(1, now))
            try:
                samples.append(MetricSample(
                    "node_nvidia_driver_version", 1,
                    labels={"version": self.source.driver_version()},
                    collected_at=now,
                    documentation="Driver version of NVIDIA Driver",
                ))
            except DeviceQueryError as e:
                self.logger.warning(f"Cannot read driver version: {e}")

        present = set()
        user_memory: Dict[Tuple[int, str], int] = defaultdict(int)

        for identity in devices:
            present.add(identity.uuid)
            state = self.states.get(identity.uuid)
            if state is None:
                self.logger.info(f"Device {identity.index} appeared: {identity.name} ({identity.uuid})")
                state = DeviceState(device_id=identity.uuid, identity=identity)
                self.states[identity.uuid] = state
            state.identity = identity
            state.missed_enumerations = 0

            samples.append(MetricSample(
                "node_nvidia_device_info", 1,
                labels={
                    "index": identity.index,
                    "minor_number": identity.minor_number,
                    "name": identity.name,
                    "uuid": identity.uuid,
                },
                collected_at=now,
                documentation="Device information of NVIDIA GPU",
            ))
            error = self._read_device(state, now)
            if error:
                errors.append(error)
            samples.extend(state.samples)
            self._accumulate_user_memory(identity, user_memory)

        for device_id, state in list(self.states.items()):
            if device_id in present:
                continue
            state.missed_enumerations += 1
            if state.missed_enumerations >= MISSING_ENUMERATIONS_LIMIT:
                self.logger.info(f"Device {device_id} removed after {state.missed_enumerations} missed enumerations")
                del self.states[device_id]
                self.cache.forget(lambda key: key[0] == device_id)
                continue
            state.consecutive_failures += 1
            state.samples = self._recall_device(device_id)
            samples.extend(state.samples)
            errors.append(f"device {device_id} missing from enumeration")

        samples.extend(self._user_samples(user_memory, now))

        return CollectorResult(
            domain=self.domain,
            samples=samples,
            error="; ".join(errors) if errors else None,
        )

    def _driver_status(self, value: int, now: float) -> MetricSample:
        return MetricSample(
            "node_nvidia_driver_status", value,
            collected_at=now,
            documentation="NVML is functional",
        )

    def _read_device(self, state: DeviceState, now: float) -> Optional[str]:
        """Read all counters of one device into state.samples; return an error summary on failure."""
        identity = state.identity
        labels = {"minor_number": identity.minor_number}
        fresh: List[MetricSample] = []
        failures = []

        for counter in DEVICE_COUNTERS:
            key = (state.device_id, counter.key)
            try:
                raw = self.source.read_counter(identity.index, counter.key)
            except CounterNotSupportedError:
                continue
            except DeviceQueryError as e:
                failures.append(str(e))
                fresh.extend(self.cache.recall(key))
                continue

            sample = MetricSample(
                counter.metric,
                raw * counter.scale,
                labels=labels,
                collected_at=now,
                documentation=counter.documentation,
            )
            fresh.extend(self.cache.remember(key, [sample]))

        state.samples = fresh
        if failures:
            state.consecutive_failures += 1
            self.logger.warning(
                f"Device {identity.index} query failed "
                f"({state.consecutive_failures} consecutive): {failures[0]}"
            )
            return f"device {identity.index}: {failures[0]}"

        state.consecutive_failures = 0
        state.last_success = now
        return None

    def _recall_device(self, device_id: str) -> List[MetricSample]:
        recalled = []
        for counter in DEVICE_COUNTERS:
            recalled.extend(self.cache.recall((device_id, counter.key)))
        return recalled

    def _accumulate_user_memory(self, identity: DeviceIdentity, totals: Dict[Tuple[int, str], int]) -> None:
        try:
            processes = self.source.processes(identity.index)
        except DeviceQueryError as e:
            self.logger.debug(f"Cannot list processes on device {identity.index}: {e}")
            return

        per_uid: Dict[int, int] = defaultdict(int)
        for pid, used in processes:
            uid = self.source.process_owner(pid)
            if uid is None:
                continue
            per_uid[uid] += used

        if not per_uid:
            return

        users = self.users
        if any(uid not in users for uid in per_uid):
            users.refresh()

        for uid, used in per_uid.items():
            user_name = users.resolve(uid, self.config.show_all_users)
            if user_name is None:
                continue
            totals[(identity.index, user_name)] += used

    def _user_samples(self, totals: Dict[Tuple[int, str], int], now: float) -> List[MetricSample]:
        samples = []
        cards: Dict[str, int] = defaultdict(int)
        for (index, user_name), used in sorted(totals.items()):
            if used == 0:
                continue
            cards[user_name] += 1
            samples.append(MetricSample(
                "node_nvidia_user_used_memory_bytes", used,
                labels={"index": index, "user_name": user_name},
                collected_at=now,
                documentation="GPU memory used by a user on one NVIDIA GPU",
            ))
        for user_name, count in sorted(cards.items()):
            samples.append(MetricSample(
                "node_nvidia_user_cards", count,
                labels={"user_name": user_name},
                collected_at=now,
                documentation="Count of GPUs used by a user",
            ))
        return samples
