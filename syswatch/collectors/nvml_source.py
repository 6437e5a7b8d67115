"""NVML-backed device source queried by the device collector."""

import logging
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

import psutil
import pynvml

from ..errors import CounterNotSupportedError, DeviceQueryError, SourceUnavailableError


@dataclass(frozen=True)
class DeviceIdentity:
    """Stable identity of one enumerated accelerator."""

    index: int
    minor_number: int
    name: str
    uuid: str


def _text(value) -> str:
    # Older bindings return bytes
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


class NvmlSource:
    """
    Thin wrapper around pynvml translating NVML errors into syswatch errors.

    NVML is initialized lazily, so a driver installed after startup is picked
    up by the next enumeration.
    """

    def __init__(self, logger: logging.Logger = None):
        self.logger = logger or logging.getLogger(__name__)
        self._initialized = False
        self._init_lock = threading.Lock()

    def _ensure_initialized(self) -> None:
        with self._init_lock:
            if self._initialized:
                return
            try:
                pynvml.nvmlInit()
            except pynvml.NVMLError as e:
                raise SourceUnavailableError(f"NVML initialization failed: {e}") from e
            self._initialized = True
            self.logger.info("NVML initialized")

    def shutdown(self) -> None:
        with self._init_lock:
            if not self._initialized:
                return
            try:
                pynvml.nvmlShutdown()
            except pynvml.NVMLError as e:
                self.logger.warning(f"NVML shutdown failed: {e}")
            self._initialized = False

    def _handle(self, index: int):
        try:
            return pynvml.nvmlDeviceGetHandleByIndex(index)
        except pynvml.NVMLError as e:
            raise DeviceQueryError(f"device {index}: {e}") from e

    def driver_version(self) -> str:
        self._ensure_initialized()
        try:
            return _text(pynvml.nvmlSystemGetDriverVersion())
        except pynvml.NVMLError as e:
            raise DeviceQueryError(f"driver version: {e}") from e

    def enumerate(self) -> List[DeviceIdentity]:
        """
        List devices currently visible to the driver.

        Devices whose identity cannot be read are left out and logged.

        Raises:
            SourceUnavailableError: If NVML cannot be initialized or counted
        """
        self._ensure_initialized()
        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise SourceUnavailableError(f"Device enumeration failed: {e}") from e

        devices = []
        for index in range(count):
            try:
                handle = pynvml.nvmlDeviceGetHandleByIndex(index)
                devices.append(DeviceIdentity(
                    index=index,
                    minor_number=int(pynvml.nvmlDeviceGetMinorNumber(handle)),
                    name=_text(pynvml.nvmlDeviceGetName(handle)),
                    uuid=_text(pynvml.nvmlDeviceGetUUID(handle)),
                ))
            except pynvml.NVMLError as e:
                self.logger.warning(f"Skipping device {index}: {e}")
        return devices

    def read_counter(self, index: int, counter: str) -> float:
        """
        Read one raw counter of a device.

        Raises:
            CounterNotSupportedError: The device lacks this counter
            DeviceQueryError: The query failed
        """
        handle = self._handle(index)
        try:
            if counter == "utilization_gpu":
                return float(pynvml.nvmlDeviceGetUtilizationRates(handle).gpu)
            if counter == "utilization_memory":
                return float(pynvml.nvmlDeviceGetUtilizationRates(handle).memory)
            if counter == "memory_total":
                return float(pynvml.nvmlDeviceGetMemoryInfo(handle).total)
            if counter == "memory_used":
                return float(pynvml.nvmlDeviceGetMemoryInfo(handle).used)
            if counter == "temperature":
                return float(pynvml.nvmlDeviceGetTemperature(handle, pynvml.NVML_TEMPERATURE_GPU))
            if counter == "power_usage":
                return float(pynvml.nvmlDeviceGetPowerUsage(handle))
            if counter == "fan_speed":
                return float(pynvml.nvmlDeviceGetFanSpeed(handle))
        except pynvml.NVMLError_NotSupported as e:
            raise CounterNotSupportedError(f"device {index} {counter}: {e}") from e
        except pynvml.NVMLError as e:
            raise DeviceQueryError(f"device {index} {counter}: {e}") from e
        raise ValueError(f"Unknown device counter: {counter}")

    def processes(self, index: int) -> List[Tuple[int, int]]:
        """Return (pid, used GPU memory bytes) for compute and graphics processes."""
        handle = self._handle(index)
        try:
            running = (
                list(pynvml.nvmlDeviceGetComputeRunningProcesses(handle))
                + list(pynvml.nvmlDeviceGetGraphicsRunningProcesses(handle))
            )
        except pynvml.NVMLError as e:
            raise DeviceQueryError(f"device {index} processes: {e}") from e
        return [(proc.pid, int(proc.usedGpuMemory or 0)) for proc in running]

    def process_owner(self, pid: int) -> Optional[int]:
        """Real uid of a process, or None if it exited or is not visible."""
        try:
            return psutil.Process(pid).uids().real
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None
