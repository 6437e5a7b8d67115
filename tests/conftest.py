"""Shared pytest configuration and fixtures."""

import logging

import pytest

from syswatch.collectors.nvml_source import DeviceIdentity
from syswatch.errors import CounterNotSupportedError, DeviceQueryError, SourceUnavailableError
from syswatch.utils.logger import setup_logger


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDeviceSource:
    """In-memory stand-in for the NVML source."""

    def __init__(self, devices=None, counters=None):
        self.devices = list(devices or [])
        self.counters = counters or {}
        self.unavailable = False
        self.failing = set()        # (index, counter) pairs that raise DeviceQueryError
        self.unsupported = set()    # (index, counter) pairs that raise CounterNotSupportedError
        self.process_table = {}     # index -> [(pid, used_bytes)]
        self.owners = {}            # pid -> uid
        self.version = "535.104.05"

    def enumerate(self):
        if self.unavailable:
            raise SourceUnavailableError("NVML Shared Library Not Found")
        return list(self.devices)

    def driver_version(self):
        return self.version

    def read_counter(self, index, counter):
        if (index, counter) in self.unsupported:
            raise CounterNotSupportedError(f"device {index} {counter}: Not Supported")
        if (index, counter) in self.failing or (index, "*") in self.failing:
            raise DeviceQueryError(f"device {index} {counter}: Unknown Error")
        return self.counters.get((index, counter), 42.0)

    def processes(self, index):
        return list(self.process_table.get(index, []))

    def process_owner(self, pid):
        return self.owners.get(pid)


def make_device(index: int) -> DeviceIdentity:
    return DeviceIdentity(
        index=index,
        minor_number=index,
        name="NVIDIA A100-SXM4-40GB",
        uuid=f"GPU-0000000{index}-aaaa-bbbb-cccc-dddddddddddd",
    )


@pytest.fixture
def logger():
    """Create logger for tests."""
    return setup_logger("test", "DEBUG")


@pytest.fixture
def quiet_logger():
    """Plain stdlib logger for stress tests."""
    return logging.getLogger("syswatch.test")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device_source():
    return FakeDeviceSource(devices=[make_device(0), make_device(1)])


@pytest.fixture
def device_factory():
    """Build DeviceIdentity objects by index."""
    return make_device
