"""Tests for the collector scheduler."""

import asyncio
import time

import pytest

from syswatch.errors import EXIT_NO_COLLECTORS, StartupError
from syswatch.services.scheduler import CollectorScheduler, ScheduledCollector
from syswatch.services.snapshot_store import SnapshotStore
from syswatch.utils.metrics import CollectorResult, Domain, MetricSample


class CountingCollector:
    """Fast collector producing a fixed number of samples."""

    def __init__(self, domain, samples=4):
        self.domain = domain
        self.samples = samples
        self.calls = 0
        self.durations = []

    async def collect(self):
        started = time.monotonic()
        self.calls += 1
        await asyncio.sleep(0)
        result = CollectorResult(
            domain=self.domain,
            samples=[MetricSample("counted", self.calls, labels={"i": i}) for i in range(self.samples)],
        )
        self.durations.append(time.monotonic() - started)
        return result


class BrokenCollector:
    """Collector that always raises."""

    def __init__(self):
        self.calls = 0

    async def collect(self):
        self.calls += 1
        raise ConnectionError("peer unreachable")


class SlowCollector:
    """Collector that takes `delay` seconds per cycle."""

    def __init__(self, domain, delay):
        self.domain = domain
        self.delay = delay
        self.started = asyncio.Event()
        self.finished = 0
        self.cancelled = False

    async def collect(self):
        self.started.set()
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        self.finished += 1
        return CollectorResult(domain=self.domain, samples=[MetricSample("slow", 1)])


async def run_for(scheduler, entries, seconds):
    shutdown = asyncio.Event()
    runner = asyncio.create_task(scheduler.run(entries, shutdown))
    await asyncio.sleep(seconds)
    shutdown.set()
    await asyncio.wait_for(runner, timeout=5)


@pytest.fixture
def store(quiet_logger):
    return SnapshotStore(quiet_logger)


@pytest.fixture
def scheduler(store, quiet_logger):
    return CollectorScheduler(store, quiet_logger, jitter_ratio=0.1, grace_timeout=0.5)


@pytest.mark.asyncio
async def test_no_collectors_is_fatal(scheduler):
    with pytest.raises(StartupError) as excinfo:
        await scheduler.run([], asyncio.Event())
    assert excinfo.value.exit_code == EXIT_NO_COLLECTORS


@pytest.mark.asyncio
async def test_collectors_run_repeatedly_and_publish(scheduler, store):
    device = CountingCollector(Domain.DEVICE)
    host = CountingCollector(Domain.HOST, samples=2)

    await run_for(scheduler, [
        ScheduledCollector(device, 0.05, Domain.DEVICE),
        ScheduledCollector(host, 0.05, Domain.HOST),
    ], 0.5)

    assert device.calls >= 3
    assert host.calls >= 3
    snapshot = store.current()
    assert len(snapshot.samples(Domain.DEVICE)) == 4
    assert len(snapshot.samples(Domain.HOST)) == 2


@pytest.mark.asyncio
async def test_failing_and_hanging_collectors_do_not_disturb_others(scheduler, store):
    device = CountingCollector(Domain.DEVICE)
    broken = BrokenCollector()
    hanging = SlowCollector(Domain.HOST, delay=30)

    await run_for(scheduler, [
        ScheduledCollector(device, 0.05, Domain.DEVICE),
        ScheduledCollector(broken, 0.05, Domain.PEER),
        ScheduledCollector(hanging, 0.05, Domain.HOST, timeout=0.1),
    ], 0.6)

    assert device.calls >= 5
    assert broken.calls >= 3
    assert max(device.durations) < 0.05

    snapshot = store.current()
    assert len(snapshot.samples(Domain.DEVICE)) == 4
    assert snapshot.state(Domain.DEVICE).error_count == 0
    assert snapshot.state(Domain.PEER).samples == ()
    assert "peer unreachable" in snapshot.state(Domain.PEER).last_error
    assert "timed out" in snapshot.state(Domain.HOST).last_error


@pytest.mark.asyncio
async def test_shutdown_waits_for_inflight_collection(scheduler, store):
    slow = SlowCollector(Domain.HOST, delay=0.2)
    shutdown = asyncio.Event()
    runner = asyncio.create_task(scheduler.run([ScheduledCollector(slow, 10, Domain.HOST)], shutdown))

    await asyncio.wait_for(slow.started.wait(), timeout=2)
    shutdown.set()
    await asyncio.wait_for(runner, timeout=2)

    assert slow.finished == 1
    assert not slow.cancelled
    assert len(store.current().samples(Domain.HOST)) == 1


@pytest.mark.asyncio
async def test_shutdown_abandons_stuck_collection_after_grace(store, quiet_logger):
    scheduler = CollectorScheduler(store, quiet_logger, grace_timeout=0.1)
    stuck = SlowCollector(Domain.DEVICE, delay=30)
    shutdown = asyncio.Event()
    runner = asyncio.create_task(scheduler.run([ScheduledCollector(stuck, 60, Domain.DEVICE)], shutdown))

    await asyncio.wait_for(stuck.started.wait(), timeout=2)
    started = time.monotonic()
    shutdown.set()
    await asyncio.wait_for(runner, timeout=2)

    assert time.monotonic() - started < 1.0
    assert stuck.cancelled
    assert not scheduler.running
    assert store.current().generation == 0


@pytest.mark.asyncio
async def test_collect_once_times_out(scheduler):
    entry = ScheduledCollector(SlowCollector(Domain.PEER, delay=5), 10, Domain.PEER, timeout=0.05)

    result = await scheduler.collect_once(entry)

    assert result.domain is Domain.PEER
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_collect_once_rejects_foreign_domain(scheduler):
    entry = ScheduledCollector(CountingCollector(Domain.HOST), 10, Domain.DEVICE)

    result = await scheduler.collect_once(entry)

    assert result.domain is Domain.DEVICE
    assert result.samples == ()
    assert not result.ok
