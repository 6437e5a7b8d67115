"""Tests for the snapshot store: atomic publication and domain isolation."""

import asyncio
import random
import threading

import pytest

from syswatch.services.snapshot_store import Snapshot, SnapshotStore
from syswatch.utils.metrics import CollectorResult, Domain, MetricSample


def result_for(domain, version, error=None):
    """A result whose samples all carry `version`; the count also derives from it."""
    count = version % 7 + 1
    samples = [
        MetricSample(f"{domain.value}_metric", version, labels={"slot": i})
        for i in range(count)
    ]
    return CollectorResult(domain=domain, samples=samples, error=error)


def assert_consistent(snapshot):
    """Every domain must be exactly one result's content."""
    for domain in Domain:
        samples = snapshot.samples(domain)
        if not samples:
            continue
        version = samples[0].value
        assert all(s.value == version for s in samples)
        assert len(samples) == int(version) % 7 + 1


class TestSnapshotStore:

    def test_initial_snapshot_empty(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        snapshot = store.current()

        assert snapshot.generation == 0
        assert len(snapshot) == 0
        assert set(snapshot.domains) == set(Domain)

    def test_update_replaces_domain_wholesale(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        store.update(Domain.DEVICE, result_for(Domain.DEVICE, 5))
        store.update(Domain.DEVICE, result_for(Domain.DEVICE, 1))

        samples = store.current().samples(Domain.DEVICE)
        assert [s.value for s in samples] == [1.0, 1.0]

    def test_domain_isolation(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        store.update(Domain.HOST, result_for(Domain.HOST, 3))
        store.update(Domain.PEER, result_for(Domain.PEER, 4))
        before = store.current()

        after = store.update(Domain.DEVICE, result_for(Domain.DEVICE, 2))

        assert after.samples(Domain.HOST) is before.samples(Domain.HOST)
        assert after.samples(Domain.PEER) is before.samples(Domain.PEER)
        assert after.generation == before.generation + 1

    def test_published_snapshot_never_changes(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        first = store.update(Domain.HOST, result_for(Domain.HOST, 3))
        store.update(Domain.HOST, result_for(Domain.HOST, 4))

        assert [s.value for s in first.samples(Domain.HOST)] == [3.0] * 4
        with pytest.raises(TypeError):
            first.domains[Domain.HOST] = None
        with pytest.raises(AttributeError):
            first.generation = 99

    def test_mutating_result_after_update_does_not_leak(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        result = result_for(Domain.HOST, 2)
        store.update(Domain.HOST, result)

        result.samples = ()

        assert len(store.current().samples(Domain.HOST)) == 3

    def test_failed_result_tracks_errors(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        ok = result_for(Domain.PEER, 1)
        store.update(Domain.PEER, ok)
        snapshot = store.update(Domain.PEER, CollectorResult.failed(Domain.PEER, "timed out"))

        state = snapshot.state(Domain.PEER)
        assert state.samples == ()
        assert state.last_error == "timed out"
        assert state.error_count == 1
        assert state.last_success == ok.timestamp

    def test_domain_mismatch_rejected(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        with pytest.raises(ValueError):
            store.update(Domain.HOST, result_for(Domain.DEVICE, 1))
        assert store.current().generation == 0

    def test_concurrent_threads_see_only_published_snapshots(self, quiet_logger):
        store = SnapshotStore(quiet_logger)
        published = set()
        published_lock = threading.Lock()
        keep_alive = []
        errors = []
        stop = threading.Event()

        def writer(domain, seed):
            rng = random.Random(seed)
            for _ in range(300):
                snapshot = store.update(domain, result_for(domain, rng.randrange(1000)))
                with published_lock:
                    published.add(id(snapshot))
                    keep_alive.append(snapshot)

        def reader():
            last_generation = -1
            seen = []
            try:
                while not stop.is_set():
                    snapshot = store.current()
                    assert_consistent(snapshot)
                    assert snapshot.generation >= last_generation
                    if snapshot.generation != last_generation:
                        seen.append(snapshot)
                    last_generation = snapshot.generation
            except AssertionError as e:
                errors.append(e)
            reads.append(seen)

        reads = []
        writers = [
            threading.Thread(target=writer, args=(domain, n))
            for n, domain in enumerate(list(Domain) * 2)
        ]
        readers = [threading.Thread(target=reader) for _ in range(4)]
        for thread in readers + writers:
            thread.start()
        for thread in writers:
            thread.join()
        stop.set()
        for thread in readers:
            thread.join()

        assert not errors
        final = store.current()
        assert final.generation == len(writers) * 300
        generations = {s.generation for s in keep_alive}
        assert len(generations) == len(keep_alive)
        for seen in reads:
            for snapshot in seen:
                assert snapshot.generation == 0 or id(snapshot) in published

    @pytest.mark.asyncio
    async def test_concurrent_tasks_see_consistent_snapshots(self, quiet_logger):
        store = SnapshotStore(quiet_logger)

        async def writer(domain):
            for version in range(200):
                store.update(domain, result_for(domain, version))
                await asyncio.sleep(0)

        async def reader():
            for _ in range(400):
                assert_consistent(store.current())
                await asyncio.sleep(0)

        await asyncio.gather(*(writer(d) for d in Domain), *(reader() for _ in range(5)))

        final = store.current()
        assert final.generation == 3 * 200
        for domain in Domain:
            assert final.samples(domain)[0].value == 199


def test_snapshot_fills_missing_domains():
    snapshot = Snapshot(domains={})
    assert all(snapshot.samples(domain) == () for domain in Domain)
