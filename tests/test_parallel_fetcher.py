"""Unit tests for the concurrent source fetcher."""

import threading
from concurrent.futures import wait

from usage_aggregator import parallel_fetcher
from usage_aggregator.errors import SourceUnavailableError
from usage_aggregator.models import NamespaceAllocation, StorageClass, StorageSnapshot
from usage_aggregator.parallel_fetcher import ParallelFetcher, close_when_done


class StubSource:
    """Source client double; each read can succeed, fail or block."""

    def __init__(self, fail=(), block=()):
        self.fail = set(fail)
        self.block = set(block)
        self.release = threading.Event()
        self.windows = []
        self.closed = threading.Event()

    def _read(self, name, value):
        if name in self.block:
            self.release.wait(5)
        if name in self.fail:
            raise SourceUnavailableError(f"{name} down")
        return value

    def fetch_allocations(self, window):
        self.windows.append(window)
        return self._read("allocations", {"ns": NamespaceAllocation(namespace="ns", cpu_core_hours=1)})

    def fetch_offline_storage(self):
        return self._read("offline_storage", StorageSnapshot(StorageClass.OFFLINE, {"ns": 1e6}))

    def fetch_online_storage(self):
        return self._read("online_storage", StorageSnapshot(StorageClass.ONLINE, {"ns": 1e6}))

    def close(self):
        self.closed.set()


class TestParallelFetcher:
    """Fan-out / fan-in of the three reads."""

    def test_all_reads_succeed(self):
        source = StubSource()
        reads = ParallelFetcher().fetch_sources(source, "1h", timeout=5)

        assert set(reads.allocations) == {"ns"}
        assert reads.offline.storage_class == StorageClass.OFFLINE
        assert reads.online.storage_class == StorageClass.ONLINE
        assert reads.errors == {}
        assert source.windows == ["1h"]

    def test_partial_failure_keeps_other_reads(self):
        reads = ParallelFetcher().fetch_sources(StubSource(fail={"offline_storage"}), timeout=5)

        assert reads.allocations is not None
        assert reads.online is not None
        assert reads.offline is None
        assert "offline_storage down" in reads.errors["offline_storage"]
        assert not reads.all_failed

    def test_all_failed(self):
        source = StubSource(fail={"allocations", "offline_storage", "online_storage"})
        reads = ParallelFetcher().fetch_sources(source, timeout=5)
        assert reads.all_failed
        assert len(reads.errors) == 3

    def test_reads_run_concurrently(self):
        barrier = threading.Barrier(3, timeout=5)

        def task(value):
            def run():
                barrier.wait()
                return value
            return run

        results, errors, abandoned = ParallelFetcher().run({"a": task(1), "b": task(2), "c": task(3)}, timeout=5)

        assert results == {"a": 1, "b": 2, "c": 3}
        assert errors == {}
        assert abandoned == []

    def test_deadline_abandons_slow_read(self):
        source = StubSource(block={"online_storage"})
        try:
            reads = ParallelFetcher().fetch_sources(source, timeout=0.2)
        finally:
            source.release.set()

        assert reads.allocations is not None
        assert reads.offline is not None
        assert reads.online is None
        assert "did not complete" in reads.errors["online_storage"]
        assert len(reads.abandoned) == 1

    def test_read_finishing_at_deadline_is_kept(self, monkeypatch):
        def expired(futures, timeout=None):
            # Every read completes, but the wait reports the deadline first
            wait(list(futures), timeout=5)
            raise parallel_fetcher.FuturesTimeoutError()

        monkeypatch.setattr(parallel_fetcher, "as_completed", expired)

        reads = ParallelFetcher().fetch_sources(StubSource(fail={"offline_storage"}), timeout=5)

        assert reads.allocations is not None
        assert reads.online is not None
        assert "offline_storage down" in reads.errors["offline_storage"]
        assert reads.abandoned == []


class TestCloseWhenDone:
    """Closing a source client only after abandoned reads return."""

    def test_closes_immediately_without_pending_reads(self):
        source = StubSource()
        close_when_done([], source.close)
        assert source.closed.is_set()

    def test_waits_for_abandoned_read(self):
        source = StubSource(block={"online_storage"})
        try:
            reads = ParallelFetcher().fetch_sources(source, timeout=0.2)
            close_when_done(reads.abandoned, source.close)
            assert not source.closed.is_set()
        finally:
            source.release.set()

        assert source.closed.wait(5)
