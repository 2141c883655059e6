"""Single-use nonce ledger under both stores."""

import threading
from datetime import timedelta

import pytest

from meetd.errors import ReplayDetected
from meetd.replay import ReplayGuard
from meetd.storage import MemoryStore, SqliteStore

from .conftest import NOW


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request):
    if request.param == "memory":
        yield MemoryStore()
        return
    store = SqliteStore(":memory:")
    yield store
    store.close()


class TestReplayGuard:
    def test_first_use_passes_second_is_replay(self, any_store):
        guard = ReplayGuard(any_store)
        guard.record_if_new("n-1", NOW)
        with pytest.raises(ReplayDetected):
            guard.record_if_new("n-1", NOW + timedelta(hours=1))

    def test_distinct_nonces_are_independent(self, any_store):
        guard = ReplayGuard(any_store)
        guard.record_if_new("a", NOW)
        guard.record_if_new("b", NOW)

    def test_empty_nonce_rejected(self, any_store):
        with pytest.raises(ReplayDetected):
            ReplayGuard(any_store).record_if_new("", NOW)

    def test_concurrent_presentations_have_one_winner(self, any_store):
        guard = ReplayGuard(any_store)
        barrier = threading.Barrier(32)
        wins, losses = [], []

        def present():
            barrier.wait()
            try:
                guard.record_if_new("contested", NOW)
            except ReplayDetected:
                losses.append(1)
            else:
                wins.append(1)

        threads = [threading.Thread(target=present) for _ in range(32)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(wins) == 1
        assert len(losses) == 31

    def test_prune_only_drops_entries_older_than_lifetime(self, any_store):
        guard = ReplayGuard(any_store, max_lifetime=timedelta(days=7))
        guard.record_if_new("old", NOW - timedelta(days=8))
        guard.record_if_new("recent", NOW - timedelta(days=1))

        assert guard.prune(NOW) == 1
        guard.record_if_new("old", NOW)
        with pytest.raises(ReplayDetected):
            guard.record_if_new("recent", NOW)
