"""Tests for SnapshotCache — TTL freshness over persisted snapshots."""

from __future__ import annotations

from datetime import timedelta

from asin_ledger.db.repositories.snapshot_repo import SnapshotRepository
from asin_ledger.ingestion.snapshot_cache import SnapshotCache

TTL = timedelta(minutes=60)


def _store(conn, snapshot, age: timedelta, asin: str = "B000000001"):
    stored = snapshot.model_copy(
        update={"asin": asin, "snapshot_time": snapshot.snapshot_time - age}
    )
    SnapshotRepository(conn).insert(stored)


class TestGetFresh:
    def test_no_snapshot_is_miss(self, in_memory_db, fixed_now):
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)
        assert cache.get_fresh("B000000001", 1, TTL) is None

    def test_recent_snapshot_is_hit(self, in_memory_db, fixed_now, sample_snapshot):
        _store(in_memory_db, sample_snapshot, timedelta(minutes=10))
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)
        hit = cache.get_fresh("B000000001", 1, TTL)
        assert hit is not None
        assert hit.snapshot_time == fixed_now - timedelta(minutes=10)

    def test_snapshot_exactly_at_ttl_is_stale(self, in_memory_db, fixed_now, sample_snapshot):
        _store(in_memory_db, sample_snapshot, TTL)
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)
        assert cache.get_fresh("B000000001", 1, TTL) is None

    def test_other_marketplace_not_counted(self, in_memory_db, fixed_now, sample_snapshot):
        _store(in_memory_db, sample_snapshot, timedelta(minutes=10))
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)
        assert cache.get_fresh("B000000001", 2, TTL) is None


class TestFilterNeedingRefresh:
    def test_keeps_input_order_and_drops_duplicates(self, in_memory_db, fixed_now, sample_snapshot):
        _store(in_memory_db, sample_snapshot, timedelta(minutes=5), asin="B000000002")
        _store(in_memory_db, sample_snapshot, timedelta(hours=3), asin="B000000003")
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)

        needing = cache.filter_needing_refresh(
            ["B000000003", "B000000001", "B000000002", "B000000003"], 1, TTL
        )
        assert needing == ["B000000003", "B000000001"]

    def test_judged_on_latest_snapshot(self, in_memory_db, fixed_now, sample_snapshot):
        _store(in_memory_db, sample_snapshot, timedelta(hours=5))
        _store(in_memory_db, sample_snapshot, timedelta(minutes=1))
        cache = SnapshotCache(in_memory_db, clock=lambda: fixed_now)
        assert cache.filter_needing_refresh(["B000000001"], 1, TTL) == []
