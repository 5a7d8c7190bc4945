"""Tests for asin_ledger.reporting.reader."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta

from asin_ledger.db.repositories.current_repo import CurrentViewRepository
from asin_ledger.db.repositories.dq_repo import DQIssueRepository
from asin_ledger.db.repositories.job_repo import IngestionJobRepository
from asin_ledger.db.repositories.snapshot_repo import SnapshotRepository
from asin_ledger.models.job import IngestionJob, JobStatus
from asin_ledger.models.quality import DQIssue, DQIssueType, DQSeverity
from asin_ledger.models.snapshot import MergedSnapshot
from asin_ledger.reporting.reader import (
    get_current_state,
    get_identifiers_needing_refresh,
    get_job_summary,
    get_open_dq_issues,
    get_snapshot_history,
)


def _persist(
    conn: sqlite3.Connection,
    snapshot: MergedSnapshot,
    asin: str,
    at: datetime,
) -> int:
    snap = snapshot.model_copy(update={"asin": asin, "snapshot_time": at})
    snapshot_id = SnapshotRepository(conn).insert(snap)
    CurrentViewRepository(conn).upsert_from_snapshot(snap, snapshot_id, at)
    return snapshot_id


# ── get_current_state ─────────────────────────────────────────────────────────


def test_current_state_normalizes_identifier(in_memory_db, sample_snapshot, fixed_now) -> None:
    """Lower-case, padded identifiers find the stored upper-case row."""
    snapshot_id = _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now)
    view = get_current_state(in_memory_db, "  b000000001 ", 1)
    assert view is not None
    assert view.latest_snapshot_id == snapshot_id


def test_current_state_missing_returns_none(in_memory_db) -> None:
    """Unknown identifiers return None rather than raising."""
    assert get_current_state(in_memory_db, "B000000009", 1) is None


# ── get_snapshot_history ──────────────────────────────────────────────────────


def test_history_newest_first_by_snapshot_time(in_memory_db, sample_snapshot, fixed_now) -> None:
    """Ordering follows snapshot_time, not insertion order."""
    newer = _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now)
    older = _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now - timedelta(days=1))
    history = get_snapshot_history(in_memory_db, "B000000001", 1)
    assert [s.snapshot_id for s in history] == [newer, older]


def test_history_respects_limit(in_memory_db, sample_snapshot, fixed_now) -> None:
    """At most ``limit`` snapshots are returned."""
    for hours in range(3):
        _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now - timedelta(hours=hours))
    assert len(get_snapshot_history(in_memory_db, "B000000001", 1, limit=2)) == 2


def test_history_empty(in_memory_db) -> None:
    """No snapshots yields an empty list."""
    assert get_snapshot_history(in_memory_db, "B000000001", 1) == []


# ── get_identifiers_needing_refresh ───────────────────────────────────────────


def test_needing_refresh_oldest_first(in_memory_db, sample_snapshot, fixed_now) -> None:
    """Only identifiers older than the threshold are listed, stalest first."""
    _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now - timedelta(hours=2))
    _persist(in_memory_db, sample_snapshot, "B000000002", fixed_now - timedelta(hours=5))
    _persist(in_memory_db, sample_snapshot, "B000000003", fixed_now - timedelta(minutes=10))

    stale = get_identifiers_needing_refresh(in_memory_db, 60, now=fixed_now)
    assert stale == ["B000000002", "B000000001"]


def test_needing_refresh_limit(in_memory_db, sample_snapshot, fixed_now) -> None:
    """The limit caps the result after ordering."""
    _persist(in_memory_db, sample_snapshot, "B000000001", fixed_now - timedelta(hours=2))
    _persist(in_memory_db, sample_snapshot, "B000000002", fixed_now - timedelta(hours=5))
    assert get_identifiers_needing_refresh(in_memory_db, 60, limit=1, now=fixed_now) == ["B000000002"]


# ── get_open_dq_issues ────────────────────────────────────────────────────────


def test_open_dq_issues(in_memory_db, fixed_now) -> None:
    """OPEN issues are returned for the identifier only."""
    repo = DQIssueRepository(in_memory_db)
    for asin in ("B000000001", "B000000002"):
        repo.insert(DQIssue(
            asin=asin,
            marketplace_id=1,
            issue_type=DQIssueType.API_ERROR,
            severity=DQSeverity.CRITICAL,
            field_name="raw_payload",
            message="HTTP 500",
            created_at=fixed_now,
        ))
    issues = get_open_dq_issues(in_memory_db, "b000000001", 1)
    assert [i.asin for i in issues] == ["B000000001"]


# ── get_job_summary ───────────────────────────────────────────────────────────


def test_job_summary(in_memory_db, fixed_now) -> None:
    """Summary flattens the job into JSON-friendly values."""
    repo = IngestionJobRepository(in_memory_db)
    job = IngestionJob(marketplace_id=1, asin_count=2)
    job.job_id = repo.insert(job)
    job.transition(JobStatus.RUNNING)
    job.started_at = fixed_now
    repo.update(job)

    summary = get_job_summary(in_memory_db, job.job_id)
    assert summary["status"] == "RUNNING"
    assert summary["asin_count"] == 2
    assert summary["started_at"] == fixed_now.isoformat()
    assert summary["completed_at"] is None


def test_job_summary_missing(in_memory_db) -> None:
    """Unknown job ids return None."""
    assert get_job_summary(in_memory_db, 999) is None
