"""
Downstream read interface over the ledger tables.

All readers return ``None`` or an empty list rather than raising when nothing
is stored, so CLI commands can print a friendly "no data yet" message without
try/except at the call site.

Ordering conventions:
  - Snapshot history is newest ``snapshot_time`` first (``snapshot_id`` breaks
    ties), never plain insertion order.
  - ``get_identifiers_needing_refresh`` returns the stalest identifiers first
    so a capped refresh always picks up the oldest data.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Optional

from asin_ledger.db.repositories.current_repo import CurrentViewRepository
from asin_ledger.db.repositories.dq_repo import DQIssueRepository
from asin_ledger.db.repositories.job_repo import IngestionJobRepository
from asin_ledger.db.repositories.snapshot_repo import SnapshotRepository
from asin_ledger.models.quality import DQIssue
from asin_ledger.models.snapshot import CurrentView, MergedSnapshot
from asin_ledger.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


def get_current_state(
    conn: sqlite3.Connection,
    identifier: str,
    marketplace_id: int,
) -> Optional[CurrentView]:
    """Materialized latest state for one identifier, or ``None``."""
    return CurrentViewRepository(conn).get(identifier.strip().upper(), marketplace_id)


def get_snapshot_history(
    conn: sqlite3.Connection,
    identifier: str,
    marketplace_id: int,
    limit: int = 30,
) -> list[MergedSnapshot]:
    """Up to ``limit`` snapshots for one identifier, newest first."""
    return SnapshotRepository(conn).get_history(
        identifier.strip().upper(), marketplace_id, limit=limit
    )


def get_identifiers_needing_refresh(
    conn: sqlite3.Connection,
    max_age_minutes: int,
    limit: int = 100,
    now: Optional[datetime] = None,
) -> list[str]:
    """Identifiers whose current view is older than ``max_age_minutes``.

    Args:
        conn: Open connection.
        max_age_minutes: Age beyond which an identifier is stale.
        limit: Maximum identifiers returned.
        now: Reference time; defaults to the UTC wall clock.

    Returns:
        Identifiers, oldest ``last_snapshot_time`` first.
    """
    cutoff = (now or utcnow()) - timedelta(minutes=max_age_minutes)
    stale = CurrentViewRepository(conn).find_stale(cutoff, limit=limit)
    logger.debug("%d identifier(s) older than %d minute(s).", len(stale), max_age_minutes)
    return stale


def get_open_dq_issues(
    conn: sqlite3.Connection,
    identifier: str,
    marketplace_id: int,
) -> list[DQIssue]:
    """OPEN data-quality issues for one identifier, oldest first."""
    return DQIssueRepository(conn).get_open(identifier.strip().upper(), marketplace_id)


def get_job_summary(conn: sqlite3.Connection, job_id: int) -> Optional[dict[str, Any]]:
    """Flat summary of one ingestion job, or ``None`` if it does not exist."""
    job = IngestionJobRepository(conn).get(job_id)
    if job is None:
        return None
    return {
        "job_id": job.job_id,
        "job_type": job.job_type,
        "status": str(job.status),
        "marketplace_id": job.marketplace_id,
        "asin_count": job.asin_count,
        "asins_succeeded": job.asins_succeeded,
        "asins_failed": job.asins_failed,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "duration_ms": job.duration_ms,
        "error_message": job.error_message,
        "error_details": job.error_details,
        "metadata": job.metadata,
    }
