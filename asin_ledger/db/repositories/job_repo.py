"""
Repository for ``ingestion_jobs`` — the audit trail of batch runs.

A job row is written before any vendor call (status PENDING) and updated in
place as the cycle progresses, so a crashed cycle still leaves a record.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from asin_ledger.db.repositories.base import BaseRepository, json_from_db, json_to_db
from asin_ledger.models.job import IngestionJob, JobStatus
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)


class IngestionJobRepository(BaseRepository):
    """Read/write access to the ``ingestion_jobs`` table."""

    def insert(self, job: IngestionJob) -> int:
        """Insert a job record and return the new ``job_id``."""
        self.execute(
            """
            INSERT INTO ingestion_jobs (
                job_type, status, marketplace_id, asin_count,
                asins_succeeded, asins_failed, started_at, completed_at,
                duration_ms, error_message, error_details, metadata
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                job.job_type,
                str(job.status),
                job.marketplace_id,
                job.asin_count,
                job.asins_succeeded,
                job.asins_failed,
                to_db(job.started_at),
                to_db(job.completed_at),
                job.duration_ms,
                job.error_message,
                json_to_db(job.error_details),
                json_to_db(job.metadata),
            ),
        )
        job_id = self.last_insert_rowid()
        logger.debug("Inserted ingestion job %d (%s).", job_id, job.job_type)
        return job_id

    def update(self, job: IngestionJob) -> None:
        """Persist the mutable fields of an already-inserted job.

        Raises:
            ValueError: If ``job.job_id`` is ``None``.
        """
        if job.job_id is None:
            raise ValueError("Cannot update an ingestion job that has no job_id.")
        self.execute(
            """
            UPDATE ingestion_jobs
            SET status = ?, asin_count = ?, asins_succeeded = ?, asins_failed = ?,
                started_at = ?, completed_at = ?, duration_ms = ?,
                error_message = ?, error_details = ?, metadata = ?
            WHERE job_id = ?;
            """,
            (
                str(job.status),
                job.asin_count,
                job.asins_succeeded,
                job.asins_failed,
                to_db(job.started_at),
                to_db(job.completed_at),
                job.duration_ms,
                job.error_message,
                json_to_db(job.error_details),
                json_to_db(job.metadata),
                job.job_id,
            ),
        )

    def get(self, job_id: int) -> Optional[IngestionJob]:
        row = self.fetchone("SELECT * FROM ingestion_jobs WHERE job_id = ?;", (job_id,))
        return _row_to_job(row) if row else None

    def get_recent(self, limit: int = 20) -> list[IngestionJob]:
        """Most recent jobs first."""
        rows = self.fetchall(
            "SELECT * FROM ingestion_jobs ORDER BY job_id DESC LIMIT ?;", (limit,)
        )
        return [_row_to_job(r) for r in rows]

    def count_by_status(self, status: JobStatus) -> int:
        row = self.fetchone(
            "SELECT COUNT(*) AS n FROM ingestion_jobs WHERE status = ?;", (str(status),)
        )
        return int(row["n"]) if row else 0


def _row_to_job(row: sqlite3.Row) -> IngestionJob:
    """Convert a ``sqlite3.Row`` from ``ingestion_jobs`` to a model."""
    return IngestionJob(
        job_id=row["job_id"],
        job_type=row["job_type"],
        status=JobStatus(row["status"]),
        marketplace_id=row["marketplace_id"],
        asin_count=row["asin_count"],
        asins_succeeded=row["asins_succeeded"],
        asins_failed=row["asins_failed"],
        started_at=from_db(row["started_at"]),
        completed_at=from_db(row["completed_at"]),
        duration_ms=row["duration_ms"],
        error_message=row["error_message"],
        error_details=json_from_db(row["error_details"]),
        metadata=json_from_db(row["metadata"]) or {},
    )
