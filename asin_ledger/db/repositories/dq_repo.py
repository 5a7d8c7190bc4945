"""
Repository for ``dq_issues`` — typed data-quality findings and their lifecycle.

Issues are never deleted. ``auto_resolve`` flips OPEN issues of the
auto-resolvable types (STALE_DATA, API_ERROR) to RESOLVED once a later
refresh for the same identifier no longer reproduces them.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from asin_ledger.db.repositories.base import BaseRepository, json_from_db, json_to_db
from asin_ledger.models.quality import (
    AUTO_RESOLUTION_NOTE,
    DQIssue,
    DQIssueType,
    DQSeverity,
    DQStatus,
)
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)


class DQIssueRepository(BaseRepository):
    """Read/write access to the ``dq_issues`` table."""

    def insert(self, issue: DQIssue) -> int:
        """Insert one issue and return its ``dq_issue_id``."""
        self.execute(
            """
            INSERT INTO dq_issues (
                asin, marketplace_id, snapshot_id, ingestion_job_id, issue_type,
                severity, field_name, message, details, status,
                created_at, resolved_at, resolution_notes
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                issue.asin,
                issue.marketplace_id,
                issue.snapshot_id,
                issue.ingestion_job_id,
                str(issue.issue_type),
                str(issue.severity),
                issue.field_name,
                issue.message,
                json_to_db(issue.details),
                str(issue.status),
                to_db(issue.created_at),
                to_db(issue.resolved_at),
                issue.resolution_notes,
            ),
        )
        return self.last_insert_rowid()

    def insert_many(self, issues: Iterable[DQIssue]) -> list[int]:
        """Insert issues in order and return their ids."""
        return [self.insert(issue) for issue in issues]

    def get_open(
        self,
        asin: str,
        marketplace_id: int,
        issue_types: Optional[Iterable[DQIssueType]] = None,
    ) -> list[DQIssue]:
        """OPEN issues for an identifier, oldest first, optionally filtered by type."""
        sql = """
            SELECT * FROM dq_issues
            WHERE asin = ? AND marketplace_id = ? AND status = 'OPEN'
        """
        params: list = [asin, marketplace_id]
        if issue_types is not None:
            types = [str(t) for t in issue_types]
            if not types:
                return []
            sql += f" AND issue_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        sql += " ORDER BY created_at ASC, dq_issue_id ASC;"
        return [_row_to_issue(r) for r in self.fetchall(sql, tuple(params))]

    def get_for_snapshot(self, snapshot_id: int) -> list[DQIssue]:
        rows = self.fetchall(
            "SELECT * FROM dq_issues WHERE snapshot_id = ? ORDER BY dq_issue_id;",
            (snapshot_id,),
        )
        return [_row_to_issue(r) for r in rows]

    def auto_resolve(
        self,
        asin: str,
        marketplace_id: int,
        resolvable_types: Iterable[DQIssueType],
        still_present: Iterable[DQIssueType],
        exclude_snapshot_id: Optional[int],
        now: datetime,
    ) -> int:
        """Resolve OPEN issues of ``resolvable_types`` that were not reproduced.

        Args:
            asin: Identifier.
            marketplace_id: Marketplace.
            resolvable_types: Types eligible for auto-resolution.
            still_present: Types the latest refresh raised again; left OPEN.
            exclude_snapshot_id: Issues attached to this snapshot (the one
                just written) are never touched.
            now: UTC resolution time.

        Returns:
            Number of issues resolved.
        """
        present = {str(t) for t in still_present}
        types = [str(t) for t in resolvable_types if str(t) not in present]
        if not types:
            return 0
        cur = self.execute(
            f"""
            UPDATE dq_issues
            SET status = 'RESOLVED', resolved_at = ?, resolution_notes = ?
            WHERE asin = ? AND marketplace_id = ? AND status = 'OPEN'
              AND issue_type IN ({', '.join('?' for _ in types)})
              AND (snapshot_id IS NULL OR snapshot_id != ?);
            """,
            (
                to_db(now),
                AUTO_RESOLUTION_NOTE,
                asin,
                marketplace_id,
                *types,
                exclude_snapshot_id if exclude_snapshot_id is not None else -1,
            ),
        )
        if cur.rowcount:
            logger.info(
                "Auto-resolved %d DQ issue(s) for %s/%d.", cur.rowcount, asin, marketplace_id
            )
        return cur.rowcount

    def set_status(
        self,
        dq_issue_id: int,
        status: DQStatus,
        now: datetime,
        notes: Optional[str] = None,
    ) -> bool:
        """Manually move an issue to ``status`` (ACKNOWLEDGED, IGNORED, RESOLVED)."""
        resolved_at = to_db(now) if status == DQStatus.RESOLVED else None
        cur = self.execute(
            """
            UPDATE dq_issues
            SET status = ?, resolved_at = ?, resolution_notes = COALESCE(?, resolution_notes)
            WHERE dq_issue_id = ?;
            """,
            (str(status), resolved_at, notes, dq_issue_id),
        )
        return cur.rowcount == 1


def _row_to_issue(row: sqlite3.Row) -> DQIssue:
    """Convert a ``sqlite3.Row`` from ``dq_issues`` to a model."""
    return DQIssue(
        dq_issue_id=row["dq_issue_id"],
        asin=row["asin"],
        marketplace_id=row["marketplace_id"],
        snapshot_id=row["snapshot_id"],
        ingestion_job_id=row["ingestion_job_id"],
        issue_type=DQIssueType(row["issue_type"]),
        severity=DQSeverity(row["severity"]),
        field_name=row["field_name"],
        message=row["message"],
        details=json_from_db(row["details"]),
        status=DQStatus(row["status"]),
        created_at=from_db(row["created_at"]),
        resolved_at=from_db(row["resolved_at"]),
        resolution_notes=row["resolution_notes"],
    )
