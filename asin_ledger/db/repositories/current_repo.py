"""
Repository for ``asin_current`` — one materialized row per (asin, marketplace).

The only write is ``upsert_from_snapshot``: a single atomic
``INSERT ... ON CONFLICT DO UPDATE``. The update branch is guarded so that a
snapshot captured *earlier* than the one already in the view never replaces
it; a slow transform that finishes late cannot roll the view backwards.
``first_seen_at`` is written on insert only.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from typing import Optional

from asin_ledger.db.repositories.base import (
    BaseRepository,
    bool_from_db,
    bool_to_db,
    money_from_db,
    money_to_db,
)
from asin_ledger.models.snapshot import CURRENT_VIEW_FIELDS, MONEY_FIELDS, CurrentView, MergedSnapshot
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)

_BOOL_FIELDS = frozenset({"is_out_of_stock", "is_buy_box_lost"})


class CurrentViewRepository(BaseRepository):
    """Upsert-and-read access to the ``asin_current`` table."""

    def upsert_from_snapshot(
        self,
        snapshot: MergedSnapshot,
        snapshot_id: int,
        now: datetime,
    ) -> bool:
        """Point the current view for the snapshot's identifier at ``snapshot_id``.

        Args:
            snapshot: The merged snapshot just inserted.
            snapshot_id: Its ``asin_snapshots`` PK.
            now: UTC time used for ``updated_at`` / ``first_seen_at``.

        Returns:
            ``True`` if the row was inserted or updated, ``False`` if an
            equally-new or newer snapshot was already current.
        """
        columns = (
            "asin", "marketplace_id", "latest_snapshot_id", "last_ingestion_job_id",
            "last_snapshot_time", *CURRENT_VIEW_FIELDS, "first_seen_at", "updated_at",
        )
        values = (
            snapshot.asin,
            snapshot.marketplace_id,
            snapshot_id,
            snapshot.ingestion_job_id,
            to_db(snapshot.snapshot_time),
            *(_field_to_db(f, getattr(snapshot, f)) for f in CURRENT_VIEW_FIELDS),
            to_db(now),
            to_db(now),
        )
        updatable = (
            "latest_snapshot_id", "last_ingestion_job_id", "last_snapshot_time",
            *CURRENT_VIEW_FIELDS, "updated_at",
        )
        set_clause = ",\n                ".join(f"{c} = excluded.{c}" for c in updatable)
        cur = self.execute(
            f"""
            INSERT INTO asin_current ({', '.join(columns)})
            VALUES ({', '.join('?' for _ in columns)})
            ON CONFLICT (asin, marketplace_id) DO UPDATE SET
                {set_clause}
            WHERE excluded.last_snapshot_time >= asin_current.last_snapshot_time;
            """,
            values,
        )
        applied = cur.rowcount == 1
        if not applied:
            logger.info(
                "Current view for %s/%d kept: snapshot %d is older than the stored one.",
                snapshot.asin, snapshot.marketplace_id, snapshot_id,
            )
        return applied

    def get(self, asin: str, marketplace_id: int) -> Optional[CurrentView]:
        row = self.fetchone(
            "SELECT * FROM asin_current WHERE asin = ? AND marketplace_id = ?;",
            (asin, marketplace_id),
        )
        return _row_to_current(row) if row else None

    def find_stale(self, cutoff: datetime, limit: int = 100) -> list[str]:
        """Identifiers whose ``last_snapshot_time`` is before ``cutoff``, oldest first."""
        rows = self.fetchall(
            """
            SELECT asin FROM asin_current
            WHERE last_snapshot_time < ?
            ORDER BY last_snapshot_time ASC, asin ASC
            LIMIT ?;
            """,
            (to_db(cutoff), limit),
        )
        return [r["asin"] for r in rows]

    def count(self) -> int:
        row = self.fetchone("SELECT COUNT(*) AS n FROM asin_current;")
        return int(row["n"]) if row else 0


def _field_to_db(field: str, value):
    if field in MONEY_FIELDS:
        return money_to_db(value)
    if field in _BOOL_FIELDS:
        return bool_to_db(value)
    return value


def _row_to_current(row: sqlite3.Row) -> CurrentView:
    """Convert a ``sqlite3.Row`` from ``asin_current`` to a model."""
    values = {}
    for field in CURRENT_VIEW_FIELDS:
        raw = row[field]
        if field in MONEY_FIELDS:
            values[field] = money_from_db(raw)
        elif field in _BOOL_FIELDS:
            values[field] = bool_from_db(raw)
        else:
            values[field] = raw
    return CurrentView(
        asin=row["asin"],
        marketplace_id=row["marketplace_id"],
        latest_snapshot_id=row["latest_snapshot_id"],
        last_ingestion_job_id=row["last_ingestion_job_id"],
        last_snapshot_time=from_db(row["last_snapshot_time"]),
        first_seen_at=from_db(row["first_seen_at"]),
        updated_at=from_db(row["updated_at"]),
        **values,
    )
