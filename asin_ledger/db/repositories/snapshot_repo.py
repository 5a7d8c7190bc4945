"""
Repository for ``asin_snapshots`` — the append-only historical ledger.

There is no update or delete method. History is ordered by
``snapshot_time`` (capture time of the source data), with ``snapshot_id`` as
a tie-breaker, never by insertion order alone.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Sequence
from datetime import datetime
from typing import Optional

from asin_ledger.db.repositories.base import (
    BaseRepository,
    bool_from_db,
    bool_to_db,
    money_from_db,
    money_to_db,
)
from asin_ledger.models.snapshot import MONEY_FIELDS, MergedSnapshot
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)

# Every persisted column except the PK and created_at, in DDL order.
_COLUMNS: tuple[str, ...] = (
    "asin",
    "marketplace_id",
    "ingestion_job_id",
    "snapshot_time",
    "title",
    "brand",
    "category_path",
    "price_inc_vat",
    "price_ex_vat",
    "list_price",
    "buy_box_price",
    "buy_box_seller_id",
    "our_seller_id",
    "seller_count",
    "offer_count_new",
    "offer_count_used",
    "total_stock",
    "fulfillment_channel",
    "units_7d",
    "units_30d",
    "units_90d",
    "keepa_sales_rank_latest",
    "keepa_price_median_90d",
    "keepa_price_p25_90d",
    "keepa_price_p75_90d",
    "keepa_price_min_90d",
    "keepa_price_max_90d",
    "keepa_price_volatility_90d",
    "keepa_last_update",
    "days_of_cover",
    "is_out_of_stock",
    "is_buy_box_lost",
    "gross_margin_pct",
    "profit_per_unit",
    "breakeven_price_inc_vat",
    "has_keepa_data",
    "has_sp_api_data",
    "fingerprint_hash",
    "transform_version",
)

_BOOL_COLUMNS = frozenset({"is_out_of_stock", "is_buy_box_lost", "has_keepa_data", "has_sp_api_data"})
_TIME_COLUMNS = frozenset({"snapshot_time", "keepa_last_update"})


class SnapshotRepository(BaseRepository):
    """Insert-and-read access to the ``asin_snapshots`` table."""

    def insert(self, snapshot: MergedSnapshot) -> int:
        """Append one snapshot and return its ``snapshot_id``."""
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self.execute(
            f"INSERT INTO asin_snapshots ({', '.join(_COLUMNS)}) VALUES ({placeholders});",
            tuple(_to_db_value(col, getattr(snapshot, col)) for col in _COLUMNS),
        )
        snapshot_id = self.last_insert_rowid()
        logger.debug("Inserted snapshot %d for %s.", snapshot_id, snapshot.asin)
        return snapshot_id

    def get(self, snapshot_id: int) -> Optional[MergedSnapshot]:
        row = self.fetchone(
            "SELECT * FROM asin_snapshots WHERE snapshot_id = ?;", (snapshot_id,)
        )
        return _row_to_snapshot(row) if row else None

    def get_latest(self, asin: str, marketplace_id: int) -> Optional[MergedSnapshot]:
        """Snapshot with the newest ``snapshot_time`` for (asin, marketplace)."""
        row = self.fetchone(
            """
            SELECT * FROM asin_snapshots
            WHERE asin = ? AND marketplace_id = ?
            ORDER BY snapshot_time DESC, snapshot_id DESC
            LIMIT 1;
            """,
            (asin, marketplace_id),
        )
        return _row_to_snapshot(row) if row else None

    def get_history(
        self,
        asin: str,
        marketplace_id: int,
        limit: int = 30,
    ) -> list[MergedSnapshot]:
        """Snapshots newest first, by capture time."""
        rows = self.fetchall(
            """
            SELECT * FROM asin_snapshots
            WHERE asin = ? AND marketplace_id = ?
            ORDER BY snapshot_time DESC, snapshot_id DESC
            LIMIT ?;
            """,
            (asin, marketplace_id, limit),
        )
        return [_row_to_snapshot(r) for r in rows]

    def get_latest_times(
        self,
        asins: Sequence[str],
        marketplace_id: int,
    ) -> dict[str, datetime]:
        """Newest ``snapshot_time`` per identifier; identifiers with no snapshot are absent."""
        if not asins:
            return {}
        placeholders = ", ".join("?" for _ in asins)
        rows = self.fetchall(
            f"""
            SELECT asin, MAX(snapshot_time) AS latest
            FROM asin_snapshots
            WHERE marketplace_id = ? AND asin IN ({placeholders})
            GROUP BY asin;
            """,
            (marketplace_id, *asins),
        )
        return {r["asin"]: from_db(r["latest"]) for r in rows}

    def count(self, asin: Optional[str] = None, marketplace_id: Optional[int] = None) -> int:
        """Row count, optionally restricted to one (asin, marketplace)."""
        if asin is None:
            row = self.fetchone("SELECT COUNT(*) AS n FROM asin_snapshots;")
        else:
            row = self.fetchone(
                "SELECT COUNT(*) AS n FROM asin_snapshots WHERE asin = ? AND marketplace_id = ?;",
                (asin, marketplace_id),
            )
        return int(row["n"]) if row else 0


def _to_db_value(column: str, value):
    if column in MONEY_FIELDS:
        return money_to_db(value)
    if column in _BOOL_COLUMNS:
        return bool_to_db(value)
    if column in _TIME_COLUMNS:
        return to_db(value)
    return value


def _row_to_snapshot(row: sqlite3.Row) -> MergedSnapshot:
    """Convert a ``sqlite3.Row`` from ``asin_snapshots`` to a model."""
    values = {}
    for col in _COLUMNS:
        raw = row[col]
        if col in MONEY_FIELDS:
            values[col] = money_from_db(raw)
        elif col in _BOOL_COLUMNS:
            values[col] = bool_from_db(raw)
        elif col in _TIME_COLUMNS:
            values[col] = from_db(raw)
        else:
            values[col] = raw
    return MergedSnapshot(snapshot_id=row["snapshot_id"], **values)
