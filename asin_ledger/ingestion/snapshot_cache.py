"""
TTL check over persisted snapshots — skip vendor calls for identifiers that
were refreshed recently enough.

Freshness is judged on ``snapshot_time`` (capture time of the source data),
so a snapshot built late from old payloads is not mistaken for fresh data.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from typing import Optional

from asin_ledger.db.repositories.snapshot_repo import SnapshotRepository
from asin_ledger.models.snapshot import MergedSnapshot
from asin_ledger.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


class SnapshotCache:
    """Read-only freshness view over ``asin_snapshots``.

    Args:
        conn: Open SQLite connection.
        clock: UTC clock; injectable for tests.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repo = SnapshotRepository(conn)
        self._clock = clock

    def get_fresh(
        self,
        identifier: str,
        marketplace_id: int,
        ttl: timedelta,
    ) -> Optional[MergedSnapshot]:
        """Latest snapshot if it is younger than ``ttl``, else ``None``."""
        latest = self._repo.get_latest(identifier, marketplace_id)
        if latest is None:
            return None
        if self._clock() - latest.snapshot_time < ttl:
            return latest
        return None

    def filter_needing_refresh(
        self,
        identifiers: Sequence[str],
        marketplace_id: int,
        ttl: timedelta,
    ) -> list[str]:
        """Identifiers without a fresh snapshot, in input order (duplicates dropped)."""
        unique = list(dict.fromkeys(identifiers))
        latest = self._repo.get_latest_times(unique, marketplace_id)
        now = self._clock()
        needing = [
            ident for ident in unique
            if ident not in latest or now - latest[ident] >= ttl
        ]
        logger.info(
            "Cache check: %d of %d identifier(s) need refresh (ttl=%s).",
            len(needing), len(unique), ttl,
        )
        return needing
