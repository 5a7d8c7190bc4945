"""
Repository for ``rate_limit_state`` (added by migration 0002).

The in-process ``RateLimiter`` is authoritative while a cycle runs; this table
only records the last quota the vendor reported, so operators and the next
process start can see it.
"""

from __future__ import annotations

import logging
from typing import Optional

from asin_ledger.db.repositories.base import BaseRepository
from asin_ledger.ingestion.rate_limiter import RateLimitState
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)


class RateLimitStateRepository(BaseRepository):
    """Read/write access to the ``rate_limit_state`` table."""

    def save(self, source: str, state: RateLimitState) -> None:
        """Upsert the latest observed quota for ``source``."""
        self.execute(
            """
            INSERT INTO rate_limit_state (source, tokens_remaining, reset_time, last_updated)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (source) DO UPDATE SET
                tokens_remaining = excluded.tokens_remaining,
                reset_time       = excluded.reset_time,
                last_updated     = excluded.last_updated,
                updated_at       = strftime('%Y-%m-%dT%H:%M:%SZ', 'now');
            """,
            (
                source,
                state.tokens_remaining,
                to_db(state.reset_time),
                to_db(state.last_updated),
            ),
        )

    def get(self, source: str) -> Optional[RateLimitState]:
        row = self.fetchone(
            "SELECT * FROM rate_limit_state WHERE source = ?;", (source,)
        )
        if row is None:
            return None
        return RateLimitState(
            tokens_remaining=row["tokens_remaining"],
            reset_time=from_db(row["reset_time"]),
            last_updated=from_db(row["last_updated"]),
        )
