"""
Repository for ``raw_payloads`` — immutable vendor responses kept for audit
and replay.

Each payload carries a ``content_hash`` (SHA-256 over the canonical JSON) so
callers can tell when a vendor returned byte-identical data to a prior job.
Rows are never updated; re-inserting the same (asin, marketplace, source,
job) is a no-op that returns the existing id.
"""

from __future__ import annotations

import hashlib
import json
import logging
import sqlite3
from typing import Any, Optional

from asin_ledger.db.repositories.base import BaseRepository
from asin_ledger.models.payload import PayloadSource, RawPayload
from asin_ledger.utils.time_utils import from_db, to_db

logger = logging.getLogger(__name__)


def compute_payload_hash(payload: Optional[dict[str, Any]]) -> str:
    """Return the SHA-256 hex digest of ``payload`` serialized canonically."""
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


class RawPayloadRepository(BaseRepository):
    """Append-only access to the ``raw_payloads`` table."""

    def insert(self, raw: RawPayload) -> int:
        """Store a payload and return its id (existing id on duplicate key).

        Raises:
            ValueError: If ``raw.ingestion_job_id`` is ``None``.
        """
        if raw.ingestion_job_id is None:
            raise ValueError("Raw payloads must be stored against an ingestion job.")
        cur = self.execute(
            """
            INSERT INTO raw_payloads (
                asin, marketplace_id, source, ingestion_job_id,
                payload, content_hash, captured_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (asin, marketplace_id, source, ingestion_job_id) DO NOTHING;
            """,
            (
                raw.asin,
                raw.marketplace_id,
                str(raw.source),
                raw.ingestion_job_id,
                json.dumps(raw.payload, default=str),
                compute_payload_hash(raw.payload),
                to_db(raw.captured_at),
            ),
        )
        if cur.rowcount == 1:
            return self.last_insert_rowid()

        row = self.fetchone(
            """
            SELECT raw_payload_id FROM raw_payloads
            WHERE asin = ? AND marketplace_id = ? AND source = ? AND ingestion_job_id = ?;
            """,
            (raw.asin, raw.marketplace_id, str(raw.source), raw.ingestion_job_id),
        )
        assert row is not None
        logger.debug(
            "Raw payload for %s/%s job %s already stored.",
            raw.asin, raw.source, raw.ingestion_job_id,
        )
        return int(row["raw_payload_id"])

    def get_for_job(
        self,
        asin: str,
        marketplace_id: int,
        ingestion_job_id: int,
    ) -> dict[PayloadSource, RawPayload]:
        """All payloads captured for one identifier in one job, keyed by source."""
        rows = self.fetchall(
            """
            SELECT * FROM raw_payloads
            WHERE asin = ? AND marketplace_id = ? AND ingestion_job_id = ?;
            """,
            (asin, marketplace_id, ingestion_job_id),
        )
        return {PayloadSource(r["source"]): _row_to_payload(r) for r in rows}

    def get_latest(
        self,
        asin: str,
        marketplace_id: int,
        source: PayloadSource,
    ) -> Optional[RawPayload]:
        """Newest payload for (asin, marketplace, source) by capture time."""
        row = self.fetchone(
            """
            SELECT * FROM raw_payloads
            WHERE asin = ? AND marketplace_id = ? AND source = ?
            ORDER BY captured_at DESC, raw_payload_id DESC
            LIMIT 1;
            """,
            (asin, marketplace_id, str(source)),
        )
        return _row_to_payload(row) if row else None

    def count(self) -> int:
        row = self.fetchone("SELECT COUNT(*) AS n FROM raw_payloads;")
        return int(row["n"]) if row else 0


def _row_to_payload(row: sqlite3.Row) -> RawPayload:
    """Convert a ``sqlite3.Row`` from ``raw_payloads`` to a model."""
    return RawPayload(
        raw_payload_id=row["raw_payload_id"],
        asin=row["asin"],
        marketplace_id=row["marketplace_id"],
        source=PayloadSource(row["source"]),
        ingestion_job_id=row["ingestion_job_id"],
        payload=json.loads(row["payload"]),
        captured_at=from_db(row["captured_at"]),
    )
