"""
SQLite schema DDL — all CREATE TABLE and CREATE INDEX statements.

All statements use ``IF NOT EXISTS`` so ``apply_schema()`` is **idempotent**:
safe to call on an already-initialized database (e.g. after restart or in tests).

Table creation order respects foreign key dependencies:
  1. ingestion_jobs   (no FKs)
  2. raw_payloads     (→ ingestion_jobs)
  3. asin_snapshots   (→ ingestion_jobs)
  4. asin_current     (→ asin_snapshots, ingestion_jobs)
  5. dq_issues        (→ asin_snapshots, ingestion_jobs)

Conventions:
  - Money columns are TEXT holding a 2-dp decimal string (``"24.99"``) so no
    binary floating point ever touches a price. Repositories convert to and
    from ``decimal.Decimal``.
  - Instants are ISO-8601 UTC text written by ``utils.time_utils.to_db``.
  - Booleans are INTEGER 0/1, nullable where "unknown" is meaningful.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable

logger = logging.getLogger(__name__)

# ── DDL statements ─────────────────────────────────────────────────────────────

_DDL_INGESTION_JOBS = """
CREATE TABLE IF NOT EXISTS ingestion_jobs (
    job_id           INTEGER PRIMARY KEY AUTOINCREMENT,
    job_type         TEXT    NOT NULL,
    status           TEXT    NOT NULL DEFAULT 'PENDING'
                     CHECK (status IN ('PENDING', 'RUNNING', 'COMPLETED', 'FAILED', 'SKIPPED')),
    marketplace_id   INTEGER NOT NULL,
    asin_count       INTEGER NOT NULL DEFAULT 0,
    asins_succeeded  INTEGER NOT NULL DEFAULT 0,
    asins_failed     INTEGER NOT NULL DEFAULT 0,
    started_at       TEXT,
    completed_at     TEXT,
    duration_ms      INTEGER,
    error_message    TEXT,
    error_details    TEXT,
    metadata         TEXT,
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_ingestion_jobs_status
    ON ingestion_jobs(status, created_at DESC);
"""

_DDL_RAW_PAYLOADS = """
CREATE TABLE IF NOT EXISTS raw_payloads (
    raw_payload_id   INTEGER PRIMARY KEY AUTOINCREMENT,
    asin             TEXT    NOT NULL,
    marketplace_id   INTEGER NOT NULL,
    source           TEXT    NOT NULL CHECK (source IN ('keepa', 'sp_api')),
    ingestion_job_id INTEGER NOT NULL REFERENCES ingestion_jobs(job_id),
    payload          TEXT    NOT NULL,
    content_hash     TEXT    NOT NULL,
    captured_at      TEXT    NOT NULL,
    created_at       TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
    UNIQUE (asin, marketplace_id, source, ingestion_job_id)
);

CREATE INDEX IF NOT EXISTS idx_raw_payloads_asin
    ON raw_payloads(asin, marketplace_id, captured_at DESC);
"""

_DDL_ASIN_SNAPSHOTS = """
CREATE TABLE IF NOT EXISTS asin_snapshots (
    snapshot_id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    asin                        TEXT    NOT NULL,
    marketplace_id              INTEGER NOT NULL,
    ingestion_job_id            INTEGER REFERENCES ingestion_jobs(job_id),
    snapshot_time               TEXT    NOT NULL,
    title                       TEXT,
    brand                       TEXT,
    category_path               TEXT,
    price_inc_vat               TEXT,
    price_ex_vat                TEXT,
    list_price                  TEXT,
    buy_box_price               TEXT,
    buy_box_seller_id           TEXT,
    our_seller_id               TEXT,
    seller_count                INTEGER,
    offer_count_new             INTEGER,
    offer_count_used            INTEGER,
    total_stock                 INTEGER,
    fulfillment_channel         TEXT,
    units_7d                    INTEGER,
    units_30d                   INTEGER,
    units_90d                   INTEGER,
    keepa_sales_rank_latest     INTEGER,
    keepa_price_median_90d      TEXT,
    keepa_price_p25_90d         TEXT,
    keepa_price_p75_90d         TEXT,
    keepa_price_min_90d         TEXT,
    keepa_price_max_90d         TEXT,
    keepa_price_volatility_90d  REAL,
    keepa_last_update           TEXT,
    days_of_cover               REAL,
    is_out_of_stock             INTEGER,
    is_buy_box_lost             INTEGER,
    gross_margin_pct            REAL,
    profit_per_unit             TEXT,
    breakeven_price_inc_vat     TEXT,
    has_keepa_data              INTEGER NOT NULL DEFAULT 0,
    has_sp_api_data             INTEGER NOT NULL DEFAULT 0,
    fingerprint_hash            TEXT    NOT NULL,
    transform_version           INTEGER NOT NULL,
    created_at                  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
);

CREATE UNIQUE INDEX IF NOT EXISTS uq_asin_snapshots_job
    ON asin_snapshots(asin, marketplace_id, ingestion_job_id);

CREATE INDEX IF NOT EXISTS idx_asin_snapshots_time
    ON asin_snapshots(asin, marketplace_id, snapshot_time DESC);
"""

_DDL_ASIN_CURRENT = """
CREATE TABLE IF NOT EXISTS asin_current (
    asin                        TEXT    NOT NULL,
    marketplace_id              INTEGER NOT NULL,
    latest_snapshot_id          INTEGER NOT NULL REFERENCES asin_snapshots(snapshot_id),
    last_ingestion_job_id       INTEGER REFERENCES ingestion_jobs(job_id),
    last_snapshot_time          TEXT    NOT NULL,
    title                       TEXT,
    brand                       TEXT,
    category_path               TEXT,
    price_inc_vat               TEXT,
    price_ex_vat                TEXT,
    list_price                  TEXT,
    buy_box_price               TEXT,
    buy_box_seller_id           TEXT,
    seller_count                INTEGER,
    total_stock                 INTEGER,
    fulfillment_channel         TEXT,
    units_30d                   INTEGER,
    keepa_sales_rank_latest     INTEGER,
    keepa_price_median_90d      TEXT,
    keepa_price_p25_90d         TEXT,
    keepa_price_volatility_90d  REAL,
    days_of_cover               REAL,
    is_out_of_stock             INTEGER,
    is_buy_box_lost             INTEGER,
    fingerprint_hash            TEXT    NOT NULL,
    first_seen_at               TEXT    NOT NULL,
    updated_at                  TEXT    NOT NULL,
    PRIMARY KEY (asin, marketplace_id)
);

CREATE INDEX IF NOT EXISTS idx_asin_current_freshness
    ON asin_current(last_snapshot_time);
"""

_DDL_DQ_ISSUES = """
CREATE TABLE IF NOT EXISTS dq_issues (
    dq_issue_id      INTEGER PRIMARY KEY AUTOINCREMENT,
    asin             TEXT    NOT NULL,
    marketplace_id   INTEGER NOT NULL,
    snapshot_id      INTEGER REFERENCES asin_snapshots(snapshot_id),
    ingestion_job_id INTEGER REFERENCES ingestion_jobs(job_id),
    issue_type       TEXT    NOT NULL,
    severity         TEXT    NOT NULL CHECK (severity IN ('WARN', 'CRITICAL')),
    field_name       TEXT,
    message          TEXT    NOT NULL,
    details          TEXT,
    status           TEXT    NOT NULL DEFAULT 'OPEN'
                     CHECK (status IN ('OPEN', 'ACKNOWLEDGED', 'RESOLVED', 'IGNORED')),
    created_at       TEXT    NOT NULL,
    resolved_at      TEXT,
    resolution_notes TEXT
);

CREATE INDEX IF NOT EXISTS idx_dq_issues_open
    ON dq_issues(asin, marketplace_id, status, issue_type);

CREATE INDEX IF NOT EXISTS idx_dq_issues_snapshot
    ON dq_issues(snapshot_id)
    WHERE snapshot_id IS NOT NULL;
"""

_ALL_DDL: list[str] = [
    _DDL_INGESTION_JOBS,
    _DDL_RAW_PAYLOADS,
    _DDL_ASIN_SNAPSHOTS,
    _DDL_ASIN_CURRENT,
    _DDL_DQ_ISSUES,
]

ALL_TABLE_NAMES = [
    "ingestion_jobs",
    "raw_payloads",
    "asin_snapshots",
    "asin_current",
    "dq_issues",
]

# Tables the write path in pipeline.orchestrator cannot work without.
PERSISTENCE_TABLES = ("asin_snapshots", "asin_current", "dq_issues")


def apply_schema(conn: sqlite3.Connection) -> None:
    """Apply all DDL statements to ``conn``.

    Idempotent — safe to call on an already-initialized database.
    Each statement uses ``IF NOT EXISTS`` guards.

    Args:
        conn: An open ``sqlite3.Connection`` (FK enforcement should be ON).
    """
    logger.debug("Applying schema to database...")

    for ddl in _ALL_DDL:
        # Each block may contain multiple semicolon-separated statements
        for statement in _split_ddl(ddl):
            if statement.strip():
                conn.execute(statement)

    conn.commit()
    logger.info("Schema applied: %d tables, indexes created/verified.", len(ALL_TABLE_NAMES))


def _split_ddl(ddl: str) -> list[str]:
    """Split a multi-statement DDL block on semicolons."""
    return [s.strip() for s in ddl.split(";") if s.strip()]


def get_existing_tables(conn: sqlite3.Connection) -> list[str]:
    """Return list of table names present in the database.

    Args:
        conn: An open ``sqlite3.Connection``.

    Returns:
        List of table name strings (sorted alphabetically).
    """
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name;"
    ).fetchall()
    return [row[0] for row in rows]


def get_existing_indexes(conn: sqlite3.Connection) -> list[str]:
    """Return list of index names present in the database.

    Args:
        conn: An open ``sqlite3.Connection``.

    Returns:
        List of index name strings (sorted alphabetically).
    """
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='index' ORDER BY name;"
    ).fetchall()
    return [row[0] for row in rows]


def missing_tables(conn: sqlite3.Connection, names: Iterable[str]) -> list[str]:
    """Return the subset of ``names`` that do not exist, in input order."""
    present = set(get_existing_tables(conn))
    return [name for name in names if name not in present]


def has_tables(conn: sqlite3.Connection, names: Iterable[str] = PERSISTENCE_TABLES) -> bool:
    """Capability check: ``True`` when every table in ``names`` exists.

    Used by the orchestrator to distinguish "schema not deployed yet" from a
    genuine write failure.
    """
    return not missing_tables(conn, names)
