"""
Simple sequential schema migration bootstrap.

This is NOT a full migration framework (no Alembic, no down migrations):

  1. A ``schema_versions`` table tracks applied migration IDs.
  2. Each migration is a Python function taking a ``sqlite3.Connection``.
  3. ``run_migrations()`` applies any migrations not yet recorded.

Adding a new migration:
  1. Define a function ``migration_NNNN_description(conn)`` below.
  2. Add it to ``MIGRATIONS`` with a string key like ``"0003_something"``.

Migrations are applied in dictionary insertion order. The core ledger tables
are created by ``apply_schema()`` in ``schema.py`` before any migrations run;
migrations are for incremental changes only.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

logger = logging.getLogger(__name__)

MigrationFn = Callable[[sqlite3.Connection], None]


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    """Create the ``schema_versions`` tracking table if it does not exist."""
    conn.execute("""
        CREATE TABLE IF NOT EXISTS schema_versions (
            version_id  TEXT    NOT NULL PRIMARY KEY,
            applied_at  TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now')),
            description TEXT
        );
    """)
    conn.commit()


def _get_applied_versions(conn: sqlite3.Connection) -> set[str]:
    """Return the set of already-applied migration version IDs."""
    rows = conn.execute("SELECT version_id FROM schema_versions;").fetchall()
    return {row[0] for row in rows}


def _mark_applied(conn: sqlite3.Connection, version_id: str, description: str) -> None:
    """Record a migration as applied."""
    conn.execute(
        "INSERT INTO schema_versions(version_id, description) VALUES (?, ?);",
        (version_id, description),
    )
    conn.commit()


# ── Migration functions ────────────────────────────────────────────────────────

def migration_0001_add_schema_versions(conn: sqlite3.Connection) -> None:
    """Bootstrap: anchor the version baseline (table made by _ensure_version_table)."""
    pass


def migration_0002_add_rate_limit_state(conn: sqlite3.Connection) -> None:
    """Add rate_limit_state: last observed vendor quota, one row per source."""
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS rate_limit_state (
            source            TEXT    NOT NULL PRIMARY KEY,
            tokens_remaining  INTEGER,
            reset_time        TEXT,
            last_updated      TEXT,
            updated_at        TEXT    NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%SZ', 'now'))
        );
    """)
    conn.commit()


def migration_0003_add_payload_source_index(conn: sqlite3.Connection) -> None:
    """Index raw_payloads by job so a whole cycle can be replayed cheaply."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_raw_payloads_job "
        "ON raw_payloads(ingestion_job_id, source);"
    )
    conn.commit()


# ── Registry ──────────────────────────────────────────────────────────────────
# Add new migrations here. They will run once, in order.

MIGRATIONS: dict[str, tuple[MigrationFn, str]] = {
    "0001_bootstrap": (
        migration_0001_add_schema_versions,
        "Baseline: schema_versions table created",
    ),
    "0002_rate_limit_state": (
        migration_0002_add_rate_limit_state,
        "Add rate_limit_state table for persisted vendor quota",
    ),
    "0003_raw_payload_job_index": (
        migration_0003_add_payload_source_index,
        "Index raw_payloads by ingestion_job_id",
    ),
}


def run_migrations(conn: sqlite3.Connection) -> int:
    """Apply all pending migrations.

    Args:
        conn: An open ``sqlite3.Connection`` with the base schema applied.

    Returns:
        Number of migrations applied in this call.
    """
    _ensure_version_table(conn)
    applied = _get_applied_versions(conn)

    count = 0
    for version_id, (fn, description) in MIGRATIONS.items():
        if version_id in applied:
            logger.debug("Migration %s already applied; skipping.", version_id)
            continue

        logger.info("Applying migration %s: %s", version_id, description)
        try:
            fn(conn)
            _mark_applied(conn, version_id, description)
            count += 1
        except Exception as exc:
            conn.rollback()
            logger.error("Migration %s FAILED: %s", version_id, exc)
            raise

    if count:
        logger.info("Applied %d migration(s).", count)
    else:
        logger.debug("No pending migrations.")

    return count
