"""
Base repository providing shared SQLite execution helpers.

All repositories inherit from ``BaseRepository`` and receive a
``sqlite3.Connection`` at construction time. The connection is assumed
to be opened and managed by the caller (typically via ``get_connection()``),
and transaction scope belongs to the caller too (``db.connection.transaction``)
— repositories never commit.

Design:
  - No ORM — all SQL is explicit and lives in repository methods.
  - Repositories speak Pydantic models, not raw dicts.
  - ``row_factory = sqlite3.Row`` gives dict-like row access throughout.
  - Column codecs (``money_to_db``, ``bool_to_db`` ...) live here so every
    table stores Decimal/bool/JSON the same way.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from decimal import Decimal
from typing import Any, Optional

logger = logging.getLogger(__name__)


class BaseRepository:
    """Shared SQL execution helpers for all repository classes.

    Attributes:
        conn: The active ``sqlite3.Connection``.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn

    def execute(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> sqlite3.Cursor:
        """Execute a single SQL statement.

        Args:
            sql: SQL string with ``?`` or ``:name`` placeholders.
            params: Positional tuple or named dict of parameters.

        Returns:
            The resulting ``sqlite3.Cursor``.
        """
        logger.debug("SQL: %s | params: %s", sql.strip(), params)
        return self.conn.execute(sql, params)

    def executemany(
        self,
        sql: str,
        params_list: list[tuple[Any, ...] | dict[str, Any]],
    ) -> sqlite3.Cursor:
        """Execute a SQL statement for each element in ``params_list``."""
        logger.debug("SQL (many): %s | count: %d", sql.strip(), len(params_list))
        return self.conn.executemany(sql, params_list)

    def fetchone(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> Optional[sqlite3.Row]:
        """Execute a query and return the first row, or ``None``."""
        return self.execute(sql, params).fetchone()

    def fetchall(
        self,
        sql: str,
        params: tuple[Any, ...] | dict[str, Any] = (),
    ) -> list[sqlite3.Row]:
        """Execute a query and return all rows."""
        return self.execute(sql, params).fetchall()

    def last_insert_rowid(self) -> int:
        """Return the rowid of the last successful INSERT."""
        row = self.fetchone("SELECT last_insert_rowid() AS rowid;")
        assert row is not None
        return int(row["rowid"])


# ── Column codecs ─────────────────────────────────────────────────────────────

def money_to_db(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def money_from_db(value: Optional[str]) -> Optional[Decimal]:
    return None if value is None else Decimal(value)


def bool_to_db(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(value)


def bool_from_db(value: Optional[int]) -> Optional[bool]:
    return None if value is None else bool(value)


def json_to_db(value: Optional[Any]) -> Optional[str]:
    return None if value is None else json.dumps(value, sort_keys=True, default=str)


def json_from_db(value: Optional[str]) -> Optional[Any]:
    return None if value is None else json.loads(value)
