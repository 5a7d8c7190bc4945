"""
IngestionOrchestrator — raw payloads for one identifier → one persisted snapshot.

Per identifier:
  1. Flatten every known source (an absent source flattens to all-null).
  2. Merge, derive, fingerprint and run the data-quality rules.
  3. Check that the ledger tables exist; if not, return a
     ``persistence_unavailable`` result instead of writing anywhere else.
  4. In ONE savepoint transaction: insert the snapshot, insert its DQ issues,
     upsert the current view, auto-resolve issues the refresh no longer
     reproduces.

Every failure comes back as an ``IngestionResult`` with ``success=False`` and
an ``error_kind`` (``transform_error``, ``persistence_unavailable``,
``transaction_failure``); nothing is raised to the caller, so one bad
identifier never aborts a batch. A transaction failure leaves no partial rows.

Usage::

    orchestrator = IngestionOrchestrator(conn, config)
    result = orchestrator.transform_and_persist(
        "B000000001", 1, job_id,
        {PayloadSource.SP_API: {"price_inc_vat": 24.99, "stock": 0}},
    )
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from asin_ledger.config import AppConfig
from asin_ledger.db.connection import transaction
from asin_ledger.db.repositories.current_repo import CurrentViewRepository
from asin_ledger.db.repositories.dq_repo import DQIssueRepository
from asin_ledger.db.repositories.snapshot_repo import SnapshotRepository
from asin_ledger.db.schema import PERSISTENCE_TABLES, missing_tables
from asin_ledger.ingestion.errors import PersistenceUnavailableError
from asin_ledger.models.payload import PayloadSource, RawPayload
from asin_ledger.models.quality import AUTO_RESOLVABLE_TYPES, DQFinding, DQIssue
from asin_ledger.models.snapshot import MergedSnapshot
from asin_ledger.transform.derived import derive
from asin_ledger.transform.fingerprint import fingerprint_record
from asin_ledger.transform.flatten import FlattenedRecord, flatten
from asin_ledger.transform.merge import merge
from asin_ledger.transform.quality import CheckContext, DataQualityChecker
from asin_ledger.utils.time_utils import DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES, ensure_utc, utcnow

logger = logging.getLogger(__name__)

TRANSFORM_VERSION = 1

PayloadInput = Union[RawPayload, Mapping[str, Any], None]


@dataclass(frozen=True)
class TransformOptions:
    """Per-call knobs for the transform; defaults mirror ``AppConfig``."""

    our_seller_id: Optional[str] = None
    sales_window_days: int = 30
    stats_window_days: int = 90
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES

    @classmethod
    def from_config(cls, config: AppConfig) -> "TransformOptions":
        return cls(
            our_seller_id=config.ingestion.our_seller_id,
            sales_window_days=config.ingestion.sales_window_days,
            stats_window_days=config.market_api.stats_days,
            epoch_offset_minutes=config.market_api.epoch_offset_minutes,
        )


@dataclass
class IngestionResult:
    """Outcome of one identifier's transform-and-persist.

    Attributes:
        asin: Identifier processed.
        marketplace_id: Marketplace processed.
        success: ``True`` only when every write committed.
        snapshot_id: New snapshot PK; ``None`` on any failure.
        fingerprint_hash: Fingerprint of the merged record, when the
            transform got that far.
        dq_issues: Findings raised for this snapshot.
        error: Human-readable failure description.
        error_kind: Machine-readable failure category.
        duration_ms: Wall-clock time spent.
        current_view_updated: ``False`` when a newer snapshot was already
            current and the view was left alone.
        issues_resolved: Older issues auto-resolved by this refresh.
    """

    asin: str
    marketplace_id: int
    success: bool
    snapshot_id: Optional[int] = None
    fingerprint_hash: Optional[str] = None
    dq_issues: list[DQFinding] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: int = 0
    current_view_updated: bool = False
    issues_resolved: int = 0


class IngestionOrchestrator:
    """Turn raw payloads into a persisted snapshot, one identifier at a time.

    Args:
        conn: Open SQLite connection; the orchestrator never commits it, the
            caller owns the outer transaction boundary.
        config: Application configuration (defaults used when omitted).
        clock: UTC clock, injectable for tests.
        checker: Data-quality checker; built from ``config.quality`` if omitted.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: Optional[AppConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        checker: Optional[DataQualityChecker] = None,
    ) -> None:
        self.conn = conn
        self.config = config or AppConfig()
        self._clock = clock
        self.checker = checker or DataQualityChecker.from_config(self.config.quality)

    def transform_and_persist(
        self,
        identifier: str,
        marketplace_id: int,
        job_id: Optional[int],
        raw_payloads: Mapping[Union[PayloadSource, str], PayloadInput],
        options: Optional[TransformOptions] = None,
    ) -> IngestionResult:
        """Build and store the snapshot for ``identifier``.

        Args:
            identifier: Product identifier (upper-cased).
            marketplace_id: Internal marketplace number.
            job_id: Ingestion job the snapshot belongs to, if any.
            raw_payloads: Source → ``RawPayload`` or bare payload dict. Bare
                dicts carry no capture time.
            options: Transform knobs; ``TransformOptions.from_config`` if omitted.

        Returns:
            An ``IngestionResult``. Never raises for data or database errors.
        """
        started = time.perf_counter()
        asin = identifier.strip().upper()
        opts = options or TransformOptions.from_config(self.config)
        now = self._clock()
        context = {"asin": asin, "job_id": job_id}

        try:
            snapshot, findings = self.build_snapshot(
                asin, marketplace_id, job_id, raw_payloads, opts, now
            )
        except Exception as exc:
            logger.exception("Transform failed for %s/%d.", asin, marketplace_id, extra=context)
            return IngestionResult(
                asin=asin,
                marketplace_id=marketplace_id,
                success=False,
                error=f"{type(exc).__name__}: {exc}",
                error_kind="transform_error",
                duration_ms=_elapsed_ms(started),
            )

        missing = missing_tables(self.conn, PERSISTENCE_TABLES)
        if missing:
            error = PersistenceUnavailableError(missing)
            logger.warning("Skipping persistence for %s: %s", asin, error, extra=context)
            return IngestionResult(
                asin=asin,
                marketplace_id=marketplace_id,
                success=False,
                fingerprint_hash=snapshot.fingerprint_hash,
                dq_issues=findings,
                error=str(error),
                error_kind="persistence_unavailable",
                duration_ms=_elapsed_ms(started),
            )

        snapshots = SnapshotRepository(self.conn)
        issues = DQIssueRepository(self.conn)
        current = CurrentViewRepository(self.conn)

        try:
            with transaction(self.conn):
                snapshot_id = snapshots.insert(snapshot)
                issues.insert_many(
                    DQIssue.from_finding(
                        finding,
                        asin=asin,
                        marketplace_id=marketplace_id,
                        created_at=now,
                        snapshot_id=snapshot_id,
                        ingestion_job_id=job_id,
                    )
                    for finding in findings
                )
                view_updated = current.upsert_from_snapshot(snapshot, snapshot_id, now)
                resolved = issues.auto_resolve(
                    asin,
                    marketplace_id,
                    AUTO_RESOLVABLE_TYPES,
                    still_present={f.issue_type for f in findings},
                    exclude_snapshot_id=snapshot_id,
                    now=now,
                )
        except Exception as exc:
            logger.error(
                "Persistence rolled back for %s/%d: %s", asin, marketplace_id, exc,
                extra=context,
            )
            return IngestionResult(
                asin=asin,
                marketplace_id=marketplace_id,
                success=False,
                fingerprint_hash=snapshot.fingerprint_hash,
                dq_issues=findings,
                error=f"{type(exc).__name__}: {exc}",
                error_kind="transaction_failure",
                duration_ms=_elapsed_ms(started),
            )

        result = IngestionResult(
            asin=asin,
            marketplace_id=marketplace_id,
            success=True,
            snapshot_id=snapshot_id,
            fingerprint_hash=snapshot.fingerprint_hash,
            dq_issues=findings,
            duration_ms=_elapsed_ms(started),
            current_view_updated=view_updated,
            issues_resolved=resolved,
        )
        logger.info(
            "Persisted %s/%d | snapshot_id=%d | dq_issues=%d | resolved=%d | %dms",
            asin, marketplace_id, snapshot_id, len(findings), resolved, result.duration_ms,
            extra=context,
        )
        return result

    # ── Pure transform ────────────────────────────────────────────────────────

    def build_snapshot(
        self,
        asin: str,
        marketplace_id: int,
        job_id: Optional[int],
        raw_payloads: Mapping[Union[PayloadSource, str], PayloadInput],
        options: TransformOptions,
        now: datetime,
    ) -> tuple[MergedSnapshot, list[DQFinding]]:
        """Flatten, merge, derive, fingerprint and DQ-check without writing.

        Raises:
            ValueError: For an unknown source key or invalid field values.
        """
        records: list[FlattenedRecord] = []
        capture_times: list[datetime] = []
        by_source = {PayloadSource(k): v for k, v in raw_payloads.items()}

        for source in PayloadSource:
            payload, captured_at = _unpack(by_source.get(source))
            if payload and captured_at is not None:
                capture_times.append(captured_at)
            records.append(flatten(
                source,
                payload,
                captured_at=captured_at,
                now=captured_at or now,
                stats_window_days=options.stats_window_days,
                epoch_offset_minutes=options.epoch_offset_minutes,
            ))

        merged = merge(*records)
        derived = derive(
            merged.fields,
            our_seller_id=options.our_seller_id,
            sales_window_days=options.sales_window_days,
        )
        snapshot = MergedSnapshot(
            asin=asin,
            marketplace_id=marketplace_id,
            ingestion_job_id=job_id,
            snapshot_time=max(capture_times) if capture_times else now,
            **merged.fields,
            **derived,
            has_keepa_data=merged.has_data(PayloadSource.KEEPA),
            has_sp_api_data=merged.has_data(PayloadSource.SP_API),
            fingerprint_hash=fingerprint_record(asin, marketplace_id, merged.fields),
            transform_version=TRANSFORM_VERSION,
        )
        findings = self.checker.check(snapshot, CheckContext(now=now))
        return snapshot, findings


def _unpack(value: PayloadInput) -> tuple[Optional[dict[str, Any]], Optional[datetime]]:
    if value is None:
        return None, None
    if isinstance(value, RawPayload):
        return value.payload, ensure_utc(value.captured_at)
    return dict(value), None


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
