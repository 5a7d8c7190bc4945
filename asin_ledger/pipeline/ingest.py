"""
BatchIngestion — one ingestion cycle over a list of identifiers.

Cycle outline:
  1. Normalize identifiers (upper-case, strip, dedupe, 10 alphanumerics).
  2. Take the cycle lock without blocking. If another cycle holds it, record a
     SKIPPED job and return.
  3. Create the job (PENDING → RUNNING).
  4. Unless ``force``, drop identifiers whose latest snapshot is younger than
     ``ingestion.cache_ttl_minutes``.
  5. Fetch market data: identifiers are dealt round-robin into ``fan_out``
     lanes, each lane a ``MarketDataClient`` sharing one ``RateLimiter``;
     lanes run concurrently with ``asyncio.gather``, chunks within a lane run
     serially.
  6. Per identifier, under its keyed lock: store raw payloads, add first-party
     data, run ``IngestionOrchestrator.transform_and_persist``. Fetch failures
     become an OPEN API_ERROR issue and count as failed; cancelled fetches
     only count as failed. Each identifier runs in its own savepoint, so an
     unexpected error rolls back that identifier alone (``identifier_error``).
  7. Save the limiter state and mark the job COMPLETED.

A cycle-level exception (e.g. the database going away) marks the job FAILED
with the error recorded, then re-raises.

Usage::

    with get_connection(config.database.db_path) as conn:
        runner = BatchIngestion(conn, config, first_party=JsonFileFirstPartySource(dir))
        result = runner.run_cycle(["B000000001", "B000000002"])
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
import threading
import time
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

import httpx

from asin_ledger.config import AppConfig
from asin_ledger.db.connection import transaction
from asin_ledger.db.repositories.dq_repo import DQIssueRepository
from asin_ledger.db.repositories.job_repo import IngestionJobRepository
from asin_ledger.db.repositories.payload_repo import RawPayloadRepository
from asin_ledger.db.repositories.rate_limit_repo import RateLimitStateRepository
from asin_ledger.ingestion.first_party import FirstPartySource
from asin_ledger.ingestion.market_client import FetchOutcome, MarketDataClient
from asin_ledger.ingestion.rate_limiter import KeyedLock, RateLimiter
from asin_ledger.ingestion.snapshot_cache import SnapshotCache
from asin_ledger.models.job import IngestionJob, JobStatus
from asin_ledger.models.payload import PayloadSource, RawPayload
from asin_ledger.models.quality import DQIssue, DQIssueType, DQSeverity
from asin_ledger.pipeline.orchestrator import IngestionOrchestrator, IngestionResult
from asin_ledger.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

ASIN_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
RAW_PAYLOAD_FIELD = "raw_payload"

# Process-wide coordination shared by every BatchIngestion instance.
_CYCLE_LOCK = threading.Lock()
_IDENTIFIER_LOCKS = KeyedLock()


def normalize_identifiers(identifiers: Iterable[str]) -> list[str]:
    """Upper-case, strip and dedupe; drop anything that is not 10 alphanumerics."""
    seen: dict[str, None] = {}
    for raw in identifiers:
        ident = str(raw).strip().upper()
        if not ASIN_PATTERN.match(ident):
            logger.warning("Ignoring invalid identifier %r.", raw)
            continue
        seen.setdefault(ident, None)
    return list(seen)


def partition_round_robin(identifiers: Sequence[str], lanes: int) -> list[list[str]]:
    """Deal identifiers into at most ``lanes`` non-empty lists."""
    count = max(1, min(lanes, len(identifiers)))
    return [list(identifiers[i::count]) for i in range(count)]


@dataclass
class CycleResult:
    """Summary of one ``run_cycle`` call.

    Attributes:
        job: The job record in its final state.
        skipped: ``True`` when the cycle lock was busy and nothing ran.
        cached: Identifiers skipped because their snapshot was still fresh.
        results: Per-identifier outcome for every identifier processed.
    """

    job: IngestionJob
    skipped: bool = False
    cached: list[str] = field(default_factory=list)
    results: dict[str, IngestionResult] = field(default_factory=dict)

    @property
    def succeeded(self) -> list[str]:
        return [i for i, r in self.results.items() if r.success]

    @property
    def failed(self) -> list[str]:
        return [i for i, r in self.results.items() if not r.success]


class BatchIngestion:
    """Run ingestion cycles against one open connection.

    Args:
        conn: Open SQLite connection with the schema applied. Committed after
            each job status change and after each identifier.
        config: Application configuration.
        first_party: Source of first-party payloads; ``None`` means
            market data only.
        rate_limiter: Shared quota tracker. Built from config and seeded
            from ``rate_limit_state`` when omitted.
        transport: ``httpx`` transport override (tests pass a MockTransport).
        sleep: Awaitable sleep for throttle/backoff waits.
        clock: UTC clock.
        cycle_lock: Lock guarding whole cycles; process-wide by default.
        identifier_locks: Per-identifier locks; process-wide by default.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        config: AppConfig,
        *,
        first_party: Optional[FirstPartySource] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        cycle_lock: Optional[threading.Lock] = None,
        identifier_locks: Optional[KeyedLock] = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.first_party = first_party
        self._transport = transport
        self._sleep = sleep
        self._clock = clock
        self._cycle_lock = cycle_lock or _CYCLE_LOCK
        self._identifier_locks = identifier_locks or _IDENTIFIER_LOCKS
        self.rate_limiter = rate_limiter or self._load_rate_limiter()
        self.orchestrator = IngestionOrchestrator(conn, config, clock=clock)

    def _load_rate_limiter(self) -> RateLimiter:
        limiter = RateLimiter.from_config(self.config.rate_limit, clock=self._clock)
        saved = RateLimitStateRepository(self.conn).get(str(PayloadSource.KEEPA))
        if saved is not None:
            limiter.restore(saved)
        return limiter

    # ── Public API ────────────────────────────────────────────────────────────

    def run_cycle(
        self,
        identifiers: Iterable[str],
        marketplace_id: Optional[int] = None,
        *,
        force: bool = False,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CycleResult:
        """Ingest ``identifiers`` for one marketplace.

        Args:
            identifiers: Raw identifiers; invalid ones are dropped.
            marketplace_id: Defaults to ``config.ingestion.marketplace_id``.
            force: Refetch even identifiers with a fresh snapshot.
            cancel_event: Checked between vendor chunks; once set, remaining
                identifiers fail with ``cancelled``.

        Returns:
            ``CycleResult`` with the final job record.

        Raises:
            Exception: Any cycle-level error, after the job is marked FAILED.
        """
        ids = normalize_identifiers(identifiers)
        mkt = marketplace_id if marketplace_id is not None else self.config.ingestion.marketplace_id
        jobs = IngestionJobRepository(self.conn)
        job = IngestionJob(
            marketplace_id=mkt,
            asin_count=len(ids),
            metadata={"force": force, "fan_out": self.config.ingestion.fan_out},
        )

        if not self._cycle_lock.acquire(blocking=False):
            job.transition(JobStatus.SKIPPED)
            job.completed_at = self._clock()
            job.error_message = "Another ingestion cycle is already running."
            job.job_id = jobs.insert(job)
            self.conn.commit()
            logger.warning("Ingestion cycle skipped (job_id=%d): cycle lock busy.", job.job_id)
            return CycleResult(job=job, skipped=True)

        try:
            return self._run_locked(ids, mkt, job, jobs, force, cancel_event)
        finally:
            self._cycle_lock.release()

    # ── Cycle body ────────────────────────────────────────────────────────────

    def _run_locked(
        self,
        ids: list[str],
        marketplace_id: int,
        job: IngestionJob,
        jobs: IngestionJobRepository,
        force: bool,
        cancel_event: Optional[asyncio.Event],
    ) -> CycleResult:
        job.job_id = jobs.insert(job)
        job.transition(JobStatus.RUNNING)
        job.started_at = self._clock()
        jobs.update(job)
        self.conn.commit()
        started = time.perf_counter()
        logger.info(
            "Ingestion job %d started | marketplace=%d | identifiers=%d | force=%s",
            job.job_id, marketplace_id, len(ids), force,
        )

        try:
            if force:
                to_fetch = list(ids)
            else:
                ttl = timedelta(minutes=self.config.ingestion.cache_ttl_minutes)
                to_fetch = SnapshotCache(self.conn, self._clock).filter_needing_refresh(
                    ids, marketplace_id, ttl
                )
            pending = set(to_fetch)
            cached = [i for i in ids if i not in pending]

            outcomes = asyncio.run(self._fetch_all(to_fetch, cancel_event)) if to_fetch else {}

            result = CycleResult(job=job, cached=cached)
            for ident in to_fetch:
                result.results[ident] = self._process_identifier(
                    ident, marketplace_id, job.job_id, outcomes[ident]
                )

            RateLimitStateRepository(self.conn).save(
                str(PayloadSource.KEEPA), self.rate_limiter.state
            )

            job.asins_succeeded = len(result.succeeded)
            job.asins_failed = len(result.failed)
            job.metadata = {**job.metadata, "cache_hits": len(cached), "fetched": len(to_fetch)}
            if result.failed:
                job.error_details = {
                    "failures": {i: result.results[i].error_kind for i in result.failed}
                }
            job.transition(JobStatus.COMPLETED)
            job.completed_at = self._clock()
            job.duration_ms = int((time.perf_counter() - started) * 1000)
            jobs.update(job)
            self.conn.commit()

        except Exception as exc:
            job.transition(JobStatus.FAILED)
            job.completed_at = self._clock()
            job.duration_ms = int((time.perf_counter() - started) * 1000)
            job.error_message = str(exc)
            job.error_details = {"exception": type(exc).__name__}
            logger.error("Ingestion job %d FAILED: %s", job.job_id, exc)
            jobs.update(job)
            self.conn.commit()
            raise

        logger.info(
            "Ingestion job %d completed | succeeded=%d | failed=%d | cached=%d | %dms",
            job.job_id, job.asins_succeeded, job.asins_failed, len(cached), job.duration_ms,
        )
        return result

    async def _fetch_all(
        self,
        identifiers: list[str],
        cancel_event: Optional[asyncio.Event],
    ) -> dict[str, FetchOutcome]:
        lanes = partition_round_robin(identifiers, self.config.ingestion.fan_out)
        async with httpx.AsyncClient(transport=self._transport) as http:
            clients = [
                MarketDataClient.from_config(
                    self.config, http, self.rate_limiter, sleep=self._sleep, clock=self._clock
                )
                for _ in lanes
            ]
            lane_results = await asyncio.gather(
                *(client.fetch_batched(lane, cancel_event) for client, lane in zip(clients, lanes))
            )
        outcomes: dict[str, FetchOutcome] = {}
        for lane_result in lane_results:
            outcomes.update(lane_result)
        return outcomes

    def _process_identifier(
        self,
        ident: str,
        marketplace_id: int,
        job_id: int,
        outcome: FetchOutcome,
    ) -> IngestionResult:
        with self._identifier_locks.hold(f"{marketplace_id}:{ident}") as acquired:
            if not acquired:
                logger.warning("%s is being processed elsewhere; skipped.", ident)
                return IngestionResult(
                    asin=ident,
                    marketplace_id=marketplace_id,
                    success=False,
                    error="Identifier locked by another task",
                    error_kind="locked",
                )

            # One savepoint per identifier: an unexpected error rolls back this
            # identifier's rows only and the cycle moves on to the next one.
            try:
                with transaction(self.conn):
                    result = self._ingest_identifier(ident, marketplace_id, job_id, outcome)
            except Exception as exc:
                logger.exception(
                    "Unexpected error for %s/%d; identifier skipped.",
                    ident, marketplace_id,
                    extra={"asin": ident, "job_id": job_id},
                )
                result = IngestionResult(
                    asin=ident,
                    marketplace_id=marketplace_id,
                    success=False,
                    error=f"{type(exc).__name__}: {exc}",
                    error_kind="identifier_error",
                )
            self.conn.commit()
            return result

    def _ingest_identifier(
        self,
        ident: str,
        marketplace_id: int,
        job_id: int,
        outcome: FetchOutcome,
    ) -> IngestionResult:
        if not outcome.ok:
            # A cancelled cycle says nothing about the vendor; no issue is opened.
            if outcome.error_kind != "cancelled":
                self._record_fetch_failure(ident, marketplace_id, job_id, outcome)
            return IngestionResult(
                asin=ident,
                marketplace_id=marketplace_id,
                success=False,
                error=outcome.error,
                error_kind=outcome.error_kind,
            )

        payloads = RawPayloadRepository(self.conn)
        fetched_at = outcome.fetched_at or self._clock()
        market = RawPayload(
            asin=ident,
            marketplace_id=marketplace_id,
            source=PayloadSource.KEEPA,
            ingestion_job_id=job_id,
            payload=outcome.payload,
            captured_at=fetched_at,
        )
        raw: dict[PayloadSource, RawPayload] = {PayloadSource.KEEPA: market}
        payloads.insert(market)

        if self.first_party is not None:
            try:
                record = self.first_party.get(ident, marketplace_id)
            except (OSError, ValueError) as exc:
                logger.error("First-party data unreadable for %s: %s", ident, exc,
                             extra={"asin": ident, "job_id": job_id})
                return IngestionResult(
                    asin=ident,
                    marketplace_id=marketplace_id,
                    success=False,
                    error=str(exc),
                    error_kind="first_party_error",
                )
            if record is not None:
                own = RawPayload(
                    asin=ident,
                    marketplace_id=marketplace_id,
                    source=PayloadSource.SP_API,
                    ingestion_job_id=job_id,
                    payload=record.payload,
                    captured_at=record.captured_at or fetched_at,
                )
                payloads.insert(own)
                raw[PayloadSource.SP_API] = own

        return self.orchestrator.transform_and_persist(ident, marketplace_id, job_id, raw)

    def _record_fetch_failure(
        self,
        ident: str,
        marketplace_id: int,
        job_id: int,
        outcome: FetchOutcome,
    ) -> None:
        logger.warning(
            "Fetch failed for %s (%s): %s", ident, outcome.error_kind, outcome.error,
            extra={"asin": ident, "job_id": job_id},
        )
        DQIssueRepository(self.conn).insert(DQIssue(
            asin=ident,
            marketplace_id=marketplace_id,
            ingestion_job_id=job_id,
            issue_type=DQIssueType.API_ERROR,
            severity=DQSeverity.CRITICAL,
            field_name=RAW_PAYLOAD_FIELD,
            message=f"Market data fetch failed: {outcome.error}",
            details={"error_kind": outcome.error_kind, **outcome.details},
            created_at=self._clock(),
        ))
