"""
Ingestion job model — the audit record of one batch run.

``IngestionJob`` is the only mutable model in the package: its ``status``,
counts, ``completed_at`` and error fields are updated as the cycle runs, and
the row survives failures for observability.

Status transitions::

    PENDING ──► RUNNING ──► COMPLETED
                    └─────► FAILED
    (created) ──► SKIPPED      another cycle already held the cycle lock
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict


class JobStatus(StrEnum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.SKIPPED})

_ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.SKIPPED, JobStatus.FAILED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
}


class IngestionJob(BaseModel):
    """A logical batch ingestion run.

    Attributes:
        job_id: Auto-assigned DB PK; ``None`` before insertion.
        job_type: Free-form label, e.g. ``"asin_refresh"``.
        status: Current lifecycle state.
        marketplace_id: Marketplace processed by this job.
        asin_count: Identifiers requested.
        asins_succeeded: Identifiers persisted successfully.
        asins_failed: Identifiers that failed at fetch or persist.
        started_at: UTC time the job moved to RUNNING.
        completed_at: UTC time the job reached a terminal status.
        duration_ms: Wall-clock duration of the run.
        error_message: Top-level failure description.
        error_details: Structured failure context (per-identifier errors).
        metadata: Arbitrary run context (fan-out, cache hits, force flag).
    """

    # Not frozen: status and counters are updated during the run
    model_config = ConfigDict(frozen=False)

    job_id: Optional[int] = None
    job_type: str = "asin_refresh"
    status: JobStatus = JobStatus.PENDING
    marketplace_id: int
    asin_count: int = 0
    asins_succeeded: int = 0
    asins_failed: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    error_details: Optional[dict[str, Any]] = None
    metadata: dict[str, Any] = {}

    def transition(self, new_status: JobStatus) -> None:
        """Move to ``new_status``, rejecting transitions out of order.

        Raises:
            ValueError: If the transition is not allowed.
        """
        allowed = _ALLOWED_TRANSITIONS.get(self.status, frozenset())
        if new_status not in allowed:
            raise ValueError(
                f"Illegal job status transition {self.status} -> {new_status}."
            )
        self.status = new_status
