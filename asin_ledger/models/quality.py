"""
Data-quality issue models.

``DQFinding`` is what a rule emits: a typed observation about one merged
snapshot, with no persistence identity. The orchestrator turns findings into
``DQIssue`` rows linked to the snapshot that produced them.

Lifecycle of a ``DQIssue``::

    OPEN ──(acknowledged by an operator)──► ACKNOWLEDGED
      │                                          │
      └──(later refresh no longer reproduces)────┴──► RESOLVED
      └──(operator decision)─────────────────────────► IGNORED

Issues are never deleted; resolution is a status change.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

AUTO_RESOLUTION_NOTE = "Auto-resolved after successful data refresh"


class DQSeverity(StrEnum):
    WARN = "WARN"
    CRITICAL = "CRITICAL"


class DQIssueType(StrEnum):
    """Category of a data-quality finding."""

    MISSING_FIELD = "MISSING_FIELD"
    INVALID_VALUE = "INVALID_VALUE"
    STALE_DATA = "STALE_DATA"
    INCONSISTENT_DATA = "INCONSISTENT_DATA"
    TRANSFORM_ERROR = "TRANSFORM_ERROR"
    API_ERROR = "API_ERROR"
    DUPLICATE_DATA = "DUPLICATE_DATA"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class DQStatus(StrEnum):
    OPEN = "OPEN"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    IGNORED = "IGNORED"


# Issue types that a successful refresh can clear on its own.
AUTO_RESOLVABLE_TYPES: frozenset[DQIssueType] = frozenset({
    DQIssueType.STALE_DATA,
    DQIssueType.API_ERROR,
})


class DQFinding(BaseModel):
    """A single rule violation detected in a merged snapshot."""

    model_config = ConfigDict(frozen=True)

    issue_type: DQIssueType
    severity: DQSeverity
    field_name: Optional[str] = None
    message: str
    details: Optional[dict[str, Any]] = None


class DQIssue(BaseModel):
    """A persisted data-quality issue.

    Attributes:
        dq_issue_id: Auto-assigned DB PK; ``None`` before insertion.
        asin: Product identifier.
        marketplace_id: Internal marketplace number.
        snapshot_id: Snapshot that produced the issue; ``None`` for fetch
            failures where no snapshot was written.
        ingestion_job_id: Job during which the issue was detected.
        issue_type: See ``DQIssueType``.
        severity: ``WARN`` or ``CRITICAL``.
        field_name: Field the issue concerns, if any.
        message: Human-readable description.
        details: Structured context (offending value, threshold, ...).
        status: Lifecycle state.
        created_at: UTC detection time.
        resolved_at: UTC resolution time, once resolved.
        resolution_notes: Why it was resolved.
    """

    model_config = ConfigDict(frozen=True)

    dq_issue_id: Optional[int] = None
    asin: str
    marketplace_id: int
    snapshot_id: Optional[int] = None
    ingestion_job_id: Optional[int] = None
    issue_type: DQIssueType
    severity: DQSeverity
    field_name: Optional[str] = None
    message: str
    details: Optional[dict[str, Any]] = None
    status: DQStatus = DQStatus.OPEN
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None

    @classmethod
    def from_finding(
        cls,
        finding: DQFinding,
        *,
        asin: str,
        marketplace_id: int,
        created_at: datetime,
        snapshot_id: Optional[int] = None,
        ingestion_job_id: Optional[int] = None,
    ) -> "DQIssue":
        """Attach identity and provenance to a rule finding."""
        return cls(
            asin=asin,
            marketplace_id=marketplace_id,
            snapshot_id=snapshot_id,
            ingestion_job_id=ingestion_job_id,
            issue_type=finding.issue_type,
            severity=finding.severity,
            field_name=finding.field_name,
            message=finding.message,
            details=finding.details,
            created_at=created_at,
        )
