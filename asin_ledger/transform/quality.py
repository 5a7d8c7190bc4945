"""
Data-quality rules for merged snapshots.

Each rule is an independent callable::

    rule(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]

built by a small factory that closes over its threshold. Adding a rule means
writing a new factory and listing it in ``default_rules``; existing rules are
never edited for it.

Standard rules
--------------
==========================  ===============  ========  ==================
Rule                        Issue type       Severity  Field
==========================  ===============  ========  ==================
required field missing      MISSING_FIELD    WARN      the field
stock < 0                   INVALID_VALUE    CRITICAL  total_stock
price <= 0                  INVALID_VALUE    WARN      price_inc_vat
seller count < 0            INVALID_VALUE    WARN      seller_count
third-party data too old    STALE_DATA       WARN      keepa_last_update
no third-party data at all  MISSING_FIELD    WARN      keepa_data
volatility above threshold  OUT_OF_RANGE     WARN      keepa_price_vol...
==========================  ===============  ========  ==================

Stock of exactly 0 is a legitimate stocked-out state and raises nothing here.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from asin_ledger.models.quality import DQFinding, DQIssueType, DQSeverity
from asin_ledger.models.snapshot import MergedSnapshot

logger = logging.getLogger(__name__)

KEEPA_DATA_FIELD = "keepa_data"


@dataclass(frozen=True)
class CheckContext:
    """Inputs a rule may need beyond the snapshot itself."""

    now: datetime


Rule = Callable[[MergedSnapshot, CheckContext], list[DQFinding]]


# ── Rule factories ────────────────────────────────────────────────────────────

def required_fields_rule(fields: Sequence[str] = ("title",)) -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        return [
            DQFinding(
                issue_type=DQIssueType.MISSING_FIELD,
                severity=DQSeverity.WARN,
                field_name=name,
                message=f"Required field '{name}' is missing",
            )
            for name in fields
            if getattr(snapshot, name, None) in (None, "")
        ]
    return check


def negative_stock_rule() -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        if snapshot.total_stock is not None and snapshot.total_stock < 0:
            return [DQFinding(
                issue_type=DQIssueType.INVALID_VALUE,
                severity=DQSeverity.CRITICAL,
                field_name="total_stock",
                message="Stock is negative",
                details={"value": snapshot.total_stock},
            )]
        return []
    return check


def non_positive_price_rule() -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        if snapshot.price_inc_vat is not None and snapshot.price_inc_vat <= 0:
            return [DQFinding(
                issue_type=DQIssueType.INVALID_VALUE,
                severity=DQSeverity.WARN,
                field_name="price_inc_vat",
                message="Price is zero or negative",
                details={"value": str(snapshot.price_inc_vat)},
            )]
        return []
    return check


def negative_seller_count_rule() -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        if snapshot.seller_count is not None and snapshot.seller_count < 0:
            return [DQFinding(
                issue_type=DQIssueType.INVALID_VALUE,
                severity=DQSeverity.WARN,
                field_name="seller_count",
                message="Seller count is negative",
                details={"value": snapshot.seller_count},
            )]
        return []
    return check


def stale_market_data_rule(max_age: timedelta = timedelta(hours=72)) -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        last_update = snapshot.keepa_last_update
        if last_update is None:
            return []
        age = context.now - last_update
        if age <= max_age:
            return []
        age_hours = round(age.total_seconds() / 3600, 1)
        return [DQFinding(
            issue_type=DQIssueType.STALE_DATA,
            severity=DQSeverity.WARN,
            field_name="keepa_last_update",
            message=f"Market data is {age_hours}h old (limit {max_age.total_seconds() / 3600:g}h)",
            details={"age_hours": age_hours, "last_update": last_update.isoformat()},
        )]
    return check


def missing_market_data_rule() -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        if snapshot.has_keepa_data:
            return []
        return [DQFinding(
            issue_type=DQIssueType.MISSING_FIELD,
            severity=DQSeverity.WARN,
            field_name=KEEPA_DATA_FIELD,
            message="No third-party market data available",
        )]
    return check


def volatility_rule(threshold: float = 0.5) -> Rule:
    def check(snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        vol = snapshot.keepa_price_volatility_90d
        if vol is not None and vol > threshold:
            return [DQFinding(
                issue_type=DQIssueType.OUT_OF_RANGE,
                severity=DQSeverity.WARN,
                field_name="keepa_price_volatility_90d",
                message=f"High price volatility detected (>{threshold:.0%})",
                details={"value": vol, "threshold": threshold},
            )]
        return []
    return check


def default_rules(quality_config=None) -> list[Rule]:
    """The standard rule set, thresholds taken from a ``QualityConfig`` if given."""
    if quality_config is None:
        required: Sequence[str] = ("title",)
        max_age = timedelta(hours=72)
        threshold = 0.5
    else:
        required = quality_config.required_fields
        max_age = timedelta(hours=quality_config.stale_max_age_hours)
        threshold = quality_config.volatility_threshold
    return [
        required_fields_rule(required),
        negative_stock_rule(),
        non_positive_price_rule(),
        negative_seller_count_rule(),
        stale_market_data_rule(max_age),
        missing_market_data_rule(),
        volatility_rule(threshold),
    ]


# ── Checker ───────────────────────────────────────────────────────────────────

class DataQualityChecker:
    """Run a list of rules over a snapshot and collect their findings."""

    def __init__(self, rules: Iterable[Rule]) -> None:
        self.rules = list(rules)

    @classmethod
    def from_config(cls, quality_config) -> "DataQualityChecker":
        return cls(default_rules(quality_config))

    def check(self, snapshot: MergedSnapshot, context: CheckContext) -> list[DQFinding]:
        findings: list[DQFinding] = []
        for rule in self.rules:
            findings.extend(rule(snapshot, context))
        if findings:
            logger.debug(
                "%s: %d DQ finding(s): %s",
                snapshot.asin, len(findings), [str(f.issue_type) for f in findings],
            )
        return findings
