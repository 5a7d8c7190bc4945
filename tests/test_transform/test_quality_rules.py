"""Tests for data-quality rules and the checker."""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal

from asin_ledger.config import QualityConfig
from asin_ledger.models.quality import DQIssueType, DQSeverity
from asin_ledger.transform.quality import (
    KEEPA_DATA_FIELD,
    CheckContext,
    DataQualityChecker,
    default_rules,
    missing_market_data_rule,
    negative_stock_rule,
    non_positive_price_rule,
    required_fields_rule,
    stale_market_data_rule,
    volatility_rule,
)


def _ctx(now):
    return CheckContext(now=now)


class TestIndividualRules:
    def test_clean_snapshot_passes_all_defaults(self, sample_snapshot, fixed_now):
        checker = DataQualityChecker(default_rules())
        assert checker.check(sample_snapshot, _ctx(fixed_now)) == []

    def test_negative_stock_is_critical(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"total_stock": -3})
        findings = negative_stock_rule()(snap, _ctx(fixed_now))
        assert len(findings) == 1
        assert findings[0].issue_type == DQIssueType.INVALID_VALUE
        assert findings[0].severity == DQSeverity.CRITICAL
        assert findings[0].details == {"value": -3}

    def test_zero_stock_is_not_an_issue(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"total_stock": 0})
        assert negative_stock_rule()(snap, _ctx(fixed_now)) == []

    def test_zero_price_flagged(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"price_inc_vat": Decimal("0.00")})
        findings = non_positive_price_rule()(snap, _ctx(fixed_now))
        assert findings[0].field_name == "price_inc_vat"

    def test_missing_required_field(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"title": None})
        findings = required_fields_rule(("title", "brand"))(snap, _ctx(fixed_now))
        assert [f.field_name for f in findings] == ["title"]
        assert findings[0].issue_type == DQIssueType.MISSING_FIELD

    def test_stale_market_data(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(
            update={"keepa_last_update": fixed_now - timedelta(hours=80)}
        )
        findings = stale_market_data_rule(timedelta(hours=72))(snap, _ctx(fixed_now))
        assert findings[0].issue_type == DQIssueType.STALE_DATA
        assert findings[0].details["age_hours"] == 80.0

    def test_fresh_market_data_at_limit(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(
            update={"keepa_last_update": fixed_now - timedelta(hours=72)}
        )
        assert stale_market_data_rule(timedelta(hours=72))(snap, _ctx(fixed_now)) == []

    def test_missing_market_data(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"has_keepa_data": False})
        findings = missing_market_data_rule()(snap, _ctx(fixed_now))
        assert findings[0].field_name == KEEPA_DATA_FIELD

    def test_volatility_threshold(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"keepa_price_volatility_90d": 0.75})
        findings = volatility_rule(0.5)(snap, _ctx(fixed_now))
        assert findings[0].issue_type == DQIssueType.OUT_OF_RANGE
        assert volatility_rule(0.8)(snap, _ctx(fixed_now)) == []


class TestChecker:
    def test_collects_from_every_rule(self, sample_snapshot, fixed_now):
        snap = sample_snapshot.model_copy(update={"total_stock": -1, "title": None})
        findings = DataQualityChecker(default_rules()).check(snap, _ctx(fixed_now))
        assert {f.issue_type for f in findings} == {
            DQIssueType.INVALID_VALUE,
            DQIssueType.MISSING_FIELD,
        }

    def test_custom_rule_can_be_added(self, sample_snapshot, fixed_now):
        def always(snapshot, context):
            return [volatility_rule(0.0)(snapshot, context)[0]]

        checker = DataQualityChecker([*default_rules(), always])
        assert len(checker.check(sample_snapshot, _ctx(fixed_now))) == 1

    def test_from_config_uses_thresholds(self, sample_snapshot, fixed_now):
        checker = DataQualityChecker.from_config(
            QualityConfig(volatility_threshold=0.1, stale_max_age_hours=0.5)
        )
        types = {f.issue_type for f in checker.check(sample_snapshot, _ctx(fixed_now))}
        assert types == {DQIssueType.OUT_OF_RANGE, DQIssueType.STALE_DATA}
