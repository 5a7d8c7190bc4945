"""Tests for the precedence-table source merge."""

from __future__ import annotations

from decimal import Decimal

import pytest

from asin_ledger.models.payload import PayloadSource
from asin_ledger.models.snapshot import MergedSnapshot
from asin_ledger.transform.flatten import (
    KEEPA_FIELDS,
    SP_API_FIELDS,
    FlattenedRecord,
    empty_record,
    flatten_keepa,
    flatten_sp_api,
)
from asin_ledger.transform.merge import FIELD_PRECEDENCE, merge


class TestPrecedenceTable:
    def test_covers_every_source_field(self):
        assert set(FIELD_PRECEDENCE) == set(KEEPA_FIELDS) | set(SP_API_FIELDS)

    def test_every_field_exists_on_snapshot(self):
        assert set(FIELD_PRECEDENCE) <= set(MergedSnapshot.model_fields)

    def test_identity_prefers_first_party(self):
        assert FIELD_PRECEDENCE["title"] == (PayloadSource.SP_API, PayloadSource.KEEPA)

    def test_market_fields_come_from_third_party_only(self):
        assert FIELD_PRECEDENCE["buy_box_seller_id"] == (PayloadSource.KEEPA,)
        assert FIELD_PRECEDENCE["total_stock"] == (PayloadSource.SP_API,)


class TestMerge:
    def test_both_sources(self, keepa_product, sp_api_payload, fixed_now):
        merged = merge(
            flatten_keepa(keepa_product, captured_at=fixed_now),
            flatten_sp_api(sp_api_payload, captured_at=fixed_now),
        )
        assert merged.fields["title"] == "Widget Pro 3000 (own listing)"
        assert merged.field_sources["title"] == PayloadSource.SP_API
        assert merged.fields["buy_box_seller_id"] == "ACOMPETITOR"
        assert merged.field_sources["buy_box_seller_id"] == PayloadSource.KEEPA
        assert merged.fields["total_stock"] == 42
        assert merged.has_data(PayloadSource.KEEPA)
        assert merged.has_data(PayloadSource.SP_API)

    def test_identity_falls_back_when_first_party_is_null(self, keepa_product, fixed_now):
        merged = merge(
            flatten_keepa(keepa_product, captured_at=fixed_now),
            flatten_sp_api({"price_inc_vat": 24.99, "stock": 5}),
        )
        assert merged.fields["title"] == "Widget Pro 3000"
        assert merged.field_sources["title"] == PayloadSource.KEEPA
        assert merged.fields["price_inc_vat"] == Decimal("24.99")

    def test_third_party_never_fills_first_party_fields(self):
        keepa = FlattenedRecord(
            source=PayloadSource.KEEPA,
            fields={"total_stock": 99, "title": "X"},
            has_data=True,
        )
        merged = merge(keepa, empty_record(PayloadSource.SP_API))
        assert merged.fields["total_stock"] is None
        assert merged.field_sources["total_stock"] is None

    def test_empty_sources_yield_full_null_schema(self):
        merged = merge(empty_record(PayloadSource.KEEPA), empty_record(PayloadSource.SP_API))
        assert set(merged.fields) == set(FIELD_PRECEDENCE)
        assert all(v is None for v in merged.fields.values())
        assert merged.sources_with_data == frozenset()

    def test_missing_record_treated_as_absent(self, sp_api_payload):
        merged = merge(flatten_sp_api(sp_api_payload))
        assert merged.fields["buy_box_price"] is None
        assert not merged.has_data(PayloadSource.KEEPA)

    def test_duplicate_source_rejected(self):
        with pytest.raises(ValueError, match="Duplicate"):
            merge(empty_record(PayloadSource.KEEPA), empty_record(PayloadSource.KEEPA))
