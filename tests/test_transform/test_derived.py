"""Tests for cross-source derived fields."""

from __future__ import annotations

import pytest

from asin_ledger.transform.derived import (
    DERIVED_FIELDS,
    days_of_cover,
    derive,
    is_buy_box_lost,
    is_out_of_stock,
)


class TestDaysOfCover:
    def test_stock_over_daily_velocity(self):
        # 60 units / 30 days = 2 per day
        assert days_of_cover(42, 60, 30) == 21.0

    def test_rounded_to_two_places(self):
        assert days_of_cover(10, 7, 7) == 10.0
        assert days_of_cover(10, 3, 7) == 23.33

    @pytest.mark.parametrize("stock,units", [(None, 10), (10, None), (10, 0), (10, -5)])
    def test_unknown_when_velocity_or_stock_unknown(self, stock, units):
        assert days_of_cover(stock, units) is None

    def test_zero_stock_with_sales_is_zero_cover(self):
        assert days_of_cover(0, 30) == 0.0


class TestFlags:
    @pytest.mark.parametrize("stock,expected", [(0, True), (-1, True), (1, False), (None, False)])
    def test_out_of_stock(self, stock, expected):
        assert is_out_of_stock(stock) is expected

    def test_buy_box_lost_needs_both_ids(self):
        assert is_buy_box_lost("AOURSELLER", None) is None
        assert is_buy_box_lost(None, "ACOMPETITOR") is None

    def test_buy_box_lost_when_ids_differ(self):
        assert is_buy_box_lost("AOURSELLER", "ACOMPETITOR") is True
        assert is_buy_box_lost("AOURSELLER", "AOURSELLER") is False


class TestDerive:
    def test_all_derived_fields_present(self):
        out = derive({})
        assert set(out) == set(DERIVED_FIELDS)
        assert out["gross_margin_pct"] is None
        assert out["is_out_of_stock"] is False

    def test_uses_configured_window(self):
        fields = {"total_stock": 14, "units_7d": 7, "units_30d": 300}
        assert derive(fields, sales_window_days=7)["days_of_cover"] == 14.0

    def test_unsupported_window_rejected(self):
        with pytest.raises(ValueError):
            derive({}, sales_window_days=14)

    def test_payload_seller_id_beats_configured(self):
        fields = {"our_seller_id": "ACOMPETITOR", "buy_box_seller_id": "ACOMPETITOR"}
        assert derive(fields, our_seller_id="AOTHER")["is_buy_box_lost"] is False

    def test_configured_seller_id_used_as_fallback(self):
        fields = {"buy_box_seller_id": "ACOMPETITOR"}
        assert derive(fields, our_seller_id="AOURSELLER")["is_buy_box_lost"] is True
