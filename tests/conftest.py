"""
Shared pytest fixtures for the asin-ledger test suite.

Provides:
  - ``in_memory_db``: A fresh in-memory SQLite connection with the full
    schema and all migrations applied. Created anew for each test.
  - ``fixed_now``: A fixed UTC instant used as the clock in tests.
  - Sample vendor payload / snapshot factories shared across test modules.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Generator

import pytest

from asin_ledger.db.migrations import run_migrations
from asin_ledger.db.schema import apply_schema
from asin_ledger.models.snapshot import MergedSnapshot
from asin_ledger.utils.time_utils import DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES

FIXED_NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


def to_vendor_minutes(dt: datetime) -> int:
    """Inverse of ``vendor_minutes_to_datetime`` for building test series."""
    return int(dt.timestamp() // 60) - DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES


def make_keepa_product(
    asin: str = "B000000001",
    prices_pence: tuple[int, ...] = (2000, 2200, 2400, 2600, 2800),
    now: datetime = FIXED_NOW,
    **overrides,
) -> dict:
    """A vendor product object with a daily price series ending at ``now``."""
    series: list[int] = []
    for days_ago, price in zip(range(len(prices_pence), 0, -1), prices_pence):
        series.extend([to_vendor_minutes(now - timedelta(days=days_ago)), price])
    product = {
        "asin": asin,
        "title": "Widget Pro 3000",
        "brand": "Acme",
        "categoryTree": [{"name": "Home"}, {"name": "Kitchen"}],
        "csv": [None, series],
        "stats": {
            "current": [0, 2500, 0, 1543, 0, 0, 0, 0, 0, 0, 0, 4],
            "buyBoxPrice": 2499,
        },
        "buyBoxSellerIdHistory": [to_vendor_minutes(now - timedelta(hours=2)), "ACOMPETITOR"],
        "offers": [{"condition": 1}, {"condition": 1}, {"condition": 2}],
        "lastUpdate": to_vendor_minutes(now - timedelta(hours=1)),
    }
    product.update(overrides)
    return product


# ── Database fixture ──────────────────────────────────────────────────────────

@pytest.fixture
def in_memory_db() -> Generator[sqlite3.Connection, None, None]:
    """Yield a fresh in-memory SQLite connection with the full schema applied.

    Foreign key enforcement is ON. Schema and migrations are applied
    idempotently. Connection is closed after the test.
    """
    conn = sqlite3.connect(":memory:")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    apply_schema(conn)
    run_migrations(conn)
    yield conn
    conn.close()


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


# ── Sample domain object factories ────────────────────────────────────────────

@pytest.fixture
def keepa_product() -> dict:
    """A complete vendor product for ``B000000001``."""
    return make_keepa_product()


@pytest.fixture
def keepa_product_factory():
    """``make_keepa_product`` for tests that need several or customised products."""
    return make_keepa_product


@pytest.fixture
def vendor_minutes():
    """``to_vendor_minutes`` for tests that build their own series."""
    return to_vendor_minutes


@pytest.fixture
def sp_api_payload() -> dict:
    """A nested first-party catalog/pricing/inventory/sales bundle."""
    return {
        "catalogItem": {
            "attributes": {
                "item_name": [{"value": "Widget Pro 3000 (own listing)"}],
                "brand": [{"value": "Acme"}],
            }
        },
        "pricing": {
            "offers": [
                {"isMine": False, "listingPrice": {"amount": 23.50}, "sellerId": "ACOMPETITOR"},
                {
                    "isMine": True,
                    "sellerId": "AOURSELLER",
                    "listingPrice": {"amount": 24.99},
                    "regularPrice": {"amount": 29.99},
                },
            ]
        },
        "inventory": {
            "fulfillmentAvailability": [
                {"fulfillmentChannelCode": "AMAZON_EU", "quantity": 30},
                {"fulfillmentChannelCode": "AMAZON_EU", "quantity": 12},
            ]
        },
        "sales": {"unitsOrdered7d": 7, "unitsOrdered30d": 60, "unitsOrdered90d": 150},
    }


@pytest.fixture
def sample_snapshot() -> MergedSnapshot:
    """A valid ``MergedSnapshot`` (not yet persisted)."""
    return MergedSnapshot(
        asin="B000000001",
        marketplace_id=1,
        snapshot_time=FIXED_NOW,
        title="Widget Pro 3000",
        brand="Acme",
        price_inc_vat=Decimal("24.99"),
        price_ex_vat=Decimal("20.83"),
        total_stock=42,
        units_30d=60,
        buy_box_price=Decimal("24.99"),
        buy_box_seller_id="ACOMPETITOR",
        our_seller_id="AOURSELLER",
        seller_count=4,
        keepa_price_p25_90d=Decimal("22.00"),
        keepa_price_volatility_90d=0.1234,
        keepa_last_update=FIXED_NOW - timedelta(hours=1),
        days_of_cover=21.0,
        is_out_of_stock=False,
        is_buy_box_lost=True,
        has_keepa_data=True,
        has_sp_api_data=True,
        fingerprint_hash="f" * 64,
        transform_version=1,
    )
