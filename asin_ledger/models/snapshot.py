"""
Canonical snapshot models — the merged per-identifier record and its
materialized "current" projection.

Two-stage design:
  1. ``MergedSnapshot`` — one immutable, timestamped record of an identifier's
     state: merged source fields + derived fields + fingerprint. Persisted
     append-only to ``asin_snapshots``.
  2. ``CurrentView``    — the latest snapshot per (asin, marketplace), plus a
     pointer to the snapshot it came from. A cache: it can always be rebuilt
     from the newest row in ``asin_snapshots``.

Conventions:
  - Money is ``Decimal`` quantized to 2 dp (pounds, not pence).
  - Percentages/volatility are fractions (0.12 == 12%).
  - Everything except identity and bookkeeping is nullable; ``None`` means
    "unknown", never zero.
"""

from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator

from asin_ledger.utils.time_utils import ensure_utc

_CENT = Decimal("0.01")

MONEY_FIELDS: tuple[str, ...] = (
    "price_inc_vat",
    "price_ex_vat",
    "list_price",
    "buy_box_price",
    "keepa_price_median_90d",
    "keepa_price_p25_90d",
    "keepa_price_p75_90d",
    "keepa_price_min_90d",
    "keepa_price_max_90d",
    "profit_per_unit",
    "breakeven_price_inc_vat",
)


def to_money(value: Any) -> Optional[Decimal]:
    """Coerce a number/str to a 2-dp ``Decimal`` (half-up), keeping ``None``.

    Floats go through ``str()`` first so ``24.99`` stays ``24.99``.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        dec = value
    elif isinstance(value, float):
        dec = Decimal(str(value))
    else:
        dec = Decimal(value)
    return dec.quantize(_CENT, rounding=ROUND_HALF_UP)


class MergedSnapshot(BaseModel):
    """One canonical, reconciled record for an identifier.

    ``snapshot_time`` is the newest capture time among the source payloads
    that contributed, not the time the transform ran.
    """

    model_config = ConfigDict(frozen=True)

    snapshot_id: Optional[int] = None
    asin: str
    marketplace_id: int
    ingestion_job_id: Optional[int] = None
    snapshot_time: datetime

    # ── Catalog ───────────────────────────────────────────────────────────────
    title: Optional[str] = None
    brand: Optional[str] = None
    category_path: Optional[str] = None

    # ── Our listing (first-party) ─────────────────────────────────────────────
    price_inc_vat: Optional[Decimal] = None
    price_ex_vat: Optional[Decimal] = None
    list_price: Optional[Decimal] = None
    our_seller_id: Optional[str] = None
    total_stock: Optional[int] = None
    fulfillment_channel: Optional[str] = None
    units_7d: Optional[int] = None
    units_30d: Optional[int] = None
    units_90d: Optional[int] = None

    # ── Market (third-party) ──────────────────────────────────────────────────
    buy_box_price: Optional[Decimal] = None
    buy_box_seller_id: Optional[str] = None
    seller_count: Optional[int] = None
    offer_count_new: Optional[int] = None
    offer_count_used: Optional[int] = None
    keepa_sales_rank_latest: Optional[int] = None
    keepa_price_median_90d: Optional[Decimal] = None
    keepa_price_p25_90d: Optional[Decimal] = None
    keepa_price_p75_90d: Optional[Decimal] = None
    keepa_price_min_90d: Optional[Decimal] = None
    keepa_price_max_90d: Optional[Decimal] = None
    keepa_price_volatility_90d: Optional[float] = None
    keepa_last_update: Optional[datetime] = None

    # ── Derived ───────────────────────────────────────────────────────────────
    days_of_cover: Optional[float] = None
    is_out_of_stock: Optional[bool] = None
    is_buy_box_lost: Optional[bool] = None
    gross_margin_pct: Optional[float] = None
    profit_per_unit: Optional[Decimal] = None
    breakeven_price_inc_vat: Optional[Decimal] = None

    # ── Provenance ────────────────────────────────────────────────────────────
    has_keepa_data: bool = False
    has_sp_api_data: bool = False
    fingerprint_hash: str
    transform_version: int

    @field_validator(*MONEY_FIELDS, mode="before")
    @classmethod
    def quantize_money(cls, v: Any) -> Optional[Decimal]:
        return to_money(v)

    @field_validator("snapshot_time", "keepa_last_update")
    @classmethod
    def validate_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None

    @field_validator("keepa_price_volatility_90d")
    @classmethod
    def validate_volatility(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and (not math.isfinite(v) or v < 0):
            raise ValueError(f"Volatility must be finite and >= 0, got {v}.")
        return v


class CurrentView(BaseModel):
    """Materialized latest state for one (asin, marketplace).

    Attributes mirror the subset of ``MergedSnapshot`` that consumers read
    most, plus ``latest_snapshot_id`` (always an existing snapshot),
    ``first_seen_at`` (set once, on first insert) and ``updated_at``.
    """

    model_config = ConfigDict(frozen=True)

    asin: str
    marketplace_id: int
    latest_snapshot_id: int
    last_ingestion_job_id: Optional[int] = None
    last_snapshot_time: datetime
    title: Optional[str] = None
    brand: Optional[str] = None
    category_path: Optional[str] = None
    price_inc_vat: Optional[Decimal] = None
    price_ex_vat: Optional[Decimal] = None
    list_price: Optional[Decimal] = None
    buy_box_price: Optional[Decimal] = None
    buy_box_seller_id: Optional[str] = None
    seller_count: Optional[int] = None
    total_stock: Optional[int] = None
    fulfillment_channel: Optional[str] = None
    units_30d: Optional[int] = None
    keepa_sales_rank_latest: Optional[int] = None
    keepa_price_median_90d: Optional[Decimal] = None
    keepa_price_p25_90d: Optional[Decimal] = None
    keepa_price_volatility_90d: Optional[float] = None
    days_of_cover: Optional[float] = None
    is_out_of_stock: Optional[bool] = None
    is_buy_box_lost: Optional[bool] = None
    fingerprint_hash: str
    first_seen_at: datetime
    updated_at: datetime

    @field_validator(
        "price_inc_vat", "price_ex_vat", "list_price", "buy_box_price",
        "keepa_price_median_90d", "keepa_price_p25_90d",
        mode="before",
    )
    @classmethod
    def quantize_money(cls, v: Any) -> Optional[Decimal]:
        return to_money(v)


# Columns copied from a snapshot into asin_current on upsert.
CURRENT_VIEW_FIELDS: tuple[str, ...] = (
    "title",
    "brand",
    "category_path",
    "price_inc_vat",
    "price_ex_vat",
    "list_price",
    "buy_box_price",
    "buy_box_seller_id",
    "seller_count",
    "total_stock",
    "fulfillment_channel",
    "units_30d",
    "keepa_sales_rank_latest",
    "keepa_price_median_90d",
    "keepa_price_p25_90d",
    "keepa_price_volatility_90d",
    "days_of_cover",
    "is_out_of_stock",
    "is_buy_box_lost",
    "fingerprint_hash",
)
