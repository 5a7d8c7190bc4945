"""
Source flatteners — one pure function per source, raw payload → flat fields.

Contract shared by every flattener:
  - The returned ``FlattenedRecord.fields`` always holds the *complete* field
    schema of that source (``KEEPA_FIELDS`` / ``SP_API_FIELDS``). A missing or
    empty payload produces every field as ``None`` with ``has_data=False``;
    it never raises and never returns a partial dict. The merger relies on
    this.
  - Money comes out as ``Decimal`` pounds (2 dp), counts as ``int``.
  - No I/O, no clock reads unless ``now`` is omitted.

Keepa payloads may be passed either as a single product object or as the
``{"products": [...]}`` envelope (first product used).

SP-API payloads may be the nested catalog/pricing/inventory/sales bundle or an
already-flat dict (``{"price_inc_vat": 24.99, "stock": 0}``).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from asin_ledger.models.payload import PayloadSource
from asin_ledger.models.snapshot import to_money
from asin_ledger.transform.stats import price_stats
from asin_ledger.utils.time_utils import (
    DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
    ensure_utc,
    utcnow,
    vendor_minutes_to_datetime,
)

logger = logging.getLogger(__name__)

UK_VAT_RATE = Decimal("0.20")

# Vendor csv[] index of the "new" price series, stats.current[] indices.
_CSV_NEW_PRICE = 1
_CURRENT_SALES_RANK = 3
_CURRENT_OFFER_COUNT = 11
_OFFER_CONDITION_NEW = 1

KEEPA_FIELDS: tuple[str, ...] = (
    "title",
    "brand",
    "category_path",
    "buy_box_price",
    "buy_box_seller_id",
    "seller_count",
    "offer_count_new",
    "offer_count_used",
    "keepa_sales_rank_latest",
    "keepa_price_median_90d",
    "keepa_price_p25_90d",
    "keepa_price_p75_90d",
    "keepa_price_min_90d",
    "keepa_price_max_90d",
    "keepa_price_volatility_90d",
    "keepa_last_update",
)

SP_API_FIELDS: tuple[str, ...] = (
    "title",
    "brand",
    "price_inc_vat",
    "price_ex_vat",
    "list_price",
    "our_seller_id",
    "total_stock",
    "fulfillment_channel",
    "units_7d",
    "units_30d",
    "units_90d",
)


@dataclass(frozen=True)
class FlattenedRecord:
    """Normalized fields from one source. Not persisted."""

    source: PayloadSource
    fields: dict[str, Any] = field(default_factory=dict)
    has_data: bool = False
    captured_at: Optional[datetime] = None


def empty_record(source: PayloadSource, captured_at: Optional[datetime] = None) -> FlattenedRecord:
    """All-null record carrying the full schema of ``source``."""
    schema = KEEPA_FIELDS if source == PayloadSource.KEEPA else SP_API_FIELDS
    return FlattenedRecord(
        source=source,
        fields={name: None for name in schema},
        has_data=False,
        captured_at=captured_at,
    )


# ── Keepa ─────────────────────────────────────────────────────────────────────

def flatten_keepa(
    payload: Optional[dict[str, Any]],
    *,
    captured_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    stats_window_days: int = 90,
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> FlattenedRecord:
    """Flatten one vendor product into ``KEEPA_FIELDS``.

    Args:
        payload: Product object or ``{"products": [...]}`` envelope.
        captured_at: When the payload was fetched.
        now: End of the trailing stats window. Defaults to ``captured_at``
            (so replays are deterministic), then the wall clock.
        stats_window_days: Trailing window for price statistics.
        epoch_offset_minutes: Vendor epoch offset (see ``MarketApiConfig``).
    """
    product = _unwrap_product(payload)
    if not product:
        return empty_record(PayloadSource.KEEPA, captured_at)

    window_end = ensure_utc(now or captured_at or utcnow())
    stats = product.get("stats") or {}
    current = stats.get("current") or []
    csv = product.get("csv") or []

    series = csv[_CSV_NEW_PRICE] if len(csv) > _CSV_NEW_PRICE else None
    prices = price_stats(series, window_end, stats_window_days, epoch_offset_minutes)

    category_tree = product.get("categoryTree") or []
    names = [c.get("name") for c in category_tree if isinstance(c, dict) and c.get("name")]

    offers = product.get("offers") or []
    if offers:
        new_count = sum(1 for o in offers if o.get("condition") == _OFFER_CONDITION_NEW)
        offer_count_new: Optional[int] = new_count
        offer_count_used: Optional[int] = len(offers) - new_count
    else:
        offer_count_new = offer_count_used = None

    buy_box_raw = stats.get("buyBoxPrice")
    last_update = product.get("lastUpdate")
    rank = _index(current, _CURRENT_SALES_RANK)

    fields = {
        "title": product.get("title") or None,
        "brand": product.get("brand") or None,
        "category_path": " > ".join(names) if names else None,
        "buy_box_price": _pence_to_money(buy_box_raw) if _positive(buy_box_raw) else None,
        "buy_box_seller_id": _last_seller_id(product.get("buyBoxSellerIdHistory")),
        "seller_count": _index(current, _CURRENT_OFFER_COUNT),
        "offer_count_new": offer_count_new,
        "offer_count_used": offer_count_used,
        "keepa_sales_rank_latest": rank if _positive(rank) else None,
        "keepa_price_median_90d": _pence_to_money(prices.median),
        "keepa_price_p25_90d": _pence_to_money(prices.p25),
        "keepa_price_p75_90d": _pence_to_money(prices.p75),
        "keepa_price_min_90d": _pence_to_money(prices.min),
        "keepa_price_max_90d": _pence_to_money(prices.max),
        "keepa_price_volatility_90d": prices.volatility,
        "keepa_last_update": (
            vendor_minutes_to_datetime(int(last_update), epoch_offset_minutes)
            if _positive(last_update) else None
        ),
    }
    return FlattenedRecord(
        source=PayloadSource.KEEPA, fields=fields, has_data=True, captured_at=captured_at
    )


def _unwrap_product(payload: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if not payload:
        return None
    if "products" in payload:
        products = payload.get("products") or []
        return products[0] if products and isinstance(products[0], dict) else None
    return payload


def _index(values: Sequence[Any], i: int) -> Optional[int]:
    if len(values) <= i or values[i] is None:
        return None
    return int(values[i])


def _positive(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _pence_to_money(pence: Optional[int]) -> Optional[Decimal]:
    if pence is None:
        return None
    return to_money(Decimal(int(pence)) / 100)


def _last_seller_id(history: Optional[Sequence[Any]]) -> Optional[str]:
    # History alternates [time, sellerId, ...]; negative ids mark "no buy box"
    if not history:
        return None
    seller = str(history[-1]).strip()
    if not seller or seller.startswith("-"):
        return None
    return seller


# ── SP-API ────────────────────────────────────────────────────────────────────

def flatten_sp_api(
    payload: Optional[dict[str, Any]],
    *,
    captured_at: Optional[datetime] = None,
) -> FlattenedRecord:
    """Flatten a first-party payload into ``SP_API_FIELDS``."""
    if not payload:
        return empty_record(PayloadSource.SP_API, captured_at)

    catalog = payload.get("catalogItem") or payload
    attributes = catalog.get("attributes") or {}
    pricing = payload.get("pricing") or {}
    inventory = payload.get("inventory") or {}
    sales = payload.get("sales") or {}

    price_inc_vat = payload.get("price_inc_vat")
    list_price = payload.get("list_price")
    our_seller_id = payload.get("seller_id") or payload.get("our_seller_id")
    offers = pricing.get("offers") or []
    if offers:
        offer = next((o for o in offers if o.get("isMine")), offers[0])
        price_inc_vat = (offer.get("listingPrice") or {}).get("amount") or price_inc_vat
        list_price = (offer.get("regularPrice") or {}).get("amount") or list_price
        if offer.get("isMine"):
            our_seller_id = offer.get("sellerId") or our_seller_id

    price = to_money(price_inc_vat)
    price_ex_vat = to_money(price / (1 + UK_VAT_RATE)) if price else None

    availability = inventory.get("fulfillmentAvailability")
    if availability:
        total_stock: Optional[int] = sum(int(fa.get("quantity") or 0) for fa in availability)
        channel = availability[0].get("fulfillmentChannelCode") or "FBM"
    else:
        total_stock = _first_int(payload, "total_stock", "stock")
        channel = payload.get("fulfillment_channel")

    fields = {
        "title": _attribute(attributes, "item_name") or catalog.get("title") or None,
        "brand": _attribute(attributes, "brand") or catalog.get("brand") or None,
        "price_inc_vat": price,
        "price_ex_vat": price_ex_vat,
        "list_price": to_money(list_price),
        "our_seller_id": our_seller_id,
        "total_stock": total_stock,
        "fulfillment_channel": channel,
        "units_7d": _first_int(sales, "unitsOrdered7d") if sales else _first_int(payload, "units_7d"),
        "units_30d": _first_int(sales, "unitsOrdered30d") if sales else _first_int(payload, "units_30d"),
        "units_90d": _first_int(sales, "unitsOrdered90d") if sales else _first_int(payload, "units_90d"),
    }
    return FlattenedRecord(
        source=PayloadSource.SP_API, fields=fields, has_data=True, captured_at=captured_at
    )


def _attribute(attributes: dict[str, Any], name: str) -> Optional[str]:
    values = attributes.get(name) or []
    if values and isinstance(values[0], dict):
        return values[0].get("value")
    return None


def _first_int(data: dict[str, Any], *keys: str) -> Optional[int]:
    for key in keys:
        if data.get(key) is not None:
            return int(data[key])
    return None


# ── Dispatch ──────────────────────────────────────────────────────────────────

def flatten(
    source: PayloadSource,
    payload: Optional[dict[str, Any]],
    *,
    captured_at: Optional[datetime] = None,
    now: Optional[datetime] = None,
    stats_window_days: int = 90,
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> FlattenedRecord:
    """Route ``payload`` to the flattener for ``source``."""
    if source == PayloadSource.KEEPA:
        return flatten_keepa(
            payload,
            captured_at=captured_at,
            now=now,
            stats_window_days=stats_window_days,
            epoch_offset_minutes=epoch_offset_minutes,
        )
    return flatten_sp_api(payload, captured_at=captured_at)
