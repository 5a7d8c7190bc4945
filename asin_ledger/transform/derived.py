"""
Fields that need information from more than one source.

``None`` always means "unknown": days of cover with no sales velocity is
unknown, not zero cover, and the buy-box flag is unknown unless both seller
ids are known.

The margin/profit/breakeven fields stay ``None`` until cost data (bill of
materials, fees) is available to this package.
"""

from __future__ import annotations

from typing import Any, Optional

SALES_WINDOW_FIELDS: dict[int, str] = {7: "units_7d", 30: "units_30d", 90: "units_90d"}

DERIVED_FIELDS: tuple[str, ...] = (
    "days_of_cover",
    "is_out_of_stock",
    "is_buy_box_lost",
    "gross_margin_pct",
    "profit_per_unit",
    "breakeven_price_inc_vat",
)


def days_of_cover(
    stock: Optional[int],
    units_sold: Optional[int],
    window_days: int = 30,
) -> Optional[float]:
    """Days until stock runs out at the window's average daily sales rate."""
    if stock is None or units_sold is None or units_sold <= 0 or window_days <= 0:
        return None
    daily_velocity = units_sold / window_days
    return round(stock / daily_velocity, 2)


def is_out_of_stock(stock: Optional[int]) -> bool:
    return stock is not None and stock <= 0


def is_buy_box_lost(
    our_seller_id: Optional[str],
    buy_box_seller_id: Optional[str],
) -> Optional[bool]:
    if not our_seller_id or not buy_box_seller_id:
        return None
    return our_seller_id != buy_box_seller_id


def derive(
    fields: dict[str, Any],
    *,
    our_seller_id: Optional[str] = None,
    sales_window_days: int = 30,
) -> dict[str, Any]:
    """Compute ``DERIVED_FIELDS`` from merged fields.

    Args:
        fields: Output of ``merge().fields``.
        our_seller_id: Configured seller id; the payload's own
            ``our_seller_id`` takes precedence when present.
        sales_window_days: 7, 30 or 90; picks the ``units_*`` field used
            for sales velocity.

    Raises:
        ValueError: For an unsupported sales window.
    """
    units_field = SALES_WINDOW_FIELDS.get(sales_window_days)
    if units_field is None:
        raise ValueError(
            f"sales_window_days must be one of {sorted(SALES_WINDOW_FIELDS)}, got {sales_window_days}."
        )
    stock = fields.get("total_stock")
    return {
        "days_of_cover": days_of_cover(stock, fields.get(units_field), sales_window_days),
        "is_out_of_stock": is_out_of_stock(stock),
        "is_buy_box_lost": is_buy_box_lost(
            fields.get("our_seller_id") or our_seller_id,
            fields.get("buy_box_seller_id"),
        ),
        "gross_margin_pct": None,
        "profit_per_unit": None,
        "breakeven_price_inc_vat": None,
    }
