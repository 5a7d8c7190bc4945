"""
Price-history decoding and summary statistics.

The vendor encodes a price series as one flat list of alternating
``[t0, v0, t1, v1, ...]`` integers, where ``t`` is minutes since the vendor
epoch and ``v`` is a price in pence. ``-1`` means "no offer at that time";
values at or above ``PRICE_SENTINEL_CEILING`` are treated as garbage. Both are
dropped before any statistic is computed.

All statistics are computed in integer pence. Percentiles interpolate linearly
between order statistics and round to the nearest penny. Volatility is the
coefficient of variation (population stddev / mean), rounded to 4 dp, and is
0.0 when the mean is 0 — it is never NaN or infinite.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from asin_ledger.utils.time_utils import (
    DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
    vendor_minutes_to_datetime,
)

PRICE_SENTINEL_CEILING = 100_000_000


@dataclass(frozen=True)
class PriceStats:
    """Summary of a price window, in pence. All ``None`` when the window is empty."""

    median: Optional[int] = None
    p25: Optional[int] = None
    p75: Optional[int] = None
    min: Optional[int] = None
    max: Optional[int] = None
    volatility: Optional[float] = None
    sample_count: int = 0


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """Linear-interpolation percentile over an ascending sequence.

    Args:
        sorted_values: Non-empty, ascending.
        p: Percentile in [0, 100].

    Raises:
        ValueError: On an empty sequence or ``p`` outside [0, 100].
    """
    if not sorted_values:
        raise ValueError("percentile() of an empty sequence.")
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be in [0, 100], got {p}.")
    index = (p / 100) * (len(sorted_values) - 1)
    lower = math.floor(index)
    upper = math.ceil(index)
    if lower == upper:
        return sorted_values[lower]
    return sorted_values[lower] + (sorted_values[upper] - sorted_values[lower]) * (index - lower)


def coefficient_of_variation(values: Sequence[float]) -> float:
    """Population stddev / mean, 4 dp; 0.0 for an empty series or a zero mean."""
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    if mean <= 0:
        return 0.0
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return round(math.sqrt(variance) / mean, 4)


def decode_series(
    series: Optional[Sequence[int]],
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> list[tuple[datetime, int]]:
    """Decode a flat ``[t, v, t, v, ...]`` list into ``(instant, value)`` pairs.

    A dangling trailing timestamp without a value is ignored.
    """
    if not series:
        return []
    return [
        (vendor_minutes_to_datetime(int(series[i]), epoch_offset_minutes), series[i + 1])
        for i in range(0, len(series) - 1, 2)
    ]


def window_prices(
    series: Optional[Sequence[int]],
    now: datetime,
    window_days: int,
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> list[int]:
    """Valid prices (pence) captured within the trailing ``window_days``."""
    cutoff = now - timedelta(days=window_days)
    return [
        int(value)
        for when, value in decode_series(series, epoch_offset_minutes)
        if when >= cutoff and value is not None and 0 < value < PRICE_SENTINEL_CEILING
    ]


def price_stats(
    series: Optional[Sequence[int]],
    now: datetime,
    window_days: int = 90,
    epoch_offset_minutes: int = DEFAULT_VENDOR_EPOCH_OFFSET_MINUTES,
) -> PriceStats:
    """Summarize the valid prices of ``series`` inside the trailing window."""
    prices = sorted(window_prices(series, now, window_days, epoch_offset_minutes))
    if not prices:
        return PriceStats()
    return PriceStats(
        median=_round_half_up(percentile(prices, 50)),
        p25=_round_half_up(percentile(prices, 25)),
        p75=_round_half_up(percentile(prices, 75)),
        min=prices[0],
        max=prices[-1],
        volatility=coefficient_of_variation(prices),
        sample_count=len(prices),
    )


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)
