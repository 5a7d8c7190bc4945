"""
Source merge under a declarative per-field precedence table.

``FIELD_PRECEDENCE`` is the single place that decides which source wins for
each field: our own listing data (price, stock, sales) comes from the
first-party source; competitive/market data (buy box, offers, price history)
comes from the third-party source; identity fields prefer first-party and
fall back to third-party. For every field the first source in its tuple that
has a non-``None`` value wins.

The table is data so it can be audited and tested field by field; do not add
per-field conditionals to ``merge``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from asin_ledger.models.payload import PayloadSource
from asin_ledger.transform.flatten import FlattenedRecord

_SP = PayloadSource.SP_API
_KEEPA = PayloadSource.KEEPA

FIELD_PRECEDENCE: dict[str, tuple[PayloadSource, ...]] = {
    # Identity
    "title":                      (_SP, _KEEPA),
    "brand":                      (_SP, _KEEPA),
    "category_path":              (_KEEPA,),
    # Our listing
    "price_inc_vat":              (_SP,),
    "price_ex_vat":               (_SP,),
    "list_price":                 (_SP,),
    "our_seller_id":              (_SP,),
    "total_stock":                (_SP,),
    "fulfillment_channel":        (_SP,),
    "units_7d":                   (_SP,),
    "units_30d":                  (_SP,),
    "units_90d":                  (_SP,),
    # Market
    "buy_box_price":              (_KEEPA,),
    "buy_box_seller_id":          (_KEEPA,),
    "seller_count":               (_KEEPA,),
    "offer_count_new":            (_KEEPA,),
    "offer_count_used":           (_KEEPA,),
    "keepa_sales_rank_latest":    (_KEEPA,),
    "keepa_price_median_90d":     (_KEEPA,),
    "keepa_price_p25_90d":        (_KEEPA,),
    "keepa_price_p75_90d":        (_KEEPA,),
    "keepa_price_min_90d":        (_KEEPA,),
    "keepa_price_max_90d":        (_KEEPA,),
    "keepa_price_volatility_90d": (_KEEPA,),
    "keepa_last_update":          (_KEEPA,),
}


@dataclass(frozen=True)
class MergedRecord:
    """Merged fields plus which source supplied each one.

    Attributes:
        fields: Every key of ``FIELD_PRECEDENCE``; ``None`` where no source
            had a value.
        field_sources: Field → winning source, or ``None``.
        sources_with_data: Sources whose flattener saw a real payload.
    """

    fields: dict[str, Any] = field(default_factory=dict)
    field_sources: dict[str, Optional[PayloadSource]] = field(default_factory=dict)
    sources_with_data: frozenset[PayloadSource] = frozenset()

    def has_data(self, source: PayloadSource) -> bool:
        return source in self.sources_with_data


def merge(*records: FlattenedRecord) -> MergedRecord:
    """Combine flattened records using ``FIELD_PRECEDENCE``.

    Raises:
        ValueError: If two records come from the same source.
    """
    by_source: dict[PayloadSource, FlattenedRecord] = {}
    for record in records:
        if record.source in by_source:
            raise ValueError(f"Duplicate flattened record for source '{record.source}'.")
        by_source[record.source] = record

    fields: dict[str, Any] = {}
    field_sources: dict[str, Optional[PayloadSource]] = {}
    for name, priority in FIELD_PRECEDENCE.items():
        fields[name] = None
        field_sources[name] = None
        for source in priority:
            record = by_source.get(source)
            if record is None:
                continue
            value = record.fields.get(name)
            if value is not None:
                fields[name] = value
                field_sources[name] = source
                break

    return MergedRecord(
        fields=fields,
        field_sources=field_sources,
        sources_with_data=frozenset(s for s, r in by_source.items() if r.has_data),
    )
