"""
Change-detection fingerprint over a curated subset of snapshot fields.

Only fields that matter to downstream consumers are hashed, so metadata churn
(capture time, job id, title whitespace) does not register as a change.
Money is hashed as integer pence and the marketplace as its short code, so
representation differences (``24.9`` vs ``Decimal("24.90")``) hash alike.

Hash: SHA-256 over ``json.dumps(sort_keys=True)``, hence independent of dict
ordering.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from collections.abc import Mapping
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

MARKETPLACE_CODES: dict[int, str] = {1: "UK", 2: "DE", 3: "FR", 4: "IT", 5: "ES", 6: "US"}

FINGERPRINT_FIELDS: tuple[str, ...] = (
    "asin",
    "marketplace",
    "price_inc_vat_pence",
    "total_stock",
    "buy_box_seller_id",
    "keepa_price_p25_90d_pence",
    "seller_count",
)


def marketplace_code(marketplace_id: int) -> str:
    return MARKETPLACE_CODES.get(marketplace_id, f"MARKETPLACE_{marketplace_id}")


def to_pence(value: Any) -> Optional[int]:
    if value is None:
        return None
    dec = value if isinstance(value, Decimal) else Decimal(str(value))
    return int((dec * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def curated_fields(asin: str, marketplace_id: int, fields: Mapping[str, Any]) -> dict[str, Any]:
    """Project a merged record onto ``FINGERPRINT_FIELDS``."""
    return {
        "asin": asin,
        "marketplace": marketplace_code(marketplace_id),
        "price_inc_vat_pence": to_pence(fields.get("price_inc_vat")),
        "total_stock": fields.get("total_stock"),
        "buy_box_seller_id": fields.get("buy_box_seller_id"),
        "keepa_price_p25_90d_pence": to_pence(fields.get("keepa_price_p25_90d")),
        "seller_count": fields.get("seller_count"),
    }


def generate_fingerprint(curated: Mapping[str, Any]) -> str:
    """SHA-256 hex digest of ``curated`` serialized with sorted keys."""
    canonical = json.dumps(dict(curated), sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def fingerprint_record(asin: str, marketplace_id: int, fields: Mapping[str, Any]) -> str:
    return generate_fingerprint(curated_fields(asin, marketplace_id, fields))


def verify_fingerprint(curated: Mapping[str, Any], expected_hash: str) -> bool:
    return hmac.compare_digest(generate_fingerprint(curated), expected_hash)


def has_changed(previous_hash: Optional[str], current_hash: str) -> bool:
    """``True`` when there is no previous hash or it differs."""
    return previous_hash is None or previous_hash != current_hash
