"""
Raw payload model — vendor responses exactly as received.

A ``RawPayload`` is immutable once stored; it exists for audit and replay.
One row per (asin, marketplace, source, ingestion job).
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator


class PayloadSource(StrEnum):
    """Where a raw payload came from."""

    KEEPA = "keepa"
    """Third-party market-intelligence API (price/rank/offer history)."""

    SP_API = "sp_api"
    """First-party marketplace data (catalog, pricing, inventory, sales)."""


class RawPayload(BaseModel):
    """One vendor payload for one identifier.

    Attributes:
        raw_payload_id: Auto-assigned DB PK; ``None`` before insertion.
        asin: Product identifier.
        marketplace_id: Internal marketplace number (1 = UK).
        source: Which system produced the payload.
        ingestion_job_id: Job that captured it, or ``None`` for ad-hoc replays.
        payload: Parsed JSON body for this identifier; ``None`` when the
            source had nothing for it.
        captured_at: UTC instant the payload was fetched from the source.
    """

    model_config = ConfigDict(frozen=True)

    raw_payload_id: Optional[int] = None
    asin: str
    marketplace_id: int
    source: PayloadSource
    ingestion_job_id: Optional[int] = None
    payload: Optional[dict[str, Any]] = None
    captured_at: datetime

    @field_validator("asin")
    @classmethod
    def normalize_asin(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("asin must be a non-empty string.")
        return v
