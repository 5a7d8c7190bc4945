"""
First-party marketplace data boundary (catalog, pricing, inventory, sales).

The core consumes first-party data as already-parsed objects; transport and
auth live outside it. Any object with ``get(identifier, marketplace_id)``
returning a ``FirstPartyRecord`` (or ``None``) satisfies ``FirstPartySource``.

A record carries the time the data was captured at the source. The snapshot
time is the newest capture time across sources, so an old export must not be
stamped with the time it was read.

Provided implementations:
  - ``StaticFirstPartySource``  — in-memory dict, used by tests and replays.
  - ``JsonFileFirstPartySource`` — one ``<ASIN>.json`` file per identifier in a
    directory, e.g. exports from a separate marketplace sync job. The capture
    time is the file's top-level ``captured_at`` (ISO 8601) if present, else
    the file's modification time.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from asin_ledger.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

CAPTURED_AT_KEY = "captured_at"


@dataclass(frozen=True)
class FirstPartyRecord:
    payload: dict[str, Any]
    captured_at: Optional[datetime] = None


class FirstPartySource(Protocol):
    def get(self, identifier: str, marketplace_id: int) -> Optional[FirstPartyRecord]:
        ...


class StaticFirstPartySource:
    """Serve first-party payloads from a dict keyed by identifier.

    ``captured_at`` applies to every payload. ``None`` leaves the capture time
    unknown; the batch runner then uses the market data fetch time.
    """

    def __init__(
        self,
        payloads: Optional[dict[str, dict[str, Any]]] = None,
        captured_at: Optional[datetime] = None,
    ) -> None:
        self._payloads = {k.upper(): v for k, v in (payloads or {}).items()}
        self.captured_at = ensure_utc(captured_at) if captured_at is not None else None

    def get(self, identifier: str, marketplace_id: int) -> Optional[FirstPartyRecord]:
        payload = self._payloads.get(identifier.upper())
        if payload is None:
            return None
        return FirstPartyRecord(payload=payload, captured_at=self.captured_at)


class JsonFileFirstPartySource:
    """Read ``<directory>/<ASIN>.json`` per identifier.

    A missing file means "no first-party data" and yields ``None``. A file
    that exists but does not hold a JSON object, or whose ``captured_at`` is
    not an ISO 8601 timestamp, is a configuration error and raises
    ``ValueError``.
    """

    def __init__(self, directory: str | Path) -> None:
        self.directory = Path(directory)

    def get(self, identifier: str, marketplace_id: int) -> Optional[FirstPartyRecord]:
        path = self.directory / f"{identifier.upper()}.json"
        if not path.exists():
            logger.debug("No first-party file for %s at %s.", identifier, path)
            return None
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"First-party file {path} must contain a JSON object.")

        embedded = data.pop(CAPTURED_AT_KEY, None)
        if embedded is not None:
            if not isinstance(embedded, str):
                raise ValueError(f"{path}: {CAPTURED_AT_KEY} must be an ISO 8601 string.")
            captured_at = ensure_utc(datetime.fromisoformat(embedded.replace("Z", "+00:00")))
        else:
            captured_at = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return FirstPartyRecord(payload=data, captured_at=captured_at)
