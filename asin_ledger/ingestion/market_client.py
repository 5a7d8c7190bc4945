"""
Market-data vendor client (Keepa product endpoint) — batched, rate-limited,
retrying.

Endpoint::

    GET {base_url}/product
        ?key=<api key>&domain=<marketplace domain>&asin=A,B,C
        &stats=<days>&days=<days>&offers=<n>&history=1

Response: JSON ``{"products": [...], "tokensLeft": n, "refillIn": ms, "error": {...}?}``.
Quota is also reported in ``X-Rl-RemainingTokens`` / ``X-Rl-Reset`` headers.

Retry policy (per ``fetch`` call, bounded by ``max_attempts``):
  - 429                       → wait ``Retry-After`` if given (capped at the
                                limiter's ``max_throttle_wait_s``), else backoff
  - 5xx, timeout, transport   → backoff
  - other non-2xx, bad JSON,
    or a body ``error`` field → ``VendorApiError`` immediately (no retry)
  - budget used up            → last error re-raised with ``exhausted=True``

``fetch_batched`` re-fetches a rejected chunk one identifier at a time only
for a 400 or a body error; 401/403 and other statuses fail the whole chunk.

Requests inside one client are strictly sequential. Concurrency comes from
running several clients (one per lane) that share one ``RateLimiter``.

Credential setup (.env, gitignored)::

    KEEPA_API_KEY=your_key
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Optional

import httpx

from asin_ledger.ingestion.errors import (
    BatchTooLargeError,
    VendorApiError,
    VendorRateLimitedError,
    VendorTransientError,
)
from asin_ledger.ingestion.rate_limiter import RateLimiter
from asin_ledger.utils.time_utils import ensure_utc, utcnow

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]


# ── Result types ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class FetchResponse:
    """One successful vendor call.

    Attributes:
        products: Product payloads keyed by upper-cased identifier.
        fetched_at: UTC time the response arrived.
        tokens_left: Quota reported in the body, if any.
    """

    products: dict[str, dict[str, Any]]
    fetched_at: datetime
    tokens_left: Optional[int] = None


@dataclass(frozen=True)
class FetchOutcome:
    """Per-identifier result of ``fetch_batched``: a payload or an error marker."""

    identifier: str
    payload: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    fetched_at: Optional[datetime] = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, identifier: str, exc: VendorApiError) -> "FetchOutcome":
        return cls(
            identifier=identifier,
            error=str(exc),
            error_kind=exc.kind,
            details={"status_code": exc.status_code, "exhausted": exc.exhausted},
        )


# ── Client ────────────────────────────────────────────────────────────────────

class MarketDataClient:
    """Async client for the vendor's batched product endpoint.

    Usage::

        limiter = RateLimiter.from_config(config.rate_limit)
        async with httpx.AsyncClient() as http:
            client = MarketDataClient.from_config(config, http, limiter)
            outcomes = await client.fetch_batched(["B000000001", "B000000002"])

    Args:
        http_client: Open ``httpx.AsyncClient`` (not closed by this class).
        api_key: Vendor API key.
        rate_limiter: Shared quota tracker.
        base_url: API root, without trailing slash.
        domain: Vendor marketplace domain id (2 = UK).
        batch_size: Max identifiers per request.
        stats_days: Trailing window for vendor stats and history.
        offers: Number of live offers to request.
        timeout_s: Per-HTTP-call timeout.
        max_attempts: Total tries per request, first included.
        inter_batch_delay_s: Pause between chunks in ``fetch_batched``.
        sleep: Awaitable sleep, injectable for tests.
        clock: UTC clock, injectable for tests.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        api_key: Optional[str],
        rate_limiter: RateLimiter,
        *,
        base_url: str = "https://api.keepa.com",
        domain: int = 2,
        batch_size: int = 10,
        stats_days: int = 90,
        offers: int = 20,
        timeout_s: float = 30.0,
        max_attempts: int = 3,
        inter_batch_delay_s: float = 0.5,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._http = http_client
        self.api_key = api_key
        self.rate_limiter = rate_limiter
        self.base_url = base_url.rstrip("/")
        self.domain = domain
        self.batch_size = batch_size
        self.stats_days = stats_days
        self.offers = offers
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.inter_batch_delay_s = inter_batch_delay_s
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(
        cls,
        config,
        http_client: httpx.AsyncClient,
        rate_limiter: RateLimiter,
        **kwargs,
    ) -> "MarketDataClient":
        """Build from an ``AppConfig``."""
        api = config.market_api
        return cls(
            http_client,
            api.api_key,
            rate_limiter,
            base_url=api.base_url,
            domain=api.domain,
            batch_size=api.batch_size,
            stats_days=api.stats_days,
            offers=api.offers,
            timeout_s=api.timeout_s,
            max_attempts=config.rate_limit.max_attempts,
            inter_batch_delay_s=config.ingestion.inter_batch_delay_s,
            **kwargs,
        )

    # ── Single batch ──────────────────────────────────────────────────────────

    async def fetch(self, identifiers: Sequence[str]) -> FetchResponse:
        """Fetch one batch of at most ``batch_size`` identifiers.

        Raises:
            ValueError: If ``identifiers`` is empty.
            BatchTooLargeError: If more than ``batch_size`` identifiers are given.
            VendorApiError: Non-retryable failure, or any retryable failure
                once the retry budget is spent (``exhausted=True``).
        """
        ids = list(identifiers)
        if not ids:
            raise ValueError("fetch() needs at least one identifier.")
        if len(ids) > self.batch_size:
            raise BatchTooLargeError(len(ids), self.batch_size)

        last_error: Optional[VendorApiError] = None
        for attempt in range(self.max_attempts):
            decision = self.rate_limiter.should_throttle()
            if decision.throttle:
                logger.info(
                    "Vendor quota low; throttling %.1fs before request.", decision.wait_seconds
                )
                await self._sleep(decision.wait_seconds)

            try:
                return await self._request(ids)
            except VendorApiError as exc:
                if not exc.retryable:
                    raise
                last_error = exc
                if attempt + 1 >= self.max_attempts:
                    break
                delay = self._retry_delay(exc, attempt)
                logger.warning(
                    "Vendor request failed (%s); retry %d/%d in %.2fs.",
                    exc, attempt + 1, self.max_attempts - 1, delay,
                    extra={"attempt": attempt + 1},
                )
                await self._sleep(delay)

        assert last_error is not None
        last_error.exhausted = True
        logger.error(
            "Vendor request gave up after %d attempts: %s", self.max_attempts, last_error
        )
        raise last_error

    def _retry_delay(self, exc: VendorApiError, attempt: int) -> float:
        if isinstance(exc, VendorRateLimitedError) and exc.retry_after is not None:
            return exc.retry_after
        return self.rate_limiter.compute_backoff(attempt)

    async def _request(self, ids: list[str]) -> FetchResponse:
        params = {
            "key": self.api_key or "",
            "domain": self.domain,
            "asin": ",".join(ids),
            "stats": self.stats_days,
            "days": self.stats_days,
            "offers": self.offers,
            "history": 1,
        }
        try:
            response = await self._http.get(
                f"{self.base_url}/product", params=params, timeout=self.timeout_s
            )
        except httpx.TimeoutException as exc:
            raise VendorTransientError(f"Timed out after {self.timeout_s}s") from exc
        except httpx.TransportError as exc:
            raise VendorTransientError(f"Transport error: {exc}") from exc

        fetched_at = self._clock()
        self.rate_limiter.record_response_headers(response.headers)
        status = response.status_code

        if status == 429:
            raise VendorRateLimitedError(
                "HTTP 429 Too Many Requests",
                retry_after=_parse_retry_after(
                    response.headers.get("Retry-After"),
                    fetched_at,
                    self.rate_limiter.max_throttle_wait_s,
                ),
            )
        if status >= 500:
            raise VendorTransientError(f"HTTP {status}", status_code=status)
        if not response.is_success:
            raise VendorApiError(f"HTTP {status}: {response.text[:200]}", status_code=status)

        try:
            body = response.json()
        except ValueError as exc:
            raise VendorApiError("Response body is not valid JSON", status_code=status) from exc
        if not isinstance(body, dict):
            raise VendorApiError("Response body is not a JSON object", status_code=status)

        self.rate_limiter.record_token_status(body.get("tokensLeft"), body.get("refillIn"))

        if body.get("error"):
            raise VendorApiError(f"Vendor error: {_describe_error(body['error'])}")

        products: dict[str, dict[str, Any]] = {}
        for product in body.get("products") or []:
            if isinstance(product, dict) and product.get("asin"):
                products[str(product["asin"]).upper()] = product

        logger.debug("Fetched %d/%d products.", len(products), len(ids))
        return FetchResponse(
            products=products,
            fetched_at=fetched_at,
            tokens_left=body.get("tokensLeft"),
        )

    # ── Many batches ──────────────────────────────────────────────────────────

    async def fetch_batched(
        self,
        identifiers: Sequence[str],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> dict[str, FetchOutcome]:
        """Fetch any number of identifiers, chunk by chunk, isolating failures.

        Chunks run serially with ``inter_batch_delay_s`` between them.
        ``cancel_event`` is checked before each chunk (never mid-request);
        once set, every identifier not yet fetched is marked ``cancelled``.

        Returns:
            One ``FetchOutcome`` per distinct identifier, in input order.
        """
        ids = list(dict.fromkeys(i.upper() for i in identifiers))
        chunks = [ids[i:i + self.batch_size] for i in range(0, len(ids), self.batch_size)]
        results: dict[str, FetchOutcome] = {}

        for index, chunk in enumerate(chunks):
            if cancel_event is not None and cancel_event.is_set():
                remaining = [i for c in chunks[index:] for i in c]
                logger.warning(
                    "Fetch cancelled; %d identifier(s) not fetched.", len(remaining)
                )
                for ident in remaining:
                    results[ident] = FetchOutcome(
                        identifier=ident,
                        error="Cancelled before fetch",
                        error_kind="cancelled",
                    )
                break

            if index > 0 and self.inter_batch_delay_s > 0:
                await self._sleep(self.inter_batch_delay_s)

            results.update(await self._fetch_chunk(chunk))

        return {i: results[i] for i in ids}

    async def _fetch_chunk(self, chunk: list[str]) -> dict[str, FetchOutcome]:
        try:
            response = await self.fetch(chunk)
        except VendorApiError as exc:
            # Only a 400 or a body error can be down to one identifier
            if not exc.identifier_specific or len(chunk) == 1:
                return {ident: FetchOutcome.failed(ident, exc) for ident in chunk}
            logger.warning(
                "Batch of %d rejected (%s); retrying identifiers one by one.", len(chunk), exc
            )
            isolated: dict[str, FetchOutcome] = {}
            for ident in chunk:
                isolated.update(await self._fetch_chunk([ident]))
            return isolated

        outcomes: dict[str, FetchOutcome] = {}
        for ident in chunk:
            payload = response.products.get(ident)
            if payload is None:
                outcomes[ident] = FetchOutcome(
                    identifier=ident,
                    error="Identifier not returned by vendor",
                    error_kind="not_returned",
                    fetched_at=response.fetched_at,
                )
            else:
                outcomes[ident] = FetchOutcome(
                    identifier=ident, payload=payload, fetched_at=response.fetched_at
                )
        return outcomes


def _parse_retry_after(value: Optional[str], now: datetime, cap: float) -> Optional[float]:
    """``Retry-After`` as seconds in ``[0, cap]``; accepts delta-seconds or an HTTP date.

    Unparseable or non-finite values give ``None`` so the caller falls back to
    backoff. HTTP dates without a zone are read as UTC.
    """
    if value is None:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        try:
            when = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            return None
        seconds = (ensure_utc(when) - now).total_seconds()
    if not math.isfinite(seconds):
        return None
    return min(max(seconds, 0.0), cap)


def _describe_error(error: Any) -> str:
    if isinstance(error, dict):
        return str(error.get("message") or error.get("type") or error)
    return str(error)
