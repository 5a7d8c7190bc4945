"""
Tests for MarketDataClient — batching, retry policy, failure isolation.

HTTP is mocked with ``httpx.MockTransport``; sleeps are recorded instead of
awaited so the retry schedule can be asserted without wall-clock delay.
"""

from __future__ import annotations

import asyncio
import logging
import random

import httpx
import pytest

from asin_ledger.ingestion.errors import BatchTooLargeError, VendorApiError
from asin_ledger.ingestion.market_client import MarketDataClient
from asin_ledger.ingestion.rate_limiter import HEADER_REMAINING, RateLimiter


# ── Helpers ───────────────────────────────────────────────────────────────────

class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _products_response(request: httpx.Request, **extra) -> httpx.Response:
    asins = request.url.params["asin"].split(",")
    body = {"products": [{"asin": a, "title": f"Item {a}"} for a in asins], "tokensLeft": 100}
    body.update(extra)
    return httpx.Response(200, json=body)


def _run(handler, fixed_now, *, batch_size=10, max_attempts=3, limiter=None, **call):
    sleep = RecordingSleep()
    limiter = limiter or RateLimiter(rng=random.Random(0), jitter_fraction=0.0, clock=lambda: fixed_now)

    async def go():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = MarketDataClient(
                http, "test-key", limiter,
                batch_size=batch_size,
                max_attempts=max_attempts,
                inter_batch_delay_s=0.5,
                sleep=sleep,
                clock=lambda: fixed_now,
            )
            method = call.pop("method")
            return await getattr(client, method)(**call)

    return asyncio.run(go()), sleep, limiter


# ── fetch() ───────────────────────────────────────────────────────────────────

class TestFetch:
    def test_request_parameters(self, fixed_now):
        seen: list[httpx.Request] = []

        def handler(request):
            seen.append(request)
            return _products_response(request)

        response, _, _ = _run(handler, fixed_now, method="fetch", identifiers=["B000000001", "B000000002"])
        params = seen[0].url.params
        assert seen[0].url.path == "/product"
        assert params["key"] == "test-key"
        assert params["asin"] == "B000000001,B000000002"
        assert params["domain"] == "2"
        assert params["stats"] == "90"
        assert params["history"] == "1"
        assert set(response.products) == {"B000000001", "B000000002"}
        assert response.fetched_at == fixed_now

    def test_empty_list_rejected(self, fixed_now):
        with pytest.raises(ValueError):
            _run(lambda r: _products_response(r), fixed_now, method="fetch", identifiers=[])

    def test_batch_too_large_before_any_io(self, fixed_now):
        calls = []

        def handler(request):
            calls.append(request)
            return _products_response(request)

        with pytest.raises(BatchTooLargeError):
            _run(handler, fixed_now, batch_size=2, method="fetch",
                 identifiers=["B000000001", "B000000002", "B000000003"])
        assert calls == []

    def test_429_honours_retry_after(self, fixed_now):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(429, headers={"Retry-After": "7"})
            return _products_response(request)

        response, sleep, _ = _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])
        assert "B000000001" in response.products
        assert sleep.calls == [7.0]

    @pytest.mark.parametrize(
        "retry_after, expected",
        [
            ("inf", [1.0]),
            ("nan", [1.0]),
            ("86400", [60.0]),
            ("-5", [0.0]),
            ("Sat, 01 Jun 2024 12:00:20 -0000", [20.0]),
            ("Sat, 01 Jun 2024 12:00:30 GMT", [30.0]),
            ("Sun, 02 Jun 2024 12:00:00 GMT", [60.0]),
        ],
    )
    def test_retry_after_sanitized(self, fixed_now, retry_after, expected):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] == 1:
                return httpx.Response(429, headers={"Retry-After": retry_after})
            return _products_response(request)

        _, sleep, _ = _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])
        assert sleep.calls == expected

    def test_5xx_retried_with_backoff(self, fixed_now):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            if attempts["n"] < 3:
                return httpx.Response(503)
            return _products_response(request)

        _, sleep, _ = _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])
        assert sleep.calls == [1.0, 2.0]

    def test_retry_warning_carries_attempt(self, fixed_now, caplog):
        def handler(request):
            return httpx.Response(503)

        with caplog.at_level(logging.WARNING, logger="asin_ledger.ingestion.market_client"):
            with pytest.raises(VendorApiError):
                _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])
        retries = [r for r in caplog.records if r.getMessage().startswith("Vendor request failed")]
        assert [r.attempt for r in retries] == [1, 2]

    def test_transport_error_retried_then_exhausted(self, fixed_now):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(VendorApiError) as exc_info:
            _run(handler, fixed_now, max_attempts=2, method="fetch", identifiers=["B000000001"])
        assert exc_info.value.exhausted is True
        assert exc_info.value.retryable is True

    def test_4xx_not_retried(self, fixed_now):
        attempts = {"n": 0}

        def handler(request):
            attempts["n"] += 1
            return httpx.Response(400, text="bad request")

        with pytest.raises(VendorApiError) as exc_info:
            _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])
        assert attempts["n"] == 1
        assert exc_info.value.status_code == 400
        assert exc_info.value.exhausted is False

    def test_body_error_not_retried(self, fixed_now):
        def handler(request):
            return httpx.Response(200, json={"error": {"message": "invalid key"}})

        with pytest.raises(VendorApiError, match="invalid key"):
            _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])

    def test_invalid_json_not_retried(self, fixed_now):
        def handler(request):
            return httpx.Response(200, content=b"not json")

        with pytest.raises(VendorApiError):
            _run(handler, fixed_now, method="fetch", identifiers=["B000000001"])

    def test_quota_recorded_and_throttles(self, fixed_now):
        def handler(request):
            return httpx.Response(
                200,
                headers={HEADER_REMAINING: "2"},
                json={"products": [{"asin": "B000000001"}], "tokensLeft": 2, "refillIn": 5000},
            )

        limiter = RateLimiter(jitter_fraction=0.0, clock=lambda: fixed_now)
        _, sleep, limiter = _run(
            handler, fixed_now, limiter=limiter, method="fetch_batched",
            identifiers=["B000000001", "B000000002"], cancel_event=None,
        )
        assert limiter.state.tokens_remaining == 2
        assert sleep.calls == []

        _, sleep, _ = _run(handler, fixed_now, limiter=limiter, method="fetch", identifiers=["B000000001"])
        assert sleep.calls == [5.0]


# ── fetch_batched() ───────────────────────────────────────────────────────────

class TestFetchBatched:
    def test_chunks_dedupes_and_delays(self, fixed_now):
        batches: list[str] = []

        def handler(request):
            batches.append(request.url.params["asin"])
            return _products_response(request)

        ids = ["b000000001", "B000000002", "B000000001", "B000000003"]
        outcomes, sleep, _ = _run(
            handler, fixed_now, batch_size=2, method="fetch_batched", identifiers=ids,
        )
        assert batches == ["B000000001,B000000002", "B000000003"]
        assert list(outcomes) == ["B000000001", "B000000002", "B000000003"]
        assert all(o.ok for o in outcomes.values())
        assert sleep.calls == [0.5]

    def test_missing_identifier_marked_not_returned(self, fixed_now):
        def handler(request):
            return httpx.Response(200, json={"products": [{"asin": "B000000001"}]})

        outcomes, _, _ = _run(
            handler, fixed_now, method="fetch_batched", identifiers=["B000000001", "B000000002"],
        )
        assert outcomes["B000000001"].ok
        assert outcomes["B000000002"].error_kind == "not_returned"

    def test_bad_identifier_isolated_from_batch_mates(self, fixed_now):
        def handler(request):
            if "B00000000X" in request.url.params["asin"].split(","):
                return httpx.Response(400, text="invalid asin")
            return _products_response(request)

        outcomes, _, _ = _run(
            handler, fixed_now, method="fetch_batched",
            identifiers=["B000000001", "B00000000X", "B000000002"],
        )
        assert outcomes["B000000001"].ok
        assert outcomes["B000000002"].ok
        assert not outcomes["B00000000X"].ok
        assert outcomes["B00000000X"].error_kind == "vendor_error"

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_not_split_per_identifier(self, fixed_now, status):
        calls = []

        def handler(request):
            calls.append(request.url.params["asin"])
            return httpx.Response(status, text="forbidden")

        outcomes, _, _ = _run(
            handler, fixed_now, method="fetch_batched",
            identifiers=["B000000001", "B000000002", "B000000003"],
        )
        assert calls == ["B000000001,B000000002,B000000003"]
        assert {o.error_kind for o in outcomes.values()} == {"vendor_error"}
        assert {o.details["status_code"] for o in outcomes.values()} == {status}

    def test_body_error_split_per_identifier(self, fixed_now):
        def handler(request):
            if "B00000000X" in request.url.params["asin"].split(","):
                return httpx.Response(200, json={"error": {"message": "invalid asin"}})
            return _products_response(request)

        outcomes, _, _ = _run(
            handler, fixed_now, method="fetch_batched", identifiers=["B000000001", "B00000000X"],
        )
        assert outcomes["B000000001"].ok
        assert outcomes["B00000000X"].error_kind == "vendor_error"

    def test_exhausted_retries_mark_whole_chunk(self, fixed_now):
        def handler(request):
            return httpx.Response(500)

        outcomes, _, _ = _run(
            handler, fixed_now, max_attempts=2, method="fetch_batched",
            identifiers=["B000000001", "B000000002"],
        )
        assert {o.error_kind for o in outcomes.values()} == {"retries_exhausted"}

    def test_cancellation_between_chunks(self, fixed_now):
        cancel = asyncio.Event()
        calls = []

        def handler(request):
            calls.append(request)
            cancel.set()
            return _products_response(request)

        outcomes, _, _ = _run(
            handler, fixed_now, batch_size=1, method="fetch_batched",
            identifiers=["B000000001", "B000000002", "B000000003"], cancel_event=cancel,
        )
        assert len(calls) == 1
        assert outcomes["B000000001"].ok
        assert outcomes["B000000002"].error_kind == "cancelled"
        assert outcomes["B000000003"].error_kind == "cancelled"
