"""Tests for RateLimiter quota tracking, backoff, and KeyedLock."""

from __future__ import annotations

import random
from datetime import timedelta

import pytest

from asin_ledger.config import RateLimitConfig
from asin_ledger.ingestion.rate_limiter import (
    HEADER_REMAINING,
    HEADER_RESET,
    KeyedLock,
    RateLimiter,
    RateLimitState,
)


@pytest.fixture
def limiter(fixed_now) -> RateLimiter:
    return RateLimiter(
        throttle_threshold=10,
        max_throttle_wait_s=60.0,
        base_delay_s=1.0,
        max_delay_s=30.0,
        jitter_fraction=0.25,
        rng=random.Random(42),
        clock=lambda: fixed_now,
    )


class TestShouldThrottle:
    def test_unknown_state_never_throttles(self, limiter):
        assert limiter.state.tokens_remaining is None
        assert limiter.should_throttle().throttle is False

    def test_low_tokens_throttle(self, limiter):
        limiter.record_response_headers({HEADER_REMAINING: "3", HEADER_RESET: "20"})
        decision = limiter.should_throttle()
        assert decision.throttle is True
        assert decision.wait_seconds == pytest.approx(20.0)

    def test_enough_tokens_do_not_throttle(self, limiter):
        limiter.record_response_headers({HEADER_REMAINING: "10"})
        assert limiter.should_throttle().throttle is False

    def test_wait_capped(self, limiter):
        limiter.record_response_headers({HEADER_REMAINING: "0", HEADER_RESET: "600"})
        assert limiter.should_throttle().wait_seconds == 60.0

    def test_unknown_reset_uses_cap(self, limiter):
        limiter.record_response_headers({HEADER_REMAINING: "1"})
        assert limiter.should_throttle().wait_seconds == 60.0


class TestStateUpdates:
    def test_headers_case_insensitive(self, limiter, fixed_now):
        limiter.record_response_headers({"x-rl-remainingtokens": "42", "x-rl-reset": "5"})
        state = limiter.state
        assert state.tokens_remaining == 42
        assert state.reset_time == fixed_now + timedelta(seconds=5)
        assert state.last_updated == fixed_now

    def test_garbled_headers_leave_state_untouched(self, limiter):
        limiter.record_response_headers({HEADER_REMAINING: "7"})
        limiter.record_response_headers({HEADER_REMAINING: "lots", HEADER_RESET: "soon"})
        limiter.record_response_headers({})
        assert limiter.state.tokens_remaining == 7

    def test_body_token_status(self, limiter, fixed_now):
        limiter.record_token_status(tokens_left=5, refill_in_ms=1500)
        assert limiter.state.tokens_remaining == 5
        assert limiter.state.reset_time == fixed_now + timedelta(seconds=1.5)

    def test_restore(self, limiter, fixed_now):
        limiter.restore(RateLimitState(tokens_remaining=2, last_updated=fixed_now))
        assert limiter.should_throttle().throttle is True


class TestBackoff:
    def test_exponential_with_bounded_jitter(self, limiter):
        for attempt, base in ((0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0)):
            delay = limiter.compute_backoff(attempt)
            assert base <= delay <= base * 1.25

    def test_capped_at_max_delay(self, limiter):
        delay = limiter.compute_backoff(20)
        assert 30.0 <= delay <= 37.5

    def test_no_jitter_is_deterministic(self, fixed_now):
        limiter = RateLimiter(jitter_fraction=0.0, clock=lambda: fixed_now)
        assert limiter.compute_backoff(2) == 4.0

    def test_from_config(self):
        limiter = RateLimiter.from_config(RateLimitConfig(throttle_threshold=25))
        assert limiter.throttle_threshold == 25


class TestKeyedLock:
    def test_second_acquire_fails_until_release(self):
        locks = KeyedLock()
        assert locks.acquire("B000000001")
        assert not locks.acquire("B000000001")
        assert locks.acquire("B000000002")
        locks.release("B000000001")
        assert locks.acquire("B000000001")

    def test_hold_context_manager(self):
        locks = KeyedLock()
        with locks.hold("k") as first:
            assert first is True
            with locks.hold("k") as second:
                assert second is False
            assert locks.is_held("k")
        assert not locks.is_held("k")

    def test_hold_releases_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            with locks.hold("k"):
                raise RuntimeError("boom")
        assert not locks.is_held("k")
