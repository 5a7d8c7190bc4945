"""
Vendor quota tracking, retry backoff, and keyed locks.

``RateLimiter`` is owned by the process (one instance shared by every
``MarketDataClient``) and updated from two places:

  - response headers ``X-Rl-RemainingTokens`` / ``X-Rl-Reset`` (seconds until
    the bucket refills), via ``record_response_headers``;
  - the ``tokensLeft`` / ``refillIn`` (ms) fields the vendor embeds in every
    JSON body, via ``record_token_status``.

A header or field that is missing or garbled leaves prior state untouched;
absence of quota information is never read as "zero tokens". With no state
observed at all, ``should_throttle()`` never throttles.

Updates are guarded by a ``threading.Lock``; the last writer wins, and quota
state a few requests stale is acceptable.

``KeyedLock`` provides non-blocking per-key mutual exclusion (one lock per
identifier, plus the cycle-level lock used by the batch runner).
"""

from __future__ import annotations

import logging
import math
import random
import threading
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from asin_ledger.utils.time_utils import utcnow

logger = logging.getLogger(__name__)

HEADER_REMAINING = "X-Rl-RemainingTokens"
HEADER_RESET = "X-Rl-Reset"


@dataclass(frozen=True)
class RateLimitState:
    """Last quota observed from the vendor; every field ``None`` until seen."""

    tokens_remaining: Optional[int] = None
    reset_time: Optional[datetime] = None
    last_updated: Optional[datetime] = None


@dataclass(frozen=True)
class ThrottleDecision:
    """Whether to wait before the next request, and for how long (seconds)."""

    throttle: bool
    wait_seconds: float = 0.0


class RateLimiter:
    """Process-wide vendor quota state plus backoff computation.

    Args:
        throttle_threshold: Throttle when fewer tokens than this remain.
        max_throttle_wait_s: Upper bound for any throttle wait.
        base_delay_s: First backoff step.
        max_delay_s: Backoff ceiling (before jitter).
        jitter_fraction: Up to this fraction of the delay is added at random.
        rng: Random source for jitter; inject a seeded one in tests.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        throttle_threshold: int = 10,
        max_throttle_wait_s: float = 60.0,
        base_delay_s: float = 1.0,
        max_delay_s: float = 30.0,
        jitter_fraction: float = 0.25,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.throttle_threshold = throttle_threshold
        self.max_throttle_wait_s = max_throttle_wait_s
        self.base_delay_s = base_delay_s
        self.max_delay_s = max_delay_s
        self.jitter_fraction = jitter_fraction
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self._state = RateLimitState()

    @classmethod
    def from_config(cls, config, **kwargs) -> "RateLimiter":
        """Build from a ``RateLimitConfig`` section."""
        return cls(
            throttle_threshold=config.throttle_threshold,
            max_throttle_wait_s=config.max_throttle_wait_s,
            base_delay_s=config.base_delay_s,
            max_delay_s=config.max_delay_s,
            jitter_fraction=config.jitter_fraction,
            **kwargs,
        )

    @property
    def state(self) -> RateLimitState:
        with self._lock:
            return self._state

    # ── State updates ─────────────────────────────────────────────────────────

    def record_response_headers(self, headers: Mapping[str, str]) -> None:
        """Update quota state from vendor response headers.

        Header lookup is case-insensitive for plain dicts as well as
        ``httpx.Headers``.
        """
        lowered = {k.lower(): v for k, v in headers.items()}
        remaining = _parse_int(lowered.get(HEADER_REMAINING.lower()))
        reset_s = _parse_float(lowered.get(HEADER_RESET.lower()))
        self._update(remaining, reset_s)

    def record_token_status(
        self,
        tokens_left: Optional[int],
        refill_in_ms: Optional[float] = None,
    ) -> None:
        """Update quota state from the ``tokensLeft`` / ``refillIn`` body fields."""
        remaining = _parse_int(tokens_left)
        refill_ms = _parse_float(refill_in_ms)
        self._update(remaining, refill_ms / 1000 if refill_ms is not None else None)

    def restore(self, state: RateLimitState) -> None:
        """Seed state from a persisted snapshot (e.g. at process start)."""
        with self._lock:
            self._state = state

    def _update(self, remaining: Optional[int], reset_in_s: Optional[float]) -> None:
        if remaining is None and reset_in_s is None:
            return
        now = self._clock()
        with self._lock:
            changes: dict = {"last_updated": now}
            if remaining is not None:
                changes["tokens_remaining"] = remaining
            if reset_in_s is not None:
                changes["reset_time"] = now + timedelta(seconds=max(reset_in_s, 0.0))
            self._state = replace(self._state, **changes)
        logger.debug("Rate limit state: remaining=%s reset_in=%s", remaining, reset_in_s)

    # ── Decisions ─────────────────────────────────────────────────────────────

    def should_throttle(self) -> ThrottleDecision:
        """Decide whether the next request must wait.

        Throttles only when ``tokens_remaining`` is known and below the
        threshold. The wait is the time until ``reset_time``, capped at
        ``max_throttle_wait_s``; with no known reset time the cap is used.
        """
        state = self.state
        if state.tokens_remaining is None:
            return ThrottleDecision(throttle=False)
        if state.tokens_remaining >= self.throttle_threshold:
            return ThrottleDecision(throttle=False)

        if state.reset_time is None:
            wait = self.max_throttle_wait_s
        else:
            wait = (state.reset_time - self._clock()).total_seconds()
            wait = min(max(wait, 0.0), self.max_throttle_wait_s)
        return ThrottleDecision(throttle=True, wait_seconds=wait)

    def compute_backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), in seconds.

        ``min(base * 2**attempt, max_delay)`` plus up to ``jitter_fraction`` of
        that value, drawn uniformly, so concurrent callers do not retry in
        lockstep.
        """
        delay = min(self.base_delay_s * (2 ** max(attempt, 0)), self.max_delay_s)
        return delay + self._rng.uniform(0.0, delay * self.jitter_fraction)


def _parse_int(value) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _parse_float(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        parsed = float(str(value).strip())
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


# ── Keyed locks ───────────────────────────────────────────────────────────────


class KeyedLock:
    """Non-blocking mutual exclusion per key.

    Single-process only. ``hold(key)`` yields ``True`` if the key was free
    (and holds it for the block), ``False`` if another task already holds it.
    Locks for released keys are dropped so the map does not grow unbounded.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._held: set[str] = set()

    def acquire(self, key: str) -> bool:
        with self._guard:
            if key in self._held:
                return False
            self._held.add(key)
            return True

    def release(self, key: str) -> None:
        with self._guard:
            self._held.discard(key)

    def is_held(self, key: str) -> bool:
        with self._guard:
            return key in self._held

    @contextmanager
    def hold(self, key: str) -> Iterator[bool]:
        acquired = self.acquire(key)
        try:
            yield acquired
        finally:
            if acquired:
                self.release(key)
