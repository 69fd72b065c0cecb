"""Tests for the sliding-window rate limiter."""

from __future__ import annotations

import pytest

from hybrid_search.errors import RateLimited
from hybrid_search.ratelimit import RateLimiter

from conftest import FakeClock


def test_acquire_within_budget(clock: FakeClock) -> None:
    limiter = RateLimiter(3, window_seconds=60, clock=clock)

    limiter.acquire()
    limiter.acquire(cost=2)

    assert limiter.remaining == 0


def test_over_budget_fails_fast_with_retry_hint(clock: FakeClock) -> None:
    limiter = RateLimiter(2, window_seconds=60, clock=clock)
    limiter.acquire()
    clock.advance(15)
    limiter.acquire()

    with pytest.raises(RateLimited) as exc_info:
        limiter.acquire()

    assert exc_info.value.details["retry_after_seconds"] == 45.0


def test_window_slides(clock: FakeClock) -> None:
    limiter = RateLimiter(1, window_seconds=10, clock=clock)
    limiter.acquire()
    clock.advance(10)

    limiter.acquire()

    assert limiter.remaining == 0


def test_reset_restores_budget(clock: FakeClock) -> None:
    limiter = RateLimiter(1, clock=clock)
    limiter.acquire()

    limiter.reset()

    assert limiter.remaining == 1


def test_rejects_zero_budget() -> None:
    with pytest.raises(ValueError):
        RateLimiter(0)
