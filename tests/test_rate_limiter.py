"""
Unit tests for the payment attempt rate limiter.
"""

import pytest

from config import RateLimitSettings
from core.exceptions import RateLimitExceeded
from modules.rate_limiter import RateLimiter


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


# Fixtures

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return RateLimiter(RateLimitSettings(max_requests=3, window_seconds=300), clock=clock)


class TestRateLimiter:

    def test_allows_up_to_limit(self, limiter):
        assert [limiter.is_allowed("alice") for _ in range(3)] == [True, True, True]
        assert limiter.is_allowed("alice") is False

    def test_identifiers_are_independent(self, limiter):
        for _ in range(3):
            limiter.is_allowed("alice")

        assert limiter.is_allowed("bob") is True

    def test_block_lasts_a_full_window(self, limiter, clock):
        for _ in range(4):
            limiter.is_allowed("alice")

        clock.now += 299
        assert limiter.is_allowed("alice") is False

        clock.now += 2
        assert limiter.is_allowed("alice") is True

    def test_old_attempts_leave_the_window(self, limiter, clock):
        for _ in range(3):
            limiter.is_allowed("alice")

        clock.now += 301
        assert limiter.is_allowed("alice") is True

    def test_check_raises_with_retry_after(self, limiter, clock):
        for _ in range(3):
            limiter.check("alice")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check("alice")

        assert exc_info.value.retry_after_seconds == pytest.approx(300)
        assert exc_info.value.http_status == 429

    def test_reset(self, limiter):
        for _ in range(4):
            limiter.is_allowed("alice")

        limiter.reset("alice")

        assert limiter.is_allowed("alice") is True

    def test_cleanup_drops_lifted_blocks(self, limiter, clock):
        for _ in range(4):
            limiter.is_allowed("alice")
        limiter.is_allowed("bob")

        clock.now += 301

        assert limiter.cleanup() == 2
        assert len(limiter) == 0
        assert limiter.remaining_seconds("alice") == 0.0

    def test_cleanup_keeps_active_users(self, limiter, clock):
        limiter.is_allowed("alice")
        clock.now += 200
        limiter.is_allowed("bob")

        clock.now += 150

        assert limiter.cleanup() == 1
        assert len(limiter) == 1

    def test_idle_users_are_pruned_while_serving(self, limiter, clock):
        for user in ("alice", "bob", "carol"):
            limiter.is_allowed(user)

        clock.now += 301
        limiter.is_allowed("dave")

        assert len(limiter) == 1
