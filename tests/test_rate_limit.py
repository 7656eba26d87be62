import asyncio

import pytest

from gateway_app.errors import RateLimited
from gateway_app.rate_limit import RateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def test_rpm_allows_limit_then_rejects_next_request() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)

    for _ in range(3):
        limiter.check_rpm(1, 3)

    with pytest.raises(RateLimited) as exc_info:
        limiter.check_rpm(1, 3)

    assert exc_info.value.status_code == 429
    assert exc_info.value.message == "Rate limit exceeded: 3 requests per minute"
    assert limiter.request_count(1) == 3


def test_rpm_window_slides_after_sixty_seconds() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check_rpm(1, 2)
    clock.advance(30)
    limiter.check_rpm(1, 2)

    clock.advance(31)
    limiter.check_rpm(1, 2)

    with pytest.raises(RateLimited):
        limiter.check_rpm(1, 2)


def test_rpm_is_tracked_per_key() -> None:
    limiter = RateLimiter(clock=FakeClock())
    limiter.check_rpm(1, 1)

    limiter.check_rpm(2, 1)

    with pytest.raises(RateLimited):
        limiter.check_rpm(1, 1)


def test_non_positive_rpm_means_unlimited() -> None:
    limiter = RateLimiter(clock=FakeClock())

    for _ in range(500):
        limiter.check_rpm(1, 0)

    assert limiter.request_count(1) == 0


def test_tpm_blocks_once_recorded_tokens_reach_limit() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check_tpm(1, 1000)
    limiter.record_tokens(1, 600)
    limiter.check_tpm(1, 1000)
    limiter.record_tokens(1, 400)

    with pytest.raises(RateLimited) as exc_info:
        limiter.check_tpm(1, 1000)
    assert exc_info.value.message == "Token rate limit exceeded: 1000 tokens per minute"

    clock.advance(61)
    limiter.check_tpm(1, 1000)
    assert limiter.tokens_in_window(1) == 0


def test_sweep_drops_idle_windows() -> None:
    clock = FakeClock()
    limiter = RateLimiter(clock=clock)
    limiter.check_rpm(1, 10)
    limiter.record_tokens(2, 50)
    assert limiter.tracked_keys == 2

    clock.advance(10)
    assert limiter.sweep() == 0

    clock.advance(60)
    assert limiter.sweep() == 2
    assert limiter.tracked_keys == 0


@pytest.mark.asyncio
async def test_sweeper_task_starts_and_stops() -> None:
    limiter = RateLimiter()
    limiter.start_sweeper(0.01)
    limiter.check_rpm(7, 5)

    await asyncio.sleep(0.05)
    await limiter.stop_sweeper()

    assert limiter.request_count(7) == 1
