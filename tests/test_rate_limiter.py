import pytest

from utils import LimiterState, RateLimiter, calculate_backoff_delay, clean_text, truncate_string, format_duration


def make_limiter(clock, **kwargs):
    params = {"requests_per_minute": 1000, "max_consecutive_failures": 3, "pause_duration": 60}
    params.update(kwargs)
    return RateLimiter(clock=clock, **params)


def test_breaker_trips_at_threshold_and_refuses_until_pause_ends(fake_clock):
    limiter = make_limiter(fake_clock)

    for _ in range(2):
        limiter.record_request()
        limiter.record_failure()
    assert limiter.can_make_request()

    limiter.record_request()
    limiter.record_failure()
    assert limiter.state == LimiterState.PAUSED
    assert not limiter.can_make_request()

    fake_clock.advance(59)
    assert not limiter.can_make_request()

    fake_clock.advance(1)
    assert limiter.can_make_request()
    assert limiter.consecutive_failures == 0


def test_success_resets_failure_streak(fake_clock):
    limiter = make_limiter(fake_clock)

    limiter.record_failure()
    limiter.record_failure()
    limiter.record_success()
    limiter.record_failure()
    limiter.record_failure()

    assert limiter.state == LimiterState.OPEN


def test_sliding_window_saturates_and_recovers(fake_clock):
    limiter = make_limiter(fake_clock, requests_per_minute=2)

    limiter.record_request()
    fake_clock.advance(10)
    limiter.record_request()
    assert limiter.state == LimiterState.SATURATED

    fake_clock.advance(50)
    assert limiter.state == LimiterState.OPEN
    assert limiter.get_status()["requests_in_window"] == 1


def test_reset_clears_pause(fake_clock):
    limiter = make_limiter(fake_clock, max_consecutive_failures=1)
    limiter.record_failure()
    assert not limiter.can_make_request()

    limiter.reset()

    assert limiter.can_make_request()


def test_backoff_increases_and_caps():
    delays = [calculate_backoff_delay(n, 1.0, 30.0, rng=lambda: 0.0) for n in range(7)]

    assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_backoff_jitter_bounded():
    assert calculate_backoff_delay(2, 1.0, 30.0, jitter=0.1, rng=lambda: 0.999) == pytest.approx(4.3996)


@pytest.mark.asyncio
async def test_exponential_backoff_sleeps_for_delay(fake_clock):
    slept = []

    async def fake_sleep(seconds):
        slept.append(seconds)

    limiter = RateLimiter(clock=fake_clock, sleep=fake_sleep)
    delay = await limiter.exponential_backoff(3, base_delay=0.5, max_delay=10)

    assert slept == [delay]
    assert 4.0 <= delay <= 4.4


def test_text_helpers():
    assert clean_text("<p>Hello&nbsp;&amp;\n  world</p>") == "Hello & world"
    assert truncate_string("abcdefghij", 6) == "abc..."
    assert truncate_string("short", 10) == "short"
    assert format_duration(3725) == "1h 2m 5s"
