#!/usr/bin/env python3
"""
Utility classes and functions for the feed ingestion pipeline.

This module contains the shared admission control used by the fetcher
(rate limiter / circuit breaker), the backoff calculation for per-attempt
retries and the text cleaning helpers used by the normalizer and validator.
"""

from asyncio import sleep as asyncio_sleep
from collections import deque
import random
import re
from time import monotonic
from typing import Callable, Optional

from bs4 import BeautifulSoup

# Import config to use unified logging
from config import get_logger

# Module-specific logger
logger = get_logger("utils")


class LimiterState:
    """Admission states reported by RateLimiter.state."""

    OPEN = "open"
    SATURATED = "saturated"
    PAUSED = "paused"


def calculate_backoff_delay(attempt: int, base_delay: float, max_delay: float,
                            jitter: float = 0.1, rng: Callable[[], float] = random.random) -> float:
    """Calculate the delay for a given retry attempt.

    Args:
        attempt: The current attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Cap applied before jitter is added
        jitter: Fraction of the capped delay added as random jitter
        rng: Source of uniform values in [0, 1)

    Returns:
        min(base * 2^attempt, max) plus up to `jitter` of that value
    """
    delay = min(base_delay * (2 ** max(0, attempt)), max_delay)
    return delay + delay * jitter * rng()


class RateLimiter:
    """Sliding-window admission control with a consecutive-failure breaker.

    One instance is shared by every feed in a run. Access is single-threaded
    (feeds are processed sequentially), so there is no internal locking.

    The clock and the sleep primitive are injectable so tests can drive the
    breaker without real time passing.
    """

    def __init__(self, requests_per_minute: int = 10, max_consecutive_failures: int = 5,
                 pause_duration: float = 60.0, window: float = 60.0,
                 clock: Callable[[], float] = monotonic, sleep=asyncio_sleep):
        """Initialize the rate limiter.

        Args:
            requests_per_minute: Maximum requests allowed inside the sliding window.
                                 If 0 or negative, the window never saturates.
            max_consecutive_failures: Failures in a row that trip the breaker
            pause_duration: Seconds all requests are refused once tripped
            window: Sliding window length in seconds
        """
        self.requests_per_minute = requests_per_minute
        self.max_consecutive_failures = max_consecutive_failures
        self.pause_duration = pause_duration
        self.window = window
        self._clock = clock
        self._sleep = sleep
        self._requests = deque()
        self.consecutive_failures = 0
        self.paused_until: Optional[float] = None

    def _prune(self, now: float):
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()

    def _expire_pause(self, now: float):
        if self.paused_until is not None and now >= self.paused_until:
            logger.info("Rate limiter pause expired, resuming requests")
            self.paused_until = None
            self.consecutive_failures = 0

    @property
    def state(self) -> str:
        now = self._clock()
        self._expire_pause(now)
        if self.paused_until is not None:
            return LimiterState.PAUSED
        self._prune(now)
        if self.requests_per_minute > 0 and len(self._requests) >= self.requests_per_minute:
            return LimiterState.SATURATED
        return LimiterState.OPEN

    def can_make_request(self) -> bool:
        """Return True when a request may be dispatched right now."""
        return self.state == LimiterState.OPEN

    def record_request(self):
        """Record a dispatched request. Call before every attempt."""
        self._requests.append(self._clock())

    def record_success(self):
        self.consecutive_failures = 0

    def record_failure(self):
        """Count a failed attempt, tripping the breaker at the threshold."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.max_consecutive_failures and self.paused_until is None:
            self.paused_until = self._clock() + self.pause_duration
            logger.warning(
                f"Rate limiter paused for {self.pause_duration:.0f}s after "
                f"{self.consecutive_failures} consecutive failures"
            )

    def reset(self):
        self._requests.clear()
        self.consecutive_failures = 0
        self.paused_until = None

    async def exponential_backoff(self, attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
        """Sleep for the backoff delay of the given attempt and return it.

        Args:
            attempt: The current attempt number (0-based)
        """
        delay = calculate_backoff_delay(attempt, base_delay, max_delay)
        logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
        await self._sleep(delay)
        return delay

    def get_status(self) -> dict:
        now = self._clock()
        self._prune(now)
        return {
            "state": self.state,
            "requests_in_window": len(self._requests),
            "consecutive_failures": self.consecutive_failures,
            "paused_for": max(0.0, self.paused_until - now) if self.paused_until is not None else 0.0,
        }


_WHITESPACE = re.compile(r'\s+')


def clean_text(value: Optional[str]) -> str:
    """Strip markup and entities from a fragment and collapse whitespace."""
    if not value:
        return ""
    text = str(value)
    if '<' in text or '&' in text:
        try:
            text = BeautifulSoup(text, 'html.parser').get_text(' ')
        except Exception as e:
            logger.debug(f"Falling back to raw text after markup parse failure: {e}")
    return _WHITESPACE.sub(' ', text).strip()


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string (e.g. "1h 23m 45s")."""
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")

    return " ".join(parts)
