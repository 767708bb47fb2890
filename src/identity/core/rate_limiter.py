"""Blocking sliding-window rate limiter for outbound directory API calls.

The limiter keeps the timestamps of admitted calls from the trailing 60
seconds. When the window is full the caller sleeps until the oldest call
leaves the window, then is admitted. Sleeping happens under the limiter's
lock, so concurrent callers queue behind the sleeper instead of racing past
it. Admission is synchronous backpressure, not probabilistic.

Explicit server-side rate limit signals (HTTP 429, ``error=rate_limited``) are
handled separately: ``backoff_delay`` turns the server's Retry-After into
the wait that the HTTP client's tenacity retry sleeps through ``sleep``.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable

import structlog

from src.identity.core.monitoring import rate_limit_waits_total

logger = structlog.get_logger(__name__)


class RateLimiter:
    """Admit at most ``max_requests_per_minute`` calls in any 60s window.

    Args:
        max_requests_per_minute: Window capacity (Slack tier 3 allows ~50/min).
        clock: Monotonic time source.
        sleep: Blocking sleep function. Tests inject a fake that advances
            the fake clock.
        service: Label used in logs and metrics.
        default_retry_after: Backoff used when a 429 carries no Retry-After.
    """

    WINDOW_SECONDS = 60.0

    def __init__(
        self,
        max_requests_per_minute: int = 50,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        service: str = "slack",
        default_retry_after: float = 60.0,
    ) -> None:
        if max_requests_per_minute < 1:
            raise ValueError("max_requests_per_minute must be at least 1")
        self._max = max_requests_per_minute
        self._clock = clock
        self._sleep = sleep
        self._service = service
        self._default_retry_after = default_retry_after
        self._window: deque[float] = deque()
        self._lock = threading.Lock()

    @property
    def max_requests_per_minute(self) -> int:
        return self._max

    def _prune(self, now: float) -> None:
        while self._window and now - self._window[0] >= self.WINDOW_SECONDS:
            self._window.popleft()

    def throttle(self) -> None:
        """Block until one more call fits in the window, then record it."""
        with self._lock:
            now = self._clock()
            self._prune(now)

            while len(self._window) >= self._max:
                sleep_time = self.WINDOW_SECONDS - (now - self._window[0])
                if sleep_time > 0:
                    logger.info(
                        "rate_limiter.window_full",
                        service=self._service,
                        sleep_seconds=round(sleep_time, 3),
                        in_window=len(self._window),
                    )
                    rate_limit_waits_total.labels(service=self._service, reason="window").inc()
                    self._sleep(sleep_time)
                # The oldest call has now aged out of the window
                self._window.popleft()
                now = self._clock()
                self._prune(now)

            self._window.append(now)

    def backoff_delay(self, retry_after: float | None) -> float:
        """Seconds to back off after an explicit rate limit response.

        Uses the server-provided Retry-After, or the default (60s) when it
        is missing or not positive.
        """
        delay = retry_after if retry_after and retry_after > 0 else self._default_retry_after
        logger.warning(
            "rate_limiter.server_rate_limited",
            service=self._service,
            retry_after=delay,
        )
        rate_limit_waits_total.labels(service=self._service, reason="retry_after").inc()
        return delay

    def sleep(self, seconds: float) -> None:
        self._sleep(seconds)

    def in_window(self) -> int:
        """Number of calls currently counted in the trailing window."""
        with self._lock:
            self._prune(self._clock())
            return len(self._window)

    def reset(self) -> None:
        with self._lock:
            self._window.clear()
