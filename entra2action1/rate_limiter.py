"""
================================================================================
Adaptive Rate Limiter with Exponential Backoff and Jitter
================================================================================

Both Microsoft Graph and the Action1 API throttle clients with 429 responses.
The sync walks every device's group memberships, so one run can issue
thousands of Graph requests. This limiter paces requests so the run slows
down when the API pushes back and speeds up again when it stops.

Algorithm:
----------
1. WAIT: Sleep until current_interval has passed since the previous request
2. ON SUCCESS: After N consecutive successes, shrink the interval
3. ON 429 (Rate Limit): Grow the interval by backoff_factor (or honour the
   server's Retry-After) and hold the next request until the cooldown ends
4. ON OTHER ERROR: Moderate backoff (1.5x)

The connector runs requests strictly one at a time, so no locking is needed.

Usage:
------
    limiter = AdaptiveRateLimiter(name="Graph", base_interval=0.1)

    limiter.wait()
    response = requests.get(url)

    if response.status_code == 429:
        limiter.on_rate_limit(response.headers.get("Retry-After"))
    elif response.ok:
        limiter.on_success()
    else:
        limiter.on_error()
"""

import random
import time
from typing import Optional, Union

from .logger import get_logger

logger = get_logger("entra2action1.rate_limiter")


class AdaptiveRateLimiter:
    """
    Adaptive rate limiter with exponential backoff for API requests.

    Tracks the delay between requests and adjusts it from success/failure
    patterns, between min_interval and max_interval.
    """

    def __init__(
        self,
        name: str = "API",
        base_interval: float = 0.2,       # Starting interval in seconds
        min_interval: float = 0.05,       # Fastest allowed
        max_interval: float = 60.0,       # Slowest allowed
        backoff_factor: float = 2.0,      # 2x slower on rate limit
        speedup_factor: float = 0.9,      # 10% faster after success streak
        success_streak_to_speedup: int = 5,
    ):
        self.name = name
        self.base_interval = base_interval
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.backoff_factor = backoff_factor
        self.speedup_factor = speedup_factor
        self.success_streak_to_speedup = success_streak_to_speedup

        self._current_interval = base_interval
        self._next_allowed_time: float = 0.0        # Earliest time next request may fire
        self._consecutive_successes: int = 0
        self._total_requests: int = 0
        self._total_successes: int = 0
        self._total_rate_limits: int = 0

    @property
    def current_interval(self) -> float:
        return self._current_interval

    @property
    def stats(self) -> dict:
        """Counters for the end-of-run debug log."""
        return {
            "total_requests": self._total_requests,
            "total_successes": self._total_successes,
            "rate_limits_hit": self._total_rate_limits,
            "current_interval": round(self._current_interval, 3),
        }

    # =========================================================================
    # CORE METHODS - Called before/after each API request
    # =========================================================================

    def wait(self):
        """
        Sleep until the next request is allowed, then reserve the following slot.

        A ±10% jitter keeps retries from lining up with the API's window edges.
        """
        now = time.monotonic()
        sleep_time = self._next_allowed_time - now
        if sleep_time > 0:
            sleep_time = max(0.0, sleep_time + sleep_time * random.uniform(-0.1, 0.1))
            if sleep_time > 1.0:
                logger.debug(f"[{self.name}] Rate limiting: waiting {sleep_time:.1f}s")
            time.sleep(sleep_time)
            now = time.monotonic()

        self._next_allowed_time = now + self._current_interval
        self._total_requests += 1

    def on_success(self):
        """Call after a 2xx response; speeds up after a success streak."""
        self._consecutive_successes += 1
        self._total_successes += 1

        if self._consecutive_successes < self.success_streak_to_speedup:
            return

        new_interval = max(self._current_interval * self.speedup_factor, self.min_interval)
        if new_interval < self._current_interval:
            logger.debug(f"[{self.name}] Speeding up: interval now {new_interval:.3f}s")
        self._current_interval = new_interval
        self._consecutive_successes = 0

    def on_rate_limit(self, retry_after: Optional[Union[int, float, str]] = None):
        """
        Call after a 429 response.

        Args:
            retry_after: Value of the Retry-After header in seconds, if any.
                         Non-numeric values (HTTP dates) are ignored.
        """
        self._consecutive_successes = 0
        self._total_rate_limits += 1

        cooldown = None
        if retry_after is not None:
            try:
                cooldown = float(retry_after)
            except (TypeError, ValueError):
                cooldown = None

        if cooldown is not None and cooldown > 0:
            self._current_interval = min(max(cooldown, self.min_interval), self.max_interval)
        else:
            self._current_interval = min(self._current_interval * self.backoff_factor, self.max_interval)
            cooldown = self._current_interval

        # No sleep here; the next wait() enforces the cooldown
        self._next_allowed_time = max(self._next_allowed_time, time.monotonic() + cooldown)

        logger.warning(
            f"[{self.name}] Rate limit hit #{self._total_rate_limits}. "
            f"Interval: {self._current_interval:.2f}s. Cooldown {cooldown:.1f}s before next request."
        )

    def on_error(self):
        """Call after a 5xx or network error: moderate 1.5x backoff."""
        self._consecutive_successes = 0
        self._current_interval = min(self._current_interval * 1.5, self.max_interval)
        logger.debug(f"[{self.name}] Error, slowing down: interval now {self._current_interval:.2f}s")
