import time
from typing import Callable, Optional


class RateLimiter:
    """
    Token bucket shared by the calls of one sweep.
    `acquire()` blocks (via the injected sleep) until a token is available.
    """

    def __init__(
        self,
        rate_per_second: float,
        burst: int = 1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = rate_per_second
        self.burst = burst
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(burst)
        self._updated_at: Optional[float] = None

    def _refill(self) -> None:
        now = self._clock()
        if self._updated_at is not None:
            elapsed = max(0.0, now - self._updated_at)
            self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._updated_at = now

    def acquire(self) -> float:
        """Takes one token. Returns the seconds spent waiting."""
        waited = 0.0
        self._refill()
        while self._tokens < 1.0:
            delay = (1.0 - self._tokens) / self.rate
            self._sleep(delay)
            waited += delay
            self._refill()
        self._tokens -= 1.0
        return waited


class NoopLimiter:
    def acquire(self) -> float:
        return 0.0
