"""Token bucket limiting the aggregate transfer rate."""

import logging
import threading
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class RateLimiter:
    """Thread-safe token bucket shared by all transfer workers.

    Tokens are bytes. The bucket refills at ``rate`` bytes per second up
    to ``capacity``. A transfer that asks for more tokens than are
    available takes them anyway and sleeps until the debt is repaid, so
    large chunks never starve and concurrent workers share the rate.

    A rate of 0 disables limiting.

    Examples:
        >>> limiter = RateLimiter(100 * 1000)  # 100 kB/s
        >>> limiter.consume(64 * 1024)  # may sleep
    """

    def __init__(
        self,
        rate: int,
        capacity: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the bucket.

        Args:
            rate: Bytes per second (0 = unlimited)
            capacity: Maximum burst in bytes (default: one second of rate)
            clock: Monotonic clock, injectable for tests
            sleep: Sleep function, injectable for tests
        """
        if rate < 0:
            raise ValueError("rate must not be negative")
        self.rate = rate
        self.capacity = capacity if capacity is not None else rate
        self._clock = clock
        self._sleep = sleep
        self._tokens = float(self.capacity)
        self._last = clock()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self.rate > 0

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last
        self._last = now
        if elapsed > 0:
            self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)

    def consume(self, amount: int) -> float:
        """Take ``amount`` tokens, sleeping if the bucket runs dry.

        Args:
            amount: Number of bytes about to be transferred

        Returns:
            Seconds slept
        """
        if not self.enabled or amount <= 0:
            return 0.0
        with self._lock:
            self._refill()
            self._tokens -= amount
            wait = -self._tokens / self.rate if self._tokens < 0 else 0.0
        if wait > 0:
            self._sleep(wait)
        return wait

    def throttle(self, chunks):
        """Wrap an iterable of byte chunks, consuming tokens for each."""
        for chunk in chunks:
            self.consume(len(chunk))
            yield chunk
