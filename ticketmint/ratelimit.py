import time
from dataclasses import dataclass
from typing import Callable, Dict


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateDecision:
    ok: bool
    retry_after_ms: int


class RateLimiter:
    """
    Fixed-window counter per key. Buckets live in process memory: they start
    empty on every process start and are not shared between workers.
    """

    def __init__(self, max_requests: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        if max_requests < 1 or window_seconds <= 0:
            raise ValueError("max_requests >= 1 and window_seconds > 0")
        self.max = max_requests
        self.window = window_seconds
        self._clock = clock
        self._buckets: Dict[str, _Window] = {}

    def check(self, key: str) -> RateDecision:
        now = self._clock()
        entry = self._buckets.get(key)
        if entry is None or entry.reset_at <= now:
            self._buckets[key] = _Window(count=1, reset_at=now + self.window)
            self._sweep(now)
            return RateDecision(True, int(self.window * 1000))
        remaining_ms = int(max(0.0, entry.reset_at - now) * 1000)
        if entry.count >= self.max:
            return RateDecision(False, remaining_ms)
        entry.count += 1
        return RateDecision(True, remaining_ms)

    def _sweep(self, now: float) -> None:
        # house-keeping: drop expired windows once the table grows
        if len(self._buckets) < 10_000:
            return
        for k in [k for k, w in self._buckets.items() if w.reset_at <= now]:
            del self._buckets[k]

    def reset(self) -> None:
        self._buckets.clear()
