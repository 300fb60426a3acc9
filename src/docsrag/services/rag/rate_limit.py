from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
import threading
import time

DEFAULT_MAX_MESSAGES = 20
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    remaining: int = 0
    retry_after_seconds: float = 0.0


class SlidingWindowRateLimiter:
    """In-memory per-key limiter; state is per process and lost on restart.

    Idle keys are swept from ``check`` at most once per window.
    """

    def __init__(
        self,
        *,
        max_messages: int = DEFAULT_MAX_MESSAGES,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_messages <= 0:
            raise ValueError("max_messages must be > 0")
        self._max_messages = max_messages
        self._window_seconds = window_seconds
        self._clock = clock
        self._hits: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def check(self, key: str) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(now)

            hits = self._hits.setdefault(key, deque())
            while hits and now - hits[0] >= self._window_seconds:
                hits.popleft()

            if len(hits) >= self._max_messages:
                return RateLimitDecision(
                    allowed=False,
                    retry_after_seconds=self._window_seconds - (now - hits[0]),
                )

            hits.append(now)
            return RateLimitDecision(allowed=True, remaining=self._max_messages - len(hits))

    def prune(self) -> int:
        """Drop keys with no hits inside the window. Returns how many were dropped."""
        now = self._clock()
        with self._lock:
            return self._sweep(now)

    def _sweep(self, now: float) -> int:
        stale = [
            key
            for key, hits in self._hits.items()
            if not hits or now - hits[-1] >= self._window_seconds
        ]
        for key in stale:
            del self._hits[key]
        self._last_sweep = now
        return len(stale)
