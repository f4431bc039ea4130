"""Minute-window request/token budget shared by every AI call in a job."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from enricher.config.settings import RateLimitConfig

logger = logging.getLogger(__name__)

WINDOW_S = 60.0
MAX_WAIT_SLICE_S = 0.25
RATE_LIMIT_NUDGE_S = 0.05


def estimate_tokens(text: str) -> int:
    """Rough token estimate, about four characters per token."""
    return max(1, len(text) // 4)


class RateLimiter:
    """Blocking RPM/TPM limiter over minute-aligned windows.

    ``acquire`` reserves one request and the estimated tokens atomically, waiting
    outside the lock until the current window has room. A request larger than
    the whole token budget is clamped to it so it can still run in a fresh window.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = self._window_of(clock())
        self._requests = 0
        self._tokens = 0

    @staticmethod
    def _window_of(now: float) -> float:
        return now - (now % WINDOW_S)

    @property
    def min_sleep_s(self) -> float:
        return self._config.min_sleep_ms / 1000.0

    def _roll_window_locked(self, now: float) -> None:
        window = self._window_of(now)
        if window != self._window_start:
            self._window_start = window
            self._requests = 0
            self._tokens = 0

    def try_acquire(self, estimated_tokens: int) -> bool:
        needed = min(max(0, estimated_tokens), self._config.tpm)
        with self._lock:
            self._roll_window_locked(self._clock())
            if self._requests + 1 > self._config.rpm:
                return False
            if self._tokens + needed > self._config.tpm:
                return False
            self._requests += 1
            self._tokens += needed
            return True

    def acquire(self, estimated_tokens: int) -> None:
        while not self.try_acquire(estimated_tokens):
            now = self._clock()
            until_next_window = self._window_of(now) + WINDOW_S - now
            self._sleep(max(self.min_sleep_s, min(MAX_WAIT_SLICE_S, until_next_window)))

    def on_rate_limit_hit(self) -> None:
        """Back off briefly after the remote endpoint reports a rate limit."""
        logger.warning("AI endpoint rate limit hit, backing off")
        self._sleep(max(self.min_sleep_s, RATE_LIMIT_NUDGE_S))

    def usage(self) -> tuple[int, int]:
        """Requests and tokens reserved in the current window."""
        with self._lock:
            self._roll_window_locked(self._clock())
            return self._requests, self._tokens
