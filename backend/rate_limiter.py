"""Fixed-window rate limiting for the device-facing endpoints.

A window starts on the first call for a key. Calls inside the window are
allowed while the counter is below ``max``; the first call after the window
ends starts a fresh one. Fixed windows admit up to ``2 * max`` calls across a
window boundary; that burst is accepted.

Counters live in memory and are owned by one ``FixedWindowRateLimiter``
instance that the application creates at start-up. A restart clears them.
Expired windows are swept from ``allow`` at most once per ``prune_interval_ms``,
so keys taken from request bodies cannot grow the map without bound.
"""
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


def monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class _Window:
    count: int
    reset_at: float


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0
    remaining: int = 0


class FixedWindowRateLimiter:
    def __init__(self, clock: Optional[Callable[[], float]] = None, prune_interval_ms: int = 60_000):
        self._clock = clock or monotonic_ms
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()
        self._prune_interval_ms = prune_interval_ms
        self._next_prune_at = self._clock() + prune_interval_ms

    def allow(self, key: str, window_ms: int, max_requests: int) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            if now >= self._next_prune_at:
                self._sweep(now)
                self._next_prune_at = now + self._prune_interval_ms
            window = self._windows.get(key)
            if window is None or now >= window.reset_at:
                self._windows[key] = _Window(count=1, reset_at=now + window_ms)
                return RateLimitDecision(True, remaining=max(max_requests - 1, 0))

            if window.count < max_requests:
                window.count += 1
                return RateLimitDecision(True, remaining=max_requests - window.count)

            retry_after = math.ceil((window.reset_at - now) / 1000)
        logger.info("Rate limit exceeded for %s, retry after %ss", key, retry_after)
        return RateLimitDecision(False, retry_after_seconds=retry_after)

    def prune(self) -> int:
        """Drop windows that have already expired. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            return self._sweep(now)

    def _sweep(self, now: float) -> int:
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        if expired:
            logger.debug("Dropped %d expired rate-limit window(s)", len(expired))
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    def __len__(self) -> int:
        return len(self._windows)


def device_auth_key(ip: str, device_public_id: Optional[str]) -> str:
    return f"device_auth:{ip or 'unknown'}:{device_public_id or 'unknown'}"


def ticket_scan_key(device_id: Optional[str], ip: str) -> str:
    return f"ticket_scan:{device_id or ip or 'unknown'}"


def auth_key(ip: str) -> str:
    return f"auth:{ip or 'unknown'}"
