"""
In-memory sliding-window rate limiter for contact form submissions.

Each caller key (normally the client IP) owns a list of timestamps of its
admitted attempts. On every check, timestamps older than the window are
dropped before counting, so the count always reflects the trailing window
ending "now".

State lives for the life of the process and is lost on restart. One
instance is created by the application factory and shared by all requests;
tests create their own.
"""

import logging
import math
import threading
import time
from typing import Callable, Dict, List, Optional

from contact_relay.config import DEFAULT_MAX_REQUESTS, DEFAULT_WINDOW_MS

logger = logging.getLogger(__name__)

# Run a prune pass after this many checks
DEFAULT_PRUNE_EVERY = 500


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """
    Sliding-window limiter: at most max_requests admitted attempts per
    caller key within any window_ms span.

    Args:
        window_ms:    Window length in milliseconds.
        max_requests: Attempts admitted per window. Inclusive: once this many
                      attempts are inside the window the next one is refused.
        clock:        Returns "now" in milliseconds. Injected by tests.
        prune_every:  Checks between automatic prune passes (0 disables).
    """

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        clock: Optional[Callable[[], float]] = None,
        prune_every: int = DEFAULT_PRUNE_EVERY,
    ):
        self.window_ms = window_ms
        self.max_requests = max_requests
        self._clock = clock or _monotonic_ms
        self._prune_every = prune_every
        self._attempts: Dict[str, List[float]] = {}
        self._checks_since_prune = 0
        # check() is called from the threadpool; filter + append must be atomic
        self._lock = threading.Lock()

    def _in_window(self, timestamps: List[float], now: float) -> List[float]:
        return [ts for ts in timestamps if now - ts < self.window_ms]

    def check(self, caller_key: str) -> bool:
        """
        Record an attempt for caller_key if it is under the limit.

        Returns True when the attempt is admitted (and recorded), False when
        the caller already has max_requests attempts inside the window.
        Refused attempts are not recorded.
        """
        with self._lock:
            now = self._clock()
            recent = self._in_window(self._attempts.get(caller_key, []), now)

            if len(recent) >= self.max_requests:
                self._attempts[caller_key] = recent
                allowed = False
            else:
                recent.append(now)
                self._attempts[caller_key] = recent
                allowed = True

            self._checks_since_prune += 1
            if self._prune_every and self._checks_since_prune >= self._prune_every:
                self._prune_locked(now)

        if not allowed:
            logger.info("Rate limit exceeded for caller %s", caller_key)
        return allowed

    def retry_after(self, caller_key: str) -> int:
        """
        Whole seconds until caller_key gets a free slot (0 if it has one).

        Used for the Retry-After header on throttled responses.
        """
        with self._lock:
            now = self._clock()
            recent = self._in_window(self._attempts.get(caller_key, []), now)
            if len(recent) < self.max_requests:
                return 0
            # The slot frees up when the oldest attempt that keeps the count
            # at the limit leaves the window.
            blocking = sorted(recent)[len(recent) - self.max_requests]
            remaining_ms = self.window_ms - (now - blocking)
            return max(1, math.ceil(remaining_ms / 1000))

    def prune(self) -> int:
        """Drop caller keys with no attempts left in the window. Returns the count removed."""
        with self._lock:
            return self._prune_locked(self._clock())

    def _prune_locked(self, now: float) -> int:
        self._checks_since_prune = 0
        stale = [
            key for key, timestamps in self._attempts.items()
            if not self._in_window(timestamps, now)
        ]
        for key in stale:
            del self._attempts[key]
        if stale:
            logger.debug("Pruned %d idle rate-limit keys", len(stale))
        return len(stale)

    def __len__(self) -> int:
        return len(self._attempts)
