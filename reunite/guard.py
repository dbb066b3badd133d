"""
Reunite — Oracle guard
Process-wide rate-limit breaker, single-flight flag and one-time user notice
for the relevance oracle. Only the oracle client mutates this state.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator

from . import config

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class RateLimitState:
    is_limited: bool = False
    reset_at_ms: int = 0


class OracleGuard:
    """
    Breaker + single-flight state shared by every oracle call in the process.

    Args:
        clock: returns the current epoch time in milliseconds (injectable for tests)
        window_ms: how long the breaker stays open after a failure
    """

    def __init__(self, clock: Clock | None = None, window_ms: int = config.BREAKER_WINDOW_MS):
        self._clock = clock or _now_ms
        self.window_ms = window_ms
        self.rate_limit = RateLimitState()
        self._pending = False
        self._notified = False

    def now(self) -> int:
        return self._clock()

    # ── Breaker ──────────────────────────────────────────────────────────

    def is_open(self) -> bool:
        """True while calls must be short-circuited without any I/O."""
        state = self.rate_limit
        return state.is_limited and self.now() < state.reset_at_ms

    def record_failure(self) -> None:
        self.rate_limit.is_limited = True
        self.rate_limit.reset_at_ms = self.now() + self.window_ms
        logger.info("Oracle breaker open until %d", self.rate_limit.reset_at_ms)

    def record_success(self) -> None:
        if self.rate_limit.is_limited:
            logger.info("Oracle breaker closed")
        self.rate_limit.is_limited = False

    # ── Single-flight ────────────────────────────────────────────────────

    @property
    def in_flight(self) -> bool:
        return self._pending

    def try_acquire(self) -> bool:
        """Claim the flight slot. False if a call is already in flight."""
        if self._pending:
            return False
        self._pending = True
        return True

    def release(self) -> None:
        self._pending = False

    @contextmanager
    def flight(self) -> Iterator[bool]:
        """Yields True when this caller owns the slot; the slot is always released."""
        acquired = self.try_acquire()
        try:
            yield acquired
        finally:
            if acquired:
                self.release()

    # ── Session notice ───────────────────────────────────────────────────

    def should_notify(self) -> bool:
        """True exactly once per session: the first failure gets a user notice."""
        if self._notified:
            return False
        self._notified = True
        return True

    def reset(self) -> None:
        """Forget all state (new session, or tests)."""
        self.rate_limit = RateLimitState()
        self._pending = False
        self._notified = False


_default_guard: OracleGuard | None = None


def get_guard() -> OracleGuard:
    """The process-wide guard."""
    global _default_guard
    if _default_guard is None:
        _default_guard = OracleGuard()
    return _default_guard
