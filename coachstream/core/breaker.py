"""
Provider Circuit Breaker

Process-wide success/error tallies for provider attempts. The breaker is an
explicit object created at startup and handed to the fallback executor; it
reports closed/open/half_open but never blocks a call on its own.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class BreakerStatus:
    """Snapshot of breaker state."""
    state: str
    error_count: int
    success_count: int
    last_error_at: Optional[float] = None

    def to_dict(self) -> Dict:
        return {
            "state": self.state,
            "errorCount": self.error_count,
            "successCount": self.success_count,
        }


class CircuitBreaker:
    """Error/success counter with decay and open/half-open/closed states.

    - error_count >= error_threshold opens the breaker
    - tallies reset once the last error is older than window_seconds
    - an open breaker turns half-open after recovery_timeout
    - a success while half-open closes it again
    """

    def __init__(
        self,
        error_threshold: int = 5,
        window_seconds: float = 300.0,
        recovery_timeout: float = 90.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.error_threshold = error_threshold
        self.window_seconds = window_seconds
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self.reset()

    def reset(self):
        """Return to the initial closed state with zeroed tallies."""
        self._state = CLOSED
        self._errors = 0
        self._successes = 0
        self._last_error_at: Optional[float] = None
        self._opened_at: Optional[float] = None

    def _decay(self, now: float):
        if self._last_error_at is not None and now - self._last_error_at > self.window_seconds:
            self._errors = 0
            self._successes = 0
            self._last_error_at = None
            if self._state != CLOSED:
                logger.info("[BREAKER] Error window elapsed, closing")
            self._state = CLOSED
            self._opened_at = None

    def _refresh(self, now: float):
        self._decay(now)
        if self._state == OPEN and self._opened_at is not None:
            if now - self._opened_at >= self.recovery_timeout:
                self._state = HALF_OPEN
                logger.info("[BREAKER] Recovery timeout reached, half-open")

    def record_success(self):
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._successes += 1
            if self._state == HALF_OPEN:
                self._state = CLOSED
                self._errors = 0
                self._opened_at = None
                logger.info("[BREAKER] Success while half-open, closed")

    def record_error(self):
        with self._lock:
            now = self._clock()
            self._refresh(now)
            self._errors += 1
            self._last_error_at = now
            if self._state == HALF_OPEN or (
                self._state == CLOSED and self._errors >= self.error_threshold
            ):
                self._state = OPEN
                self._opened_at = now
                logger.warning(f"[BREAKER] Opened after {self._errors} errors")

    def status(self) -> BreakerStatus:
        with self._lock:
            self._refresh(self._clock())
            return BreakerStatus(
                state=self._state,
                error_count=self._errors,
                success_count=self._successes,
                last_error_at=self._last_error_at,
            )

    @property
    def state(self) -> str:
        return self.status().state
