"""Three-state circuit breaker guarding one group of hosting API endpoints.

    closed --(failures >= threshold)--> open --(cool-down elapsed)--> half_open
    half_open --(probe succeeds)--> closed
    half_open --(probe fails)--> open (cool-down restarted)

While half-open only a single probe request is let through; concurrent callers
are rejected until that probe reports back.
"""

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerSnapshot:
    name: str
    state: CircuitState
    consecutive_failures: int
    opened_at: float | None

    def as_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
        }


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at: float | None = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def consecutive_failures(self) -> int:
        with self._lock:
            return self._failures

    def allow_request(self) -> bool:
        """Return True if a call may go through to the client right now."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return True
            if self._state is CircuitState.OPEN:
                if self._clock() - (self._opened_at or 0.0) < self.reset_timeout:
                    return False
                self._state = CircuitState.HALF_OPEN
                self._probe_in_flight = False
                logger.info("Circuit %s half-open, allowing one probe", self.name)
            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def is_rejecting(self) -> bool:
        """True while calls would be short-circuited; does not consume the probe."""
        with self._lock:
            if self._state is CircuitState.OPEN:
                return self._clock() - (self._opened_at or 0.0) < self.reset_timeout
            return self._state is CircuitState.HALF_OPEN and self._probe_in_flight

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.OPEN:
                # a call admitted before the trip; only a probe may close the circuit
                return
            if self._state is CircuitState.HALF_OPEN:
                if not self._probe_in_flight:
                    return
                logger.info("Circuit %s closed after successful probe", self.name)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._probe_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._probe_in_flight = False
            if self._state is CircuitState.HALF_OPEN:
                self._trip()
                logger.warning("Circuit %s probe failed, re-opened", self.name)
            elif self._state is CircuitState.CLOSED and self._failures >= self.failure_threshold:
                self._trip()
                logger.warning(
                    "Circuit %s opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )

    def reset(self) -> None:
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._opened_at = None
            self._probe_in_flight = False

    def snapshot(self) -> BreakerSnapshot:
        with self._lock:
            return BreakerSnapshot(
                name=self.name,
                state=self._state,
                consecutive_failures=self._failures,
                opened_at=self._opened_at,
            )

    def _trip(self) -> None:
        # caller holds the lock
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
