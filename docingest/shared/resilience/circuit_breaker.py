"""
Thread-safe circuit breaker, one instance per downstream operation name.

Usage:
    cb = CircuitBreaker(name="embedding", failure_threshold=5, recovery_timeout=60.0)

    if cb.allow_request():
        try:
            result = await call_embedding_service()
            cb.record_success()
            return result
        except Exception:
            cb.record_failure()
            raise
    else:
        raise CircuitOpenFault("embedding", retry_in=cb.retry_in())
"""

from __future__ import annotations

import threading
import time
from enum import Enum
from typing import Any, Callable, Dict, Optional

from ..observability import get_logger
from ..observability.metrics import circuit_breaker_state

logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states following the standard pattern."""

    CLOSED = "closed"  # Normal operation, requests pass through
    OPEN = "open"  # Failing, reject requests immediately
    HALF_OPEN = "half_open"  # Testing recovery with a single probe


_STATE_GAUGE_VALUE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}

DEFAULT_FAILURE_THRESHOLD = 5
DEFAULT_RECOVERY_TIMEOUT = 60.0


class CircuitBreaker:
    """
    Circuit breaker for a single downstream operation.

    1. CLOSED: requests pass, recorded failures accumulate
    2. OPEN: requests are rejected until ``recovery_timeout`` elapses
    3. HALF_OPEN: exactly one probe request is admitted; its outcome
       closes or re-opens the circuit. Other requests are rejected while
       the probe is in flight.

    All state transitions happen under a ``threading.Lock`` so the breaker
    can be shared between the event loop and worker threads.

    Attributes:
        name: Identifier for this circuit breaker (used in logging/metrics)
        failure_threshold: Consecutive failures before opening
        recovery_timeout: Seconds to wait before attempting recovery
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        recovery_timeout: float = DEFAULT_RECOVERY_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold <= 0:
            raise ValueError("failure_threshold must be positive")
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        # State tracking (protected by lock)
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._probe_in_flight = False
        self._lock = threading.Lock()

        circuit_breaker_state.labels(operation=name).set(0)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def failure_count(self) -> int:
        with self._lock:
            return self._failure_count

    @property
    def success_count(self) -> int:
        with self._lock:
            return self._success_count

    def _transition(self, new_state: CircuitState, **fields: Any) -> None:
        # Caller holds the lock
        previous = self._state
        self._state = new_state
        circuit_breaker_state.labels(operation=self.name).set(
            _STATE_GAUGE_VALUE[new_state]
        )
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            f"circuit_breaker_{new_state.value}",
            name=self.name,
            previous_state=previous.value,
            failure_count=self._failure_count,
            **fields,
        )

    def allow_request(self) -> bool:
        """
        Check if the circuit breaker allows a request to pass through.

        - CLOSED: always allows
        - OPEN: transitions to HALF_OPEN once the recovery timeout has passed
          and admits that caller as the probe
        - HALF_OPEN: admits a probe only if none is in flight

        Returns:
            True if the request may proceed, False to fail fast
        """
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                elapsed = self._elapsed_since_failure()
                if elapsed is None or elapsed < self.recovery_timeout:
                    return False
                self._transition(
                    CircuitState.HALF_OPEN,
                    elapsed_seconds=round(elapsed, 3),
                    reason="recovery_timeout_reached",
                )

            if self._probe_in_flight:
                return False
            self._probe_in_flight = True
            return True

    def record_success(self) -> None:
        """
        Record a successful request.

        HALF_OPEN: closes the circuit and zeroes the failure count.
        CLOSED: failures recorded so far still count toward the threshold.
        """
        with self._lock:
            self._success_count += 1
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._failure_count = 0
                self._transition(CircuitState.CLOSED, reason="recovery_success")

    def record_failure(self) -> None:
        """
        Record a failed request.

        HALF_OPEN: re-opens the circuit (recovery failed).
        CLOSED: increments the failure count, opens at the threshold.
        """
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, reason="recovery_failed")
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self.failure_threshold
            ):
                self._transition(
                    CircuitState.OPEN, threshold=self.failure_threshold
                )

    def release_probe(self) -> None:
        """Give up a half-open probe slot without recording an outcome.

        Used when the probing call was cancelled before it finished.
        """
        with self._lock:
            self._probe_in_flight = False

    def retry_in(self) -> Optional[float]:
        """Seconds until an open circuit admits a probe, None if not open."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return None
            elapsed = self._elapsed_since_failure() or 0.0
            return max(0.0, self.recovery_timeout - elapsed)

    def _elapsed_since_failure(self) -> Optional[float]:
        if self._last_failure_time is None:
            return None
        return self._clock() - self._last_failure_time

    def reset(self) -> None:
        """Manually reset the circuit breaker to CLOSED state."""
        with self._lock:
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._probe_in_flight = False
            self._transition(CircuitState.CLOSED, reason="manual_reset")

    def is_open(self) -> bool:
        with self._lock:
            return self._state == CircuitState.OPEN

    def is_closed(self) -> bool:
        with self._lock:
            return self._state == CircuitState.CLOSED

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout": self.recovery_timeout,
                "last_failure_time": self._last_failure_time,
            }

    def __repr__(self) -> str:
        with self._lock:
            return (
                f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
                f"failures={self._failure_count}/{self.failure_threshold})"
            )
