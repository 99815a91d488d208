"""Resilience primitives: retries, circuit breakers, timeouts, cleanup."""

from .circuit_breaker import CircuitBreaker, CircuitState
from .cleanup import CleanupReport, ResourceCleanup
from .retry import RetryPolicy, RetryStrategy, compute_backoff_delay
from .timeouts import TimeoutHandle, TimeoutManager

__all__ = [
    "CircuitBreaker",
    "CircuitState",
    "CleanupReport",
    "ResourceCleanup",
    "RetryPolicy",
    "RetryStrategy",
    "compute_backoff_delay",
    "TimeoutHandle",
    "TimeoutManager",
]
