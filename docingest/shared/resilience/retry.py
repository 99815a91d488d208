"""
Retry with exponential backoff, gated by per-operation circuit breakers.

A ``RetryStrategy`` owns one ``CircuitBreaker`` per operation name for its
whole lifetime, so repeated failures of e.g. ``embed_batch`` trip only that
breaker and leave ``transcribe`` unaffected.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import CircuitOpenFault, RateLimitFault, classify_fault
from ..observability import get_logger
from ..observability.metrics import retry_attempts_total
from .circuit_breaker import CircuitBreaker

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.2


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff schedule. All durations are seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 10.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    failure_threshold: int = 5
    recovery_timeout: float = 60.0

    @classmethod
    def from_config(cls, retry_config, breaker_config) -> "RetryPolicy":
        return cls(
            max_retries=retry_config.max_retries,
            initial_delay=retry_config.initial_delay,
            max_delay=retry_config.max_delay,
            backoff_multiplier=retry_config.backoff_multiplier,
            jitter=retry_config.jitter,
            failure_threshold=breaker_config.failure_threshold,
            recovery_timeout=breaker_config.recovery_timeout,
        )


def compute_backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``min(initial * multiplier^(attempt-1), max_delay)`` plus up to 20%
    jitter on top of the capped value.
    """
    base = min(
        policy.initial_delay * policy.backoff_multiplier ** (attempt - 1),
        policy.max_delay,
    )
    if policy.jitter:
        base += base * JITTER_FRACTION * rng()
    return base


class RetryStrategy:
    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get_breaker(self, operation_name: str) -> CircuitBreaker:
        breaker = self._breakers.get(operation_name)
        if breaker is None:
            kwargs = {"clock": self._clock} if self._clock else {}
            breaker = CircuitBreaker(
                operation_name,
                failure_threshold=self.policy.failure_threshold,
                recovery_timeout=self.policy.recovery_timeout,
                **kwargs,
            )
            self._breakers[operation_name] = breaker
        return breaker

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        operation_name: str = "operation",
        max_retries: Optional[int] = None,
    ) -> T:
        """
        Run ``operation`` with retries.

        Args:
            operation: Zero-argument callable returning a fresh awaitable per attempt
            operation_name: Breaker key and log label
            max_retries: Overrides the policy's attempt budget

        Raises:
            CircuitOpenFault: breaker open; the operation was not called
            ProcessingFault: the classified fault of the final attempt
        """
        # max_retries counts total attempts, including the first
        retries = max(1, self.policy.max_retries if max_retries is None else max_retries)
        breaker = self.get_breaker(operation_name)

        if not breaker.allow_request():
            logger.warning(
                "circuit_open_fail_fast",
                operation=operation_name,
                retry_in=breaker.retry_in(),
            )
            raise CircuitOpenFault(operation_name, retry_in=breaker.retry_in())

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await operation()
            except asyncio.CancelledError:
                breaker.release_probe()
                raise
            except Exception as exc:
                fault = classify_fault(exc, operation=operation_name)

                if not fault.retryable or attempt >= retries:
                    breaker.record_failure()
                    logger.error(
                        "operation_failed",
                        operation=operation_name,
                        attempts=attempt,
                        fault=fault.kind,
                        error=fault.message,
                        retryable=fault.retryable,
                    )
                    if fault is exc:
                        raise
                    raise fault from exc

                delay = self._delay_for(attempt, fault)
                retry_attempts_total.labels(
                    operation=operation_name, fault=fault.kind
                ).inc()
                logger.warning(
                    "operation_retry_scheduled",
                    operation=operation_name,
                    attempt=attempt,
                    max_retries=retries,
                    delay_seconds=round(delay, 3),
                    fault=fault.kind,
                    error=fault.message,
                )
                try:
                    await self._sleep(delay)
                except asyncio.CancelledError:
                    breaker.release_probe()
                    raise
                continue

            breaker.record_success()
            if attempt > 1:
                logger.info(
                    "operation_succeeded_after_retry",
                    operation=operation_name,
                    attempts=attempt,
                )
            return result

    def _delay_for(self, attempt: int, fault) -> float:
        if isinstance(fault, RateLimitFault) and fault.retry_after is not None:
            return float(fault.retry_after)
        return compute_backoff_delay(attempt, self.policy, self._rng)

    def reset_circuit_breaker(self, operation_name: str) -> None:
        breaker = self._breakers.get(operation_name)
        if breaker is not None:
            breaker.reset()

    def reset_all_circuit_breakers(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_stats(self) -> Dict[str, Dict[str, Any]]:
        return {name: b.get_stats() for name, b in self._breakers.items()}
