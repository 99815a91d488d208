"""
Retry strategy tests: attempt budget, backoff schedule, fault
classification and circuit breaker interaction.
"""

import asyncio

import pytest

from conftest import FakeClock, RecordingSleep
from docingest.shared.errors import (
    CircuitOpenFault,
    RateLimitFault,
    TransientFault,
    ValidationFault,
)
from docingest.shared.resilience import (
    CircuitState,
    RetryPolicy,
    RetryStrategy,
    compute_backoff_delay,
)


class FlakyOperation:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, errors=(), result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestBackoffSchedule:
    def test_exponential_and_capped(self):
        """Delays double from the initial delay and stop at max_delay."""
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0, backoff_multiplier=2.0)

        delays = [compute_backoff_delay(n, policy, rng=lambda: 0.0) for n in range(1, 6)]

        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_adds_up_to_twenty_percent(self):
        policy = RetryPolicy(initial_delay=1.0, max_delay=10.0)

        assert compute_backoff_delay(1, policy, rng=lambda: 1.0) == pytest.approx(1.2)
        assert compute_backoff_delay(5, policy, rng=lambda: 1.0) == pytest.approx(12.0)
        assert compute_backoff_delay(3, policy, rng=lambda: 0.5) == pytest.approx(4.4)

    def test_jitter_disabled(self):
        policy = RetryPolicy(initial_delay=1.0, jitter=False)
        assert compute_backoff_delay(2, policy, rng=lambda: 1.0) == 2.0

    def test_policy_from_config(self):
        from docingest.shared.config import CircuitBreakerConfig, RetryConfig

        policy = RetryPolicy.from_config(
            RetryConfig(max_retries=4, initial_delay=0.5),
            CircuitBreakerConfig(failure_threshold=7, recovery_timeout=30.0),
        )

        assert policy.max_retries == 4
        assert policy.initial_delay == 0.5
        assert policy.failure_threshold == 7
        assert policy.recovery_timeout == 30.0


class TestExecute:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, retry, recording_sleep):
        """max_retries - 1 transient failures still end in success."""
        op = FlakyOperation([ConnectionError("reset"), ConnectionError("reset")])

        result = await retry.execute(op, operation_name="embed_batch")

        assert result == "ok"
        assert op.calls == 3
        assert recording_sleep.delays == [1.0, 2.0]
        breaker = retry.get_breaker("embed_batch")
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_exhausted_attempts_raise_classified_fault(self, retry, recording_sleep):
        """max_retries counts total attempts; the last fault is raised."""
        op = FlakyOperation([ConnectionError("refused")] * 5)

        with pytest.raises(TransientFault):
            await retry.execute(op, operation_name="download")

        assert op.calls == 3
        assert len(recording_sleep.delays) == 2
        assert retry.get_breaker("download").failure_count == 1

    @pytest.mark.asyncio
    async def test_max_retries_override(self, retry):
        op = FlakyOperation([ConnectionError("refused")] * 5)

        with pytest.raises(TransientFault):
            await retry.execute(op, operation_name="download", max_retries=1)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_terminal_fault_not_retried(self, retry, recording_sleep):
        """Non-retryable faults fail on the first attempt."""
        fault = ValidationFault("bad input")
        op = FlakyOperation([fault])

        with pytest.raises(ValidationFault) as exc_info:
            await retry.execute(op, operation_name="embed_single")

        assert exc_info.value is fault
        assert op.calls == 1
        assert recording_sleep.delays == []

    @pytest.mark.asyncio
    async def test_value_error_is_terminal(self, retry):
        op = FlakyOperation([ValueError("malformed")])

        with pytest.raises(ValidationFault):
            await retry.execute(op)

        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_rate_limit_retry_after_overrides_backoff(self, retry, recording_sleep):
        op = FlakyOperation([RateLimitFault("slow down", retry_after=7)])

        assert await retry.execute(op, operation_name="embed_batch") == "ok"
        assert recording_sleep.delays == [7.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_retry_after_uses_backoff(self, retry, recording_sleep):
        op = FlakyOperation([RateLimitFault("slow down")])

        await retry.execute(op)

        assert recording_sleep.delays == [1.0]


class TestCircuitInteraction:
    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_without_calling(self):
        """Once open, the operation is not invoked at all."""
        retry = RetryStrategy(
            RetryPolicy(max_retries=1, failure_threshold=2),
            sleep=RecordingSleep(),
            clock=FakeClock(),
        )
        failing = FlakyOperation([ConnectionError("down")] * 2)
        for _ in range(2):
            with pytest.raises(TransientFault):
                await retry.execute(failing, operation_name="transcribe")

        untouched = FlakyOperation()
        with pytest.raises(CircuitOpenFault) as exc_info:
            await retry.execute(untouched, operation_name="transcribe")

        assert untouched.calls == 0
        assert exc_info.value.operation == "transcribe"
        assert exc_info.value.retryable is False
        assert exc_info.value.retry_in == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_breakers_are_per_operation(self):
        retry = RetryStrategy(
            RetryPolicy(max_retries=1, failure_threshold=1), sleep=RecordingSleep()
        )
        with pytest.raises(TransientFault):
            await retry.execute(FlakyOperation([ConnectionError("down")]), "transcribe")

        assert await retry.execute(FlakyOperation(), "embed_batch") == "ok"
        assert retry.get_stats()["transcribe"]["state"] == "open"
        assert retry.get_stats()["embed_batch"]["state"] == "closed"

    @pytest.mark.asyncio
    async def test_interleaved_success_does_not_reset_failures(self):
        retry = RetryStrategy(
            RetryPolicy(max_retries=1, failure_threshold=3), sleep=RecordingSleep()
        )
        bad = ValidationFault("bad")
        for errors in ([bad], [bad], [], [bad]):
            try:
                await retry.execute(FlakyOperation(errors), "embed_single")
            except ValidationFault:
                pass

        assert retry.get_breaker("embed_single").state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_probe_closes_on_success(self):
        clock = FakeClock()
        retry = RetryStrategy(
            RetryPolicy(max_retries=1, failure_threshold=1, recovery_timeout=30.0),
            sleep=RecordingSleep(),
            clock=clock,
        )
        with pytest.raises(TransientFault):
            await retry.execute(FlakyOperation([ConnectionError("down")]), "extract")

        clock.advance(30.0)
        assert await retry.execute(FlakyOperation(), "extract") == "ok"
        assert retry.get_breaker("extract").is_closed()

    @pytest.mark.asyncio
    async def test_cancelled_probe_is_released(self):
        """Cancelling during backoff must not leave the half-open slot taken."""
        clock = FakeClock()

        async def cancelling_sleep(seconds):
            raise asyncio.CancelledError()

        retry = RetryStrategy(
            RetryPolicy(max_retries=3, failure_threshold=1, recovery_timeout=10.0),
            sleep=cancelling_sleep,
            clock=clock,
        )
        retry.get_breaker("embed_batch").record_failure()
        clock.advance(10.0)

        with pytest.raises(asyncio.CancelledError):
            await retry.execute(FlakyOperation([ConnectionError("reset")]), "embed_batch")

        breaker = retry.get_breaker("embed_batch")
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is True

    @pytest.mark.asyncio
    async def test_reset_all(self):
        retry = RetryStrategy(RetryPolicy(max_retries=1, failure_threshold=1))
        with pytest.raises(TransientFault):
            await retry.execute(FlakyOperation([ConnectionError("down")]), "store_chunks")

        retry.reset_all_circuit_breakers()

        assert retry.get_breaker("store_chunks").is_closed()
