"""
Fault taxonomy for the ingestion pipeline.

Every failure that crosses a stage boundary is expressed as a
``ProcessingFault`` subclass. The ``retryable`` flag is what the retry
layer consults; ``classify_fault`` maps arbitrary exceptions (asyncio,
OS, httpx, provider SDK errors) onto the taxonomy.
"""

import asyncio
import socket
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx


class ProcessingFault(Exception):
    """Base class for all pipeline faults."""

    retryable: bool = True

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp,
        }


class ValidationFault(ProcessingFault):
    """Malformed input. Retrying cannot help."""

    retryable = False


class RetryableFault(ProcessingFault):
    retryable = True


class RateLimitFault(RetryableFault):
    """Provider rate limit. ``retry_after`` is in seconds when supplied."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retry_after = retry_after
        self.context["retry_after"] = retry_after


class TimeoutFault(ProcessingFault):
    """Operation exceeded its deadline.

    Retryable by default; ``hard=True`` marks a deadline that will not be
    met on a second attempt either (e.g. an absolute processing ceiling).
    """

    def __init__(
        self,
        message: str = "Operation timed out",
        timeout: Optional[float] = None,
        hard: bool = False,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.timeout = timeout
        self.hard = hard
        self.retryable = not hard
        self.context.update({"timeout": timeout, "hard": hard})


class TransientFault(RetryableFault):
    """Network failure or 5xx from a downstream service."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.status_code = status_code
        if status_code is not None:
            self.context["status_code"] = status_code


class CircuitOpenFault(ProcessingFault):
    """Raised without calling the operation while its breaker is open."""

    retryable = False

    def __init__(self, operation: str, retry_in: Optional[float] = None):
        super().__init__(
            f"Circuit breaker is open for {operation}. Service temporarily unavailable.",
            {"operation": operation, "retry_in": retry_in},
        )
        self.operation = operation
        self.retry_in = retry_in


class PartialFailureFault(ProcessingFault):
    """A stage produced some successes and too many failures."""

    retryable = False

    def __init__(
        self,
        message: str,
        successes: Optional[List[Any]] = None,
        failures: Optional[List[Any]] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.successes = list(successes or [])
        self.failures = list(failures or [])
        total = len(self.successes) + len(self.failures)
        self.context.update(
            {
                "success_count": len(self.successes),
                "failure_count": len(self.failures),
                "total": total,
            }
        )

    @property
    def success_rate(self) -> float:
        total = len(self.successes) + len(self.failures)
        return len(self.successes) / total if total else 0.0


class ExtractionFault(ProcessingFault):
    """Source could not be turned into text."""

    retryable = False


class StorageFault(ProcessingFault):
    def __init__(
        self,
        message: str,
        retryable: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.retryable = retryable


_NETWORK_ERRNO_NAMES = ("ECONNREFUSED", "ECONNRESET", "ENOTFOUND", "EPIPE", "EHOSTUNREACH")


def _status_code_of(exc: BaseException) -> Optional[int]:
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def _retry_after_of(exc: BaseException) -> Optional[float]:
    value = getattr(exc, "retry_after", None)
    if value is None:
        response = getattr(exc, "response", None)
        headers = getattr(response, "headers", None) or {}
        value = headers.get("retry-after") if hasattr(headers, "get") else None
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_fault(
    exc: BaseException,
    operation: str = "operation",
    timeout: Optional[float] = None,
) -> ProcessingFault:
    """Map an arbitrary exception onto the fault taxonomy.

    Already-classified faults pass through untouched.
    """
    if isinstance(exc, ProcessingFault):
        return exc

    message = str(exc) or type(exc).__name__
    lowered = message.lower()
    context = {"operation": operation, "original_type": type(exc).__name__}
    status = _status_code_of(exc)

    if status == 429 or "rate limit" in lowered or "rate_limit" in lowered:
        return RateLimitFault(
            f"{operation}: {message}", retry_after=_retry_after_of(exc), context=context
        )

    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, httpx.TimeoutException)) or (
        "timeout" in lowered or "timed out" in lowered
    ):
        hard = "exceeded timeout" in lowered or "exceeded maximum" in lowered
        return TimeoutFault(
            f"{operation} timed out: {message}", timeout=timeout, hard=hard, context=context
        )

    if isinstance(exc, (ConnectionError, socket.gaierror, httpx.TransportError)) or any(
        name in message for name in _NETWORK_ERRNO_NAMES
    ):
        return TransientFault(f"{operation} network error: {message}", context=context)

    if status is not None:
        if status >= 500:
            return TransientFault(
                f"{operation} server error ({status}): {message}",
                status_code=status,
                context=context,
            )
        if 400 <= status < 500:
            return ValidationFault(
                f"{operation} rejected request ({status}): {message}", context=context
            )

    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return ValidationFault(f"{operation}: {message}", context=context)

    return TransientFault(f"{operation} failed: {message}", context=context)


def is_retryable(exc: BaseException) -> bool:
    return classify_fault(exc).retryable


def user_message(exc: BaseException) -> str:
    """Message that is safe to persist on a job record or return over HTTP."""
    fault = classify_fault(exc)
    if isinstance(fault, RateLimitFault):
        return "Service is busy. Please try again in a few moments."
    if isinstance(fault, CircuitOpenFault):
        return "A downstream service is temporarily unavailable. Please try again later."
    if isinstance(fault, TimeoutFault):
        return "Processing timed out. Please try again with a smaller file."
    if isinstance(fault, PartialFailureFault):
        return f"Processing partially failed: {fault.message}"
    if isinstance(fault, (ValidationFault, ExtractionFault)):
        return fault.message
    return "Processing failed due to a temporary error. Please try again."
