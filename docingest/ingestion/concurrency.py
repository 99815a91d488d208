"""
Admission control for ingestion jobs.

The gate is a plain counter owned by one ``ConcurrencyGate`` instance.
Everything runs on a single event loop, so no locking is needed; a
multi-process deployment would need a shared counter instead.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Union

from ..shared.observability import get_logger
from ..shared.observability.metrics import ingestion_active_jobs

logger = get_logger(__name__)

CAPACITY_EXCEEDED_MESSAGE = (
    "Server is currently processing the maximum number of documents. "
    "Please try again in a moment."
)


@dataclass(frozen=True)
class LoadInfo:
    active: int
    max: int
    available: int
    utilization_percent: int

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class Admitted:
    load: LoadInfo


@dataclass(frozen=True)
class CapacityExceeded:
    retry_after: int
    load: LoadInfo
    message: str = CAPACITY_EXCEEDED_MESSAGE

    status_code = 503

    def to_response(self) -> Dict[str, Any]:
        return {
            "status": self.status_code,
            "success": False,
            "error": self.message,
            "retry_after": self.retry_after,
            "load": self.load.to_dict(),
        }


CapacityDecision = Union[Admitted, CapacityExceeded]


class ConcurrencyGate:
    def __init__(self, max_concurrent_jobs: int = 5, retry_after_seconds: int = 30):
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.max_concurrent_jobs = max_concurrent_jobs
        self.retry_after_seconds = retry_after_seconds
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    def has_capacity(self) -> bool:
        return self._active < self.max_concurrent_jobs

    def check_capacity(self) -> CapacityDecision:
        load = self.get_load()
        if self.has_capacity():
            return Admitted(load=load)
        logger.warning(
            "capacity_exceeded",
            active=load.active,
            max=load.max,
            retry_after=self.retry_after_seconds,
        )
        return CapacityExceeded(retry_after=self.retry_after_seconds, load=load)

    def increment(self) -> int:
        self._active += 1
        ingestion_active_jobs.set(self._active)
        logger.debug("job_slot_acquired", active=self._active, max=self.max_concurrent_jobs)
        return self._active

    def decrement(self) -> int:
        if self._active == 0:
            logger.warning("job_slot_release_without_acquire")
            return 0
        self._active -= 1
        ingestion_active_jobs.set(self._active)
        logger.debug("job_slot_released", active=self._active, max=self.max_concurrent_jobs)
        return self._active

    def get_load(self) -> LoadInfo:
        active = self._active
        maximum = self.max_concurrent_jobs
        return LoadInfo(
            active=active,
            max=maximum,
            available=max(0, maximum - active),
            utilization_percent=round(active / maximum * 100),
        )
