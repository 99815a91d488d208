"""
LIFO teardown registry.

Registered actions run in reverse order of registration, exactly once,
and a failing action never prevents the rest from running.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from ..observability import get_logger
from .timeouts import TimeoutHandle

logger = get_logger(__name__)


@dataclass
class CleanupError:
    description: str
    error: str


@dataclass
class CleanupReport:
    success: bool
    errors: List[CleanupError] = field(default_factory=list)
    already_cleaned: bool = False


@dataclass
class _CleanupAction:
    fn: Callable[[], Any]
    description: str


class ResourceCleanup:
    """
    Collects teardown actions and runs them once.

    Example:
        async with ResourceCleanup() as cleanup:
            handle = timeouts.create_timeout(30, on_fire)
            cleanup.register_timeout(handle)
            ...
    """

    def __init__(self) -> None:
        self._actions: List[_CleanupAction] = []
        self._cleaned_up = False

    def register(self, fn: Callable[[], Any], description: Optional[str] = None) -> None:
        """Register a sync or async zero-argument teardown callable."""
        if not callable(fn):
            raise ValueError("Cleanup action must be callable")
        if self._cleaned_up:
            logger.warning(
                "cleanup_registered_after_execute",
                description=description,
            )
        self._actions.append(
            _CleanupAction(fn=fn, description=description or getattr(fn, "__name__", "cleanup"))
        )

    def register_timeout(self, handle: TimeoutHandle) -> None:
        if handle is None:
            return
        self.register(handle.cancel, f"cancel timeout {handle.id}")

    def register_timeouts(self, handles: Iterable[TimeoutHandle]) -> None:
        for handle in handles:
            self.register_timeout(handle)

    async def execute(self) -> CleanupReport:
        if self._cleaned_up:
            return CleanupReport(success=True, already_cleaned=True)
        self._cleaned_up = True

        errors: List[CleanupError] = []
        while self._actions:
            action = self._actions.pop()
            try:
                result = action.fn()
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                errors.append(CleanupError(action.description, str(exc)))
                logger.error(
                    "cleanup_action_failed",
                    description=action.description,
                    error=str(exc),
                )

        if errors:
            logger.warning("cleanup_completed_with_errors", error_count=len(errors))
        return CleanupReport(success=not errors, errors=errors)

    @property
    def is_cleaned_up(self) -> bool:
        return self._cleaned_up

    @property
    def pending_count(self) -> int:
        return len(self._actions)

    def clear(self) -> None:
        """Forget all registered actions without running them."""
        self._actions.clear()
        self._cleaned_up = False

    async def __aenter__(self) -> "ResourceCleanup":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.execute()
