"""
Tracked, cancellable timeouts on the running event loop.

Every timer created through a ``TimeoutManager`` is registered until it
either fires or is cancelled, so ``cancel_all()`` at shutdown leaves no
pending ``call_later`` handles behind.
"""

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from ..errors import TimeoutFault
from ..observability import get_logger
from ..observability.metrics import timeouts_fired_total

logger = get_logger(__name__)

T = TypeVar("T")


class TimeoutHandle:
    """A registered timer. Transitions to cancelled or fired exactly once."""

    def __init__(self, handle_id: int, manager: "TimeoutManager", description: Optional[str]):
        self.id = handle_id
        self.description = description
        self.cancelled = False
        self.fired = False
        self._manager = manager
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_active(self) -> bool:
        return not self.cancelled and not self.fired

    def cancel(self) -> None:
        """Cancel the timer. Idempotent; a no-op once the timer has fired."""
        if not self.is_active:
            return
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()
        self._manager._remove(self)

    def __repr__(self) -> str:
        state = "fired" if self.fired else "cancelled" if self.cancelled else "active"
        return f"TimeoutHandle(id={self.id}, state={state}, description={self.description!r})"


class TimeoutManager:
    def __init__(self) -> None:
        self._active: Dict[int, TimeoutHandle] = {}
        self._ids = itertools.count(1)

    def create_timeout(
        self,
        seconds: float,
        on_fire: Callable[[], Any],
        description: Optional[str] = None,
    ) -> TimeoutHandle:
        """
        Schedule ``on_fire`` after ``seconds`` on the running loop.

        Exceptions raised by ``on_fire`` are logged, never propagated.

        Raises:
            ValueError: negative duration or non-callable callback
        """
        if seconds is None or seconds < 0:
            raise ValueError(f"Invalid timeout duration: {seconds}")
        if not callable(on_fire):
            raise ValueError("Timeout callback must be callable")

        loop = asyncio.get_running_loop()
        handle = TimeoutHandle(next(self._ids), self, description)

        def _fire() -> None:
            if not handle.is_active:
                return
            handle.fired = True
            self._remove(handle)
            timeouts_fired_total.inc()
            try:
                on_fire()
            except Exception as exc:
                logger.error(
                    "timeout_callback_failed",
                    timeout_id=handle.id,
                    description=description,
                    error=str(exc),
                )

        handle._timer = loop.call_later(seconds, _fire)
        self._active[handle.id] = handle
        return handle

    async def race_with_timeout(
        self,
        operation: Awaitable[T],
        seconds: float,
        message: str = "Operation timed out",
        hard: bool = False,
    ) -> T:
        """
        Await ``operation`` with a deadline.

        The timer is cancelled as soon as the operation settles, and the
        operation is cancelled if the timer fires first. Either way no
        timer from this race remains registered afterwards.

        Raises:
            TimeoutFault: the deadline passed before the operation finished
        """
        task = asyncio.ensure_future(operation)
        handle = self.create_timeout(seconds, task.cancel, description=message)
        try:
            return await task
        except asyncio.CancelledError:
            if handle.fired:
                raise TimeoutFault(
                    f"{message} after {seconds}s", timeout=seconds, hard=hard
                ) from None
            raise
        finally:
            handle.cancel()
            if not task.done():
                task.cancel()

    def cancel_all(self) -> int:
        """Cancel every active timer. Returns how many were cancelled."""
        handles = list(self._active.values())
        for handle in handles:
            handle.cancel()
        if handles:
            logger.info("timeouts_cancelled", count=len(handles))
        return len(handles)

    @property
    def active_count(self) -> int:
        return len(self._active)

    def has_active_timeouts(self) -> bool:
        return bool(self._active)

    def _remove(self, handle: TimeoutHandle) -> None:
        self._active.pop(handle.id, None)
