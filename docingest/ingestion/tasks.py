"""
Background tasks: job runs, queue drains and the stuck-job sweep.

Nothing awaits these tasks on the normal path, so each one reports its
own failure when it finishes.
"""

import asyncio
from typing import Any, Coroutine

from ..shared.errors import classify_fault
from ..shared.observability import get_logger

logger = get_logger(__name__)


def _report_outcome(task: asyncio.Task) -> None:
    if task.cancelled():
        logger.debug("background_task_cancelled", task=task.get_name())
        return
    exc = task.exception()
    if exc is None:
        return
    fault = classify_fault(exc, operation=task.get_name())
    logger.error(
        "background_task_failed",
        task=task.get_name(),
        fault=fault.kind,
        error=fault.message,
        exc_info=exc,
    )


def spawn_background_task(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Start ``coro`` as a named task whose failure is always logged."""
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_report_outcome)
    return task
