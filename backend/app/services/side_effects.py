# backend/app/services/side_effects.py
"""
Post-commit background work.

Each side effect runs as its own asyncio task with its own error handling,
so a failing channel can neither affect another channel nor the reservation
that was already committed.
"""
import asyncio
from typing import Awaitable, Optional

from backend.app.core.logging import get_logger
from backend.app.core.metrics import side_effect_failures_total

logger = get_logger(__name__)

# Strong references so pending tasks are not garbage-collected mid-flight
_background_tasks: set[asyncio.Task] = set()


async def _guarded(awaitable: Awaitable, channel: str) -> None:
    try:
        await awaitable
    except asyncio.CancelledError:
        raise
    except Exception as e:
        side_effect_failures_total.labels(channel=channel).inc()
        logger.error("Post-commit side effect failed", channel=channel, error=str(e))


def run_in_background(awaitable: Awaitable, channel: str) -> asyncio.Task:
    """Schedule ``awaitable`` without waiting for it."""
    task = asyncio.create_task(_guarded(awaitable, channel), name=f"side-effect:{channel}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def pending_count() -> int:
    return len(_background_tasks)


async def drain_background_tasks(timeout: Optional[float] = None) -> None:
    """Wait for scheduled side effects (shutdown and tests)."""
    if not _background_tasks:
        return
    done, pending = await asyncio.wait(list(_background_tasks), timeout=timeout)
    if pending:
        logger.warning("Side effects still running after drain timeout", pending=len(pending))
        for task in pending:
            task.cancel()
