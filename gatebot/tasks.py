"""Helpers for fire-and-forget asyncio tasks."""

import asyncio
from typing import Coroutine, Optional

import structlog

logger = structlog.get_logger("gatebot.bot")


def log_task_exception(task: asyncio.Task):
    """Log exceptions from fire-and-forget tasks instead of silently swallowing them."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc:
        logger.error(
            "background_task_failed",
            task=task.get_name(),
            error=str(exc),
            exc_type=type(exc).__name__,
        )


def spawn(coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
    """Schedule ``coro`` on the running loop with exception logging attached."""
    task = asyncio.get_running_loop().create_task(coro, name=name)
    task.add_done_callback(log_task_exception)
    return task


def cancel_task(task: Optional[asyncio.Task]) -> None:
    """Cancel ``task`` unless it is finished or is the task calling this."""
    if task is None or task.done():
        return
    try:
        current = asyncio.current_task()
    except RuntimeError:
        current = None
    if task is not current:
        task.cancel()
