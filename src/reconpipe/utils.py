"""Shared utility functions."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Coroutine
from datetime import UTC, datetime
from typing import Any

from reconpipe.logger import logger


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def generate_scan_run_id() -> str:
    """Random run id; the last 8 characters name ephemeral containers."""
    return f"scan-{uuid.uuid4().hex}"


def generate_terminal_id() -> str:
    return f"terminal-{uuid.uuid4().hex}"


def create_background_task(
    coro: Coroutine[Any, Any, Any],
    *,
    name: str | None = None,
) -> asyncio.Task[Any]:
    """Create an asyncio task that logs exceptions instead of swallowing them.

    A drop-in replacement for ``asyncio.create_task`` for fire-and-forget
    work (pipeline runs, the session reaper) where we don't await the
    result but still want failures to appear in logs.
    """
    task = asyncio.create_task(coro, name=name)
    task.add_done_callback(_log_task_exception)
    return task


def _log_task_exception(task: asyncio.Task[Any]) -> None:
    """Callback attached to background tasks — logs unhandled exceptions."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        # exc_info makes structlog render the traceback; logger.exception()
        # needs an active except block, which a done-callback doesn't have
        logger.error(
            "Background task failed",
            task_name=task.get_name(),
            exc_info=exc,
        )
