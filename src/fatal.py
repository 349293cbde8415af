"""Fail-fast handling for errors escaping background tasks."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable

logger = logging.getLogger(__name__)

FatalHandler = Callable[[BaseException], None]


def terminate_process(exc: BaseException) -> None:
    """Default fatal handler: exit with status 1.

    In-memory session state is undefined after an unknown failure, so the
    process is stopped instead of limping on.
    """
    logger.critical("Unrecoverable error, terminating: %r", exc)
    logging.shutdown()
    os._exit(1)


def watch_task(task: asyncio.Task[object], on_fatal: FatalHandler) -> None:
    """Route an unexpected exception from ``task`` to ``on_fatal``."""

    def _done(t: asyncio.Task[object]) -> None:
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.critical("Background task %s failed", t.get_name(), exc_info=exc)
            on_fatal(exc)

    task.add_done_callback(_done)
