"""Process termination: close the store connection and pick an exit code."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Callable, Iterable, Optional, Set

from .database import ConnectionManager

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGTERM)

_pending_terminations: Set[asyncio.Task] = set()


async def terminate(manager: ConnectionManager) -> int:
    """Shut the manager down; 0 on a clean shutdown, 1 if shutdown raised."""
    try:
        await manager.shutdown()
    except Exception:
        logger.exception("Error closing store connection")
        return 1
    logger.info("Store connection closed through app termination")
    return 0


def install_signal_handlers(
    manager: ConnectionManager,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    *,
    exit_func: Callable[[int], None] = sys.exit,
    signals: Iterable[int] = TERMINATION_SIGNALS,
) -> None:
    """
    Run ``terminate`` when the process receives a termination signal.

    For embedding the app in a runtime that does not manage signals itself.
    ``server.main`` runs under uvicorn, whose lifespan performs the same
    shutdown, so it does not install these handlers.
    """
    loop = loop or asyncio.get_running_loop()

    def _on_signal(signum: int) -> None:
        logger.info("Received %s, shutting down", signal.Signals(signum).name)
        task = loop.create_task(terminate(manager))
        _pending_terminations.add(task)
        task.add_done_callback(_pending_terminations.discard)
        task.add_done_callback(lambda done: exit_func(done.result()))

    for signum in signals:
        loop.add_signal_handler(signum, _on_signal, signum)
