"""Periodic trigger: one reconciliation run every poll interval."""

from __future__ import annotations

import asyncio
from typing import Optional

from relay.errors import RelayError
from relay.services.run_manager import RunManager
from relay.utils.logger import get_logger

logger = get_logger(__name__)


async def run_forever(
    manager: RunManager,
    interval_seconds: float,
    stop: Optional[asyncio.Event] = None,
    max_runs: Optional[int] = None,
) -> int:
    """Call ``manager.run()`` every *interval_seconds* until *stop* is set.

    A failed run is logged and the loop carries on.  Returns the number of
    runs attempted.
    """
    stop = stop or asyncio.Event()
    runs = 0
    logger.info("scheduler_started", interval_seconds=interval_seconds)
    while not stop.is_set():
        runs += 1
        try:
            await manager.run()
        except RelayError as exc:
            logger.warning("scheduled_run_failed", run=runs, error=str(exc))
        if max_runs is not None and runs >= max_runs:
            break
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            pass
    logger.info("scheduler_stopped", runs=runs)
    return runs
