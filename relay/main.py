"""FastAPI application entry point for PulsePoint Relay."""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.api.v1 import health, runs
from relay.services.run_manager import RunManager
from relay.services.scheduler import run_forever
from relay.utils.config import load_config
from relay.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the run manager and start the scheduled trigger.

    A manager already placed on ``app.state`` (tests) is used as is and no
    scheduler is started for it.  The CLI may preset ``app.state.config``
    and ``app.state.manager_factory``; otherwise the environment decides.
    """
    if getattr(app.state, "run_manager", None) is not None:
        yield
        return

    cfg = getattr(app.state, "config", None) or load_config()
    factory = getattr(app.state, "manager_factory", None) or RunManager
    configure_logging(cfg.log_level)
    logger.info("relay_starting", agency_id=cfg.agency_id, store_backend=cfg.store_backend)

    manager = factory(cfg)
    app.state.run_manager = manager
    stop = asyncio.Event()
    scheduler = asyncio.create_task(run_forever(manager, cfg.poll_interval_seconds, stop))

    try:
        yield
    finally:
        logger.info("relay_shutting_down")
        stop.set()
        scheduler.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await scheduler
        await manager.close()
        app.state.run_manager = None


app = FastAPI(
    title="PulsePoint Relay",
    version="1.0.0",
    description="Relays PulsePoint incidents to Discord and keeps each message current.",
    docs_url="/docs",
    lifespan=lifespan,
)

app.include_router(runs.router, prefix="/api/v1/runs", tags=["Runs"])
app.include_router(health.router, prefix="/api/v1", tags=["Health"])
