#!/usr/bin/env python3
"""
PulsePoint Relay — CLI entry point.

Usage examples
--------------
# One reconciliation run; prints the run summary as JSON
python main.py --once

# Poll every POLL_INTERVAL_SECONDS until Ctrl-C
python main.py --continuous

# Verbose logging
python main.py --once --log-level DEBUG

# Dry run against the built-in encrypted mock feed (no network, no Discord)
python main.py --demo

# Serve the HTTP trigger surface (runs on the poll interval in the background)
python main.py --serve --port 8000

# Serve against the mock feed with debug logging
python main.py --serve --demo --log-level DEBUG
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys

import httpx
import uvicorn

from relay.errors import RelayError
from relay.main import app
from relay.services.discord import DiscordWebhookService
from relay.services.pulsepoint import PulsePointFeedClient
from relay.services.run_manager import RunManager
from relay.services.scheduler import run_forever
from relay.services.store import InMemoryTrackingStore
from relay.utils.config import Config, load_config
from relay.utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

DEMO_WEBHOOK_URL = "https://discord.com/api/webhooks/000000000000000000/demo-token"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------

def build_demo_manager(cfg: Config) -> RunManager:
    """RunManager wired to the mock feed, an in-memory store and a dry-run Discord client."""
    from mocks.pulsepoint_responses import get_mock_payload

    payload = get_mock_payload()

    def _feed_handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=payload)

    feed_http = httpx.AsyncClient(transport=httpx.MockTransport(_feed_handler))
    return RunManager(
        cfg,
        feed=PulsePointFeedClient(cfg, http=feed_http),
        discord=DiscordWebhookService(cfg, dry_run=True),
        store=InMemoryTrackingStore(),
    )


async def _run_once(manager: RunManager) -> int:
    try:
        summary = await manager.run()
    except RelayError as exc:
        logger.error("run_aborted", error_type=type(exc).__name__, error=str(exc))
        return 1
    finally:
        await manager.close()
    print(json.dumps(summary.model_dump(), indent=2))
    return 0


def _serve(cfg: Config, args: argparse.Namespace) -> int:
    """Run the FastAPI app under uvicorn with the CLI's configuration."""
    app.state.config = cfg
    app.state.manager_factory = build_demo_manager if args.demo else RunManager
    logger.info("relay_serve_start", host=args.host, port=args.port, demo=args.demo)
    print(f"Serving PulsePoint Relay on http://{args.host}:{args.port} (docs at /docs)")
    uvicorn.run(app, host=args.host, port=args.port, log_level=cfg.log_level.lower())
    return 0


async def _run_continuous(manager: RunManager, interval: float) -> int:
    try:
        await run_forever(manager, interval)
    finally:
        await manager.close()
    return 0


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Relay PulsePoint incidents to Discord and keep each message current.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Execute a single run (default)")
    mode.add_argument("--continuous", action="store_true", help="Run every poll interval until interrupted")
    mode.add_argument("--serve", action="store_true", help="Serve the HTTP API with the scheduled trigger")
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Use the built-in mock feed and a dry-run Discord client",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity (overrides LOG_LEVEL)",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Bind address for --serve")
    parser.add_argument("--port", type=int, default=8000, help="Port for --serve")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)

    overrides = {"log_level": args.log_level}
    if args.demo:
        overrides["discord_webhook_url"] = DEMO_WEBHOOK_URL
        overrides["store_backend"] = "memory"

    try:
        cfg = load_config(**overrides)
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    configure_logging(cfg.log_level)

    if args.serve:
        return _serve(cfg, args)

    logger.info("relay_cli_start", demo=args.demo, continuous=args.continuous, agency_id=cfg.agency_id)

    manager = build_demo_manager(cfg) if args.demo else RunManager(cfg)

    try:
        if args.continuous:
            return asyncio.run(_run_continuous(manager, cfg.poll_interval_seconds))
        return asyncio.run(_run_once(manager))
    except KeyboardInterrupt:
        logger.info("relay_cli_interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
