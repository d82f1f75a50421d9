"""Entrypoint for the Solana payment stream service."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date
from typing import List, Optional

import uvicorn

from .analytics.summary import run_daily_summaries
from .config.settings import get_app_config
from .dashboard import DashboardState, create_dashboard_app
from .ingestion.ledger import is_valid_address
from .monitoring import bootstrap_observability
from .monitoring.logger import get_logger
from .realtime.context import init, shutdown

logger = get_logger(__name__)


async def serve(host: Optional[str], port: Optional[int], watch: List[str]) -> None:
    config = get_app_config()
    bootstrap_observability(config=config)
    ctx = await init(config)
    try:
        state = DashboardState(ctx)
        for address in watch:
            await state.pin(address)
        app = create_dashboard_app(state)
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host=host or config.dashboard.host,
                port=port or config.dashboard.port,
                log_level=config.monitoring.log_level.lower(),
            )
        )
        logger.info("Serving on %s:%s", host or config.dashboard.host, port or config.dashboard.port)
        await server.serve()
    finally:
        await shutdown(ctx)


async def daily_summary(day: Optional[date]) -> dict:
    config = get_app_config()
    bootstrap_observability(config=config)
    ctx = await init(config, resume=False)
    try:
        return await run_daily_summaries(ctx.store, ctx.notifier if ctx.notifier.enabled else None, day)
    finally:
        await shutdown(ctx)


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Reconcile Solana wallet payments and stream live updates")
    sub = parser.add_subparsers(dest="command")
    serve_parser = sub.add_parser("serve", help="Run the API and change-detection loop (default)")
    serve_parser.add_argument("--host", help="Override dashboard host")
    serve_parser.add_argument("--port", type=int, help="Override dashboard port")
    serve_parser.add_argument("--watch", action="append", default=[], metavar="ADDRESS", help="Address to watch")
    summary_parser = sub.add_parser("daily-summary", help="Build and deliver daily summaries once")
    summary_parser.add_argument("--date", type=date.fromisoformat, help="UTC day (YYYY-MM-DD); defaults to yesterday")
    args = parser.parse_args(argv)

    if args.command == "daily-summary":
        results = asyncio.run(daily_summary(args.date))
        logger.info("Daily summaries finished", extra={"results": results})
        return

    watch = list(getattr(args, "watch", []))
    invalid = [address for address in watch if not is_valid_address(address)]
    if invalid:
        parser.error(f"invalid address: {', '.join(invalid)}")
    try:
        asyncio.run(serve(getattr(args, "host", None), getattr(args, "port", None), watch))
    except KeyboardInterrupt:  # pragma: no cover - interactive shutdown
        logger.info("Shutdown requested")


if __name__ == "__main__":
    main()
