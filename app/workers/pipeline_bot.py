# app/workers/pipeline_bot.py
"""
Pipeline Bot — dagelijkse verzameling, ranking gate, generatie en publicatie.

Modes:
- default: host process; daily pipeline run plus a publisher-only drain on an
  interval, until SIGINT/SIGTERM
- --once: one manual run, prints the ManualRunResult JSON, exit code 0/1
- --publisher-only: drain the post queue once and exit
"""

from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional, Sequence

from app.config import settings
from app.core.logging import configure_logging, get_logger
from app.core.request_id import with_run_id
from app.core.scheduling import run_daily, run_every
from services.db_service import close_db_pool, init_db_pool
from services.pipeline_service import PipelineService, build_default_pipeline

configure_logging(service_name="worker")
logger = get_logger().bind(worker="pipeline_bot")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Pipeline Bot - verzamel plannen, check ranking, genereer en publiceer posts."
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run the full pipeline once (manual trigger) and exit.",
    )
    mode.add_argument(
        "--publisher-only",
        action="store_true",
        help="Drain the post queue once and exit.",
    )
    parser.add_argument(
        "--no-tracking",
        action="store_true",
        help="Disable worker run tracking.",
    )
    return parser.parse_args(argv)


async def run_scheduled(pipeline: PipelineService, stop_event: asyncio.Event) -> None:
    """Daily pipeline plus interval publisher, until ``stop_event`` is set."""

    async def daily_job() -> None:
        with with_run_id():
            await pipeline.run_pipeline(trigger="scheduled")

    async def publisher_job() -> None:
        with with_run_id():
            await pipeline.run_publisher_only()

    logger.info(
        "pipeline_bot_scheduled",
        timezone=settings.PIPELINE_TIMEZONE,
        hour=settings.PIPELINE_SCHEDULE_HOUR,
        minute=settings.PIPELINE_SCHEDULE_MINUTE,
        publisher_interval_minutes=settings.PUBLISHER_INTERVAL_MINUTES,
    )
    try:
        await asyncio.gather(
            run_daily(
                daily_job,
                hour=settings.PIPELINE_SCHEDULE_HOUR,
                minute=settings.PIPELINE_SCHEDULE_MINUTE,
                tz=settings.PIPELINE_TIMEZONE,
                stop_event=stop_event,
                clock=pipeline.clock,
                name="pipeline_daily",
            ),
            run_every(
                publisher_job,
                interval_s=settings.PUBLISHER_INTERVAL_MINUTES * 60,
                stop_event=stop_event,
                clock=pipeline.clock,
                name="publisher_interval",
            ),
        )
    finally:
        await pipeline.scheduler.cancel_all()
        logger.info("pipeline_bot_shutdown")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _handler(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        loop.call_soon_threadsafe(stop_event.set)

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    await init_db_pool()
    try:
        pipeline = build_default_pipeline()
        pipeline.track_runs = not args.no_tracking

        if args.once:
            with with_run_id():
                result = await pipeline.trigger_manual_run()
            print(result.model_dump_json())
            # een geplande herhaling na een transient fout nog afwachten
            await pipeline.scheduler.join()
            return 0 if result.success else 1

        if args.publisher_only:
            with with_run_id():
                report = await pipeline.run_publisher_only()
            return 0 if report is not None else 1

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        await run_scheduled(pipeline, stop_event)
        return 0
    finally:
        await close_db_pool()


def main() -> None:
    exit_code = asyncio.run(main_async())
    raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
