"""
Trigger scheduler worker.

Runs the rule scheduler outside the API process:

    notify-worker                 coarse and fine cadences until stopped
    notify-worker --once coarse   one daily pass now, then exit
    notify-worker --once fine     one minute pass now, then exit

The single-pass mode is meant for cron-driven deployments and for
replaying a missed daily tick by hand. It honours the same overlap guard
as the in-process tickers, so it exits non-zero when the cadence is busy.
"""

import argparse
import asyncio
import sys

from app.config import settings
from app.db.pool import db_pool
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.trigger_scheduler import TriggerSchedulerError, start_trigger_scheduler, trigger_scheduler
from app.models.domain.trigger_domain import Cadence
from app.services.sms.delivery_channel import delivery_channel

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_SKIPPED = 3


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="notify-worker",
        description="Evaluate trigger rules and dispatch SMS and realtime notifications.",
    )
    parser.add_argument(
        "--once",
        type=str.lower,
        choices=[cadence.value for cadence in Cadence],
        help="run a single tick of this cadence and exit",
    )
    return parser


async def run_single_tick(cadence: Cadence) -> dict:
    """Open the pool, run one tick, release every resource the tick used."""
    if not db_pool.initialized:
        await db_pool.initialize()

    try:
        result = await trigger_scheduler.run_now(cadence)
    finally:
        await delivery_channel.close()
        await db_pool.close()

    logger.info(
        "Single trigger tick finished",
        cadence=cadence.value,
        skipped=result.get("skipped", False),
        rules_fired=result.get("rules_fired", 0),
        rules_failed=result.get("rules_failed", 0),
    )
    return result


async def run_worker(once: Cadence | None = None) -> dict | None:
    if once is not None:
        return await run_single_tick(once)

    logger.info(
        "Starting trigger scheduler worker",
        timezone=settings.SCHEDULER_TIMEZONE,
        daily_time=settings.SCHEDULER_DAILY_TIME,
    )
    await start_trigger_scheduler()
    return None


def exit_code(result: dict | None) -> int:
    if not result:
        return EXIT_OK
    if result.get("skipped"):
        return EXIT_SKIPPED
    if result.get("rules_failed"):
        return EXIT_FAILED
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    args = build_parser().parse_args(argv)
    setup_logging(log_level="DEBUG" if settings.debug else "INFO")
    once = Cadence(args.once) if args.once else None

    try:
        result = asyncio.run(run_worker(once))
    except TriggerSchedulerError as e:
        logger.error("Trigger scheduler worker failed", operation=e.operation, error=str(e))
        return EXIT_FAILED
    except KeyboardInterrupt:
        logger.info("Trigger scheduler worker interrupted")
        return EXIT_OK

    return exit_code(result)


if __name__ == "__main__":
    sys.exit(main())
