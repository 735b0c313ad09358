"""Worker: run stock sync and outbox compensation on fixed intervals.

Arms every strategy on start, then keeps both jobs running until interrupted.

Usage:
    python -m worker.run_jobs
    python -m worker.run_jobs --no-armory
"""

import argparse

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from raffle.services.container import RaffleContainer, build_container

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def _sync_stock(container: RaffleContainer) -> None:
    try:
        container.stock_sync.run_once()
    except Exception:
        logger.exception("stock_sync_job_failed")


def _compensate(container: RaffleContainer) -> None:
    try:
        container.compensator.run_once()
    except Exception:
        logger.exception("outbox_job_failed")


def build_scheduler(container: RaffleContainer) -> BlockingScheduler:
    jobs = container.settings.jobs
    scheduler: BlockingScheduler = BlockingScheduler()
    scheduler.add_job(
        _sync_stock,
        IntervalTrigger(seconds=jobs.stock_sync_interval_seconds),
        args=[container],
        id="sync_award_stock",
        name="Reconcile award stock",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=jobs.stock_sync_interval_seconds,
    )
    scheduler.add_job(
        _compensate,
        IntervalTrigger(seconds=jobs.outbox_scan_interval_seconds),
        args=[container],
        id="compensate_outbox",
        name="Republish undelivered outbox tasks",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=jobs.outbox_scan_interval_seconds,
    )
    return scheduler


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Run the raffle background jobs",
    )
    parser.add_argument(
        "--no-armory",
        action="store_true",
        default=False,
        help="Skip arming every strategy on start",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    container: RaffleContainer = build_container()
    if not args.no_armory:
        outcome: dict[int, bool] = container.armory.armory_all()
        logger.info("Armory complete", armed=sum(outcome.values()), total=len(outcome))

    scheduler: BlockingScheduler = build_scheduler(container)
    logger.info(
        "Starting job scheduler",
        stock_sync_interval=container.settings.jobs.stock_sync_interval_seconds,
        outbox_interval=container.settings.jobs.outbox_scan_interval_seconds,
    )
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Job scheduler stopped")


if __name__ == "__main__":
    main()
