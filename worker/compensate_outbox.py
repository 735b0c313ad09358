"""Worker: republish outbox tasks that were not delivered.

Usage:
    python -m worker.compensate_outbox
    python -m worker.compensate_outbox --batch-limit 500 --grace-seconds 0
"""

import argparse

import structlog

from raffle.services.container import RaffleContainer, build_container
from raffle.services.schemas import CompensationResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Republish undelivered outbox tasks across partitions",
    )
    parser.add_argument(
        "--batch-limit",
        type=int,
        default=None,
        help="Tasks scanned per partition (default: settings)",
    )
    parser.add_argument(
        "--grace-seconds",
        type=int,
        default=None,
        help="Skip tasks updated more recently than this (default: settings)",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    container: RaffleContainer = build_container()
    if args.batch_limit is not None:
        container.compensator.batch_limit = args.batch_limit
    if args.grace_seconds is not None:
        container.compensator.grace_seconds = args.grace_seconds

    logger.info("Starting outbox compensation", partitions=len(container.router))
    result: CompensationResult = container.compensator.run_once()
    logger.info(
        "Outbox compensation complete",
        scanned=result.tasks_scanned,
        completed=result.tasks_completed,
        failed=result.tasks_failed,
    )

    for err in result.errors:
        logger.warning("outbox_error", detail=err)


if __name__ == "__main__":
    main()
