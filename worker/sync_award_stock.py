"""Worker: reconcile cache stock decrements into the database.

Usage:
    python -m worker.sync_award_stock
    python -m worker.sync_award_stock --max-events 500
"""

import argparse

import structlog

from raffle.services.container import RaffleContainer, build_container
from raffle.services.schemas import StockSyncResult

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def main(argv: list[str] | None = None) -> None:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="Drain pending stock events and write combined updates",
    )
    parser.add_argument(
        "--max-events",
        type=int,
        default=None,
        help="Upper bound of events drained in this run (default: settings)",
    )
    args: argparse.Namespace = parser.parse_args(argv)

    container: RaffleContainer = build_container()
    if args.max_events is not None:
        container.stock_sync.max_events = args.max_events

    logger.info("Starting stock sync", queue_depth=container.ledger.pending_sync_depth())
    result: StockSyncResult = container.stock_sync.run_once()
    logger.info(
        "Stock sync complete",
        events=result.events_drained,
        written=result.keys_written,
        skipped=result.keys_skipped,
        units=result.units_subtracted,
    )

    for err in result.errors:
        logger.warning("stock_sync_error", detail=err)


if __name__ == "__main__":
    main()
