"""Write-combining reconciliation of cache stock decrements into durable storage."""

from collections import Counter

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from db.connection import session_scope
from raffle.services.errors import TransientInfraError
from raffle.services.inventory import InventoryLedger
from raffle.services.schemas import PendingSyncEvent, StockSyncResult
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


class StockSyncJob:
    """Drains pending-sync events and applies one durable subtraction per award.

    K events for the same (strategy, award) in one cycle become a single
    update subtracting K. Awards already flagged exhausted are skipped,
    their durable stock having been zeroed at the transition.
    """

    def __init__(
        self,
        ledger: InventoryLedger,
        session_factory: sessionmaker[Session],
        max_events: int = 10_000,
    ) -> None:
        self.ledger: InventoryLedger = ledger
        self.session_factory: sessionmaker[Session] = session_factory
        self.max_events: int = max_events

    def drain(self) -> Counter[PendingSyncEvent]:
        pending: Counter[PendingSyncEvent] = Counter()
        drained: int = 0
        while drained < self.max_events:
            event: PendingSyncEvent | None = self.ledger.take_pending_sync_event()
            if event is None:
                break
            pending[event] += 1
            drained += 1
        return pending

    def run_once(self) -> StockSyncResult:
        pending: Counter[PendingSyncEvent] = self.drain()
        result: StockSyncResult = StockSyncResult(events_drained=sum(pending.values()))

        for event, count in pending.items():
            try:
                if self.ledger.is_exhausted(event.strategy_id, event.award_id):
                    result.keys_skipped += 1
                    continue
                with session_scope(self.session_factory) as session:
                    StrategyRepository.subtract_award_stock(
                        session, event.strategy_id, event.award_id, count
                    )
            except (SQLAlchemyError, TransientInfraError) as exc:
                result.errors.append(f"{event.encode()}: {exc}")
                logger.error(
                    "stock_sync_update_failed",
                    strategy_id=event.strategy_id,
                    award_id=event.award_id,
                    amount=count,
                    error=str(exc),
                )
                continue
            result.keys_written += 1
            result.units_subtracted += count

        if result.events_drained:
            logger.info(
                "stock_sync_complete",
                events=result.events_drained,
                written=result.keys_written,
                skipped=result.keys_skipped,
                errors=len(result.errors),
            )
        return result
