"""Tests for raffle.services.stock_sync."""

from typing import Any

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from raffle.services.container import RaffleContainer
from raffle.services.errors import CacheUnavailableError
from raffle.services.schemas import StockSyncResult
from raffle.services.stock_sync import StockSyncJob
from raffle.services.strategy_repository import StrategyRepository
from tests.factories import Seeder

STRATEGY_ID = 100006


def _surplus(container: RaffleContainer) -> dict[int, int]:
    return {a.award_id: a.award_count_surplus for a in container.repository.load_awards(STRATEGY_ID)}


@pytest.fixture()
def stocked(container: RaffleContainer, seed: Seeder) -> RaffleContainer:
    seed.strategy(STRATEGY_ID)
    seed.award(STRATEGY_ID, 101, 0.5, surplus=100)
    seed.award(STRATEGY_ID, 102, 0.5, surplus=100)
    return container


class TestStockSync:
    def test_events_are_combined_per_award(self, stocked: RaffleContainer, engine: Engine) -> None:
        for _ in range(7):
            stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        for _ in range(3):
            stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 102)

        updates: list[str] = []

        @event.listens_for(engine, "before_cursor_execute")
        def _count(conn: Any, cursor: Any, statement: str, *args: Any) -> None:
            if statement.lstrip().upper().startswith("UPDATE"):
                updates.append(statement)

        try:
            result: StockSyncResult = stocked.stock_sync.run_once()
        finally:
            event.remove(engine, "before_cursor_execute", _count)

        assert result.events_drained == 10
        assert result.keys_written == 2
        assert result.units_subtracted == 10
        assert len(updates) == 2
        assert _surplus(stocked) == {101: 93, 102: 97}
        assert stocked.ledger.pending_sync_depth() == 0

    def test_empty_queue(self, stocked: RaffleContainer) -> None:
        result: StockSyncResult = stocked.stock_sync.run_once()
        assert result == StockSyncResult()

    def test_exhausted_award_is_skipped(self, stocked: RaffleContainer) -> None:
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 102)
        stocked.ledger.set_exhausted_flag(STRATEGY_ID, 101)

        result: StockSyncResult = stocked.stock_sync.run_once()

        assert result.keys_skipped == 1
        assert result.keys_written == 1
        # the exhausted transition already zeroed the durable stock
        assert _surplus(stocked) == {101: 0, 102: 99}

    def test_subtraction_clamps_at_zero(self, stocked: RaffleContainer, seed: Seeder) -> None:
        seed.award(STRATEGY_ID, 103, 0.1, surplus=2)
        for _ in range(5):
            stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 103)

        stocked.stock_sync.run_once()
        assert _surplus(stocked)[103] == 0

    def test_drain_respects_max_events(self, stocked: RaffleContainer) -> None:
        for _ in range(5):
            stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        job: StockSyncJob = StockSyncJob(stocked.ledger, stocked.repository.session_factory, max_events=3)

        result: StockSyncResult = job.run_once()

        assert result.events_drained == 3
        assert stocked.ledger.pending_sync_depth() == 2
        assert _surplus(stocked)[101] == 97

    def test_failed_update_does_not_block_other_keys(
        self, stocked: RaffleContainer, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        original = StrategyRepository.subtract_award_stock

        def flaky(session: Session, strategy_id: int, award_id: int, amount: int) -> int:
            if award_id == 101:
                raise OperationalError("UPDATE strategy_awards", {}, Exception("database is locked"))
            return original(session, strategy_id, award_id, amount)

        monkeypatch.setattr(StrategyRepository, "subtract_award_stock", staticmethod(flaky))
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 102)

        result: StockSyncResult = stocked.stock_sync.run_once()

        assert result.keys_written == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("100006_101")
        assert _surplus(stocked) == {101: 100, 102: 99}

    def test_cache_failure_does_not_block_other_keys(
        self, stocked: RaffleContainer, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        original = stocked.ledger.is_exhausted

        def flaky(strategy_id: int, award_id: int) -> bool:
            if award_id == 101:
                raise CacheUnavailableError("connection reset")
            return original(strategy_id, award_id)

        monkeypatch.setattr(stocked.ledger, "is_exhausted", flaky)
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        stocked.ledger.enqueue_pending_sync(STRATEGY_ID, 102)

        result: StockSyncResult = stocked.stock_sync.run_once()

        assert result.events_drained == 2
        assert result.keys_written == 1
        assert len(result.errors) == 1
        assert result.errors[0].startswith("100006_101")
        assert _surplus(stocked) == {101: 100, 102: 99}
