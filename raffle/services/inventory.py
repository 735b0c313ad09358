"""Inventory ledger: cache stock counters, exhausted flags and the pending-sync queue."""

from collections.abc import Callable
from datetime import datetime

import structlog

from raffle.services._helpers import now_utc, seconds_until
from raffle.services.cache import COUNTER_MISSING, CacheKeys, CacheStore
from raffle.services.errors import CampaignEndedError
from raffle.services.schemas import PendingSyncEvent

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

ExhaustedHook = Callable[[int, int], None]


class InventoryLedger:
    """Authoritative-at-runtime stock counters.

    A counter is only decremented while positive, in one atomic cache step,
    so it never goes below zero. The first failed decrement for an award
    raises its exhausted flag and forces the durable remaining stock to zero
    through ``on_exhausted``.
    """

    def __init__(
        self,
        cache: CacheStore,
        keys: CacheKeys | None = None,
        on_exhausted: ExhaustedHook | None = None,
    ) -> None:
        self.cache: CacheStore = cache
        self.keys: CacheKeys = keys or CacheKeys()
        self.on_exhausted: ExhaustedHook | None = on_exhausted

    def seed_counter(
        self,
        strategy_id: int,
        award_id: int,
        surplus: int,
        end_time: datetime | None = None,
    ) -> bool:
        """Seed a counter from durable remaining stock. A live counter is left alone."""
        seeded: bool = self.cache.set_if_absent(
            self.keys.award_count(strategy_id, award_id),
            str(max(0, surplus)),
            seconds_until(end_time),
        )
        if seeded:
            logger.debug("award_stock_seeded", strategy_id=strategy_id, award_id=award_id, surplus=surplus)
        return seeded

    def current_count(self, strategy_id: int, award_id: int) -> int | None:
        raw: str | None = self.cache.get(self.keys.award_count(strategy_id, award_id))
        return int(raw) if raw is not None else None

    def atomic_decrement(
        self,
        strategy_id: int,
        award_id: int,
        end_time: datetime | None = None,
    ) -> bool:
        if end_time is not None and end_time <= now_utc():
            raise CampaignEndedError(f"strategy {strategy_id} ended at {end_time.isoformat()}")

        remaining: int = self.cache.decrement_if_positive(self.keys.award_count(strategy_id, award_id))
        if remaining >= 0:
            return True
        if remaining == COUNTER_MISSING:
            logger.warning("award_stock_counter_missing", strategy_id=strategy_id, award_id=award_id)
            return False
        self.set_exhausted_flag(strategy_id, award_id, end_time)
        return False

    def set_exhausted_flag(
        self,
        strategy_id: int,
        award_id: int,
        end_time: datetime | None = None,
    ) -> bool:
        """Raise the exhausted flag; returns True only on the first transition."""
        flag_key: str = self.keys.award_exhausted(strategy_id, award_id)
        first: bool = self.cache.set_if_absent(flag_key, "1", seconds_until(end_time))
        if not first:
            return False

        logger.info("award_stock_exhausted", strategy_id=strategy_id, award_id=award_id)
        if self.on_exhausted is not None:
            try:
                self.on_exhausted(strategy_id, award_id)
            except Exception:
                # drop the flag so the next failed decrement retries the durable write
                self.cache.delete(flag_key)
                logger.exception("award_stock_clear_failed", strategy_id=strategy_id, award_id=award_id)
        return True

    def is_exhausted(self, strategy_id: int, award_id: int) -> bool:
        return self.cache.exists(self.keys.award_exhausted(strategy_id, award_id))

    def enqueue_pending_sync(self, strategy_id: int, award_id: int) -> None:
        event: PendingSyncEvent = PendingSyncEvent(strategy_id=strategy_id, award_id=award_id)
        self.cache.push(self.keys.pending_sync_queue(), event.encode())

    def take_pending_sync_event(self) -> PendingSyncEvent | None:
        """Non-blocking pop of the oldest pending event."""
        raw: str | None = self.cache.pop(self.keys.pending_sync_queue())
        return PendingSyncEvent.decode(raw) if raw is not None else None

    def pending_sync_depth(self) -> int:
        return self.cache.queue_length(self.keys.pending_sync_queue())
