"""Lookup-table storage and the uniform random draw over it."""

import secrets
from collections.abc import Callable, Sequence

import structlog

from raffle.services.cache import CacheKeys, CacheStore
from raffle.services.errors import StrategyNotArmedError

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def tier_table_key(strategy_id: int, tier_token: str) -> str:
    return f"{strategy_id}_{tier_token}"


class StrategyDispatch:
    """Stores probability lookup tables and draws from them.

    A table is a hash ``index -> award_id`` plus its size under a separate
    key; the draw picks a uniform index below the stored size.
    """

    def __init__(
        self,
        cache: CacheStore,
        keys: CacheKeys | None = None,
        randbelow: Callable[[int], int] = secrets.randbelow,
    ) -> None:
        self.cache: CacheStore = cache
        self.keys: CacheKeys = keys or CacheKeys()
        self._randbelow: Callable[[int], int] = randbelow

    def store_rate_table(self, table_key: str, table: Sequence[int]) -> None:
        mapping: dict[str, str] = {str(i): str(award_id) for i, award_id in enumerate(table)}
        self.cache.replace_hash(self.keys.rate_table(table_key), mapping)
        self.cache.set(self.keys.rate_range(table_key), str(len(table)))

    def rate_range(self, table_key: str) -> int | None:
        raw: str | None = self.cache.get(self.keys.rate_range(table_key))
        return int(raw) if raw is not None else None

    def is_armed(self, strategy_id: int) -> bool:
        return self.rate_range(str(strategy_id)) is not None

    def draw_full_pool(self, strategy_id: int) -> int:
        return self._draw(str(strategy_id))

    def draw_tier_pool(self, strategy_id: int, tier_token: str) -> int:
        return self._draw(tier_table_key(strategy_id, tier_token))

    def _draw(self, table_key: str) -> int:
        size: int | None = self.rate_range(table_key)
        if not size:
            raise StrategyNotArmedError(f"no lookup table for {table_key!r}; run armory first")
        index: int = self._randbelow(size)
        award_id: str | None = self.cache.hget(self.keys.rate_table(table_key), str(index))
        if award_id is None:
            # table replaced between the size read and the slot read
            raise StrategyNotArmedError(f"lookup table {table_key!r} has no slot {index}")
        return int(award_id)
