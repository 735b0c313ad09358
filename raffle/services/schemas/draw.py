"""Per-draw context and the intermediate awards produced along the draw path."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import cached_property


@dataclass
class DrawContext:
    """Everything an evaluator may consult about the current draw.

    ``draw_count`` is loaded on first access, so draws that never reach a
    weight or lock rule do not pay for the lookup.
    """

    user_id: str
    strategy_id: int
    end_time: datetime | None = None
    count_loader: Callable[[], int] | None = field(default=None, repr=False)

    @cached_property
    def draw_count(self) -> int:
        return self.count_loader() if self.count_loader is not None else 0


@dataclass(slots=True)
class ChainAward:
    award_id: int
    logic_model: str
    award_rule_value: str | None = None


@dataclass(slots=True)
class GraphAward:
    award_id: int
    award_rule_value: str | None = None


@dataclass(slots=True)
class RaffleAward:
    strategy_id: int
    award_id: int
    award_title: str
    sort: int
    logic_model: str
    award_rule_value: str | None = None


@dataclass(frozen=True, slots=True)
class PendingSyncEvent:
    """One successful cache decrement awaiting durable reconciliation."""

    strategy_id: int
    award_id: int

    def encode(self) -> str:
        return f"{self.strategy_id}_{self.award_id}"

    @classmethod
    def decode(cls, raw: str) -> "PendingSyncEvent":
        strategy_id, _, award_id = raw.partition("_")
        return cls(strategy_id=int(strategy_id), award_id=int(award_id))
