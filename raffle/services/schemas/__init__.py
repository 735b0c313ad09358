"""Shared dataclasses for raffle services."""

from raffle.services.schemas.draw import (
    ChainAward,
    DrawContext,
    GraphAward,
    PendingSyncEvent,
    RaffleAward,
)
from raffle.services.schemas.entities import (
    AwardEntity,
    RuleGraph,
    RuleGraphEdge,
    RuleGraphNode,
    StrategyEntity,
)
from raffle.services.schemas.results import (
    AwardRecordResult,
    CompensationResult,
    StockSyncResult,
)

__all__ = [
    # Draw path
    "ChainAward",
    "DrawContext",
    "GraphAward",
    "PendingSyncEvent",
    "RaffleAward",
    # Configuration entities
    "AwardEntity",
    "RuleGraph",
    "RuleGraphEdge",
    "RuleGraphNode",
    "StrategyEntity",
    # Result schemas
    "AwardRecordResult",
    "CompensationResult",
    "StockSyncResult",
]
