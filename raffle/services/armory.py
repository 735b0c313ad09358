"""Armory: precompute lookup tables, seed stock counters and warm strategy config."""

import random
import secrets
from collections.abc import Callable, Sequence
from datetime import datetime
from decimal import ROUND_CEILING, Decimal

import structlog
from sqlalchemy.exc import SQLAlchemyError

from db.enums import LogicModel
from raffle.services.decision_graph import DecisionGraphFactory
from raffle.services.dispatch import StrategyDispatch, tier_table_key
from raffle.services.errors import (
    ConfigurationError,
    EmptyPrizePoolError,
    RaffleError,
    TransientInfraError,
    UnknownRuleModelError,
)
from raffle.services.inventory import InventoryLedger
from raffle.services.rule_chain import (
    CHAIN_RULE_MODELS,
    LogicChainFactory,
    WeightTier,
    parse_blacklist_rule,
    parse_weight_rule,
)
from raffle.services.schemas import AwardEntity, RuleGraph, StrategyEntity
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_ONE: Decimal = Decimal(1)


def _ceil(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_CEILING))


def build_rate_table(
    prizes: Sequence[AwardEntity],
    shuffle: Callable[[list[int]], None] = secrets.SystemRandom().shuffle,
) -> list[int]:
    """Expand prize rates into a shuffled table of award ids.

    tableLength = ceil(totalRate / minRate); each prize takes
    ceil(tableLength * rate / totalRate) slots. Zero-rate prizes get none, and
    the result may be longer than tableLength because of the per-prize ceiling.
    """
    for prize in prizes:
        if prize.award_rate < 0 or prize.award_rate > _ONE:
            raise ConfigurationError(
                f"award {prize.award_id}: rate {prize.award_rate} is outside [0, 1]"
            )
    positive: list[AwardEntity] = [p for p in prizes if p.award_rate > 0]
    if not positive:
        raise EmptyPrizePoolError("no prize with a positive rate")

    min_rate: Decimal = min(p.award_rate for p in positive)
    total_rate: Decimal = sum((p.award_rate for p in positive), Decimal(0))
    table_length: int = _ceil(total_rate / min_rate)

    table: list[int] = []
    for prize in positive:
        slots: int = _ceil(Decimal(table_length) * prize.award_rate / total_rate)
        table.extend([prize.award_id] * slots)

    shuffle(table)
    return table


class ArmoryService:
    """Prepares a strategy for drawing.

    Everything is computed and validated before the first cache write, and the
    full-pool table is stored last, so a strategy that fails armory is never
    left half-armed with a drawable table.
    """

    def __init__(
        self,
        repository: StrategyRepository,
        dispatch: StrategyDispatch,
        ledger: InventoryLedger,
        graphs: DecisionGraphFactory,
        chains: LogicChainFactory | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.repository: StrategyRepository = repository
        self.dispatch: StrategyDispatch = dispatch
        self.ledger: InventoryLedger = ledger
        self.graphs: DecisionGraphFactory = graphs
        self.chains: LogicChainFactory | None = chains
        self._shuffle: Callable[[list[int]], None] = (rng or secrets.SystemRandom()).shuffle

    def armory(self, strategy_id: int) -> bool:
        try:
            return self._armory(strategy_id)
        except SQLAlchemyError as exc:
            logger.error("armory_store_failed", strategy_id=strategy_id, error=str(exc))
            raise TransientInfraError(f"armory of strategy {strategy_id} failed: {exc}") from exc

    def armory_all(self) -> dict[int, bool]:
        """Arm every strategy in the store; one failure does not stop the rest."""
        outcome: dict[int, bool] = {}
        for strategy_id in self.repository.query_strategy_ids():
            try:
                outcome[strategy_id] = self.armory(strategy_id)
            except RaffleError as exc:
                logger.error("armory_failed", strategy_id=strategy_id, error=str(exc))
                outcome[strategy_id] = False
        return outcome

    def _armory(self, strategy_id: int) -> bool:
        awards: list[AwardEntity] = self.repository.load_awards(strategy_id)
        if not awards:
            logger.warning("armory_no_awards", strategy_id=strategy_id)
            return False

        try:
            full_table: list[int] = build_rate_table(awards, self._shuffle)
        except EmptyPrizePoolError:
            logger.warning("armory_empty_prize_pool", strategy_id=strategy_id)
            return False

        strategy: StrategyEntity | None = self.repository.load_strategy(strategy_id)
        tier_tables: dict[str, list[int]] = (
            self._build_tier_tables(strategy, awards) if strategy is not None else {}
        )
        if strategy is not None:
            self._warm_chain_rules(strategy)
        graphs: list[RuleGraph] = self._load_graphs(awards)

        end_time: datetime | None = strategy.end_time if strategy is not None else None
        for award in awards:
            self.ledger.seed_counter(strategy_id, award.award_id, award.award_count_surplus, end_time)
        for graph in graphs:
            self.repository.cache_rule_graph(graph)
            self.graphs.invalidate(graph.graph_id)
        for table_key, table in tier_tables.items():
            self.dispatch.store_rate_table(table_key, table)
        self.dispatch.store_rate_table(str(strategy_id), full_table)
        if self.chains is not None:
            self.chains.invalidate(strategy_id)

        logger.info(
            "strategy_armed",
            strategy_id=strategy_id,
            awards=len(awards),
            table_size=len(full_table),
            tiers=len(tier_tables),
            graphs=len(graphs),
        )
        return True

    def _build_tier_tables(
        self,
        strategy: StrategyEntity,
        awards: list[AwardEntity],
    ) -> dict[str, list[int]]:
        if not strategy.declares_weight_rule:
            return {}
        value: str | None = self.repository.load_rule_value(
            strategy.strategy_id, LogicModel.RULE_WEIGHT.value
        )
        tiers: list[WeightTier] = parse_weight_rule(value)
        if not tiers:
            raise ConfigurationError(
                f"strategy {strategy.strategy_id} declares {LogicModel.RULE_WEIGHT.value} without a value"
            )

        by_id: dict[int, AwardEntity] = {a.award_id: a for a in awards}
        tables: dict[str, list[int]] = {}
        for tier in tiers:
            missing: list[int] = [i for i in tier.award_ids if i not in by_id]
            if missing:
                raise ConfigurationError(
                    f"strategy {strategy.strategy_id}: weight tier {tier.token!r} names unknown awards {missing}"
                )
            subset: list[AwardEntity] = [by_id[i] for i in tier.award_ids]
            tables[tier_table_key(strategy.strategy_id, tier.token)] = build_rate_table(
                subset, self._shuffle
            )
        return tables

    def _warm_chain_rules(self, strategy: StrategyEntity) -> None:
        unknown: list[str] = [m for m in strategy.rule_models if m not in CHAIN_RULE_MODELS]
        if unknown:
            raise UnknownRuleModelError(f"strategy {strategy.strategy_id}: unknown rule models {unknown}")
        if LogicModel.RULE_BLACKLIST.value in strategy.rule_models:
            parse_blacklist_rule(
                self.repository.load_rule_value(strategy.strategy_id, LogicModel.RULE_BLACKLIST.value)
            )

    def _load_graphs(self, awards: list[AwardEntity]) -> list[RuleGraph]:
        graphs: list[RuleGraph] = []
        for graph_id in dict.fromkeys(a.graph_id for a in awards if a.graph_id):
            graph: RuleGraph | None = self.repository.load_rule_graph(graph_id)
            if graph is None:
                raise ConfigurationError(f"decision graph {graph_id!r} does not exist")
            self.graphs.validate(graph)
            graphs.append(graph)
        return graphs
