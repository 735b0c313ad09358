"""Draw orchestration: gates, rule chain, decision graph and award recording."""

from collections.abc import Callable
from datetime import datetime

import structlog

from db.enums import LogicModel
from db.models import UserAwardRecords
from raffle.services._helpers import new_id, now_utc
from raffle.services._types import AwardListItem, DrawResponse, RuleWeightTier, WeightTierAward
from raffle.services.award import AwardService
from raffle.services.decision_graph import DecisionGraphFactory, lock_threshold
from raffle.services.dynamic_config import DynamicConfig
from raffle.services.errors import (
    CampaignEndedError,
    ConfigurationError,
    QuotaExhaustedError,
    ServiceDegradedError,
)
from raffle.services.rule_chain import (
    LogicChainFactory,
    WeightTier,
    parse_weight_rule,
    select_weight_tier,
)
from raffle.services.schemas import (
    AwardEntity,
    AwardRecordResult,
    ChainAward,
    DrawContext,
    GraphAward,
    RaffleAward,
    RuleGraph,
    StrategyEntity,
)
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

# (user_id, strategy_id) -> allowed / cumulative draw count
QuotaGate = Callable[[str, int], bool]
DrawCountSource = Callable[[str, int], int]


class RaffleStrategy:
    """Computes one draw: chain first, then the award's decision graph."""

    def __init__(
        self,
        repository: StrategyRepository,
        chains: LogicChainFactory,
        graphs: DecisionGraphFactory,
    ) -> None:
        self.repository: StrategyRepository = repository
        self.chains: LogicChainFactory = chains
        self.graphs: DecisionGraphFactory = graphs

    def perform_raffle(self, ctx: DrawContext) -> RaffleAward:
        chain_award: ChainAward = self.chains.open_logic_chain(ctx.strategy_id).logic(ctx)
        if chain_award.logic_model != LogicModel.RULE_DEFAULT.value:
            return self._build(ctx, chain_award.award_id, chain_award.award_rule_value, chain_award.logic_model)

        drawn: AwardEntity = self._award(ctx.strategy_id, chain_award.award_id)
        if not drawn.graph_id:
            return self._build(ctx, drawn.award_id, None, chain_award.logic_model)

        graph_award: GraphAward = self.graphs.open_engine(drawn.graph_id).process(ctx, drawn.award_id)
        return self._build(ctx, graph_award.award_id, graph_award.award_rule_value, chain_award.logic_model)

    def _award(self, strategy_id: int, award_id: int) -> AwardEntity:
        award: AwardEntity | None = self.repository.query_award(strategy_id, award_id)
        if award is None:
            raise ConfigurationError(f"strategy {strategy_id} has no award {award_id}")
        return award

    def _build(
        self,
        ctx: DrawContext,
        award_id: int,
        award_rule_value: str | None,
        logic_model: str,
    ) -> RaffleAward:
        award: AwardEntity = self._award(ctx.strategy_id, award_id)
        return RaffleAward(
            strategy_id=ctx.strategy_id,
            award_id=award.award_id,
            award_title=award.award_title,
            sort=award.sort,
            logic_model=logic_model,
            award_rule_value=award_rule_value,
        )


class RaffleService:
    """Entry point for draws and the read-only award/tier views."""

    def __init__(
        self,
        repository: StrategyRepository,
        strategy: RaffleStrategy,
        awards: AwardService,
        count_source: DrawCountSource | None = None,
        quota_gate: QuotaGate | None = None,
        dynamic_config: DynamicConfig | None = None,
    ) -> None:
        self.repository: StrategyRepository = repository
        self.strategy: RaffleStrategy = strategy
        self.awards: AwardService = awards
        self.count_source: DrawCountSource = count_source or awards.count_records
        self.quota_gate: QuotaGate | None = quota_gate
        self.dynamic_config: DynamicConfig | None = dynamic_config

    def draw(self, user_id: str, strategy_id: int, order_id: str | None = None) -> DrawResponse:
        if self.dynamic_config is not None and self.dynamic_config.is_degraded():
            raise ServiceDegradedError("draws are switched off")

        if order_id is not None:
            existing: UserAwardRecords | None = self.awards.find_record(user_id, order_id)
            if existing is not None:
                return self._recorded_response(
                    strategy_id, order_id, existing.award_id, existing.award_title, existing.award_config
                )

        if self.quota_gate is not None and not self.quota_gate(user_id, strategy_id):
            raise QuotaExhaustedError(f"user {user_id} has no draws left in strategy {strategy_id}")

        ctx: DrawContext = self._context(user_id, strategy_id)
        raffle_award: RaffleAward = self.strategy.perform_raffle(ctx)
        order: str = order_id or new_id()
        recorded: AwardRecordResult = self.awards.save_award_record(
            user_id=user_id,
            strategy_id=strategy_id,
            order_id=order,
            award_id=raffle_award.award_id,
            award_title=raffle_award.award_title,
            award_config=raffle_award.award_rule_value,
        )
        if recorded.duplicate:
            # lost a race on the same order id; the first record stands
            logger.warning(
                "draw_duplicate_order",
                user_id=user_id,
                order_id=order,
                drawn_award_id=raffle_award.award_id,
                recorded_award_id=recorded.award_id,
            )
            return self._recorded_response(
                strategy_id, order, recorded.award_id, recorded.award_title, recorded.award_config
            )

        logger.info(
            "draw_complete",
            user_id=user_id,
            strategy_id=strategy_id,
            order_id=order,
            award_id=raffle_award.award_id,
            logic_model=raffle_award.logic_model,
        )
        return DrawResponse(
            award_id=raffle_award.award_id,
            award_title=raffle_award.award_title,
            sort=raffle_award.sort,
            award_rule_value=raffle_award.award_rule_value,
            order_id=order,
            duplicate=False,
        )

    def _recorded_response(
        self,
        strategy_id: int,
        order_id: str,
        award_id: int,
        award_title: str,
        award_config: str | None,
    ) -> DrawResponse:
        """Response for an order that already has a record; the stored award wins."""
        award: AwardEntity | None = self.repository.query_award(strategy_id, award_id)
        return DrawResponse(
            award_id=award_id,
            award_title=award_title,
            sort=award.sort if award is not None else 0,
            award_rule_value=award_config,
            order_id=order_id,
            duplicate=True,
        )

    def _context(self, user_id: str, strategy_id: int) -> DrawContext:
        strategy: StrategyEntity | None = self.repository.query_strategy(strategy_id)
        end_time: datetime | None = strategy.end_time if strategy is not None else None
        if end_time is not None and end_time <= now_utc():
            raise CampaignEndedError(f"strategy {strategy_id} ended at {end_time.isoformat()}")
        return DrawContext(
            user_id=user_id,
            strategy_id=strategy_id,
            end_time=end_time,
            count_loader=lambda: self.count_source(user_id, strategy_id),
        )

    def query_award_list(self, strategy_id: int, user_id: str) -> list[AwardListItem]:
        """Awards of a strategy with their usage-lock state for ``user_id``."""
        draw_count: int = self.count_source(user_id, strategy_id)
        items: list[AwardListItem] = []
        for award in self.repository.query_awards(strategy_id):
            threshold: int | None = None
            if award.graph_id:
                graph: RuleGraph | None = self.repository.query_rule_graph(award.graph_id)
                threshold = lock_threshold(graph) if graph is not None else None
            items.append(
                AwardListItem(
                    award_id=award.award_id,
                    award_title=award.award_title,
                    award_subtitle=award.award_subtitle,
                    sort=award.sort,
                    unlock_threshold=threshold,
                    unlocked=threshold is None or draw_count >= threshold,
                    remaining_draws_to_unlock=max(0, (threshold or 0) - draw_count),
                )
            )
        return items

    def query_rule_weight(self, strategy_id: int, user_id: str) -> list[RuleWeightTier]:
        """Weight tiers of a strategy and whether ``user_id`` has reached each one."""
        tiers: list[WeightTier] = parse_weight_rule(
            self.repository.query_rule_value(strategy_id, LogicModel.RULE_WEIGHT.value)
        )
        if not tiers:
            return []
        draw_count: int = self.count_source(user_id, strategy_id)
        active: WeightTier | None = select_weight_tier(tiers, draw_count)
        titles: dict[int, str] = {a.award_id: a.award_title for a in self.repository.query_awards(strategy_id)}
        return [
            RuleWeightTier(
                threshold=tier.threshold,
                tier_key=tier.token,
                reached=active is not None and tier.threshold <= active.threshold,
                user_draw_count=draw_count,
                awards=[
                    WeightTierAward(award_id=award_id, award_title=titles.get(award_id, ""))
                    for award_id in tier.award_ids
                ],
            )
            for tier in tiers
        ]
