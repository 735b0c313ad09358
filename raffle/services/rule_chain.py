"""Pre-draw rule chain: blacklist -> weight tier -> default.

Each node either returns a final award (short-circuit) or hands the draw to
its successor. The default node always terminates the chain with a draw
from the full prize pool.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import ClassVar

import structlog

from db.enums import LogicModel
from raffle.services._helpers import split_csv
from raffle.services.dispatch import StrategyDispatch
from raffle.services.errors import (
    ConfigurationError,
    MalformedRuleValueError,
    UnknownRuleModelError,
)
from raffle.services.schemas import ChainAward, DrawContext, StrategyEntity
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


# ── Rule value grammars ──────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class WeightTier:
    threshold: int
    token: str
    award_ids: tuple[int, ...]


@dataclass(frozen=True, slots=True)
class Blacklist:
    award_id: int
    user_ids: frozenset[str]


def _parse_int(raw: str, rule_model: str, value: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise MalformedRuleValueError(f"{rule_model}: {raw!r} is not an integer in {value!r}") from None


def parse_weight_rule(value: str | None) -> list[WeightTier]:
    """Parse ``"4000:102,103 5000:102,103,104"`` into tiers sorted by threshold."""
    if not value or not value.strip():
        return []
    model: str = LogicModel.RULE_WEIGHT.value
    tiers: dict[int, WeightTier] = {}
    for token in value.split():
        threshold_raw, sep, awards_raw = token.partition(":")
        award_tokens: list[str] = split_csv(awards_raw)
        if not sep or not award_tokens:
            raise MalformedRuleValueError(f"{model}: group {token!r} is not threshold:awardIds")
        threshold: int = _parse_int(threshold_raw, model, value)
        if threshold in tiers:
            raise MalformedRuleValueError(f"{model}: threshold {threshold} declared twice in {value!r}")
        tiers[threshold] = WeightTier(
            threshold=threshold,
            token=token,
            award_ids=tuple(_parse_int(a, model, value) for a in award_tokens),
        )
    return [tiers[t] for t in sorted(tiers)]


def select_weight_tier(tiers: list[WeightTier], draw_count: int) -> WeightTier | None:
    """Largest threshold not exceeding ``draw_count``."""
    selected: WeightTier | None = None
    for tier in tiers:
        if tier.threshold > draw_count:
            break
        selected = tier
    return selected


def parse_blacklist_rule(value: str | None) -> Blacklist | None:
    """Parse ``"101:user01,user02"``."""
    if not value or not value.strip():
        return None
    model: str = LogicModel.RULE_BLACKLIST.value
    award_raw, sep, users_raw = value.strip().partition(":")
    if not sep:
        raise MalformedRuleValueError(f"{model}: {value!r} is not awardId:userIds")
    return Blacklist(
        award_id=_parse_int(award_raw, model, value),
        user_ids=frozenset(split_csv(users_raw)),
    )


# ── Chain nodes ──────────────────────────────────────────────────────────────


class LogicChain(ABC):
    rule_model: ClassVar[LogicModel]

    def __init__(self, repository: StrategyRepository, dispatch: StrategyDispatch) -> None:
        self.repository: StrategyRepository = repository
        self.dispatch: StrategyDispatch = dispatch
        self._next: "LogicChain | None" = None

    @property
    def next(self) -> "LogicChain | None":
        return self._next

    def append_next(self, successor: "LogicChain") -> "LogicChain":
        self._next = successor
        return successor

    @abstractmethod
    def logic(self, ctx: DrawContext) -> ChainAward: ...

    def _delegate(self, ctx: DrawContext) -> ChainAward:
        if self._next is None:
            raise ConfigurationError(f"{self.rule_model.value} has no successor")
        return self._next.logic(ctx)


class BlacklistLogicChain(LogicChain):
    rule_model = LogicModel.RULE_BLACKLIST

    def logic(self, ctx: DrawContext) -> ChainAward:
        blacklist: Blacklist | None = parse_blacklist_rule(
            self.repository.query_rule_value(ctx.strategy_id, self.rule_model.value)
        )
        if blacklist is not None and ctx.user_id in blacklist.user_ids:
            logger.info(
                "rule_chain_take_over",
                rule_model=self.rule_model.value,
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                award_id=blacklist.award_id,
            )
            return ChainAward(award_id=blacklist.award_id, logic_model=self.rule_model.value)
        return self._delegate(ctx)


class WeightLogicChain(LogicChain):
    rule_model = LogicModel.RULE_WEIGHT

    def logic(self, ctx: DrawContext) -> ChainAward:
        tiers: list[WeightTier] = parse_weight_rule(
            self.repository.query_rule_value(ctx.strategy_id, self.rule_model.value)
        )
        if not tiers:
            return self._delegate(ctx)

        tier: WeightTier | None = select_weight_tier(tiers, ctx.draw_count)
        if tier is None:
            return self._delegate(ctx)

        award_id: int = self.dispatch.draw_tier_pool(ctx.strategy_id, tier.token)
        logger.info(
            "rule_chain_take_over",
            rule_model=self.rule_model.value,
            user_id=ctx.user_id,
            strategy_id=ctx.strategy_id,
            draw_count=ctx.draw_count,
            threshold=tier.threshold,
            award_id=award_id,
        )
        return ChainAward(award_id=award_id, logic_model=self.rule_model.value)


class DefaultLogicChain(LogicChain):
    rule_model = LogicModel.RULE_DEFAULT

    def logic(self, ctx: DrawContext) -> ChainAward:
        award_id: int = self.dispatch.draw_full_pool(ctx.strategy_id)
        logger.debug(
            "rule_chain_default",
            user_id=ctx.user_id,
            strategy_id=ctx.strategy_id,
            award_id=award_id,
        )
        return ChainAward(award_id=award_id, logic_model=self.rule_model.value)


_CHAIN_NODES: dict[str, type[LogicChain]] = {
    LogicModel.RULE_BLACKLIST.value: BlacklistLogicChain,
    LogicModel.RULE_WEIGHT.value: WeightLogicChain,
}

CHAIN_RULE_MODELS: frozenset[str] = frozenset(_CHAIN_NODES) | {LogicModel.RULE_DEFAULT.value}


class LogicChainFactory:
    """Assembles and caches one chain per strategy."""

    def __init__(self, repository: StrategyRepository, dispatch: StrategyDispatch) -> None:
        self.repository: StrategyRepository = repository
        self.dispatch: StrategyDispatch = dispatch
        self._chains: dict[int, LogicChain] = {}
        self._lock: threading.Lock = threading.Lock()

    def open_logic_chain(self, strategy_id: int) -> LogicChain:
        chain: LogicChain | None = self._chains.get(strategy_id)
        if chain is not None:
            return chain
        with self._lock:
            chain = self._chains.get(strategy_id)
            if chain is None:
                chain = self._assemble(strategy_id)
                self._chains[strategy_id] = chain
        return chain

    def invalidate(self, strategy_id: int | None = None) -> None:
        with self._lock:
            if strategy_id is None:
                self._chains.clear()
            else:
                self._chains.pop(strategy_id, None)

    def _assemble(self, strategy_id: int) -> LogicChain:
        strategy: StrategyEntity | None = self.repository.query_strategy(strategy_id)
        declared: list[str] = strategy.rule_models if strategy is not None else []

        nodes: list[LogicChain] = []
        for code in declared:
            if code == LogicModel.RULE_DEFAULT.value:
                continue
            node_cls: type[LogicChain] | None = _CHAIN_NODES.get(code)
            if node_cls is None:
                raise UnknownRuleModelError(f"strategy {strategy_id}: no chain node for {code!r}")
            nodes.append(node_cls(self.repository, self.dispatch))
        nodes.append(DefaultLogicChain(self.repository, self.dispatch))

        head: LogicChain = nodes[0]
        current: LogicChain = head
        for node in nodes[1:]:
            current = current.append_next(node)

        logger.debug(
            "rule_chain_assembled",
            strategy_id=strategy_id,
            nodes=[n.rule_model.value for n in nodes],
        )
        return head
