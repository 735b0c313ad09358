"""Strategy configuration reads (cache first, durable on miss) and durable stock writes."""

from collections.abc import Sequence
from decimal import Decimal

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session, sessionmaker

from db.connection import session_scope
from db.enums import LogicModel, RuleLimitType, RuleLogicCheckType
from db.models import (
    RuleGraphEdges,
    RuleGraphNodes,
    RuleGraphs,
    Strategies,
    StrategyAwards,
    StrategyRules,
)
from raffle.services._helpers import (
    dump_json,
    load_json,
    load_json_list,
    now_iso,
    parse_iso,
    split_csv,
)
from raffle.services.cache import CacheKeys, CacheStore
from raffle.services.errors import ConfigurationError, UnsupportedComparatorError
from raffle.services.schemas import (
    AwardEntity,
    RuleGraph,
    RuleGraphEdge,
    RuleGraphNode,
    StrategyEntity,
)

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


def _to_strategy(row: Strategies) -> StrategyEntity:
    return StrategyEntity(
        strategy_id=row.strategy_id,
        strategy_desc=row.strategy_desc,
        rule_models=split_csv(row.rule_models),
        end_time=parse_iso(row.end_time),
    )


def _to_award(row: StrategyAwards) -> AwardEntity:
    return AwardEntity(
        strategy_id=row.strategy_id,
        award_id=row.award_id,
        award_title=row.award_title,
        award_rate=Decimal(str(row.award_rate)),
        award_count=row.award_count,
        award_count_surplus=row.award_count_surplus,
        award_subtitle=row.award_subtitle,
        graph_id=row.graph_id or None,
        sort=row.sort,
    )


def _to_edge(row: RuleGraphEdges) -> RuleGraphEdge:
    try:
        limit_type: RuleLimitType = RuleLimitType(row.limit_type)
    except ValueError:
        raise UnsupportedComparatorError(
            f"graph {row.graph_id}: unknown comparator {row.limit_type!r} on {row.from_node}"
        ) from None
    try:
        limit_value: RuleLogicCheckType = RuleLogicCheckType(row.limit_value)
    except ValueError:
        raise ConfigurationError(
            f"graph {row.graph_id}: unknown outcome {row.limit_value!r} on {row.from_node}"
        ) from None
    return RuleGraphEdge(
        from_node=row.from_node,
        to_node=row.to_node or None,
        limit_type=limit_type,
        limit_value=limit_value,
    )


class StrategyRepository:
    """Read-through access to strategy configuration.

    The draw path only reads through here, so after armory every lookup is a
    cache hit. Evicted entries are reloaded from the durable store.
    """

    def __init__(
        self,
        cache: CacheStore,
        session_factory: sessionmaker[Session],
        keys: CacheKeys | None = None,
        config_ttl: int | None = None,
    ) -> None:
        self.cache: CacheStore = cache
        self.session_factory: sessionmaker[Session] = session_factory
        self.keys: CacheKeys = keys or CacheKeys()
        self.config_ttl: int | None = config_ttl

    # ── Strategies ───────────────────────────────────────────────────────

    def query_strategy(self, strategy_id: int) -> StrategyEntity | None:
        key: str = self.keys.strategy(strategy_id)
        cached: dict[str, object] | None = load_json(self.cache.get(key))
        if cached is not None:
            return StrategyEntity.from_dict(cached)
        return self.load_strategy(strategy_id)

    def load_strategy(self, strategy_id: int) -> StrategyEntity | None:
        with session_scope(self.session_factory) as session:
            row: Strategies | None = session.get(Strategies, strategy_id)
            if row is None:
                return None
            entity: StrategyEntity = _to_strategy(row)
        self.cache.set(self.keys.strategy(strategy_id), dump_json(entity.to_dict()), self.config_ttl)
        return entity

    def query_strategy_ids(self) -> list[int]:
        with session_scope(self.session_factory) as session:
            ids: Sequence[int] = session.scalars(
                select(Strategies.strategy_id).order_by(Strategies.strategy_id)
            ).all()
        return list(ids)

    # ── Awards ───────────────────────────────────────────────────────────

    def query_awards(self, strategy_id: int) -> list[AwardEntity]:
        cached: list[dict[str, object]] | None = load_json_list(
            self.cache.get(self.keys.award_list(strategy_id))
        )
        if cached is not None:
            return [AwardEntity.from_dict(item) for item in cached]
        return self.load_awards(strategy_id)

    def load_awards(self, strategy_id: int) -> list[AwardEntity]:
        """Read awards from the durable store and refresh the cached list."""
        with session_scope(self.session_factory) as session:
            rows: Sequence[StrategyAwards] = session.scalars(
                select(StrategyAwards)
                .where(StrategyAwards.strategy_id == strategy_id)
                .order_by(StrategyAwards.sort, StrategyAwards.award_id)
            ).all()
            awards: list[AwardEntity] = [_to_award(r) for r in rows]
        if awards:
            self.cache.set(
                self.keys.award_list(strategy_id),
                dump_json([a.to_dict() for a in awards]),
                self.config_ttl,
            )
        return awards

    def query_award(self, strategy_id: int, award_id: int) -> AwardEntity | None:
        for award in self.query_awards(strategy_id):
            if award.award_id == award_id:
                return award
        return None

    # ── Rule values ──────────────────────────────────────────────────────

    def query_rule_value(
        self,
        strategy_id: int,
        rule_model: str,
        award_id: int | None = None,
    ) -> str | None:
        key: str = self.keys.rule_value(strategy_id, award_id, rule_model)
        cached: dict[str, object] | None = load_json(self.cache.get(key))
        if cached is not None:
            value: object = cached.get("rule_value")
            return str(value) if value is not None else None
        return self.load_rule_value(strategy_id, rule_model, award_id)

    def load_rule_value(
        self,
        strategy_id: int,
        rule_model: str,
        award_id: int | None = None,
    ) -> str | None:
        stmt = select(StrategyRules.rule_value).where(
            StrategyRules.strategy_id == strategy_id,
            StrategyRules.rule_model == rule_model,
        )
        if award_id is None:
            stmt = stmt.where(StrategyRules.award_id.is_(None))
        else:
            stmt = stmt.where(StrategyRules.award_id == award_id)
        with session_scope(self.session_factory) as session:
            value: str | None = session.scalars(stmt).first()
        # absent rules are cached too, so a missing rule is not a durable read per draw
        self.cache.set(
            self.keys.rule_value(strategy_id, award_id, rule_model),
            dump_json({"rule_value": value}),
            self.config_ttl,
        )
        return value

    # ── Decision graphs ──────────────────────────────────────────────────

    def query_rule_graph(self, graph_id: str) -> RuleGraph | None:
        cached: dict[str, object] | None = load_json(self.cache.get(self.keys.rule_graph(graph_id)))
        if cached is not None:
            return RuleGraph.from_dict(cached)
        graph: RuleGraph | None = self.load_rule_graph(graph_id)
        if graph is not None:
            self.cache_rule_graph(graph)
        return graph

    def load_rule_graph(self, graph_id: str) -> RuleGraph | None:
        with session_scope(self.session_factory) as session:
            head: RuleGraphs | None = session.get(RuleGraphs, graph_id)
            if head is None:
                return None
            node_rows: Sequence[RuleGraphNodes] = session.scalars(
                select(RuleGraphNodes).where(RuleGraphNodes.graph_id == graph_id)
            ).all()
            edge_rows: Sequence[RuleGraphEdges] = session.scalars(
                select(RuleGraphEdges)
                .where(RuleGraphEdges.graph_id == graph_id)
                .order_by(RuleGraphEdges.id)
            ).all()

            nodes: dict[str, RuleGraphNode] = {
                n.node_key: RuleGraphNode(
                    node_key=n.node_key,
                    rule_key=n.rule_key,
                    rule_value=n.rule_value or "",
                )
                for n in node_rows
            }
            for e in edge_rows:
                source: RuleGraphNode | None = nodes.get(e.from_node)
                if source is None:
                    raise ConfigurationError(
                        f"graph {graph_id}: edge from unknown node {e.from_node!r}"
                    )
                source.edges.append(_to_edge(e))
            graph: RuleGraph = RuleGraph(
                graph_id=head.graph_id,
                graph_name=head.graph_name,
                root_node=head.root_node_key,
                nodes=nodes,
            )
        return graph

    def cache_rule_graph(self, graph: RuleGraph) -> None:
        self.cache.set(self.keys.rule_graph(graph.graph_id), dump_json(graph.to_dict()), self.config_ttl)

    # ── Invalidation ─────────────────────────────────────────────────────

    def evict(self, strategy_id: int) -> None:
        """Drop cached config for a strategy; the next read goes to the durable store."""
        stale: list[str] = [self.keys.strategy(strategy_id), self.keys.award_list(strategy_id)]
        stale += [self.keys.rule_value(strategy_id, None, model.value) for model in LogicModel]
        cached: list[dict[str, object]] | None = load_json_list(
            self.cache.get(self.keys.award_list(strategy_id))
        )
        for item in cached or []:
            award: AwardEntity = AwardEntity.from_dict(item)
            if award.graph_id:
                stale.append(self.keys.rule_graph(award.graph_id))
        removed: int = self.cache.delete(*stale)
        logger.info("strategy_cache_evicted", strategy_id=strategy_id, keys_removed=removed)

    # ── Durable stock ────────────────────────────────────────────────────

    @staticmethod
    def subtract_award_stock(session: Session, strategy_id: int, award_id: int, amount: int) -> int:
        """Subtract ``amount`` from the durable remaining stock, clamped at zero."""
        surplus = StrategyAwards.award_count_surplus
        result = session.execute(
            update(StrategyAwards)
            .where(
                StrategyAwards.strategy_id == strategy_id,
                StrategyAwards.award_id == award_id,
            )
            .values(
                award_count_surplus=case((surplus >= amount, surplus - amount), else_=0),
                updated_at=now_iso(),
            )
        )
        return int(result.rowcount or 0)

    def clear_award_stock(self, strategy_id: int, award_id: int) -> None:
        """Force the durable remaining stock of an award to zero."""
        with session_scope(self.session_factory) as session:
            session.execute(
                update(StrategyAwards)
                .where(
                    StrategyAwards.strategy_id == strategy_id,
                    StrategyAwards.award_id == award_id,
                )
                .values(award_count_surplus=0, updated_at=now_iso())
            )
        logger.info("award_stock_cleared", strategy_id=strategy_id, award_id=award_id)
