"""Post-draw decision graph: usage lock, stock deduction and consolation.

A graph is walked from its root. Each node yields ALLOW or TAKE_OVER and
optionally an award payload; the single outgoing edge whose value equals
the outcome picks the next node. A node without outgoing edges is a leaf,
and an edge without a target ends the walk on that outcome.
"""

import threading
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from typing import ClassVar

import structlog

from db.enums import GraphNodeKind, RuleLimitType, RuleLogicCheckType
from raffle.services.errors import (
    ConfigurationError,
    GraphCycleError,
    GraphNoPathError,
    MalformedRuleValueError,
    UnknownRuleModelError,
    UnsupportedComparatorError,
)
from raffle.services.inventory import InventoryLedger
from raffle.services.schemas import DrawContext, GraphAward, RuleGraph, RuleGraphEdge, RuleGraphNode
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class NodeAction:
    check: RuleLogicCheckType
    award: GraphAward | None = None


def parse_lock_threshold(value: str) -> int:
    try:
        return int(value.strip())
    except ValueError:
        raise MalformedRuleValueError(
            f"{GraphNodeKind.RULE_LOCK.value}: {value!r} is not an integer"
        ) from None


def parse_luck_award(value: str) -> GraphAward:
    """Parse ``"<awardId>[:<opaque value>]"``."""
    award_raw, sep, payload = value.strip().partition(":")
    try:
        award_id: int = int(award_raw)
    except ValueError:
        raise MalformedRuleValueError(
            f"{GraphNodeKind.RULE_LUCK_AWARD.value}: {value!r} is not awardId[:value]"
        ) from None
    return GraphAward(award_id=award_id, award_rule_value=payload if sep and payload else None)


def lock_threshold(graph: RuleGraph) -> int | None:
    """Usage-lock threshold of a graph, if it has a lock node."""
    for node in graph.nodes.values():
        if node.rule_key == GraphNodeKind.RULE_LOCK.value:
            return parse_lock_threshold(node.rule_value)
    return None


# ── Node kinds ───────────────────────────────────────────────────────────────


class GraphNodeLogic(ABC):
    kind: ClassVar[GraphNodeKind]

    @abstractmethod
    def logic(self, ctx: DrawContext, award_id: int, rule_value: str) -> NodeAction: ...


class LockNode(GraphNodeLogic):
    kind = GraphNodeKind.RULE_LOCK

    def logic(self, ctx: DrawContext, award_id: int, rule_value: str) -> NodeAction:
        threshold: int = parse_lock_threshold(rule_value)
        if ctx.draw_count >= threshold:
            return NodeAction(RuleLogicCheckType.ALLOW)
        return NodeAction(RuleLogicCheckType.TAKE_OVER)


class StockNode(GraphNodeLogic):
    kind = GraphNodeKind.RULE_STOCK

    def __init__(self, ledger: InventoryLedger) -> None:
        self.ledger: InventoryLedger = ledger

    def logic(self, ctx: DrawContext, award_id: int, rule_value: str) -> NodeAction:
        if not self.ledger.atomic_decrement(ctx.strategy_id, award_id, ctx.end_time):
            return NodeAction(RuleLogicCheckType.TAKE_OVER)
        self.ledger.enqueue_pending_sync(ctx.strategy_id, award_id)
        return NodeAction(
            RuleLogicCheckType.ALLOW,
            GraphAward(award_id=award_id, award_rule_value=rule_value or None),
        )


class LuckAwardNode(GraphNodeLogic):
    kind = GraphNodeKind.RULE_LUCK_AWARD

    def logic(self, ctx: DrawContext, award_id: int, rule_value: str) -> NodeAction:
        return NodeAction(RuleLogicCheckType.TAKE_OVER, parse_luck_award(rule_value))


# ── Validation ───────────────────────────────────────────────────────────────


def validate_graph(graph: RuleGraph, known_kinds: Mapping[str, GraphNodeLogic]) -> None:
    """Reject graphs the engine cannot walk deterministically to completion."""
    if graph.root_node not in graph.nodes:
        raise ConfigurationError(f"graph {graph.graph_id}: root {graph.root_node!r} is not a node")

    for node in graph.nodes.values():
        if node.rule_key not in known_kinds:
            raise UnknownRuleModelError(
                f"graph {graph.graph_id}: node {node.node_key!r} has unknown kind {node.rule_key!r}"
            )
        seen: set[RuleLogicCheckType] = set()
        for edge in node.edges:
            if edge.limit_type is not RuleLimitType.EQUAL:
                raise UnsupportedComparatorError(
                    f"graph {graph.graph_id}: comparator {edge.limit_type.value} is not supported"
                )
            if edge.to_node is not None and edge.to_node not in graph.nodes:
                raise ConfigurationError(
                    f"graph {graph.graph_id}: edge {node.node_key!r} -> {edge.to_node!r} has no target"
                )
            if edge.limit_value in seen:
                raise ConfigurationError(
                    f"graph {graph.graph_id}: {node.node_key!r} has two edges for {edge.limit_value.value}"
                )
            seen.add(edge.limit_value)

    _check_acyclic(graph)


def _check_acyclic(graph: RuleGraph) -> None:
    visiting: set[str] = set()
    done: set[str] = set()

    def visit(key: str) -> None:
        if key in done:
            return
        if key in visiting:
            raise GraphCycleError(f"graph {graph.graph_id}: cycle through {key!r}")
        visiting.add(key)
        for edge in graph.nodes[key].edges:
            if edge.to_node is not None:
                visit(edge.to_node)
        visiting.discard(key)
        done.add(key)

    for key in graph.nodes:
        visit(key)


# ── Engine ───────────────────────────────────────────────────────────────────


class DecisionGraphEngine:
    def __init__(self, graph: RuleGraph, node_logic: Mapping[str, GraphNodeLogic]) -> None:
        self.graph: RuleGraph = graph
        self.node_logic: Mapping[str, GraphNodeLogic] = node_logic

    def process(self, ctx: DrawContext, award_id: int) -> GraphAward:
        award: GraphAward | None = None
        node: RuleGraphNode | None = self.graph.nodes[self.graph.root_node]
        # acyclic graphs visit each node at most once
        steps_left: int = len(self.graph.nodes)

        while node is not None:
            if steps_left == 0:
                raise GraphCycleError(f"graph {self.graph.graph_id}: walk did not terminate")
            steps_left -= 1

            action: NodeAction = self.node_logic[node.rule_key].logic(ctx, award_id, node.rule_value)
            if action.award is not None:
                award = action.award
            logger.info(
                "decision_graph_node",
                graph_id=self.graph.graph_id,
                node=node.node_key,
                rule_key=node.rule_key,
                check=action.check.value,
                user_id=ctx.user_id,
                strategy_id=ctx.strategy_id,
                award_id=award_id,
            )

            if not node.edges:
                break
            edge: RuleGraphEdge = self._match_edge(node, action.check)
            node = self.graph.nodes[edge.to_node] if edge.to_node is not None else None

        if award is None:
            raise ConfigurationError(f"graph {self.graph.graph_id}: walk ended without an award")
        return award

    def _match_edge(self, node: RuleGraphNode, check: RuleLogicCheckType) -> RuleGraphEdge:
        for edge in node.edges:
            if edge.limit_type is not RuleLimitType.EQUAL:
                raise UnsupportedComparatorError(
                    f"graph {self.graph.graph_id}: comparator {edge.limit_type.value} is not supported"
                )
            if edge.limit_value is check:
                return edge
        raise GraphNoPathError(
            f"graph {self.graph.graph_id}: no edge from {node.node_key!r} for {check.value}"
        )


class DecisionGraphFactory:
    """Builds, validates and caches one engine per graph id."""

    def __init__(self, repository: StrategyRepository, ledger: InventoryLedger) -> None:
        self.repository: StrategyRepository = repository
        self.node_logic: dict[str, GraphNodeLogic] = {
            GraphNodeKind.RULE_LOCK.value: LockNode(),
            GraphNodeKind.RULE_STOCK.value: StockNode(ledger),
            GraphNodeKind.RULE_LUCK_AWARD.value: LuckAwardNode(),
        }
        self._engines: dict[str, DecisionGraphEngine] = {}
        self._lock: threading.Lock = threading.Lock()

    def validate(self, graph: RuleGraph) -> None:
        validate_graph(graph, self.node_logic)

    def open_engine(self, graph_id: str) -> DecisionGraphEngine:
        engine: DecisionGraphEngine | None = self._engines.get(graph_id)
        if engine is not None:
            return engine
        with self._lock:
            engine = self._engines.get(graph_id)
            if engine is None:
                graph: RuleGraph | None = self.repository.query_rule_graph(graph_id)
                if graph is None:
                    raise ConfigurationError(f"decision graph {graph_id!r} does not exist")
                self.validate(graph)
                engine = DecisionGraphEngine(graph, self.node_logic)
                self._engines[graph_id] = engine
        return engine

    def invalidate(self, graph_id: str | None = None) -> None:
        with self._lock:
            if graph_id is None:
                self._engines.clear()
            else:
                self._engines.pop(graph_id, None)
