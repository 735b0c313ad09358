"""Strategy configuration value objects, as cached and consumed by the draw path."""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from db.enums import LogicModel, RuleLimitType, RuleLogicCheckType
from raffle.services._helpers import JsonDict, parse_iso


@dataclass(slots=True)
class StrategyEntity:
    strategy_id: int
    strategy_desc: str
    rule_models: list[str] = field(default_factory=list)
    end_time: datetime | None = None

    @property
    def declares_weight_rule(self) -> bool:
        return LogicModel.RULE_WEIGHT.value in self.rule_models

    def to_dict(self) -> JsonDict:
        return {
            "strategy_id": self.strategy_id,
            "strategy_desc": self.strategy_desc,
            "rule_models": list(self.rule_models),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "StrategyEntity":
        models: object = data.get("rule_models")
        end_time: object = data.get("end_time")
        return cls(
            strategy_id=int(str(data["strategy_id"])),
            strategy_desc=str(data.get("strategy_desc") or ""),
            rule_models=[str(m) for m in models] if isinstance(models, list) else [],
            end_time=parse_iso(end_time) if isinstance(end_time, str) else None,
        )


@dataclass(slots=True)
class AwardEntity:
    strategy_id: int
    award_id: int
    award_title: str
    award_rate: Decimal
    award_count: int = 0
    award_count_surplus: int = 0
    award_subtitle: str | None = None
    graph_id: str | None = None
    sort: int = 0

    def to_dict(self) -> JsonDict:
        return {
            "strategy_id": self.strategy_id,
            "award_id": self.award_id,
            "award_title": self.award_title,
            "award_rate": str(self.award_rate),
            "award_count": self.award_count,
            "award_count_surplus": self.award_count_surplus,
            "award_subtitle": self.award_subtitle,
            "graph_id": self.graph_id,
            "sort": self.sort,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "AwardEntity":
        subtitle: object = data.get("award_subtitle")
        graph_id: object = data.get("graph_id")
        return cls(
            strategy_id=int(str(data["strategy_id"])),
            award_id=int(str(data["award_id"])),
            award_title=str(data["award_title"]),
            award_rate=Decimal(str(data["award_rate"])),
            award_count=int(str(data.get("award_count", 0))),
            award_count_surplus=int(str(data.get("award_count_surplus", 0))),
            award_subtitle=str(subtitle) if subtitle is not None else None,
            graph_id=str(graph_id) if graph_id else None,
            sort=int(str(data.get("sort", 0))),
        )


@dataclass(slots=True)
class RuleGraphEdge:
    from_node: str
    to_node: str | None
    limit_type: RuleLimitType
    limit_value: RuleLogicCheckType

    def to_dict(self) -> JsonDict:
        return {
            "from_node": self.from_node,
            "to_node": self.to_node,
            "limit_type": self.limit_type.value,
            "limit_value": self.limit_value.value,
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "RuleGraphEdge":
        to_node: object = data.get("to_node")
        return cls(
            from_node=str(data["from_node"]),
            to_node=str(to_node) if to_node else None,
            limit_type=RuleLimitType(str(data["limit_type"])),
            limit_value=RuleLogicCheckType(str(data["limit_value"])),
        )


@dataclass(slots=True)
class RuleGraphNode:
    node_key: str
    rule_key: str
    rule_value: str
    edges: list[RuleGraphEdge] = field(default_factory=list)

    def to_dict(self) -> JsonDict:
        return {
            "node_key": self.node_key,
            "rule_key": self.rule_key,
            "rule_value": self.rule_value,
            "edges": [e.to_dict() for e in self.edges],
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "RuleGraphNode":
        edges: object = data.get("edges")
        return cls(
            node_key=str(data["node_key"]),
            rule_key=str(data["rule_key"]),
            rule_value=str(data.get("rule_value") or ""),
            edges=[RuleGraphEdge.from_dict(e) for e in edges] if isinstance(edges, list) else [],
        )


@dataclass(slots=True)
class RuleGraph:
    graph_id: str
    graph_name: str
    root_node: str
    nodes: dict[str, RuleGraphNode] = field(default_factory=dict)

    def to_dict(self) -> JsonDict:
        return {
            "graph_id": self.graph_id,
            "graph_name": self.graph_name,
            "root_node": self.root_node,
            "nodes": {key: node.to_dict() for key, node in self.nodes.items()},
        }

    @classmethod
    def from_dict(cls, data: JsonDict) -> "RuleGraph":
        nodes: object = data.get("nodes")
        return cls(
            graph_id=str(data["graph_id"]),
            graph_name=str(data.get("graph_name") or ""),
            root_node=str(data["root_node"]),
            nodes=(
                {str(k): RuleGraphNode.from_dict(v) for k, v in nodes.items()}
                if isinstance(nodes, dict)
                else {}
            ),
        )
