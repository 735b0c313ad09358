"""Seed a sample strategy for local testing.

Idempotent: skips seeding if the strategy already exists.
Run: python scripts/seed_sample_data.py
"""

import sys
from datetime import UTC, datetime, timedelta
from pathlib import Path

# Ensure project root is on sys.path so 'config' and 'db' resolve
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from sqlalchemy.orm import Session  # noqa: E402

from db.connection import get_session, init_database  # noqa: E402
from db.models import (  # noqa: E402
    RuleGraphEdges,
    RuleGraphNodes,
    RuleGraphs,
    Strategies,
    StrategyAwards,
    StrategyRules,
)

STRATEGY_ID = 100006

# award_id, title, rate, total stock, graph
AWARDS: list[tuple[int, str, float, int, str]] = [
    (101, "Random points", 0.80, 80000, "tree_luck_award"),
    (102, "5 draws", 0.10, 10000, "tree_luck_award"),
    (103, "6 draws", 0.05, 5000, "tree_luck_award"),
    (104, "7 draws", 0.03, 3000, "tree_luck_award"),
    (105, "Notebook", 0.01, 1000, "tree_luck_award"),
    (106, "Headphones", 0.005, 500, "tree_lock_1"),
    (107, "Mini speaker", 0.003, 300, "tree_lock_1"),
    (108, "Smart watch", 0.002, 200, "tree_lock_2"),
]

# graph_id -> (lock threshold or None, consolation value)
GRAPHS: dict[str, tuple[int | None, str]] = {
    "tree_luck_award": (None, "101:1,100"),
    "tree_lock_1": (1, "101:1,100"),
    "tree_lock_2": (2, "101:1,100"),
}


def _ts(days_ahead: int = 0) -> str:
    return (datetime.now(UTC) + timedelta(days=days_ahead)).isoformat()


def _seed_graph(session: Session, graph_id: str, threshold: int | None, luck_value: str) -> None:
    root: str = "rule_lock" if threshold is not None else "rule_stock"
    session.add(
        RuleGraphs(
            graph_id=graph_id,
            graph_name=graph_id.replace("_", " "),
            root_node_key=root,
            created_at=_ts(),
            updated_at=_ts(),
        )
    )
    nodes: list[tuple[str, str]] = [("rule_stock", ""), ("rule_luck_award", luck_value)]
    # (from, to, outcome); no target ends the walk
    edges: list[tuple[str, str | None, str]] = [
        ("rule_stock", None, "ALLOW"),
        ("rule_stock", "rule_luck_award", "TAKE_OVER"),
    ]
    if threshold is not None:
        nodes.append(("rule_lock", str(threshold)))
        edges += [("rule_lock", "rule_stock", "ALLOW"), ("rule_lock", "rule_luck_award", "TAKE_OVER")]

    for key, value in nodes:
        session.add(RuleGraphNodes(graph_id=graph_id, node_key=key, rule_key=key, rule_value=value))
    for from_node, to_node, outcome in edges:
        session.add(RuleGraphEdges(graph_id=graph_id, from_node=from_node, to_node=to_node, limit_value=outcome))


def seed(session: Session) -> None:
    if session.get(Strategies, STRATEGY_ID) is not None:
        print("Sample data already seeded, skipping.")
        return

    session.add(
        Strategies(
            strategy_id=STRATEGY_ID,
            strategy_desc="Sample raffle",
            rule_models="rule_blacklist,rule_weight",
            end_time=_ts(days_ahead=30),
            created_at=_ts(),
            updated_at=_ts(),
        )
    )
    for sort, (award_id, title, rate, stock, graph_id) in enumerate(AWARDS, start=1):
        session.add(
            StrategyAwards(
                strategy_id=STRATEGY_ID,
                award_id=award_id,
                award_title=title,
                award_rate=rate,
                award_count=stock,
                award_count_surplus=stock,
                graph_id=graph_id,
                sort=sort,
                created_at=_ts(),
                updated_at=_ts(),
            )
        )
    session.add(
        StrategyRules(
            strategy_id=STRATEGY_ID,
            rule_model="rule_blacklist",
            rule_value="101:user001,user002",
            rule_desc="Blacklisted users only get points",
            created_at=_ts(),
            updated_at=_ts(),
        )
    )
    session.add(
        StrategyRules(
            strategy_id=STRATEGY_ID,
            rule_model="rule_weight",
            rule_value="10:102,103,104 20:105,106,107 30:106,107,108",
            rule_desc="Guaranteed tiers after 10, 20 and 30 draws",
            created_at=_ts(),
            updated_at=_ts(),
        )
    )
    for graph_id, (threshold, luck_value) in GRAPHS.items():
        _seed_graph(session, graph_id, threshold, luck_value)

    print(f"Seeded strategy {STRATEGY_ID} with {len(AWARDS)} awards and {len(GRAPHS)} graphs.")


if __name__ == "__main__":
    init_database()
    with get_session() as session:
        seed(session)
