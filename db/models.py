"""SQLAlchemy ORM models for strategy configuration, award records and outbox tasks."""

from typing import Any

from sqlalchemy import Index, MetaData, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    metadata = MetaData(naming_convention=convention)

    def to_dict(self) -> dict[str, Any]:
        return {c.name: getattr(self, c.name) for c in self.__table__.columns}


# ── Strategy configuration ───────────────────────────────────────────────────


class Strategies(Base):
    __tablename__ = "strategies"

    strategy_id: Mapped[int] = mapped_column(primary_key=True, autoincrement=False)
    strategy_desc: Mapped[str] = mapped_column(nullable=False, default="")
    rule_models: Mapped[str | None] = mapped_column()
    end_time: Mapped[str | None] = mapped_column()
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)


class StrategyAwards(Base):
    __tablename__ = "strategy_awards"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    strategy_id: Mapped[int] = mapped_column(nullable=False, index=True)
    award_id: Mapped[int] = mapped_column(nullable=False)
    award_title: Mapped[str] = mapped_column(nullable=False)
    award_subtitle: Mapped[str | None] = mapped_column()
    award_count: Mapped[int] = mapped_column(nullable=False, default=0)
    award_count_surplus: Mapped[int] = mapped_column(nullable=False, default=0)
    award_rate: Mapped[float] = mapped_column(nullable=False)
    graph_id: Mapped[str | None] = mapped_column()
    sort: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (UniqueConstraint("strategy_id", "award_id"),)


class StrategyRules(Base):
    __tablename__ = "strategy_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    strategy_id: Mapped[int] = mapped_column(nullable=False, index=True)
    award_id: Mapped[int | None] = mapped_column()
    rule_model: Mapped[str] = mapped_column(nullable=False)
    rule_value: Mapped[str] = mapped_column(nullable=False, default="")
    rule_desc: Mapped[str | None] = mapped_column()
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (UniqueConstraint("strategy_id", "award_id", "rule_model"),)


class RuleGraphs(Base):
    __tablename__ = "rule_graphs"

    graph_id: Mapped[str] = mapped_column(primary_key=True)
    graph_name: Mapped[str] = mapped_column(nullable=False)
    graph_desc: Mapped[str | None] = mapped_column()
    root_node_key: Mapped[str] = mapped_column(nullable=False)
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)


class RuleGraphNodes(Base):
    __tablename__ = "rule_graph_nodes"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    graph_id: Mapped[str] = mapped_column(nullable=False, index=True)
    node_key: Mapped[str] = mapped_column(nullable=False)
    rule_key: Mapped[str] = mapped_column(nullable=False)
    rule_value: Mapped[str] = mapped_column(nullable=False, default="")
    rule_desc: Mapped[str | None] = mapped_column()

    __table_args__ = (UniqueConstraint("graph_id", "node_key"),)


class RuleGraphEdges(Base):
    __tablename__ = "rule_graph_edges"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    graph_id: Mapped[str] = mapped_column(nullable=False, index=True)
    from_node: Mapped[str] = mapped_column(nullable=False)
    to_node: Mapped[str | None] = mapped_column()
    limit_type: Mapped[str] = mapped_column(nullable=False, default="EQUAL")
    limit_value: Mapped[str] = mapped_column(nullable=False)


# ── Partitioned business facts ───────────────────────────────────────────────


class UserAwardRecords(Base):
    __tablename__ = "user_award_records"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(nullable=False)
    strategy_id: Mapped[int] = mapped_column(nullable=False)
    order_id: Mapped[str] = mapped_column(nullable=False)
    award_id: Mapped[int] = mapped_column(nullable=False)
    award_title: Mapped[str] = mapped_column(nullable=False)
    award_config: Mapped[str | None] = mapped_column()
    award_state: Mapped[str] = mapped_column(nullable=False, default="create")
    created_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "order_id"),
        Index("ix_user_award_records_user_strategy", "user_id", "strategy_id"),
    )


class Tasks(Base):
    __tablename__ = "tasks"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(nullable=False)
    topic: Mapped[str] = mapped_column(nullable=False)
    message_id: Mapped[str] = mapped_column(nullable=False)
    message: Mapped[str] = mapped_column(nullable=False)
    state: Mapped[str] = mapped_column(nullable=False, default="create")
    created_at: Mapped[str] = mapped_column(nullable=False)
    updated_at: Mapped[str] = mapped_column(nullable=False)

    __table_args__ = (
        UniqueConstraint("message_id"),
        Index("ix_tasks_state_updated", "state", "updated_at"),
    )


REQUIRED_TABLES: tuple[str, ...] = tuple(Base.metadata.tables)
