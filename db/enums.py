"""Enumeration types for the raffle engine."""

from enum import Enum


class LogicModel(str, Enum):
    """Pre-draw rule chain node codes, as declared on a strategy."""

    RULE_BLACKLIST = "rule_blacklist"
    RULE_WEIGHT = "rule_weight"
    RULE_DEFAULT = "rule_default"


class GraphNodeKind(str, Enum):
    """Post-draw decision graph node kinds."""

    RULE_LOCK = "rule_lock"
    RULE_STOCK = "rule_stock"
    RULE_LUCK_AWARD = "rule_luck_award"


class RuleLogicCheckType(str, Enum):
    """Outcome of a decision graph node."""

    ALLOW = "ALLOW"
    TAKE_OVER = "TAKE_OVER"


class RuleLimitType(str, Enum):
    """Edge comparator. Only EQUAL is evaluated; the rest are reserved."""

    EQUAL = "EQUAL"
    GT = "GT"
    LT = "LT"
    GE = "GE"
    LE = "LE"
    ENUM = "ENUM"


class TaskState(str, Enum):
    """Outbox task delivery state."""

    CREATE = "create"
    COMPLETE = "complete"
    FAIL = "fail"


class AwardState(str, Enum):
    """Fulfilment state of a user award record."""

    CREATE = "create"
    COMPLETED = "completed"
