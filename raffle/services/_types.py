"""Typed dicts for service-layer return values.

Keeps caller-facing methods explicit about their shape instead of returning bare dicts.
"""

import sys

if sys.version_info >= (3, 12):
    from typing import TypedDict
else:
    from typing_extensions import TypedDict

# -- Raffle Service --------------------------------------------------------


class DrawResponse(TypedDict):
    award_id: int
    award_title: str
    sort: int
    award_rule_value: str | None
    order_id: str
    duplicate: bool


class AwardListItem(TypedDict):
    award_id: int
    award_title: str
    award_subtitle: str | None
    sort: int
    unlock_threshold: int | None
    unlocked: bool
    remaining_draws_to_unlock: int


class WeightTierAward(TypedDict):
    award_id: int
    award_title: str


class RuleWeightTier(TypedDict):
    threshold: int
    tier_key: str
    reached: bool
    user_draw_count: int
    awards: list[WeightTierAward]


# -- Outbox ----------------------------------------------------------------


class PendingTask(TypedDict):
    partition: int
    user_id: str
    topic: str
    message_id: str
    state: str
    updated_at: str
