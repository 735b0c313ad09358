"""Tests for raffle.services.armory."""

import random
from collections import Counter
from decimal import Decimal

import pytest

from raffle.services.armory import build_rate_table
from raffle.services.container import RaffleContainer
from raffle.services.dispatch import StrategyDispatch
from raffle.services.errors import (
    ConfigurationError,
    EmptyPrizePoolError,
    GraphCycleError,
    MalformedRuleValueError,
    StrategyNotArmedError,
    UnknownRuleModelError,
    UnsupportedComparatorError,
)
from raffle.services.schemas import AwardEntity
from tests.factories import Seeder


def _prize(award_id: int, rate: str) -> AwardEntity:
    return AwardEntity(strategy_id=1, award_id=award_id, award_title=str(award_id), award_rate=Decimal(rate))


class TestBuildRateTable:
    def test_length_and_coverage(self) -> None:
        prizes: list[AwardEntity] = [_prize(101, "0.3"), _prize(102, "0.2"), _prize(103, "0.5")]
        table: list[int] = build_rate_table(prizes, random.Random(7).shuffle)

        # ceil(1.0 / 0.2) = 5; slots 2 + 1 + 3
        assert len(table) == 6
        assert Counter(table) == {101: 2, 102: 1, 103: 3}

    def test_every_positive_prize_appears(self) -> None:
        prizes: list[AwardEntity] = [_prize(101, "0.9999"), _prize(102, "0.0001")]
        table: list[int] = build_rate_table(prizes, random.Random(1).shuffle)
        assert len(table) >= 10000
        assert 102 in table

    def test_zero_rate_prizes_are_left_out(self) -> None:
        table: list[int] = build_rate_table([_prize(101, "0"), _prize(102, "0.5")])
        assert set(table) == {102}

    def test_rate_outside_range_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match=r"outside \[0, 1\]"):
            build_rate_table([_prize(101, "1.5")])
        with pytest.raises(ConfigurationError):
            build_rate_table([_prize(101, "-0.1")])

    def test_empty_pool(self) -> None:
        with pytest.raises(EmptyPrizePoolError):
            build_rate_table([])
        with pytest.raises(EmptyPrizePoolError):
            build_rate_table([_prize(101, "0")])

    def test_draw_frequencies_converge(self, container: RaffleContainer) -> None:
        dispatch: StrategyDispatch = StrategyDispatch(
            container.cache, randbelow=random.Random(42).randrange
        )
        table: list[int] = build_rate_table(
            [_prize(101, "0.1"), _prize(102, "0.9")], random.Random(3).shuffle
        )
        dispatch.store_rate_table("1", table)

        draws: Counter[int] = Counter(dispatch.draw_full_pool(1) for _ in range(20000))
        assert abs(draws[101] / 20000 - 0.1) < 0.01
        assert abs(draws[102] / 20000 - 0.9) < 0.01


class TestArmory:
    def test_armory_arms_strategy(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 0.5, surplus=10)
        seed.award(1, 102, 0.5, surplus=3)

        assert container.armory.armory(1) is True
        assert container.dispatch.rate_range("1") == 2
        assert container.dispatch.draw_full_pool(1) in {101, 102}
        assert container.ledger.current_count(1, 101) == 10
        assert container.ledger.current_count(1, 102) == 3

    def test_no_awards_is_not_drawable(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(2)
        assert container.armory.armory(2) is False
        assert not container.dispatch.is_armed(2)
        with pytest.raises(StrategyNotArmedError):
            container.dispatch.draw_full_pool(2)

    def test_only_zero_rates_is_not_drawable(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(3)
        seed.award(3, 101, 0.0)
        assert container.armory.armory(3) is False
        assert not container.dispatch.is_armed(3)

    def test_rearmory_keeps_live_counters(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 1.0, surplus=5)
        container.armory.armory(1)
        assert container.ledger.atomic_decrement(1, 101)

        container.armory.armory(1)
        assert container.ledger.current_count(1, 101) == 4

    def test_weight_tiers_get_their_own_tables(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1, rule_models="rule_weight")
        for award_id in (101, 102, 103):
            seed.award(1, award_id, 0.3)
        seed.rule(1, "rule_weight", "10:102 20:102,103")

        assert container.armory.armory(1) is True
        assert container.dispatch.draw_tier_pool(1, "10:102") == 102
        assert container.dispatch.draw_tier_pool(1, "20:102,103") in {102, 103}

    def test_weight_rule_without_value(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1, rule_models="rule_weight")
        seed.award(1, 101, 0.5)
        with pytest.raises(ConfigurationError):
            container.armory.armory(1)
        assert not container.dispatch.is_armed(1)

    def test_weight_tier_with_unknown_award(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1, rule_models="rule_weight")
        seed.award(1, 101, 0.5)
        seed.rule(1, "rule_weight", "10:101,999")
        with pytest.raises(ConfigurationError):
            container.armory.armory(1)

    def test_malformed_blacklist_fails_armory(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1, rule_models="rule_blacklist")
        seed.award(1, 101, 0.5)
        seed.rule(1, "rule_blacklist", "user01,user02")
        with pytest.raises(MalformedRuleValueError):
            container.armory.armory(1)

    def test_unknown_rule_model(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1, rule_models="rule_vip")
        seed.award(1, 101, 0.5)
        with pytest.raises(UnknownRuleModelError):
            container.armory.armory(1)

    def test_missing_graph(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 0.5, graph_id="nope")
        with pytest.raises(ConfigurationError):
            container.armory.armory(1)
        assert not container.dispatch.is_armed(1)

    def test_cyclic_graph(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 0.5, graph_id="loop")
        seed.graph(
            "loop",
            "a",
            {"a": ("rule_lock", "1"), "b": ("rule_stock", "")},
            [("a", "b", "ALLOW"), ("a", "b", "TAKE_OVER"), ("b", "a", "ALLOW"), ("b", None, "TAKE_OVER")],
        )
        with pytest.raises(GraphCycleError):
            container.armory.armory(1)

    def test_ordering_comparator_is_rejected(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 0.5, graph_id="gt")
        seed.graph("gt", "s", {"s": ("rule_stock", "")}, [("s", None, "ALLOW")], limit_type="GT")
        with pytest.raises(UnsupportedComparatorError):
            container.armory.armory(1)

    def test_armory_all_reports_each_strategy(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(1)
        seed.award(1, 101, 0.5)
        seed.strategy(2, rule_models="rule_weight")
        seed.award(2, 201, 0.5)
        seed.strategy(3)

        assert container.armory.armory_all() == {1: True, 2: False, 3: False}
