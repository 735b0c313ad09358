"""End-to-end tests for raffle.services.raffle (draw path and read views)."""

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from db.connection import PartitionRouter, session_scope
from db.models import StrategyAwards, StrategyRules, UserAwardRecords
from raffle.services._types import AwardListItem, DrawResponse, RuleWeightTier
from raffle.services.broker import MemoryPublisher
from raffle.services.cache import MemoryCacheStore
from raffle.services.container import RaffleContainer, build_container
from raffle.services.dynamic_config import DEGRADE_SWITCH, STRATEGY_INVALIDATE
from raffle.services.errors import (
    CampaignEndedError,
    QuotaExhaustedError,
    ServiceDegradedError,
    StrategyNotArmedError,
)
from raffle.services.schemas import StockSyncResult
from tests.factories import Seeder

STRATEGY_ID = 100006


def _seed_campaign(seed: Seeder) -> None:
    """One real prize behind a one-draw lock and stock of 2; 101 is the consolation."""
    seed.strategy(STRATEGY_ID, rule_models="rule_blacklist,rule_weight")
    seed.award(STRATEGY_ID, 101, 0.0, surplus=1000)
    seed.award(STRATEGY_ID, 102, 1.0, surplus=2, graph_id="g_lock_stock")
    seed.stock_graph("g_lock_stock", lock=1, luck="101:1,100")
    seed.rule(STRATEGY_ID, "rule_blacklist", "101:blocked")
    seed.rule(STRATEGY_ID, "rule_weight", "10:102")


@pytest.fixture()
def campaign(container: RaffleContainer, seed: Seeder) -> RaffleContainer:
    _seed_campaign(seed)
    assert container.armory.armory(STRATEGY_ID)
    return container


def _records(factory: sessionmaker[Session], user_id: str) -> list[UserAwardRecords]:
    with session_scope(factory) as s:
        return list(
            s.scalars(
                select(UserAwardRecords)
                .where(UserAwardRecords.user_id == user_id)
                .order_by(UserAwardRecords.id)
            ).all()
        )


class TestDraw:
    def test_draw_records_and_publishes(
        self,
        campaign: RaffleContainer,
        publisher: MemoryPublisher,
        session_factory: sessionmaker[Session],
    ) -> None:
        response: DrawResponse = campaign.raffle.draw("blocked", STRATEGY_ID, order_id="order-1")

        assert response["award_id"] == 101
        assert response["award_title"] == "award 101"
        assert response["order_id"] == "order-1"
        assert response["duplicate"] is False
        assert [r.award_id for r in _records(session_factory, "blocked")] == [101]
        assert len(publisher.message_ids("send_award")) == 1

    def test_generated_order_id(self, campaign: RaffleContainer) -> None:
        response: DrawResponse = campaign.raffle.draw("blocked", STRATEGY_ID)
        assert response["order_id"]

    def test_lock_stock_and_consolation(
        self, campaign: RaffleContainer, session_factory: sessionmaker[Session]
    ) -> None:
        awards: list[int] = [campaign.raffle.draw("user01", STRATEGY_ID)["award_id"] for _ in range(4)]

        # locked on the first draw, two units of stock, then exhausted
        assert awards == [101, 102, 102, 101]
        records: list[UserAwardRecords] = _records(session_factory, "user01")
        assert records[0].award_config == "1,100"
        assert records[1].award_config is None
        assert campaign.ledger.is_exhausted(STRATEGY_ID, 102)

        sync: StockSyncResult = campaign.stock_sync.run_once()
        assert sync.events_drained == 2
        assert sync.keys_skipped == 1
        surplus: dict[int, int] = {
            a.award_id: a.award_count_surplus for a in campaign.repository.load_awards(STRATEGY_ID)
        }
        assert surplus[102] == 0

    def test_stock_sync_lags_then_reconciles(self, campaign: RaffleContainer) -> None:
        campaign.raffle.draw("user01", STRATEGY_ID)
        campaign.raffle.draw("user01", STRATEGY_ID)
        before: dict[int, int] = {
            a.award_id: a.award_count_surplus for a in campaign.repository.load_awards(STRATEGY_ID)
        }
        assert before[102] == 2

        campaign.stock_sync.run_once()
        after: dict[int, int] = {
            a.award_id: a.award_count_surplus for a in campaign.repository.load_awards(STRATEGY_ID)
        }
        assert after[102] == 1

    def test_same_order_id_is_idempotent(
        self,
        campaign: RaffleContainer,
        publisher: MemoryPublisher,
        session_factory: sessionmaker[Session],
    ) -> None:
        first: DrawResponse = campaign.raffle.draw("user01", STRATEGY_ID, order_id="order-1")
        second: DrawResponse = campaign.raffle.draw("user01", STRATEGY_ID, order_id="order-1")

        assert second["duplicate"] is True
        assert second["award_id"] == first["award_id"]
        assert second["award_rule_value"] == first["award_rule_value"]
        assert len(_records(session_factory, "user01")) == 1
        assert len(publisher.messages) == 1

    def test_lost_order_race_reports_stored_award(
        self,
        campaign: RaffleContainer,
        publisher: MemoryPublisher,
        session_factory: sessionmaker[Session],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        campaign.awards.save_award_record(
            user_id="user01",
            strategy_id=STRATEGY_ID,
            order_id="order-1",
            award_id=101,
            award_title="award 101",
            award_config="stored-config",
        )
        # the concurrent writer commits between the pre-check and the insert
        original = campaign.awards.find_record
        misses: list[str] = ["order-1"]

        def racing_find(user_id: str, order_id: str) -> UserAwardRecords | None:
            if order_id in misses:
                misses.remove(order_id)
                return None
            return original(user_id, order_id)

        monkeypatch.setattr(campaign.awards, "find_record", racing_find)
        response: DrawResponse = campaign.raffle.draw("user01", STRATEGY_ID, order_id="order-1")

        assert response["duplicate"] is True
        assert response["award_id"] == 101
        assert response["award_title"] == "award 101"
        assert response["award_rule_value"] == "stored-config"
        assert [r.award_id for r in _records(session_factory, "user01")] == [101]
        assert len(publisher.messages) == 1

    def test_degrade_switch(self, campaign: RaffleContainer) -> None:
        campaign.dynamic_config.apply_change(DEGRADE_SWITCH, "open")
        with pytest.raises(ServiceDegradedError):
            campaign.raffle.draw("user01", STRATEGY_ID)

        campaign.dynamic_config.apply_change(DEGRADE_SWITCH, "close")
        assert campaign.raffle.draw("user01", STRATEGY_ID)["award_id"] == 101

    def test_not_armed(self, container: RaffleContainer, seed: Seeder) -> None:
        _seed_campaign(seed)
        with pytest.raises(StrategyNotArmedError):
            container.raffle.draw("user01", STRATEGY_ID)

    def test_ended_campaign(
        self, container: RaffleContainer, seed: Seeder, session_factory: sessionmaker[Session]
    ) -> None:
        seed.strategy(STRATEGY_ID, end_time=datetime.now(UTC) - timedelta(hours=1))
        seed.award(STRATEGY_ID, 101, 1.0)
        container.armory.armory(STRATEGY_ID)

        with pytest.raises(CampaignEndedError):
            container.raffle.draw("user01", STRATEGY_ID)
        assert _records(session_factory, "user01") == []


class TestInjectedSources:
    def _build(
        self, settings: Settings, session_factory: sessionmaker[Session], **kwargs: object
    ) -> RaffleContainer:
        return build_container(
            settings,
            cache=MemoryCacheStore(),
            publisher=MemoryPublisher(),
            session_factory=session_factory,
            router=PartitionRouter([session_factory]),
            **kwargs,  # type: ignore[arg-type]
        )

    def test_quota_gate_denies(
        self, settings: Settings, seed: Seeder, session_factory: sessionmaker[Session]
    ) -> None:
        _seed_campaign(seed)
        denied: RaffleContainer = self._build(settings, session_factory, quota_gate=lambda user_id, sid: False)
        denied.armory.armory(STRATEGY_ID)

        with pytest.raises(QuotaExhaustedError):
            denied.raffle.draw("user01", STRATEGY_ID)
        assert _records(session_factory, "user01") == []

    def test_weight_tier_skips_decision_graph(
        self, settings: Settings, seed: Seeder, session_factory: sessionmaker[Session]
    ) -> None:
        _seed_campaign(seed)
        veteran: RaffleContainer = self._build(settings, session_factory, count_source=lambda user_id, sid: 10)
        veteran.armory.armory(STRATEGY_ID)

        response: DrawResponse = veteran.raffle.draw("user01", STRATEGY_ID)
        assert response["award_id"] == 102
        assert veteran.ledger.current_count(STRATEGY_ID, 102) == 2


class TestQueries:
    def test_query_award_list(self, campaign: RaffleContainer) -> None:
        items: list[AwardListItem] = campaign.raffle.query_award_list(STRATEGY_ID, "user01")
        by_id: dict[int, AwardListItem] = {item["award_id"]: item for item in items}

        assert by_id[101]["unlocked"] is True
        assert by_id[101]["unlock_threshold"] is None
        assert by_id[102]["unlock_threshold"] == 1
        assert by_id[102]["unlocked"] is False
        assert by_id[102]["remaining_draws_to_unlock"] == 1

        campaign.raffle.draw("user01", STRATEGY_ID)
        unlocked: list[AwardListItem] = campaign.raffle.query_award_list(STRATEGY_ID, "user01")
        assert {item["award_id"]: item["unlocked"] for item in unlocked} == {101: True, 102: True}

    def test_query_rule_weight(self, campaign: RaffleContainer) -> None:
        tiers: list[RuleWeightTier] = campaign.raffle.query_rule_weight(STRATEGY_ID, "user01")

        assert len(tiers) == 1
        assert tiers[0]["tier_key"] == "10:102"
        assert tiers[0]["threshold"] == 10
        assert tiers[0]["reached"] is False
        assert tiers[0]["user_draw_count"] == 0
        assert tiers[0]["awards"] == [{"award_id": 102, "award_title": "award 102"}]

    def test_query_rule_weight_without_rule(self, container: RaffleContainer, seed: Seeder) -> None:
        seed.strategy(STRATEGY_ID)
        seed.award(STRATEGY_ID, 101, 1.0)
        assert container.raffle.query_rule_weight(STRATEGY_ID, "user01") == []


class TestInvalidation:
    def test_invalidate_reloads_config(
        self, campaign: RaffleContainer, session_factory: sessionmaker[Session]
    ) -> None:
        assert campaign.repository.query_rule_value(STRATEGY_ID, "rule_blacklist") == "101:blocked"

        with session_scope(session_factory) as s:
            s.execute(
                update(StrategyRules)
                .where(StrategyRules.strategy_id == STRATEGY_ID, StrategyRules.rule_model == "rule_blacklist")
                .values(rule_value="101:blocked,user09")
            )
            s.execute(
                update(StrategyAwards)
                .where(StrategyAwards.strategy_id == STRATEGY_ID, StrategyAwards.award_id == 102)
                .values(award_title="Headphones")
            )

        # cached until the change notification arrives
        assert campaign.repository.query_rule_value(STRATEGY_ID, "rule_blacklist") == "101:blocked"

        campaign.dynamic_config.apply_change(STRATEGY_INVALIDATE, str(STRATEGY_ID))

        assert campaign.repository.query_rule_value(STRATEGY_ID, "rule_blacklist") == "101:blocked,user09"
        renamed = campaign.repository.query_award(STRATEGY_ID, 102)
        assert renamed is not None and renamed.award_title == "Headphones"
        assert campaign.raffle.draw("user09", STRATEGY_ID)["award_id"] == 101

    def test_failing_listener_does_not_block_others(self, campaign: RaffleContainer) -> None:
        seen: list[str | None] = []

        def broken(value: str | None) -> None:
            raise RuntimeError("listener bug")

        campaign.dynamic_config.subscribe("custom", broken)
        campaign.dynamic_config.subscribe("custom", seen.append)
        campaign.dynamic_config.apply_change("custom", "1")

        assert seen == ["1"]
        assert campaign.dynamic_config.get("custom") == "1"
