"""Tests for the operator CLI."""

from collections.abc import Generator

import pytest
from sqlalchemy import func, select
from sqlalchemy.engine import Engine
from typer.testing import CliRunner

from db import connection
from db.connection import PartitionRouter, session_scope
from db.models import Strategies
from raffle import cli
from raffle.services.container import RaffleContainer
from tests.factories import Seeder, make_engine, make_factory

runner = CliRunner()

STRATEGY_ID = 100006


@pytest.fixture()
def wired(container: RaffleContainer, seed: Seeder, monkeypatch: pytest.MonkeyPatch) -> RaffleContainer:
    seed.strategy(STRATEGY_ID)
    seed.award(STRATEGY_ID, 101, 1.0, surplus=5)
    monkeypatch.setattr(cli, "_container", lambda: container)
    return container


class TestCli:
    def test_armory(self, wired: RaffleContainer) -> None:
        result = runner.invoke(cli.app, ["armory", str(STRATEGY_ID)])
        assert result.exit_code == 0
        assert "Armory Results" in result.output
        assert wired.dispatch.is_armed(STRATEGY_ID)

    def test_armory_needs_target(self, wired: RaffleContainer) -> None:
        result = runner.invoke(cli.app, ["armory"])
        assert result.exit_code != 0

    def test_draw_arms_on_demand(self, wired: RaffleContainer) -> None:
        result = runner.invoke(cli.app, ["draw", "--user", "user01", "--strategy", str(STRATEGY_ID), "-n", "3"])
        assert result.exit_code == 0
        assert wired.awards.count_records("user01", STRATEGY_ID) == 3

    def test_draw_unknown_strategy(self, wired: RaffleContainer) -> None:
        result = runner.invoke(cli.app, ["draw", "--user", "user01", "--strategy", "1"])
        assert result.exit_code == 1
        assert "no drawable awards" in result.output

    def test_sync_stock(self, wired: RaffleContainer) -> None:
        wired.ledger.enqueue_pending_sync(STRATEGY_ID, 101)
        result = runner.invoke(cli.app, ["sync-stock"])
        assert result.exit_code == 0
        assert "Stock Sync Results" in result.output

    def test_compensate_show_pending(self, wired: RaffleContainer) -> None:
        result = runner.invoke(cli.app, ["compensate", "--show-pending"])
        assert result.exit_code == 0
        assert "Pending Outbox Tasks" in result.output


@pytest.fixture()
def partitioned(engine: Engine, monkeypatch: pytest.MonkeyPatch) -> Generator[Engine, None, None]:
    second: Engine = make_engine()
    monkeypatch.setattr(connection, "_engine", engine)
    monkeypatch.setattr(
        connection, "_partition_router", PartitionRouter([make_factory(engine), make_factory(second)])
    )
    yield second
    second.dispose()


def _strategy_count(eng: Engine) -> int:
    with session_scope(make_factory(eng)) as s:
        return int(s.scalar(select(func.count()).select_from(Strategies)) or 0)


class TestInitDb:
    def test_force_drops_every_partition(self, engine: Engine, partitioned: Engine) -> None:
        Seeder(make_factory(engine)).strategy(1)
        Seeder(make_factory(partitioned)).strategy(2)

        result = runner.invoke(cli.app, ["init-db", "--force"])

        assert result.exit_code == 0
        assert _strategy_count(engine) == 0
        assert _strategy_count(partitioned) == 0

    def test_without_force_keeps_rows(self, engine: Engine, partitioned: Engine) -> None:
        Seeder(make_factory(partitioned)).strategy(2)

        result = runner.invoke(cli.app, ["init-db"])

        assert result.exit_code == 0
        assert _strategy_count(partitioned) == 1
