"""Shared fixtures: in-memory SQLite DB with all tables, in-process cache and broker."""

from collections.abc import Generator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import Settings
from db.connection import PartitionRouter
from raffle.services.broker import MemoryPublisher
from raffle.services.cache import MemoryCacheStore
from raffle.services.container import RaffleContainer, build_container
from tests.factories import Seeder, make_engine, make_factory


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    eng: Engine = make_engine()
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return make_factory(engine)


@pytest.fixture()
def session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    sess: Session = session_factory()
    yield sess
    sess.rollback()
    sess.close()


@pytest.fixture()
def cache() -> MemoryCacheStore:
    return MemoryCacheStore()


@pytest.fixture()
def publisher() -> MemoryPublisher:
    return MemoryPublisher()


@pytest.fixture()
def router(session_factory: sessionmaker[Session]) -> PartitionRouter:
    return PartitionRouter([session_factory])


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    s: Settings = Settings(data_dir=tmp_path)
    s.jobs.outbox_grace_seconds = 0
    return s


@pytest.fixture()
def container(
    settings: Settings,
    cache: MemoryCacheStore,
    publisher: MemoryPublisher,
    session_factory: sessionmaker[Session],
    router: PartitionRouter,
) -> RaffleContainer:
    return build_container(
        settings,
        cache=cache,
        publisher=publisher,
        session_factory=session_factory,
        router=router,
    )


@pytest.fixture()
def seed(session_factory: sessionmaker[Session]) -> Seeder:
    return Seeder(session_factory)
