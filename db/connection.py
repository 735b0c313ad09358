"""Database engines, session management, and user-id partition routing."""

import logging
import zlib
from collections.abc import Generator, Sequence
from contextlib import contextmanager

from sqlalchemy import create_engine, event, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from config import get_settings
from db.models import REQUIRED_TABLES, Base

logger = logging.getLogger(__name__)

_engine: Engine | None = None
_session_factory: sessionmaker[Session] | None = None
_partition_router: "PartitionRouter | None" = None


def _build_engine(url: str) -> Engine:
    settings = get_settings()
    opts: dict = {"echo": settings.debug}
    is_sqlite: bool = url.startswith("sqlite")

    if not is_sqlite:
        opts.update(
            pool_size=settings.database.pool_size,
            pool_timeout=settings.database.pool_timeout,
            pool_recycle=settings.database.pool_recycle,
            pool_pre_ping=True,
        )

    engine: Engine = create_engine(url, **opts)

    if is_sqlite:

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_conn, connection_record):
            cur = dbapi_conn.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.execute("PRAGMA journal_mode=WAL")
            cur.execute("PRAGMA busy_timeout=30000")
            cur.execute("PRAGMA synchronous=NORMAL")
            cur.close()

    return engine


def _make_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def get_engine() -> Engine:
    """Get or create the shared database engine."""
    global _engine

    if _engine is None:
        settings = get_settings()
        logger.info("Connecting to %s", settings.database.db_info_for_logging())
        _engine = _build_engine(settings.database.url)
    return _engine


def get_session_factory() -> sessionmaker[Session]:
    """Get or create the session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = _make_factory(get_engine())
    return _session_factory


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Context-managed session from an explicit factory, with commit/rollback."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """Context-managed session on the main database."""
    with session_scope(get_session_factory()) as session:
        yield session


class PartitionRouter:
    """Routes award records and outbox tasks to a database by user id.

    Routing uses crc32 of the user id, so it is stable across processes.
    """

    def __init__(self, factories: Sequence[sessionmaker[Session]]) -> None:
        if not factories:
            raise ValueError("PartitionRouter needs at least one session factory")
        self.factories: tuple[sessionmaker[Session], ...] = tuple(factories)

    def __len__(self) -> int:
        return len(self.factories)

    def partition_of(self, shard_key: str) -> int:
        return zlib.crc32(shard_key.encode("utf-8")) % len(self.factories)

    def factory_for(self, shard_key: str) -> sessionmaker[Session]:
        return self.factories[self.partition_of(shard_key)]

    @contextmanager
    def session_for(self, shard_key: str) -> Generator[Session, None, None]:
        with session_scope(self.factory_for(shard_key)) as session:
            yield session

    def partitions(self) -> list[tuple[int, sessionmaker[Session]]]:
        return list(enumerate(self.factories))


def get_partition_router() -> PartitionRouter:
    """Get or create the router; falls back to the main database when unpartitioned."""
    global _partition_router

    if _partition_router is None:
        urls: list[str] = get_settings().database.partition_urls
        if urls:
            factories = [_make_factory(_build_engine(url)) for url in urls]
        else:
            factories = [get_session_factory()]
        _partition_router = PartitionRouter(factories)
    return _partition_router


def _init_engine(engine: Engine) -> None:
    before: set[str] = set(inspect(engine).get_table_names())
    missing_before: list[str] = [t for t in REQUIRED_TABLES if t not in before]

    Base.metadata.create_all(engine)
    after: set[str] = set(inspect(engine).get_table_names())
    created: list[str] = [t for t in missing_before if t in after]
    still_missing: list[str] = [t for t in REQUIRED_TABLES if t not in after]

    if created:
        logger.info("Schema init: created tables %s on %s", created, engine.url)
    elif not still_missing:
        logger.info("Schema init: all tables present on %s", engine.url)
    if still_missing:
        raise RuntimeError(
            f"Schema init failed: missing tables {still_missing} on {engine.url}. "
            "Delete the sqlite file and run: raffle init-db"
        )


def _all_engines() -> list[Engine]:
    engines: list[Engine] = [get_engine()]
    for _, factory in get_partition_router().partitions():
        bind = factory.kw.get("bind")
        if isinstance(bind, Engine) and all(bind is not e for e in engines):
            engines.append(bind)
    return engines


def init_database() -> None:
    """Create all tables on the main database and every partition. Idempotent."""
    for engine in _all_engines():
        _init_engine(engine)


def drop_database() -> None:
    """Drop all tables on the main database and every partition."""
    for engine in _all_engines():
        Base.metadata.drop_all(engine)
        logger.info("Schema drop: dropped tables on %s", engine.url)


def reset_engine() -> None:
    """For testing: clear cached engines, session factory and router."""
    global _engine, _session_factory, _partition_router
    if _partition_router is not None:
        for _, factory in _partition_router.partitions():
            bind = factory.kw.get("bind")
            if isinstance(bind, Engine) and bind is not _engine:
                bind.dispose()
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
    _partition_router = None
