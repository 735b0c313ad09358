"""Wires settings, stores and services into one object for the CLI and workers."""

from dataclasses import dataclass

import structlog
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, get_settings
from db.connection import PartitionRouter, get_partition_router, get_session_factory
from raffle.services.armory import ArmoryService
from raffle.services.award import AwardService
from raffle.services.broker import MemoryPublisher, MessagePublisher, RedisStreamPublisher
from raffle.services.cache import CacheKeys, CacheStore, MemoryCacheStore, RedisCacheStore
from raffle.services.decision_graph import DecisionGraphFactory
from raffle.services.dispatch import StrategyDispatch
from raffle.services.dynamic_config import DEGRADE_SWITCH, STRATEGY_INVALIDATE, DynamicConfig
from raffle.services.inventory import InventoryLedger
from raffle.services.outbox import OutboxCompensator
from raffle.services.raffle import DrawCountSource, QuotaGate, RaffleService, RaffleStrategy
from raffle.services.rule_chain import LogicChainFactory
from raffle.services.stock_sync import StockSyncJob
from raffle.services.strategy_repository import StrategyRepository

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)


@dataclass
class RaffleContainer:
    settings: Settings
    cache: CacheStore
    publisher: MessagePublisher
    router: PartitionRouter
    repository: StrategyRepository
    dispatch: StrategyDispatch
    ledger: InventoryLedger
    chains: LogicChainFactory
    graphs: DecisionGraphFactory
    armory: ArmoryService
    awards: AwardService
    raffle: RaffleService
    stock_sync: StockSyncJob
    compensator: OutboxCompensator
    dynamic_config: DynamicConfig


def build_cache(settings: Settings) -> CacheStore:
    if settings.cache.use_redis():
        return RedisCacheStore.from_url(
            (settings.cache.redis_url or "").strip(),
            socket_timeout=settings.cache.socket_timeout,
        )
    return MemoryCacheStore()


def build_publisher(settings: Settings) -> MessagePublisher:
    if settings.broker.use_redis():
        return RedisStreamPublisher.from_url(
            (settings.broker.redis_url or "").strip(),
            maxlen=settings.broker.stream_maxlen,
        )
    return MemoryPublisher()


def build_container(
    settings: Settings | None = None,
    *,
    cache: CacheStore | None = None,
    publisher: MessagePublisher | None = None,
    session_factory: sessionmaker[Session] | None = None,
    router: PartitionRouter | None = None,
    count_source: DrawCountSource | None = None,
    quota_gate: QuotaGate | None = None,
    dynamic_config: DynamicConfig | None = None,
) -> RaffleContainer:
    """Build every service; explicit arguments override what settings would pick."""
    settings = settings or get_settings()
    cache = cache or build_cache(settings)
    publisher = publisher or build_publisher(settings)
    session_factory = session_factory or get_session_factory()
    router = router if router is not None else get_partition_router()
    dynamic_config = dynamic_config or DynamicConfig()
    keys: CacheKeys = CacheKeys(settings.cache.key_prefix)

    repository: StrategyRepository = StrategyRepository(
        cache, session_factory, keys=keys, config_ttl=settings.cache.config_ttl_seconds
    )
    dispatch: StrategyDispatch = StrategyDispatch(cache, keys=keys)
    ledger: InventoryLedger = InventoryLedger(cache, keys=keys, on_exhausted=repository.clear_award_stock)
    chains: LogicChainFactory = LogicChainFactory(repository, dispatch)
    graphs: DecisionGraphFactory = DecisionGraphFactory(repository, ledger)
    awards: AwardService = AwardService(router, publisher, topic=settings.broker.award_topic)

    def _invalidate(value: str | None) -> None:
        strategy_id: int | None = int(value) if value else None
        if strategy_id is not None:
            repository.evict(strategy_id)
        chains.invalidate(strategy_id)
        graphs.invalidate()

    def _degrade(value: str | None) -> None:
        logger.warning("degrade_switch_changed", value=value, degraded=dynamic_config.is_degraded())

    dynamic_config.subscribe(STRATEGY_INVALIDATE, _invalidate)
    dynamic_config.subscribe(DEGRADE_SWITCH, _degrade)

    return RaffleContainer(
        settings=settings,
        cache=cache,
        publisher=publisher,
        router=router,
        repository=repository,
        dispatch=dispatch,
        ledger=ledger,
        chains=chains,
        graphs=graphs,
        armory=ArmoryService(repository, dispatch, ledger, graphs, chains),
        awards=awards,
        raffle=RaffleService(
            repository,
            RaffleStrategy(repository, chains, graphs),
            awards,
            count_source=count_source,
            quota_gate=quota_gate,
            dynamic_config=dynamic_config,
        ),
        stock_sync=StockSyncJob(ledger, session_factory, max_events=settings.jobs.stock_sync_max_events),
        compensator=OutboxCompensator(
            router,
            publisher,
            batch_limit=settings.jobs.outbox_batch_limit,
            grace_seconds=settings.jobs.outbox_grace_seconds,
        ),
        dynamic_config=dynamic_config,
    )
