"""
Component wiring from Config.

Builds the ConfigStore, the price feed / order executor pair and the
engine so hosts (CLI, web backends) assemble them the same way.
"""
from dataclasses import dataclass
from typing import Optional

from trailstop.config.config import Config
from trailstop.data.ccxt_client import CcxtBroker
from trailstop.domain.protocols import ConfigStore, OrderExecutor, PriceFeed
from trailstop.execution.engine import TrailingStopEngine
from trailstop.execution.position_registry import PositionRegistry
from trailstop.execution.trade_recorder import TradeRecorder
from trailstop.monitoring.logger import get_logger
from trailstop.paper.paper_broker import PaperBroker
from trailstop.storage.json_store import JsonFileConfigStore
from trailstop.storage.memory_store import InMemoryConfigStore
from trailstop.storage.sql_store import SqlConfigStore

logger = get_logger(__name__)


@dataclass
class Brokers:
    price_feed: PriceFeed
    executor: OrderExecutor
    exchange: Optional[CcxtBroker] = None  # set when a ccxt client must be closed on shutdown

    async def close(self) -> None:
        if self.exchange is not None:
            await self.exchange.close()


def build_store(config: Config) -> ConfigStore:
    storage = config.storage
    if storage.backend == "sql":
        return SqlConfigStore(storage.database_url, snapshot_key=storage.snapshot_key)
    if storage.backend == "memory":
        return InMemoryConfigStore()
    return JsonFileConfigStore(storage.path)


def build_brokers(config: Config) -> Brokers:
    """
    paper            -> PaperBroker for prices and exits
    <ccxt id>        -> CcxtBroker for prices and exits
    <ccxt id>+dry_run-> PaperBroker reading prices through CcxtBroker
    """
    broker = config.broker
    if broker.name == "paper":
        paper = PaperBroker(prices=broker.paper_prices)
        return Brokers(price_feed=paper, executor=paper)

    exchange = CcxtBroker(
        broker.name,
        api_key=broker.api_key,
        api_secret=broker.api_secret,
        use_testnet=broker.use_testnet,
        quote_currency=broker.quote_currency,
    )
    if config.system.dry_run:
        logger.info("Dry run: exits are simulated, prices are live", exchange=broker.name)
        paper = PaperBroker(price_source=exchange)
        return Brokers(price_feed=paper, executor=paper, exchange=exchange)
    return Brokers(price_feed=exchange, executor=exchange, exchange=exchange)


def build_registry(config: Config) -> PositionRegistry:
    registry = PositionRegistry(build_store(config))
    registry.load()
    return registry


def build_engine(config: Config, registry: PositionRegistry, brokers: Brokers) -> TrailingStopEngine:
    return TrailingStopEngine(
        registry=registry,
        price_feed=brokers.price_feed,
        executor=brokers.executor,
        config=config.engine,
        trade_recorder=TradeRecorder(config.storage.trade_journal_path),
    )
