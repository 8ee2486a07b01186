"""
Pytest configuration and shared fixtures.
"""
from decimal import Decimal

import pytest

from trailstop.config.config import EngineConfig
from trailstop.execution.engine import TrailingStopEngine
from trailstop.execution.position_registry import PositionRegistry
from trailstop.execution.trade_recorder import TradeRecorder
from trailstop.paper.paper_broker import PaperBroker
from trailstop.storage.memory_store import InMemoryConfigStore


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture
def store():
    return InMemoryConfigStore()


@pytest.fixture
def registry(store):
    return PositionRegistry(store)


@pytest.fixture
def broker():
    return PaperBroker(prices={"SYM": Decimal("100")})


@pytest.fixture
def engine_config():
    return EngineConfig(
        poll_interval_seconds=0.0,
        price_timeout_seconds=0.5,
        order_timeout_seconds=0.5,
    )


@pytest.fixture
def recorder():
    return TradeRecorder()


@pytest.fixture
def engine(registry, broker, engine_config, recorder):
    return TrailingStopEngine(
        registry=registry,
        price_feed=broker,
        executor=broker,
        config=engine_config,
        trade_recorder=recorder,
    )
