"""
Tests for runtime wiring, the paper broker and dotenv loading.
"""
from decimal import Decimal
import os

import pytest

from trailstop.config.config import Config
from trailstop.config.dotenv_loader import load_dotenv_files
from trailstop.data.ccxt_client import CcxtBroker
from trailstop.exceptions import InvalidPrice, OrderRejected, PriceUnavailable, SymbolUnknownError
from trailstop.paper.paper_broker import PaperBroker
from trailstop.runtime import build_brokers, build_engine, build_registry, build_store
from trailstop.storage.json_store import JsonFileConfigStore
from trailstop.storage.memory_store import InMemoryConfigStore
from trailstop.storage.sql_store import SqlConfigStore


class TestBuildStore:

    def test_json(self, tmp_path):
        config = Config(storage={"backend": "json", "path": str(tmp_path / "s.json")})
        store = build_store(config)
        assert isinstance(store, JsonFileConfigStore)

    def test_memory(self):
        assert isinstance(build_store(Config(storage={"backend": "memory"})), InMemoryConfigStore)

    def test_sql(self, tmp_path):
        config = Config(storage={"backend": "sql", "database_url": f"sqlite:///{tmp_path / 's.db'}"})
        store = build_store(config)
        assert isinstance(store, SqlConfigStore)
        store.dispose()


class TestBuildBrokers:

    @pytest.mark.asyncio
    async def test_paper(self):
        brokers = build_brokers(Config(broker={"name": "paper", "paper_prices": {"SYM": "12.5"}}))
        assert brokers.price_feed is brokers.executor
        assert brokers.exchange is None
        assert await brokers.price_feed.last_price("SYM") == Decimal("12.5")
        await brokers.close()

    @pytest.mark.asyncio
    async def test_dry_run_reads_live_prices_and_simulates_exits(self):
        config = Config(system={"dry_run": True}, broker={"name": "kraken"})
        brokers = build_brokers(config)
        assert isinstance(brokers.exchange, CcxtBroker)
        assert isinstance(brokers.executor, PaperBroker)
        assert brokers.executor.price_source is brokers.exchange
        await brokers.close()

    @pytest.mark.asyncio
    async def test_live(self):
        config = Config(system={"dry_run": False}, broker={"name": "kraken", "api_key": "k", "api_secret": "s"})
        brokers = build_brokers(config)
        assert brokers.price_feed is brokers.exchange
        assert brokers.executor is brokers.exchange
        await brokers.close()


@pytest.mark.asyncio
async def test_engine_built_from_config(tmp_path):
    config = Config(
        storage={
            "backend": "json",
            "path": str(tmp_path / "s.json"),
            "trade_journal_path": str(tmp_path / "t.jsonl"),
        },
        broker={"name": "paper", "paper_prices": {"SYM": "100"}},
        engine={"poll_interval_seconds": 0, "max_exit_attempts": 3},
    )
    registry = build_registry(config)
    brokers = build_brokers(config)
    engine = build_engine(config, registry, brokers)

    assert engine.config.max_exit_attempts == 3
    await engine.register("SYM", 1, "percentage", Decimal("1"))
    brokers.price_feed.set_price("SYM", "98")
    report = await engine.tick()
    assert report.exited == ["SYM"]
    assert (tmp_path / "t.jsonl").exists()

    assert build_registry(config).symbols() == []


class TestPaperBroker:

    @pytest.mark.asyncio
    async def test_quotes(self):
        broker = PaperBroker(prices={"A": 1.1})
        assert await broker.last_price("A") == Decimal("1.1")
        with pytest.raises(SymbolUnknownError):
            await broker.last_price("B")
        broker.unavailable_symbols.add("A")
        with pytest.raises(PriceUnavailable):
            await broker.last_price("A")

    def test_rejects_non_positive_price(self):
        with pytest.raises(InvalidPrice):
            PaperBroker(prices={"A": 0})

    @pytest.mark.asyncio
    async def test_fills_and_rejections(self):
        broker = PaperBroker(prices={"A": "5"})
        accepted = await broker.submit_market_sell("A", 4)
        assert accepted.order_id.startswith("paper-")
        assert broker.fills[0].price == Decimal("5")

        broker.reject_orders("venue halted")
        with pytest.raises(OrderRejected, match="venue halted"):
            await broker.submit_market_sell("A", 4)
        assert len(broker.fills) == 1

    @pytest.mark.asyncio
    async def test_reads_through_price_source(self):
        source = PaperBroker(prices={"X": "42"})
        broker = PaperBroker(price_source=source)
        assert await broker.last_price("X") == Decimal("42")
        await broker.submit_market_sell("X", 1)
        assert broker.fills[0].price == Decimal("42")


class TestDotenvLoader:

    @pytest.fixture(autouse=True)
    def isolated_env(self, monkeypatch):
        for var in ("TRAILSTOP_TEST_A", "TRAILSTOP_TEST_B", "ENVIRONMENT", "TRAILSTOP_HOME"):
            monkeypatch.setenv(var, "placeholder")
            monkeypatch.delenv(var)

    def test_local_overrides_env(self, tmp_path):
        (tmp_path / ".env").write_text("TRAILSTOP_TEST_A=base\nTRAILSTOP_TEST_B=base\n", encoding="utf-8")
        (tmp_path / ".env.local").write_text("TRAILSTOP_TEST_B=local\n", encoding="utf-8")

        loaded = load_dotenv_files(repo_root=tmp_path)
        assert loaded == [tmp_path / ".env", tmp_path / ".env.local"]
        assert os.environ["TRAILSTOP_TEST_A"] == "base"
        assert os.environ["TRAILSTOP_TEST_B"] == "local"

    def test_environment_file_between_env_and_local(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "paper")
        (tmp_path / ".env").write_text("TRAILSTOP_TEST_A=base\nTRAILSTOP_TEST_B=base\n", encoding="utf-8")
        (tmp_path / ".env.paper").write_text("TRAILSTOP_TEST_A=paper\nTRAILSTOP_TEST_B=paper\n", encoding="utf-8")
        (tmp_path / ".env.local").write_text("TRAILSTOP_TEST_B=local\n", encoding="utf-8")

        loaded = load_dotenv_files(repo_root=tmp_path)
        assert [p.name for p in loaded] == [".env", ".env.paper", ".env.local"]
        assert os.environ["TRAILSTOP_TEST_A"] == "paper"
        assert os.environ["TRAILSTOP_TEST_B"] == "local"

    def test_exported_variable_beats_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRAILSTOP_TEST_A", "shell")
        (tmp_path / ".env").write_text("TRAILSTOP_TEST_A=base\n", encoding="utf-8")

        load_dotenv_files(repo_root=tmp_path)
        assert os.environ["TRAILSTOP_TEST_A"] == "shell"

    def test_home_variable_sets_root(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TRAILSTOP_HOME", str(tmp_path))
        (tmp_path / ".env").write_text("TRAILSTOP_TEST_A=home\n", encoding="utf-8")

        assert load_dotenv_files() == [tmp_path / ".env"]
        assert os.environ["TRAILSTOP_TEST_A"] == "home"

    def test_prod_skips_dotenv(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ENVIRONMENT", "prod")
        (tmp_path / ".env").write_text("TRAILSTOP_TEST_A=base\n", encoding="utf-8")

        assert load_dotenv_files(repo_root=tmp_path) == []
        assert "TRAILSTOP_TEST_A" not in os.environ
