"""
Tests for configuration loading and validation.
"""
from decimal import Decimal
import textwrap

import pydantic
import pytest

from trailstop.config.config import DEFAULT_CONFIG_PATH, Config, EngineConfig, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in ("ENVIRONMENT", "DATABASE_URL", "BROKER_API_KEY", "BROKER_API_SECRET", "DRY_RUN"):
        monkeypatch.delenv(var, raising=False)


def _write(tmp_path, body):
    path = tmp_path / "config.yaml"
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return path


def test_bundled_config_loads():
    config = load_config(DEFAULT_CONFIG_PATH)

    assert config.environment == "dev"
    assert config.broker.name == "paper"
    assert config.broker.api_key is None
    assert config.storage.backend == "json"
    assert config.storage.database_url is None
    assert config.engine.poll_interval_seconds == 5.0
    assert config.engine.max_exit_attempts == 0
    assert config.trailing.default_stop_mode == "percentage"
    assert config.trailing.default_stop_parameter == Decimal("2.5")
    assert config.system.dry_run is True


def test_env_vars_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv("TEST_DB_URL", "sqlite:///from-env.db")
    path = _write(tmp_path, """
        storage:
          backend: sql
          database_url: ${TEST_DB_URL}
    """)
    assert load_config(path).storage.database_url == "sqlite:///from-env.db"


def test_database_url_fallback(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgresql://db/stops")
    path = _write(tmp_path, """
        storage:
          backend: sql
    """)
    assert load_config(path).storage.database_url == "postgresql://db/stops"


def test_sql_backend_requires_url(tmp_path):
    path = _write(tmp_path, """
        storage:
          backend: sql
          database_url: ${UNSET_DB_URL_FOR_TEST}
    """)
    with pytest.raises(ValueError, match="database_url"):
        load_config(path)


def test_live_exchange_requires_credentials(tmp_path):
    path = _write(tmp_path, """
        environment: prod
        broker:
          name: kraken
    """)
    with pytest.raises(ValueError, match="api_key"):
        load_config(path)


def test_dry_run_defaults_on_outside_prod(tmp_path):
    path = _write(tmp_path, """
        broker:
          name: kraken
    """)
    config = load_config(path)
    assert config.system.dry_run is True


def test_dry_run_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("DRY_RUN", "0")
    path = _write(tmp_path, "environment: paper\n")
    assert Config.from_yaml(path).system.dry_run is False


def test_environment_variable_wins(tmp_path, monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "prod")
    path = _write(tmp_path, """
        environment: dev
        storage:
          backend: memory
    """)
    with pytest.raises(ValueError, match="memory"):
        load_config(path)


def test_difference_mode_accepted(tmp_path):
    path = _write(tmp_path, """
        trailing:
          default_stop_mode: difference
          default_stop_parameter: 5
    """)
    trailing = load_config(path).trailing
    assert trailing.default_stop_mode == "difference"
    assert trailing.default_stop_parameter == Decimal("5")


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


@pytest.mark.parametrize("field,value", [
    ("poll_interval_seconds", -1),
    ("price_timeout_seconds", 0),
    ("max_exit_attempts", -2),
])
def test_engine_bounds(field, value):
    with pytest.raises(pydantic.ValidationError):
        EngineConfig(**{field: value})
