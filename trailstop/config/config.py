"""
Configuration models for the trailing stop engine.

Uses Pydantic for validation and type safety. Values come from
config.yaml (with ${VAR} expansion); keys the YAML leaves out can be
supplied through nested environment variables, e.g. ENGINE__POLL_INTERVAL_SECONDS=2.
"""
from decimal import Decimal
from pathlib import Path
from typing import Dict, Literal, Optional
import os
import re

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml

from trailstop.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"


class SystemConfig(BaseSettings):
    """System metadata."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "Auto Trailing Stop-Loss"
    version: str = "1.0.0"
    dry_run: bool = False  # If True, exits go to the paper broker; prices stay live


class EngineConfig(BaseSettings):
    """Polling loop configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    poll_interval_seconds: float = Field(default=5.0, ge=0.0, le=3600.0)
    price_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)
    order_timeout_seconds: float = Field(default=15.0, gt=0.0, le=300.0)
    fetch_prices_concurrently: bool = Field(
        default=False,
        description="Fetch every symbol's price at the start of a tick with asyncio.gather",
    )
    max_exit_attempts: int = Field(
        default=0,
        ge=0,
        le=1000,
        description="Failed exit orders before a triggered position is dropped (0 = retry forever)",
    )


class TrailingConfig(BaseSettings):
    """Defaults applied when a position is registered without explicit stop settings."""
    model_config = SettingsConfigDict(extra="ignore")

    default_stop_mode: Literal["percentage", "fixed", "difference"] = "percentage"
    default_stop_parameter: Decimal = Field(default=Decimal("2.5"), gt=0)


class StorageConfig(BaseSettings):
    """Registry snapshot persistence."""
    model_config = SettingsConfigDict(extra="ignore")

    backend: Literal["json", "sql", "memory"] = "json"
    path: str = "data/trailing_stops.json"
    database_url: Optional[str] = None
    snapshot_key: str = "default"
    trade_journal_path: Optional[str] = "data/trade_journal.jsonl"

    @field_validator("database_url")
    @classmethod
    def _blank_url_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (not v.strip() or v.startswith("$")):
            return None
        return v


class BrokerConfig(BaseSettings):
    """Price feed / order executor selection."""
    model_config = SettingsConfigDict(extra="ignore")

    name: str = "paper"  # "paper" or any ccxt exchange id
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    use_testnet: bool = False
    quote_currency: Optional[str] = None  # appended as BASE/QUOTE when symbols are bare tickers
    paper_prices: Dict[str, Decimal] = Field(default_factory=dict)

    @field_validator("api_key", "api_secret")
    @classmethod
    def _unexpanded_is_none(cls, v: Optional[str]) -> Optional[str]:
        # ${VAR} left in place when VAR is unset
        if v is not None and (not v.strip() or v.startswith("$")):
            return None
        return v


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None
    log_max_bytes: int = Field(default=10 * 1024 * 1024, gt=0, description="Rotate the log file at this size")
    log_backup_count: int = Field(default=5, ge=0)


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    system: SystemConfig = Field(default_factory=SystemConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    trailing: TrailingConfig = Field(default_factory=TrailingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    environment: Literal["dev", "paper", "prod"] = "dev"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))  # Return original if not found

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        if not config_dict.get("storage", {}).get("database_url"):
            db_url = os.getenv("DATABASE_URL")
            if db_url:
                config_dict.setdefault("storage", {})["database_url"] = db_url

        # Outside prod, default to dry run unless DRY_RUN says otherwise
        if config_dict.get("environment", "dev") != "prod":
            system = config_dict.setdefault("system", {})
            if "dry_run" not in system:
                env_dry_run = os.getenv("DRY_RUN", "1")
                system["dry_run"] = env_dry_run in ("1", "true", "True", "TRUE")

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.storage.backend == "sql" and not self.storage.database_url:
            raise ValueError("storage.database_url (or DATABASE_URL) is required for the sql backend")

        if self.broker.name != "paper" and not self.system.dry_run:
            if not self.broker.api_key or not self.broker.api_secret:
                raise ValueError(
                    f"Broker '{self.broker.name}' needs api_key and api_secret for live exits "
                    "(set them or enable system.dry_run)"
                )

        if self.environment == "prod" and self.storage.backend == "memory":
            raise ValueError("In-memory storage loses every position on restart; not allowed in prod")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses trailstop/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    from trailstop.config.dotenv_loader import load_dotenv_files

    env_files = load_dotenv_files()

    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH

    config = Config.from_yaml(config_path)
    config.validate_config()

    logger.info(
        "Configuration loaded",
        path=str(config_path),
        environment=config.environment,
        broker=config.broker.name,
        storage=config.storage.backend,
        dry_run=config.system.dry_run,
        env_files=[str(p) for p in env_files],
    )
    return config
