"""
Configuration models for the tick engine.

Uses Pydantic for validation and type safety. Strategy-level settings live in
``strategy_config``; this module holds process-wide settings.
"""
from typing import Dict, Literal, Optional
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import yaml
from pathlib import Path
import os
import re

from tradeloop.monitoring.logger import get_logger

CONFIG_SCHEMA_VERSION = "2026-09-01"

logger = get_logger(__name__)


class EngineConfig(BaseSettings):
    """Tick orchestration and scheduling."""
    model_config = SettingsConfigDict(extra="ignore")

    default_cadence_seconds: int = Field(default=30, ge=1, le=86400)
    # A session is due this many seconds before its cadence elapses
    cadence_grace_seconds: int = Field(default=5, ge=0, le=60)
    # Ticks closer together than max(floor, cadence - grace) are refused
    min_tick_interval_floor_seconds: int = Field(default=10, ge=0, le=3600)
    scheduler_batch_size: int = Field(default=50, ge=1, le=1000)
    scheduler_max_concurrency: int = Field(default=8, ge=1, le=256)
    scheduler_poll_seconds: float = Field(default=5.0, ge=0.5, le=600.0)
    reconciliation_tolerance: float = Field(default=0.01, gt=0.0, le=100.0)
    default_starting_equity: float = Field(default=100000.0, ge=1.0)


class BrokerConfig(BaseSettings):
    """Per-purpose slippage and fees (basis points)."""
    model_config = SettingsConfigDict(extra="ignore")

    entry_fee_bps: float = Field(default=5.0, ge=0.0, le=100.0)
    exit_slippage_bps: float = Field(default=50.0, ge=0.0, le=500.0, description="Exits must fill")
    exit_fee_bps: float = Field(default=5.0, ge=0.0, le=100.0)


class MarketDataConfig(BaseSettings):
    """Public market data venue (ccxt)."""
    model_config = SettingsConfigDict(extra="ignore")

    exchange_id: str = "hyperliquid"
    quote_currency: str = "USDC"
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)


class ExchangeConfig(BaseSettings):
    """Live trading venue (ccxt). Credentials come from env or yaml."""
    model_config = SettingsConfigDict(extra="ignore")

    exchange_id: str = "hyperliquid"
    api_key: Optional[str] = None
    api_secret: Optional[str] = None
    wallet_address: Optional[str] = None
    use_testnet: bool = False
    timeout_ms: int = Field(default=30000, ge=1000, le=120000)


class ReasoningConfig(BaseSettings):
    """Reasoning-model providers. Base URLs are explicit; nothing is hardcoded in the client."""
    model_config = SettingsConfigDict(extra="ignore")

    provider_base_urls: Dict[str, str] = Field(
        default_factory=lambda: {
            "openai": "https://api.openai.com/v1",
            "deepseek": "https://api.deepseek.com/v1",
            "openrouter": "https://openrouter.ai/api/v1",
            "groq": "https://api.groq.com/openai/v1",
            "together": "https://api.together.xyz/v1",
            "xai": "https://api.x.ai/v1",
            "mistral": "https://api.mistral.ai/v1",
        }
    )
    api_keys: Dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=60.0, ge=1.0, le=600.0)
    max_retries: int = Field(default=5, ge=0, le=10)
    base_delay_seconds: float = Field(default=1.5, ge=0.0, le=60.0)
    max_backoff_seconds: float = Field(default=30.0, ge=1.0, le=600.0)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)

    @field_validator("provider_base_urls")
    @classmethod
    def strip_trailing_slashes(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {k.lower(): url.strip().rstrip("/") for k, url in v.items()}

    @field_validator("api_keys")
    @classmethod
    def lowercase_providers(cls, v: Dict[str, str]) -> Dict[str, str]:
        return {k.lower(): key for k, key in v.items()}


class DataConfig(BaseSettings):
    """Storage configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    database_url: Optional[str] = None


class MonitoringConfig(BaseSettings):
    """Logging configuration."""
    model_config = SettingsConfigDict(extra="ignore")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"
    log_file: Optional[str] = None


class Config(BaseSettings):
    """Main configuration class."""
    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Literal["dev", "paper", "prod"] = "prod"
    engine: EngineConfig = Field(default_factory=EngineConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    exchange: ExchangeConfig = Field(default_factory=ExchangeConfig)
    reasoning: ReasoningConfig = Field(default_factory=ReasoningConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    @model_validator(mode="after")
    def check_testnet_in_prod(self) -> "Config":
        if self.environment == "prod" and self.exchange.use_testnet:
            logger.warning("Testnet enabled in production environment - this is likely misconfiguration")
        return self

    @property
    def include_traces(self) -> bool:
        """Stack traces are returned to callers outside production."""
        return self.environment != "prod"

    @classmethod
    def from_yaml(cls, yaml_path: str | Path) -> "Config":
        """Load configuration from YAML file, expanding ${VAR} references."""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path, "r") as f:
            raw_content = f.read()

        # ${VAR} or $VAR; unknown variables are left as-is
        pattern = re.compile(r'\$\{([^}]+)\}|\$([a-zA-Z_][a-zA-Z0-9_]*)')

        def replace_match(match):
            var_name = match.group(1) or match.group(2)
            return os.environ.get(var_name, match.group(0))

        expanded_content = pattern.sub(replace_match, raw_content)
        config_dict = yaml.safe_load(expanded_content) or {}

        if "ENVIRONMENT" in os.environ:
            config_dict["environment"] = os.environ["ENVIRONMENT"]

        db_url = os.getenv("DATABASE_URL")
        if db_url:
            config_dict.setdefault("data", {})["database_url"] = db_url

        # Unexpanded ${VAR} placeholders mean "not configured"
        for section in ("exchange",):
            values = config_dict.get(section) or {}
            for key, value in list(values.items()):
                if isinstance(value, str) and value.startswith("${"):
                    values[key] = None

        api_keys = (config_dict.get("reasoning") or {}).get("api_keys")
        if isinstance(api_keys, dict):
            for provider, value in list(api_keys.items()):
                if not value or (isinstance(value, str) and value.startswith("${")):
                    del api_keys[provider]

        return cls(**config_dict)

    def validate_config(self) -> None:
        """Perform additional validation checks."""
        if self.environment in ("prod", "paper") and not self.data.database_url:
            raise ValueError("DATABASE_URL must be configured for paper/prod environments")
        if self.engine.min_tick_interval_floor_seconds > self.engine.default_cadence_seconds * 10:
            raise ValueError("min_tick_interval_floor_seconds is larger than ten default cadences")


def load_config(config_path: str | Path | None = None) -> Config:
    """
    Load and validate configuration.

    Args:
        config_path: Path to config.yaml file. If None, uses tradeloop/config/config.yaml

    Returns:
        Validated Config object

    Raises:
        FileNotFoundError: If config file not found
        ValueError: If configuration validation fails
    """
    if config_path is None:
        config_path = Path(__file__).parent / "config.yaml"

    config = Config.from_yaml(config_path)
    config.validate_config()
    return config
