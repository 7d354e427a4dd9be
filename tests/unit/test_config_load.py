"""
Configuration loading and validation.

Verifies that the shipped config loads, that ${VAR} references expand from the
environment and that unexpanded credentials read as "not configured".
"""
from pathlib import Path

import pytest

from tradeloop.config.config import Config, load_config
from tradeloop.config.dotenv_loader import load_dotenv_files

CONFIG_PATH = Path(__file__).resolve().parents[2] / "tradeloop" / "config" / "config.yaml"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "ENVIRONMENT", "DATABASE_URL", "EXCHANGE_API_KEY", "EXCHANGE_API_SECRET",
        "EXCHANGE_WALLET_ADDRESS", "OPENAI_API_KEY", "DEEPSEEK_API_KEY",
    ):
        monkeypatch.delenv(var, raising=False)


def test_config_yaml_exists():
    assert CONFIG_PATH.exists(), f"Config file not found at {CONFIG_PATH}"


def test_shipped_config_loads():
    config = load_config(CONFIG_PATH)

    assert config.environment == "dev"
    assert config.engine.default_cadence_seconds == 30
    assert config.engine.cadence_grace_seconds == 5
    assert config.engine.min_tick_interval_floor_seconds == 10
    assert config.engine.scheduler_batch_size == 50
    assert config.broker.exit_slippage_bps == 50
    assert config.reasoning.max_retries == 5
    assert config.reasoning.base_delay_seconds == 1.5


def test_provider_urls_are_explicit():
    config = load_config(CONFIG_PATH)

    assert config.reasoning.provider_base_urls["deepseek"] == "https://api.deepseek.com/v1"
    assert all(not url.endswith("/") for url in config.reasoning.provider_base_urls.values())


def test_unset_placeholders_are_not_configured():
    config = load_config(CONFIG_PATH)

    assert config.exchange.api_key is None
    assert config.exchange.wallet_address is None
    assert config.reasoning.api_keys == {}


def test_env_expansion(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-live")
    monkeypatch.setenv("EXCHANGE_API_SECRET", "0xsecret")

    config = load_config(CONFIG_PATH)

    assert config.reasoning.api_keys == {"openai": "sk-live"}
    assert config.exchange.api_secret == "0xsecret"


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("ENVIRONMENT", "paper")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")

    config = load_config(CONFIG_PATH)

    assert config.environment == "paper"
    assert config.data.database_url == "sqlite:///override.db"
    assert config.include_traces


def test_prod_hides_traces():
    assert not Config(environment="prod").include_traces


def test_prod_requires_database(monkeypatch):
    config = Config(environment="prod")

    with pytest.raises(ValueError, match="DATABASE_URL"):
        config.validate_config()


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("does/not/exist.yaml")


def test_dotenv_is_noop_in_prod(monkeypatch, tmp_path):
    (tmp_path / ".env").write_text("TRADELOOP_TEST_VALUE=1\n")

    monkeypatch.setenv("ENVIRONMENT", "prod")
    assert load_dotenv_files(repo_root=tmp_path) == []

    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("TRADELOOP_TEST_VALUE", "0")
    monkeypatch.delenv("TRADELOOP_TEST_VALUE")
    assert load_dotenv_files(repo_root=tmp_path) == [tmp_path / ".env"]
