"""
Configuration loading for market-fusion.

Settings come from a YAML file (optional) overlaid with environment
variables. API keys are read from the environment only, after loading a
.env file with python-dotenv.

Usage:
    from market_fusion.core.config import load_config

    config = load_config("config/fusion.yaml")
    config.source_weights["coingecko"]   # 0.4
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv
from loguru import logger

from market_fusion.core.errors import ConfigError


DEFAULT_SOURCE_WEIGHTS = {
    "coingecko": 0.4,
    "coinmarketcap": 0.4,
    "binance": 0.2,
}

DEFAULT_SEARCH_TERMS = {
    "bitcoin": ["bitcoin", "btc"],
    "ethereum": ["ethereum", "eth"],
    "starknet": ["starknet", "strk"],
}

# Environment variable -> config attribute
ENV_OVERRIDES = {
    "MARKET_FUSION_DB_PATH": "db_path",
    "MARKET_FUSION_LOG_LEVEL": "log_level",
    "MARKET_FUSION_LOG_JSON": "log_json",
    "MARKET_FUSION_LOG_DIR": "log_dir",
    "MARKET_FUSION_SYMBOLS": "symbols",
    "COINGECKO_API_KEY": "coingecko_api_key",
    "COINMARKETCAP_API_KEY": "coinmarketcap_api_key",
    "NEWS_API_KEY": "news_api_key",
}


@dataclass
class FusionConfig:
    """All tunables of the fusion pipeline."""
    symbols: List[str] = field(default_factory=lambda: ["bitcoin", "ethereum", "starknet"])

    # Scheduling
    aggregation_interval_seconds: float = 60.0
    backfill_interval_seconds: float = 6 * 3600.0
    backfill_days: int = 30

    # HTTP
    request_timeout_seconds: float = 10.0
    max_redirects: int = 3
    sentiment_timeout_seconds: float = 5.0

    # Conflict resolution
    source_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SOURCE_WEIGHTS))
    default_source_weight: float = 0.1
    history_source: str = "coingecko"

    # Indicators
    indicator_window: int = 50
    min_indicator_history: int = 26

    # Sentiment
    search_terms: Dict[str, List[str]] = field(default_factory=lambda: dict(DEFAULT_SEARCH_TERMS))

    # Storage / logging
    db_path: str = "data/market_data.db"
    log_level: str = "INFO"
    log_json: bool = False
    log_dir: Optional[str] = None

    # Secrets (environment only)
    coingecko_api_key: Optional[str] = None
    coinmarketcap_api_key: Optional[str] = None
    news_api_key: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigError on values the pipeline cannot run with."""
        if not self.symbols:
            raise ConfigError("At least one symbol must be configured")

        for name in ("aggregation_interval_seconds", "backfill_interval_seconds",
                     "request_timeout_seconds", "sentiment_timeout_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive, got {getattr(self, name)}")

        if self.backfill_days < 1:
            raise ConfigError(f"backfill_days must be at least 1, got {self.backfill_days}")

        if self.max_redirects < 0:
            raise ConfigError(f"max_redirects must be >= 0, got {self.max_redirects}")

        for source, weight in self.source_weights.items():
            if weight <= 0:
                raise ConfigError(f"Weight for source '{source}' must be positive, got {weight}")

        if self.default_source_weight <= 0:
            raise ConfigError(
                f"default_source_weight must be positive, got {self.default_source_weight}"
            )

        if self.min_indicator_history < 26:
            raise ConfigError(
                f"min_indicator_history must be at least 26 (MACD slow period), "
                f"got {self.min_indicator_history}"
            )

        if self.indicator_window < self.min_indicator_history:
            raise ConfigError(
                f"indicator_window ({self.indicator_window}) must be >= "
                f"min_indicator_history ({self.min_indicator_history})"
            )

    def weight_for(self, source_id: str) -> float:
        """Configured weight for a source, or the default weight."""
        return self.source_weights.get(source_id, self.default_source_weight)

    def search_terms_for(self, symbol: str) -> List[str]:
        """Sentiment search terms for a symbol (the symbol itself if unmapped)."""
        return self.search_terms.get(symbol.lower(), [symbol])


def _coerce(name: str, raw: str) -> Any:
    """Convert an environment string to the type of the config field."""
    if name == "log_json":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if name == "symbols":
        return [s.strip() for s in raw.split(",") if s.strip()]
    return raw


def load_config(
    path: Optional[Union[str, Path]] = None,
    env_file: Optional[Union[str, Path]] = None
) -> FusionConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        path: YAML config file (optional; defaults are used when omitted)
        env_file: .env file to load (default: search from the working directory)

    Returns:
        Validated FusionConfig

    Raises:
        ConfigError: If the file cannot be read or contains invalid values
    """
    load_dotenv(env_file)

    values: Dict[str, Any] = {}

    if path is not None:
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if not loaded:
            logger.warning(f"Config file {path} is empty. Using default settings.")

        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file {path} must contain a mapping, got {type(loaded).__name__}")

        known = {f.name for f in fields(FusionConfig)}
        unknown = set(loaded) - known
        if unknown:
            raise ConfigError(f"Unknown config keys in {path}: {sorted(unknown)}")

        values.update(loaded)

    for env_name, attr in ENV_OVERRIDES.items():
        raw = os.getenv(env_name)
        if raw:
            values[attr] = _coerce(attr, raw)

    try:
        config = FusionConfig(**values)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    logger.debug(
        f"Config loaded | Symbols: {config.symbols} | "
        f"Interval: {config.aggregation_interval_seconds}s | DB: {config.db_path}"
    )
    return config
