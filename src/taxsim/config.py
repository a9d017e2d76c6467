"""Configuration system: loads TOML config into typed dataclasses."""

from __future__ import annotations

import logging
import tomllib
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent.parent / "config" / "default.toml"


@dataclass
class PortfolioConfig:
    history_path: str = "data/history.json"
    tax_currency: str = "EUR"
    tax_rate: Decimal = Decimal("0.26375")  # Abgeltungsteuer + Soli
    round_tax_to_units: bool = False


@dataclass
class BrokerConfig:
    commission_currency: str = ""  # empty = trade currency
    per_share: Decimal = Decimal("0")
    percent_bps: Decimal = Decimal("0")
    minimum: Decimal = Decimal("0")
    maximum_pct: Decimal = Decimal("0")  # 0 = no cap
    daily_minimum: Decimal = Decimal("0")


@dataclass
class QuotesConfig:
    url: str = "http://127.0.0.1:8900/quotes"
    timeout_sec: float = 10.0
    max_workers: int = 4


@dataclass
class RatesConfig:
    url: str = "https://data-api.ecb.europa.eu/service/data/EXR"
    timeout_sec: float = 30.0
    max_workers: int = 4


@dataclass
class Config:
    log_level: str = "INFO"
    json_logs: bool = False
    portfolio: PortfolioConfig = field(default_factory=PortfolioConfig)
    broker: BrokerConfig = field(default_factory=BrokerConfig)
    quotes: QuotesConfig = field(default_factory=QuotesConfig)
    rates: RatesConfig = field(default_factory=RatesConfig)


def _apply_toml_section(obj: object, data: dict) -> None:  # type: ignore[type-arg]
    """Recursively apply TOML dict values onto a dataclass instance."""
    for key, value in data.items():
        if not hasattr(obj, key):
            logger.warning("Unknown config key: %s", key)
            continue
        current = getattr(obj, key)
        if isinstance(value, dict) and hasattr(current, "__dataclass_fields__"):
            _apply_toml_section(current, value)
        elif isinstance(current, Decimal):
            setattr(obj, key, Decimal(str(value)))
        else:
            setattr(obj, key, value)


class ConfigError(ValueError):
    """Raised when configuration validation fails."""


def validate_config(cfg: Config) -> list[str]:
    """Validate config values and return list of errors (empty = valid)."""
    errors: list[str] = []

    # Portfolio
    currency = cfg.portfolio.tax_currency
    if not (len(currency) == 3 and currency.isalpha() and currency.isupper()):
        errors.append("portfolio.tax_currency must be a 3-letter upper-case code")
    if not (0 <= cfg.portfolio.tax_rate < 1):
        errors.append("portfolio.tax_rate must be in [0, 1)")
    if not cfg.portfolio.history_path:
        errors.append("portfolio.history_path must not be empty")

    # Broker
    fee_currency = cfg.broker.commission_currency
    if fee_currency and not (len(fee_currency) == 3 and fee_currency.isalpha()
                             and fee_currency.isupper()):
        errors.append("broker.commission_currency must be empty or a 3-letter code")
    for name in ("per_share", "percent_bps", "minimum", "maximum_pct", "daily_minimum"):
        if getattr(cfg.broker, name) < 0:
            errors.append(f"broker.{name} must be >= 0")
    if cfg.broker.maximum_pct > 1:
        errors.append("broker.maximum_pct must be <= 1")

    # Collaborators
    if not cfg.quotes.url:
        errors.append("quotes.url must not be empty")
    if cfg.quotes.timeout_sec <= 0:
        errors.append("quotes.timeout_sec must be > 0")
    if cfg.quotes.max_workers < 1:
        errors.append("quotes.max_workers must be >= 1")
    if not cfg.rates.url:
        errors.append("rates.url must not be empty")
    if cfg.rates.timeout_sec <= 0:
        errors.append("rates.timeout_sec must be > 0")
    if cfg.rates.max_workers < 1:
        errors.append("rates.max_workers must be >= 1")

    return errors


def load_config(path: Path | None = None) -> Config:
    """Load config from TOML file, falling back to defaults."""
    cfg = Config()
    config_path = path or DEFAULT_CONFIG_PATH
    if config_path.exists():
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
        _apply_toml_section(cfg, data)
        logger.info("Loaded config from %s", config_path)
    else:
        logger.info("No config file at %s, using defaults", config_path)

    errors = validate_config(cfg)
    if errors:
        for err in errors:
            logger.error("Config validation error: %s", err)
        raise ConfigError(f"Invalid configuration: {'; '.join(errors)}")

    return cfg
