"""Tests for configuration loading."""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from tempfile import NamedTemporaryFile

import pytest

from taxsim.config import Config, ConfigError, load_config, validate_config


def test_default_config_loads(default_config: Config) -> None:
    assert default_config.portfolio.tax_currency == "EUR"
    assert default_config.portfolio.tax_rate == Decimal("0.26375")
    assert default_config.broker.maximum_pct == Decimal("0")
    assert default_config.quotes.max_workers == 4


def test_toml_override() -> None:
    toml_content = b"""
log_level = "DEBUG"

[portfolio]
tax_currency = "RUB"
tax_rate = "0.13"
round_tax_to_units = true

[broker]
per_share = 0.01
"""
    with NamedTemporaryFile(suffix=".toml", delete=False) as f:
        f.write(toml_content)
        f.flush()
        cfg = load_config(Path(f.name))

    assert cfg.log_level == "DEBUG"
    assert cfg.portfolio.tax_currency == "RUB"
    assert cfg.portfolio.tax_rate == Decimal("0.13")
    assert cfg.portfolio.round_tax_to_units is True
    # TOML floats are read back through str, not binary
    assert cfg.broker.per_share == Decimal("0.01")
    # Unset fields keep defaults
    assert cfg.rates.timeout_sec == 30.0


def test_unknown_keys_ignored() -> None:
    with NamedTemporaryFile(suffix=".toml", delete=False) as f:
        f.write(b"[portfolio]\nnot_a_field = 1\n")
        f.flush()
        cfg = load_config(Path(f.name))
    assert not hasattr(cfg.portfolio, "not_a_field")


def test_default_toml_file_loads() -> None:
    cfg = load_config()
    assert cfg.broker.per_share == Decimal("0.005")
    assert cfg.broker.minimum == Decimal("1.00")
    assert cfg.broker.maximum_pct == Decimal("0.01")


def test_invalid_file_raises_config_error() -> None:
    with NamedTemporaryFile(suffix=".toml", delete=False) as f:
        f.write(b'[portfolio]\ntax_rate = "1.5"\n')
        f.flush()
        with pytest.raises(ConfigError, match="tax_rate"):
            load_config(Path(f.name))


class TestConfigValidation:
    def test_valid_default_config(self) -> None:
        assert validate_config(Config()) == []

    def test_lowercase_tax_currency(self) -> None:
        cfg = Config()
        cfg.portfolio.tax_currency = "eur"
        errors = validate_config(cfg)
        assert any("tax_currency" in e for e in errors)

    def test_bad_commission_currency(self) -> None:
        cfg = Config()
        cfg.broker.commission_currency = "DOLLARS"
        errors = validate_config(cfg)
        assert any("commission_currency" in e for e in errors)

    def test_negative_fee(self) -> None:
        cfg = Config()
        cfg.broker.minimum = Decimal("-1")
        errors = validate_config(cfg)
        assert any("broker.minimum" in e for e in errors)

    def test_cap_above_notional(self) -> None:
        cfg = Config()
        cfg.broker.maximum_pct = Decimal("2")
        errors = validate_config(cfg)
        assert any("maximum_pct" in e for e in errors)

    def test_zero_workers(self) -> None:
        cfg = Config()
        cfg.quotes.max_workers = 0
        cfg.rates.timeout_sec = 0
        errors = validate_config(cfg)
        assert any("quotes.max_workers" in e for e in errors)
        assert any("rates.timeout_sec" in e for e in errors)
