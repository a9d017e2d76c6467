"""Entry point: ``python -m taxsim [positions|replay|simulate]``.

Wires the collaborators from config and prints plain JSON results to stdout.
Rendering into tables is left to whatever consumes the output.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Any

import orjson

from taxsim.config import Config, load_config
from taxsim.logging_setup import setup_logging

if TYPE_CHECKING:
    from taxsim.tax.lot_book import LotBook
    from taxsim.tax.settlement import TradeResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Component construction
# ---------------------------------------------------------------------------


def _build_components(cfg: Config) -> dict[str, Any]:
    """Construct collaborators from config.  Returns a dict of named objects."""
    import httpx

    from taxsim.currency.converter import CurrencyConverter
    from taxsim.currency.ecb_rates import ECBRateService
    from taxsim.fee.commissions import CommissionSpec
    from taxsim.quotes import HttpQuoteProvider, Quotes
    from taxsim.tax.history import TradeHistory
    from taxsim.tax.tax_rules import FlatRateTaxRule

    # Loaded before any HTTP client is opened, so a bad file leaks nothing
    history = TradeHistory.load(Path(cfg.portfolio.history_path))

    rate_source = ECBRateService(
        http_client=httpx.Client(timeout=cfg.rates.timeout_sec),
        api_url=cfg.rates.url,
    )
    converter = CurrencyConverter(rate_source, max_workers=cfg.rates.max_workers)

    quote_provider = HttpQuoteProvider(
        cfg.quotes.url, http_client=httpx.Client(timeout=cfg.quotes.timeout_sec),
    )
    quotes = Quotes(quote_provider, max_workers=cfg.quotes.max_workers)

    tax_rule = FlatRateTaxRule(
        currency=cfg.portfolio.tax_currency,
        rate=cfg.portfolio.tax_rate,
        round_to_units=cfg.portfolio.round_tax_to_units,
    )

    broker = cfg.broker
    fee_schedule = CommissionSpec(
        currency=broker.commission_currency or None,
        per_share=broker.per_share,
        percent_bps=broker.percent_bps,
        minimum=broker.minimum,
        maximum_pct=broker.maximum_pct or None,
        daily_minimum=broker.daily_minimum,
    )

    return {
        "rate_source": rate_source,
        "converter": converter,
        "quote_provider": quote_provider,
        "quotes": quotes,
        "tax_rule": tax_rule,
        "fee_schedule": fee_schedule,
        "history": history,
    }


def _parse_position(arg: str) -> tuple[str, int | None]:
    """``AAPL`` -> (AAPL, None); ``AAPL:10`` -> (AAPL, 10)."""
    symbol, sep, quantity = arg.partition(":")
    if not symbol:
        raise argparse.ArgumentTypeError(f"Invalid position: {arg!r}")
    if not sep:
        return symbol, None
    try:
        value = int(quantity)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid quantity in {arg!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"Quantity must be positive in {arg!r}")
    return symbol, value


def _emit(data: object) -> None:
    sys.stdout.write(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode() + "\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _open_book(components: dict[str, Any]) -> tuple[LotBook, list[TradeResult]]:
    """Lot Book after replaying every recorded sell."""
    from taxsim.tax.settlement import SettlementEngine

    history = components["history"]
    engine = SettlementEngine(
        history.build_book(), components["converter"], components["tax_rule"],
    )
    results = engine.replay(history.ordered_sells())
    return engine.book, results


def _cmd_positions(components: dict[str, Any]) -> None:
    _emit(components["history"].open_positions())


def _cmd_replay(components: dict[str, Any]) -> None:
    from taxsim.tax.settlement import SettlementTotals

    _book, results = _open_book(components)
    totals = SettlementTotals(components["tax_rule"])
    for result in results:
        totals.add(result)
    _emit({"trades": [r.to_dict() for r in results], "totals": totals.to_dict()})


def _cmd_simulate(components: dict[str, Any], positions: list[tuple[str, int | None]]) -> None:
    from taxsim.tax.simulation import simulate_sells

    book, _results = _open_book(components)
    report = simulate_sells(
        book,
        positions,
        quotes=components["quotes"],
        converter=components["converter"],
        tax_rule=components["tax_rule"],
        fee_schedule=components["fee_schedule"],
    )
    _emit(report.to_dict())


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    from taxsim.currency.converter import ConversionUnavailable
    from taxsim.quotes import QuoteUnavailable
    from taxsim.tax.history import HistoryError
    from taxsim.tax.lot_book import InsufficientQuantity, UnknownPosition
    from taxsim.tax.settlement import InconsistentHistory

    parser = argparse.ArgumentParser(
        prog="taxsim",
        description="FIFO capital gains and what-if sell simulation",
    )
    parser.add_argument("--config", "-c", type=str, help="Config file path")
    parser.add_argument("--json-log", action="store_true", help="JSON log output")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("positions", help="Show open positions")
    sub.add_parser("replay", help="Settle every recorded sell")
    sim_parser = sub.add_parser("simulate", help="Simulate selling open positions now")
    sim_parser.add_argument(
        "positions", nargs="+", type=_parse_position, metavar="SYMBOL[:QTY]",
    )

    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return 2

    config_path = Path(args.config) if args.config else None
    cfg = load_config(config_path)
    setup_logging(level=cfg.log_level, json_output=args.json_log or cfg.json_logs)

    components: dict[str, Any] = {}
    try:
        components = _build_components(cfg)
        if args.command == "positions":
            _cmd_positions(components)
        elif args.command == "replay":
            _cmd_replay(components)
        else:
            _cmd_simulate(components, args.positions)
    except (
        UnknownPosition, InsufficientQuantity, QuoteUnavailable,
        ConversionUnavailable, HistoryError, InconsistentHistory,
    ) as e:
        logger.error("%s", e)
        return 1
    finally:
        for name in ("rate_source", "quote_provider"):
            if name in components:
                components[name].close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
