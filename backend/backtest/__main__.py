"""CLI entry point for the backtesting system.

Completely independent of app/: reads a rule-book YAML file directly and
replays it over a synthetic (optionally seeded) price path.

Usage:
    python -m backtest --rules rules.yaml --start 2025-01-01 --end 2025-01-31
    python -m backtest --templates --seed 42 --start 2025-06-01 --end 2025-06-30
    python -m backtest --rules rules.yaml --balances BTC=1,USDC=50000 --prices BTC=69000 -o out.json
"""

import argparse
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from rules.models.context import Objectives
from rules.parser import RuleValidationError, parse_rules
from rules.templates import profit_taking_rules

from backtest.config import get_backtest_settings
from backtest.prices import SyntheticPriceGenerator
from backtest.report import ReportFormatter
from backtest.runner import BacktestConfig, BacktestRunner, InMemoryResultStore

DEFAULT_BALANCES = "BTC=1,USDC=50000"
DEFAULT_PRICES = "BTC=69000"


def parse_date(date_str: str) -> datetime:
    """Parse YYYY-MM-DD to timezone-aware datetime."""
    try:
        dt = datetime.strptime(date_str, "%Y-%m-%d")
        return dt.replace(tzinfo=timezone.utc)
    except ValueError:
        raise argparse.ArgumentTypeError(
            f"Invalid date format: {date_str} (expected YYYY-MM-DD)"
        )


def parse_amounts(text: str) -> dict[str, float]:
    """Parse 'BTC=1,USDC=50000' into {'BTC': 1.0, 'USDC': 50000.0}."""
    amounts = {}
    for part in filter(None, (p.strip() for p in text.split(","))):
        symbol, sep, value = part.partition("=")
        try:
            if not sep:
                raise ValueError
            amounts[symbol.strip().upper()] = float(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid amount '{part}' (expected SYMBOL=NUMBER)")
    return amounts


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Backtest trading rules over a synthetic price path",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m backtest --rules rules.yaml --start 2025-06-01 --end 2025-06-30
  python -m backtest --templates --seed 7 --start 2025-06-01 --end 2025-06-08
        """,
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--rules",
        type=Path,
        help="Rule-book YAML with a top-level 'rules' list (and optional 'objectives')",
    )
    source.add_argument(
        "--templates",
        action="store_true",
        help="Backtest the built-in profit-taking templates",
    )
    parser.add_argument("--start", type=parse_date, required=True, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=parse_date, required=True, help="End date (YYYY-MM-DD)")
    parser.add_argument(
        "--balances",
        type=parse_amounts,
        default=parse_amounts(DEFAULT_BALANCES),
        help=f"Initial balances (default: {DEFAULT_BALANCES})",
    )
    parser.add_argument(
        "--prices",
        type=parse_amounts,
        default=parse_amounts(DEFAULT_PRICES),
        help=f"Initial prices (default: {DEFAULT_PRICES})",
    )
    parser.add_argument("--seed", type=int, default=None, help="RNG seed for a reproducible path")
    parser.add_argument(
        "--output", "-o",
        type=str,
        default=None,
        help="Output file path for JSON results",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args()


def load_rule_file(path: Path):
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    rules = parse_rules(raw.get("rules") or [])
    objectives = Objectives.model_validate(raw.get("objectives") or {})
    return rules, objectives


def main() -> None:
    args = parse_args()

    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    if args.end <= args.start:
        print("Error: --end must be after --start")
        sys.exit(1)

    if args.templates:
        rules, objectives = profit_taking_rules(), Objectives()
    else:
        try:
            rules, objectives = load_rule_file(args.rules)
        except (OSError, RuleValidationError) as e:
            print(f"Error: {e}")
            sys.exit(1)

    if not rules:
        print("No rules to backtest.")
        return

    settings = get_backtest_settings()
    seed = args.seed if args.seed is not None else settings.seed
    source = SyntheticPriceGenerator(
        seed=seed,
        volatility=settings.synthetic_volatility,
        default_volatility=settings.default_volatility,
        pinned=(settings.numeraire,),
    )
    config = BacktestConfig.from_settings(
        settings,
        start_date=args.start,
        end_date=args.end,
        initial_balances=args.balances,
        initial_prices=args.prices,
        objectives=objectives,
    )

    print(f"\nBacktest: {len(rules)} rules, seed={seed}")
    print(f"Period: {args.start:%Y-%m-%d} → {args.end:%Y-%m-%d}")

    store = InMemoryResultStore()
    runner = BacktestRunner(config, price_source=source, store=store)
    results = runner.run_batch(rules)

    for result in results:
        ReportFormatter.print_console(result)
    ReportFormatter.print_ranking(results)

    if args.output:
        ReportFormatter.save_json(results, args.output)


if __name__ == "__main__":
    main()
