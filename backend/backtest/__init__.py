"""Backtesting system for trading rules.

Fully independent of app/: only depends on rules/ for evaluation.

Replays rules over a historical or seeded synthetic price path at a fixed
step, executes accepted intents against a simulated portfolio, and ranks
results by Sharpe ratio.

Usage:
    python -m backtest --rules rules.yaml --start 2025-01-01 --end 2025-01-31
    python -m backtest --templates --seed 42 --start 2025-06-01 --end 2025-06-30
"""

from backtest.engine import BacktestCancelled, BacktestEngine
from backtest.runner import (
    BacktestConfig,
    BacktestRunner,
    InMemoryResultStore,
    backtest_rule,
    batch_backtest,
)
from backtest.stats import BacktestMetrics, BacktestResult

__all__ = [
    "BacktestCancelled",
    "BacktestConfig",
    "BacktestEngine",
    "BacktestMetrics",
    "BacktestResult",
    "BacktestRunner",
    "InMemoryResultStore",
    "backtest_rule",
    "batch_backtest",
]
