"""Statistics calculator for backtest results.

Metrics conventions:
- total_return: percent of initial equity (5.0 = +5%)
- max_drawdown: fraction of the running peak (0.12 = 12%)
- win_rate: fraction of sells with matched P&L that were positive
- profit_factor: gross matched profit / gross matched loss; inf when
  there are profits but no losses, 0 when nothing was matched
- sharpe_ratio: mean / population std of per-step equity returns, scaled
  by sqrt(annualization_periods). With the default 252 and 15-minute steps
  the scale is that of daily data, not of the replay cadence; the factor
  used is recorded on the result.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import numpy as np

from backtest.portfolio import ClosedLot, Trade

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EquityPoint:
    timestamp: datetime
    value: float


@dataclass
class BacktestMetrics:
    total_return: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    win_rate: float = 0.0
    total_trades: int = 0
    avg_hold_time_mins: float = 0.0
    profit_factor: float = 0.0
    wins: int = 0
    losses: int = 0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    annualization_factor: float = math.sqrt(252)
    equity_curve: list[EquityPoint] = field(default_factory=list)


@dataclass
class BacktestResult:
    """Complete result of replaying one rule (or rule set)."""

    rule_id: str
    rule_name: str
    start_date: datetime
    end_date: datetime
    metrics: BacktestMetrics
    trades: list[Trade] = field(default_factory=list)
    final_portfolio: dict[str, float] = field(default_factory=dict)
    initial_value: float = 0.0
    final_value: float = 0.0
    steps: int = 0
    run_id: str = ""
    extra: dict[str, Any] = field(default_factory=dict)


class StatisticsCalculator:
    """Calculate performance metrics from an equity curve and fills."""

    def __init__(self, annualization_periods: int = 252):
        self.annualization_periods = annualization_periods

    def calculate(
        self,
        equity_curve: list[EquityPoint],
        trades: list[Trade],
        closed_lots: list[ClosedLot],
        initial_value: float,
    ) -> BacktestMetrics:
        metrics = BacktestMetrics(
            total_trades=len(trades),
            equity_curve=list(equity_curve),
            annualization_factor=math.sqrt(self.annualization_periods),
        )
        values = [initial_value] + [p.value for p in equity_curve]

        self._calc_return(metrics, values)
        self._calc_sharpe(metrics, values)
        self._calc_drawdown(metrics, values)
        self._calc_trade_stats(metrics, trades, closed_lots)
        return metrics

    def _calc_return(self, metrics: BacktestMetrics, values: list[float]) -> None:
        initial, final = values[0], values[-1]
        if initial > 0:
            metrics.total_return = (final - initial) / initial * 100.0

    def _calc_sharpe(self, metrics: BacktestMetrics, values: list[float]) -> None:
        arr = np.asarray(values, dtype=np.float64)
        if len(arr) < 2:
            return
        prev = arr[:-1]
        with np.errstate(divide="ignore", invalid="ignore"):
            returns = np.where(prev > 0, arr[1:] / prev - 1.0, 0.0)
        std = float(np.std(returns))
        if std > 0:
            metrics.sharpe_ratio = float(np.mean(returns)) / std * metrics.annualization_factor

    def _calc_drawdown(self, metrics: BacktestMetrics, values: list[float]) -> None:
        arr = np.asarray(values, dtype=np.float64)
        peaks = np.maximum.accumulate(arr)
        with np.errstate(divide="ignore", invalid="ignore"):
            drawdowns = np.where(peaks > 0, (peaks - arr) / peaks, 0.0)
        metrics.max_drawdown = float(drawdowns.max()) if len(drawdowns) else 0.0

    def _calc_trade_stats(
        self,
        metrics: BacktestMetrics,
        trades: list[Trade],
        closed_lots: list[ClosedLot],
    ) -> None:
        for trade in trades:
            if trade.side != "sell" or trade.matched_qty <= 0 or trade.pnl is None:
                continue
            if trade.pnl > 0:
                metrics.wins += 1
                metrics.gross_profit += trade.pnl
            elif trade.pnl < 0:
                metrics.losses += 1
                metrics.gross_loss += -trade.pnl

        decided = metrics.wins + metrics.losses
        if decided:
            metrics.win_rate = metrics.wins / decided

        if metrics.gross_loss > 0:
            metrics.profit_factor = metrics.gross_profit / metrics.gross_loss
        elif metrics.gross_profit > 0:
            metrics.profit_factor = float("inf")

        if closed_lots:
            metrics.avg_hold_time_mins = sum(c.hold_minutes for c in closed_lots) / len(closed_lots)
