"""Indicator library (pure math, no I/O).

All functions operate on chronologically ordered data for one symbol and
return None when the history is shorter than the requested window.
None is the single "insufficient data" signal; callers treat it as
"condition cannot be computed" rather than as an error.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import numpy as np

from rules.models.context import EvalContext, PortfolioState, PricePoint
from rules.models.rule import IndicatorName


def _as_array(values: Sequence[float]) -> np.ndarray:
    return np.asarray([float(v) for v in values], dtype=np.float64)


def _check_period(period: int, minimum: int = 1) -> None:
    if period < minimum:
        raise ValueError(f"period must be >= {minimum}, got {period}")


def sma(values: Sequence[float], period: int) -> float | None:
    """
    Arithmetic mean of the last `period` values.

    Args:
        values: Sequence of prices, oldest first
        period: Number of trailing points to average

    Returns:
        The mean, or None if fewer than `period` points exist
    """
    _check_period(period)
    if len(values) < period:
        return None
    return float(np.mean(_as_array(values[-period:])))


def rsi(values: Sequence[float], period: int = 14) -> float | None:
    """
    Relative Strength Index over the trailing `period` price changes.

    avg_gain and avg_loss are the mean positive and negative change over the
    last `period` differences (so `period + 1` prices are required).
    RSI = 100 - 100 / (1 + avg_gain / avg_loss).

    Flat history (no gains, no losses) returns 50; gains with no losses
    return 100.

    Args:
        values: Sequence of prices, oldest first
        period: Number of trailing changes

    Returns:
        RSI in [0, 100], or None if fewer than period + 1 points exist
    """
    _check_period(period)
    if len(values) < period + 1:
        return None

    diffs = np.diff(_as_array(values[-(period + 1):]))
    avg_gain = float(diffs[diffs > 0].sum()) / period
    avg_loss = float(-diffs[diffs < 0].sum()) / period

    if avg_loss == 0:
        return 50.0 if avg_gain == 0 else 100.0

    rs = avg_gain / avg_loss
    value = 100.0 - 100.0 / (1.0 + rs)
    return max(0.0, min(100.0, value))


def volatility(values: Sequence[float], window: int = 30) -> float | None:
    """
    Standard deviation of simple period-over-period returns.

    Uses the last `window` prices (window - 1 returns) and the population
    standard deviation.

    Args:
        values: Sequence of prices, oldest first
        window: Number of trailing prices

    Returns:
        Return volatility as a fraction (0.02 = 2%), or None if fewer than
        `window` points exist or a zero price makes returns undefined
    """
    _check_period(window, minimum=2)
    if len(values) < window:
        return None

    arr = _as_array(values[-window:])
    if np.any(arr[:-1] == 0):
        return None
    returns = arr[1:] / arr[:-1] - 1.0
    return float(np.std(returns))


def price_change_pct(
    series: Sequence[PricePoint],
    window_minutes: int,
    now: datetime | None = None,
) -> float | None:
    """
    Percentage change across a trailing time window.

    The window ends at `now` (or the last observation) and starts
    `window_minutes` earlier. The start price is the last observation at or
    before the window start, so the series must reach back that far.

    Args:
        series: Price points, oldest first
        window_minutes: Window length in minutes
        now: Window end; defaults to the last observation's timestamp

    Returns:
        (last - first) / first * 100, or None if history does not cover the
        window or the start price is zero
    """
    _check_period(window_minutes)
    if not series:
        return None

    end = now or series[-1].timestamp
    start = end - timedelta(minutes=window_minutes)

    first: PricePoint | None = None
    last: PricePoint | None = None
    for point in series:
        if point.timestamp <= start:
            first = point
        if point.timestamp <= end:
            last = point

    if first is None or last is None or first.price == 0:
        return None
    return (last.price - first.price) / first.price * 100.0


def portfolio_value(portfolio: PortfolioState) -> float:
    """Total USD value of the portfolio."""
    return portfolio.total_value()


def portfolio_exposure_pct(
    source: EvalContext | PortfolioState,
    symbol: str,
) -> float | None:
    """
    Value of `symbol` as a percentage of total portfolio value.

    Returns:
        Exposure percentage, or None when the portfolio has no priced value
    """
    portfolio = source.portfolio if isinstance(source, EvalContext) else source
    total = portfolio.total_value()
    if total <= 0:
        return None
    return portfolio.value(symbol) / total * 100.0


def compute_indicator(
    name: IndicatorName,
    values: Sequence[float],
    lookback: int,
) -> float | None:
    """Dispatch an indicator by name over a close-price series."""
    if name == IndicatorName.RSI:
        return rsi(values, lookback)
    if name == IndicatorName.SMA:
        return sma(values, lookback)
    if name == IndicatorName.VOLATILITY:
        return volatility(values, lookback)
    raise ValueError(f"Unknown indicator: {name}")
