"""Report formatting for backtest results.

Outputs results to console (formatted tables) and JSON files.
"""

from __future__ import annotations

import json
import math
from datetime import datetime

from backtest.stats import BacktestResult


class ResultEncoder(json.JSONEncoder):
    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        return super().default(obj)


def _finite(value: float, digits: int) -> float | str:
    return round(value, digits) if math.isfinite(value) else str(value)


class ReportFormatter:
    """Format backtest results for display and export."""

    @staticmethod
    def print_console(result: BacktestResult) -> None:
        """Print formatted report for one rule to console."""
        m = result.metrics

        print("\n" + "=" * 70)
        print(f"  BACKTEST RESULTS: {result.rule_name}")
        print("=" * 70)
        print(f"  Period: {result.start_date:%Y-%m-%d} → {result.end_date:%Y-%m-%d} ({result.steps:,} steps)")
        print(f"  Equity: {result.initial_value:,.2f} → {result.final_value:,.2f}")

        print("\n" + "-" * 70)
        print("  PERFORMANCE")
        print("-" * 70)
        print(f"  Total return:   {m.total_return:+.2f}%")
        print(f"  Sharpe ratio:   {m.sharpe_ratio:.2f} (x{m.annualization_factor:.2f} annualization)")
        print(f"  Max drawdown:   {m.max_drawdown * 100:.2f}%")
        print(f"  Trades:         {m.total_trades}")
        print(f"  Wins / losses:  {m.wins} / {m.losses}")
        print(f"  Win rate:       {m.win_rate * 100:.1f}%")
        print(f"  Profit factor:  {m.profit_factor:.2f}")
        print(f"  Avg hold time:  {m.avg_hold_time_mins:.0f} min")

        if result.trades:
            print("\n" + "-" * 70)
            print("  TRADES (last 10)")
            print("-" * 70)
            print(f"  {'Time':<17} {'Symbol':<8} {'Side':<5} {'Price':>12} {'Qty':>14} {'P&L':>11}")
            for t in result.trades[-10:]:
                pnl = f"{t.pnl:+.2f}" if t.pnl is not None else ""
                print(f"  {t.timestamp:%Y-%m-%d %H:%M} {t.symbol:<8} {t.side:<5} {t.price:>12.4f} {t.qty:>14.6f} {pnl:>11}")

        print("\n" + "-" * 70)
        print("  FINAL PORTFOLIO")
        print("-" * 70)
        for symbol, qty in sorted(result.final_portfolio.items()):
            print(f"  {symbol:<12} {qty:>18.8f}")

        print("\n" + "=" * 70)

    @staticmethod
    def print_ranking(results: list[BacktestResult]) -> None:
        """Print a one-line-per-rule ranking (already sorted)."""
        print(f"\n{'#':>3} {'Rule':<32} {'Return':>9} {'Sharpe':>8} {'MaxDD':>8} {'Win%':>7} {'Trades':>7}")
        print("-" * 80)
        for i, r in enumerate(results, 1):
            m = r.metrics
            print(
                f"{i:>3} {r.rule_name[:32]:<32} {m.total_return:>+8.2f}% {m.sharpe_ratio:>8.2f} "
                f"{m.max_drawdown * 100:>7.2f}% {m.win_rate * 100:>6.1f}% {m.total_trades:>7}"
            )
        print()

    @staticmethod
    def to_dict(result: BacktestResult) -> dict:
        """Convert results to JSON-serializable dict."""
        m = result.metrics
        return {
            "run_id": result.run_id,
            "rule_id": result.rule_id,
            "rule_name": result.rule_name,
            "metadata": {
                "start_date": result.start_date.isoformat(),
                "end_date": result.end_date.isoformat(),
                "steps": result.steps,
                "initial_value": round(result.initial_value, 2),
                "final_value": round(result.final_value, 2),
            },
            "metrics": {
                "total_return": round(m.total_return, 4),
                "sharpe_ratio": round(m.sharpe_ratio, 4),
                "annualization_factor": round(m.annualization_factor, 4),
                "max_drawdown": round(m.max_drawdown, 6),
                "win_rate": round(m.win_rate, 4),
                "total_trades": m.total_trades,
                "wins": m.wins,
                "losses": m.losses,
                "avg_hold_time_mins": round(m.avg_hold_time_mins, 2),
                "profit_factor": _finite(m.profit_factor, 4),
            },
            "equity_curve": [
                {"timestamp": p.timestamp.isoformat(), "value": round(p.value, 2)}
                for p in m.equity_curve
            ],
            "trades": [
                {
                    "timestamp": t.timestamp.isoformat(),
                    "rule_id": t.rule_id,
                    "symbol": t.symbol,
                    "side": t.side,
                    "price": t.price,
                    "qty": t.qty,
                    "pnl": t.pnl,
                }
                for t in result.trades
            ],
            "final_portfolio": dict(result.final_portfolio),
        }

    @staticmethod
    def save_json(results: list[BacktestResult], filepath: str) -> None:
        """Save results to JSON file."""
        data = [ReportFormatter.to_dict(r) for r in results]
        with open(filepath, "w") as f:
            json.dump(data, f, indent=2, cls=ResultEncoder)
        print(f"\nResults saved to {filepath}")
